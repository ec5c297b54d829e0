import asyncio
import os
import signal
import tempfile
import unittest
from unittest import mock

from click.testing import CliRunner

from nats_operator import reloader
from nats_operator.errors import ReloaderError
from nats_operator.supervisor import CancellationToken


class TestReloader(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        self.config_file = os.path.join(tmpdir.name, "nats.conf")
        self.pid_file = os.path.join(tmpdir.name, "gnatsd.pid")
        with open(self.config_file, "w") as fh:
            fh.write("port: 4222\n")
        with open(self.pid_file, "w") as fh:
            fh.write("1234\n")
        patcher = mock.patch.object(reloader.os, "kill")
        self.kill = patcher.start()
        self.addCleanup(patcher.stop)
        self.reloader = reloader.Reloader(
            [self.config_file],
            self.pid_file,
            max_retries = 2,
            retry_wait = 0,
            poll_interval = 0.01
        )

    def sighup_calls(self):
        return [c for c in self.kill.call_args_list if c == mock.call(1234, signal.SIGHUP)]

    async def test_find_server_pid(self):
        pid = await self.reloader.find_server_pid(CancellationToken())

        self.assertEqual(pid, 1234)
        self.kill.assert_called_once_with(1234, 0)

    async def test_find_server_pid_gives_up(self):
        os.remove(self.pid_file)

        with self.assertRaises(ReloaderError):
            await self.reloader.find_server_pid(CancellationToken())

    async def test_find_server_pid_waits_for_process(self):
        self.kill.side_effect = [ProcessLookupError(), None]

        pid = await self.reloader.find_server_pid(CancellationToken())

        self.assertEqual(pid, 1234)
        self.assertEqual(self.kill.call_count, 2)

    async def test_find_server_pid_rejects_garbage(self):
        with open(self.pid_file, "w") as fh:
            fh.write("not a pid")

        with self.assertRaises(ReloaderError):
            await self.reloader.find_server_pid(CancellationToken())
        self.kill.assert_not_called()

    async def test_signal_reload_retries(self):
        self.reloader.pid = 1234
        self.kill.side_effect = [PermissionError(), None]

        await self.reloader.signal_reload(CancellationToken())

        self.assertEqual(len(self.sighup_calls()), 2)

    async def test_signal_reload_gives_up(self):
        self.reloader.pid = 1234
        self.kill.side_effect = ProcessLookupError()

        with self.assertRaises(ReloaderError):
            await self.reloader.signal_reload(CancellationToken())

        self.assertEqual(len(self.sighup_calls()), 3)

    async def test_run_signals_on_change(self):
        token = CancellationToken()
        task = asyncio.create_task(self.reloader.run(token))
        for _ in range(100):
            if self.reloader.last_applied is not None:
                break
            await asyncio.sleep(0.01)
        await asyncio.sleep(0.03)
        self.assertEqual(self.sighup_calls(), [])

        with open(self.config_file, "w") as fh:
            fh.write("port: 4223\n")
        for _ in range(100):
            if self.sighup_calls():
                break
            await asyncio.sleep(0.01)

        token.cancel()
        await asyncio.wait_for(task, 1)
        self.assertEqual(len(self.sighup_calls()), 1)

    async def test_run_stops_before_server_found(self):
        os.remove(self.pid_file)
        self.reloader.retry_wait = 10
        token = CancellationToken()
        task = asyncio.create_task(self.reloader.run(token))
        await asyncio.sleep(0.01)

        token.cancel()
        await asyncio.wait_for(task, 1)

        self.assertIsNone(self.reloader.pid)

    def test_digest_changes_with_content(self):
        before = reloader.digest(self.config_file)
        with open(self.config_file, "a") as fh:
            fh.write("debug: true\n")

        self.assertNotEqual(reloader.digest(self.config_file), before)


class TestReloaderCommand(unittest.TestCase):
    def test_missing_server_exits_with_error(self):
        runner = CliRunner()
        with tempfile.TemporaryDirectory() as tmpdir:
            result = runner.invoke(
                reloader.main,
                [
                    "-P", os.path.join(tmpdir, "missing.pid"),
                    "-c", os.path.join(tmpdir, "nats.conf"),
                    "--max-retries", "0",
                    "--retry-wait-secs", "0",
                ]
            )

        self.assertEqual(result.exit_code, 1)
        self.assertIn("too many errors attempting to find server process", result.output)
