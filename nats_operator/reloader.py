"""
Companion process that asks a NATS server to reload its configuration when the
configuration files change.
"""

import asyncio
import hashlib
import logging
import os
import signal

import click

from .config import settings
from .errors import ReloaderError
from .supervisor import CancellationToken

logger = logging.getLogger(__name__)


def digest(path):
    """
    Returns the SHA-256 digest of the file at the given path.
    """
    sha256 = hashlib.sha256()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(65536), b""):
            sha256.update(chunk)
    return sha256.digest()


class Reloader:
    """
    Watches the configuration files of a NATS server and sends it SIGHUP when
    their contents change.
    """
    def __init__(
        self,
        config_files,
        pid_file,
        *,
        max_retries = None,
        retry_wait = None,
        poll_interval = None
    ):
        self.config_files = list(config_files)
        self.pid_file = pid_file
        self.max_retries = settings.reloader.max_retries if max_retries is None else max_retries
        self.retry_wait = settings.reloader.retry_wait if retry_wait is None else retry_wait
        self.poll_interval = poll_interval or settings.reloader.poll_interval
        self.pid = None
        self.last_applied = None

    def read_pid(self):
        with open(self.pid_file) as fh:
            pid = int(fh.read().strip())
        # Signal 0 only checks that the process exists
        os.kill(pid, 0)
        return pid

    async def find_server_pid(self, token):
        """
        Reads the PID of the server, retrying while the server starts up.
        """
        attempts = 0
        while True:
            try:
                return self.read_pid()
            except (OSError, ValueError) as exc:
                attempts += 1
                logger.warning("unable to find server process: %s", exc)
                if attempts > self.max_retries:
                    raise ReloaderError(
                        "too many errors attempting to find server process"
                    ) from exc
            if await token.sleep(self.retry_wait):
                return None

    def current_digest(self):
        """
        Returns the combined digests of the configuration files, or None if any
        of them cannot be read.
        """
        try:
            return tuple(digest(path) for path in self.config_files)
        except OSError as exc:
            logger.warning("unable to read configuration: %s", exc)
            return None

    async def signal_reload(self, token):
        """
        Sends SIGHUP to the server, retrying up to the maximum number of attempts.
        """
        attempts = 0
        while True:
            logger.info("sending signal to server to reload configuration")
            try:
                os.kill(self.pid, signal.SIGHUP)
            except OSError as exc:
                attempts += 1
                logger.error("error during reload: %s", exc)
                if attempts > self.max_retries:
                    raise ReloaderError(
                        "too many errors attempting to signal server to reload"
                    ) from exc
            else:
                return
            if await token.sleep(self.retry_wait):
                return

    async def run(self, token: CancellationToken):
        """
        Runs the reloader until the token is cancelled.
        """
        self.pid = await self.find_server_pid(token)
        if self.pid is None:
            return
        logger.info("watching %s for server %d", ", ".join(self.config_files), self.pid)
        self.last_applied = self.current_digest()
        while not await token.sleep(self.poll_interval):
            current = self.current_digest()
            if current is None or current == self.last_applied:
                continue
            logger.info("configuration changed")
            self.last_applied = current
            await self.signal_reload(token)
        logger.info("shutting down")


async def run_until_terminated(reloader):
    token = CancellationToken()
    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGTERM, token.cancel)
    try:
        await reloader.run(token)
    finally:
        loop.remove_signal_handler(signal.SIGTERM)


@click.command(name = "nats-server-config-reloader")
@click.option(
    "-P",
    "--pid",
    "pid_file",
    default = settings.reloader.pid_file_path,
    show_default = True,
    help = "NATS server PID file",
)
@click.option(
    "-c",
    "--config",
    "config_files",
    multiple = True,
    help = "NATS server configuration file (can specify multiple)",
)
@click.option(
    "--max-retries",
    type = click.IntRange(min = 0),
    default = settings.reloader.max_retries,
    show_default = True,
    help = "Maximum attempts to find or signal the server",
)
@click.option(
    "--retry-wait-secs",
    type = click.FloatRange(min = 0),
    default = settings.reloader.retry_wait,
    show_default = True,
    help = "Time to back off when reloading fails before retrying",
)
@click.option(
    "--poll-interval",
    type = click.FloatRange(min = 0, min_open = True),
    default = settings.reloader.poll_interval,
    show_default = True,
    help = "Time between checks of the configuration files",
)
def main(pid_file, config_files, max_retries, retry_wait_secs, poll_interval):
    """Reload a NATS server when its configuration changes."""
    settings.logging.apply()
    reloader = Reloader(
        config_files or [settings.nats.config_file_path],
        pid_file,
        max_retries = max_retries,
        retry_wait = retry_wait_secs,
        poll_interval = poll_interval
    )
    try:
        asyncio.run(run_until_terminated(reloader))
    except ReloaderError as exc:
        raise click.ClickException(str(exc))
