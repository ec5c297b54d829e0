import asyncio
import unittest
from unittest import mock

import kopf

from nats_operator import operator
from nats_operator.controller import ClusterController
from nats_operator.errors import ConnectivityError, NameConflictError, ShutdownRequested
from nats_operator.events import Added, Deleted, EventQueue, Updated
from nats_operator.tests.fakes import FakeRuntime, make_cluster


class TestOperator(unittest.IsolatedAsyncioTestCase):
    # make debugging dict comparisons easier
    maxDiff = None

    def setUp(self):
        self.runtimes = {}
        self.registrar = mock.AsyncMock()
        self.registrar.register.return_value = True
        self.events = EventQueue()
        self.operator = operator.Operator(
            mock.Mock(),
            self.events,
            registrar = self.registrar,
            runtime_factory = self.get_runtime,
            reconcile_interval = 0.01,
            stop_grace_period = 0.2
        )

    async def asyncTearDown(self):
        await self.operator.shutdown()

    def get_runtime(self, namespace):
        return self.runtimes.setdefault(namespace, FakeRuntime(namespace))

    def running(self):
        self.operator.state = operator.OperatorState.RUNNING

    async def test_start_registers_crds(self):
        crds = [{"metadata": {"name": "natsclusters.messaging.nats.io"}}]

        await self.operator.start(crds)

        self.registrar.check_connectivity.assert_awaited_once()
        self.registrar.register.assert_awaited_once_with(crds[0])

    async def test_start_continues_when_crd_not_ready(self):
        self.registrar.register.return_value = False

        await self.operator.start([{"metadata": {"name": "natsclusters.messaging.nats.io"}}])

        self.assertEqual(self.operator.state, operator.OperatorState.STARTING)

    async def test_start_fails_without_connectivity(self):
        self.registrar.check_connectivity.side_effect = ConnectivityError("no route to host")

        with self.assertRaises(ConnectivityError):
            await self.operator.start([])

        self.registrar.register.assert_not_awaited()

    async def test_added_starts_one_controller(self):
        self.running()
        cluster = make_cluster()

        await self.operator.dispatch(Added(cluster = cluster))
        await self.operator.dispatch(Added(cluster = cluster))

        self.assertEqual(len(self.operator.controllers), 1)
        self.assertEqual(self.operator.supervisor.outstanding, 1)
        self.assertIn(("tenant1", "test"), self.operator.controllers)

    async def test_clusters_in_different_namespaces_are_independent(self):
        self.running()

        await self.operator.dispatch(Added(cluster = make_cluster(namespace = "tenant1")))
        await self.operator.dispatch(Added(cluster = make_cluster(namespace = "tenant2")))
        await asyncio.sleep(0.05)

        self.assertEqual(len(self.operator.controllers), 2)
        self.assertEqual(len(self.runtimes["tenant1"].pods), 3)
        self.assertEqual(len(self.runtimes["tenant2"].pods), 3)

    async def test_deleted_stops_controller(self):
        self.running()
        cluster = make_cluster()
        await self.operator.dispatch(Added(cluster = cluster))
        controller = self.operator.controllers.get(cluster.key)

        await self.operator.dispatch(Deleted(cluster = cluster))

        self.assertNotIn(cluster.key, self.operator.controllers)
        self.assertTrue(controller.done.is_set())
        await asyncio.wait_for(self.operator.supervisor.wait_idle(), 1)
        self.assertEqual(self.operator.supervisor.outstanding, 0)

    async def test_deleted_unknown_cluster_is_ignored(self):
        self.running()

        await self.operator.dispatch(Deleted(cluster = make_cluster()))

        self.assertEqual(len(self.operator.controllers), 0)

    async def test_cluster_can_be_recreated_after_delete(self):
        self.running()
        cluster = make_cluster()
        await self.operator.dispatch(Added(cluster = cluster))
        first = self.operator.controllers.get(cluster.key)
        await self.operator.dispatch(Deleted(cluster = cluster))

        await self.operator.dispatch(Added(cluster = cluster))

        second = self.operator.controllers.get(cluster.key)
        self.assertIsNotNone(second)
        self.assertIsNot(first, second)

    async def test_updated_is_forwarded(self):
        self.running()
        old = make_cluster(size = 3)
        new = make_cluster(size = 5)
        await self.operator.dispatch(Added(cluster = old))

        await self.operator.dispatch(Updated(old = old, new = new))

        controller = self.operator.controllers.get(new.key)
        self.assertEqual(controller.cluster.spec.size, 5)
        await asyncio.sleep(0.05)
        self.assertEqual(len(self.runtimes["tenant1"].pods), 5)

    async def test_updated_without_changes_is_ignored(self):
        self.running()
        cluster = make_cluster()
        await self.operator.dispatch(Added(cluster = cluster))
        controller = self.operator.controllers.get(cluster.key)

        with mock.patch.object(controller, "update") as update:
            await self.operator.dispatch(Updated(old = cluster, new = make_cluster()))

        update.assert_not_called()

    async def test_updated_for_unknown_cluster_adds_it(self):
        self.running()
        cluster = make_cluster()

        await self.operator.dispatch(Updated(new = cluster))

        self.assertIn(cluster.key, self.operator.controllers)

    async def test_events_ignored_when_not_running(self):
        await self.operator.dispatch(Added(cluster = make_cluster()))

        self.assertEqual(len(self.operator.controllers), 0)

    async def test_serve_returns_shutdown_reason(self):
        task = asyncio.create_task(self.operator.serve())
        cluster = make_cluster()
        await self.events.put(Added(cluster = cluster))
        for _ in range(100):
            if cluster.key in self.operator.controllers:
                break
            await asyncio.sleep(0.01)
        controller = self.operator.controllers.get(cluster.key)

        await self.operator.shutdown()
        reason = await asyncio.wait_for(task, 1)

        self.assertIsInstance(reason, ShutdownRequested)
        self.assertEqual(self.operator.state, operator.OperatorState.STOPPED)
        self.assertTrue(controller.done.is_set())
        self.assertEqual(len(self.operator.controllers), 0)

    async def test_shutdown_gives_up_on_stuck_controller(self):
        self.running()
        blocked = asyncio.Event()

        async def reconcile(controller):
            blocked.set()
            await asyncio.Event().wait()

        with mock.patch.object(ClusterController, "reconcile", reconcile):
            await self.operator.dispatch(Added(cluster = make_cluster()))
            controller = self.operator.controllers.snapshot()[0]
            await asyncio.wait_for(blocked.wait(), 1)

            await asyncio.wait_for(self.operator.shutdown(), 1)

        self.assertEqual(len(self.operator.controllers), 0)
        self.assertEqual(self.operator.supervisor.outstanding, 0)
        self.assertTrue(self.operator.root.cancelled)
        self.assertFalse(controller.done.is_set())
        controller.task.cancel()

    async def test_added_after_shutdown_is_ignored(self):
        self.running()
        await self.operator.shutdown()

        await self.operator.dispatch(Added(cluster = make_cluster()))

        self.assertEqual(len(self.operator.controllers), 0)


class TestSpecDiff(unittest.TestCase):
    def test_no_changes(self):
        self.assertEqual(operator.spec_diff(make_cluster(), make_cluster()), [])

    def test_changed_fields(self):
        old = make_cluster(size = 3)
        new = make_cluster(size = 1, version = "2.0.0", tls = {"serverSecret": "certs"})

        self.assertEqual(operator.spec_diff(old, new), ["size", "version", "tls"])


class TestKopfHandlers(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        patcher = mock.patch.object(operator, "Configuration")
        configuration = patcher.start()
        self.addCleanup(patcher.stop)
        self.ekclient = configuration.from_environment.return_value.async_client.return_value
        self.ekclient.aclose = mock.AsyncMock()
        patcher = mock.patch.object(operator.settings.metrics, "enabled", False)
        patcher.start()
        self.addCleanup(patcher.stop)
        self.memo = kopf.Memo()

    async def test_startup_exits_without_connectivity(self):
        with mock.patch.object(
            operator.Operator,
            "start",
            side_effect = ConnectivityError("no route to host")
        ):
            with self.assertRaises(SystemExit) as ctx:
                await operator.on_startup(self.memo, settings = mock.Mock())

        self.assertEqual(ctx.exception.code, 1)

        # Cleanup still closes the client
        await operator.on_cleanup(self.memo)
        self.ekclient.aclose.assert_awaited_once()

    async def test_startup_exits_on_name_conflict(self):
        with mock.patch.object(
            operator.Operator,
            "start",
            side_effect = NameConflictError("natsclusters.messaging.nats.io", "KindConflict")
        ):
            with self.assertRaises(SystemExit):
                await operator.on_startup(self.memo, settings = mock.Mock())

    async def test_startup_and_cleanup(self):
        kopf_settings = mock.Mock()
        with mock.patch.object(operator.Operator, "start") as start:
            await operator.on_startup(self.memo, settings = kopf_settings)

        start.assert_awaited_once()
        self.assertEqual(kopf_settings.watching.client_timeout, operator.settings.watch_timeout)
        await asyncio.sleep(0)
        self.assertEqual(self.memo.operator.state, operator.OperatorState.RUNNING)

        await asyncio.wait_for(operator.on_cleanup(self.memo), 1)

        self.assertTrue(self.memo.operator_task.done())
        self.assertEqual(self.memo.operator.state, operator.OperatorState.STOPPED)
        self.ekclient.aclose.assert_awaited_once()

    async def test_cleanup_waits_for_metrics_server(self):
        async def metrics_server(ekclient):
            await asyncio.Event().wait()

        with (
            mock.patch.object(operator.settings.metrics, "enabled", True),
            mock.patch.object(operator.metrics, "metrics_server", metrics_server),
            mock.patch.object(operator.Operator, "start"),
        ):
            await operator.on_startup(self.memo, settings = mock.Mock())

        await asyncio.wait_for(operator.on_cleanup(self.memo), 1)

        self.assertTrue(self.memo.metrics_task.cancelled())
        self.ekclient.aclose.assert_awaited_once()

    async def test_cluster_event_is_queued(self):
        self.memo.events = EventQueue()
        body = {
            "apiVersion": "messaging.nats.io/v1alpha2",
            "kind": "NatsCluster",
            "metadata": {"name": "test", "namespace": "tenant1"},
            "spec": {"size": 3},
        }

        await operator.on_nats_cluster_event(type = "MODIFIED", body = body, memo = self.memo)
        await operator.on_nats_cluster_event(type = "BOOKMARK", body = body, memo = self.memo)
        await operator.on_nats_cluster_event(type = "DELETED", body = body, memo = self.memo)

        updated = await self.memo.events.get()
        self.assertIsInstance(updated, Updated)
        self.assertEqual(updated.key, ("tenant1", "test"))
        self.assertIsInstance(await self.memo.events.get(), Deleted)

    def test_in_watched_namespace(self):
        self.assertTrue(operator.in_watched_namespace("tenant1"))

        with mock.patch.object(operator.settings, "watch_namespace", "tenant1"):
            self.assertTrue(operator.in_watched_namespace("tenant1"))
            self.assertFalse(operator.in_watched_namespace("tenant2"))
