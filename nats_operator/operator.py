import asyncio
import enum
import functools
import logging
import sys

import kopf

from easykube import Configuration
from pydantic.json import pydantic_encoder
from kube_custom_resource import CustomResourceRegistry

from . import metrics, models
from .config import settings
from .controller import ClusterController
from .errors import (
    ConnectivityError,
    DuplicateRegistrationError,
    RegistrationError,
    ShutdownRequested,
)
from .events import Added, Deleted, EventQueue, Updated, event_from_watch
from .models import v1alpha2 as api
from .registrar import CRDRegistrar
from .registry import ControllerRegistry
from .runtime import ClusterRuntime
from .supervisor import CancellationToken, Supervisor

logger = logging.getLogger(__name__)


# Create a registry of custom resources and populate it from the models module
registry = CustomResourceRegistry(settings.api_group, settings.crd_categories)
registry.discover_models(models)


class OperatorState(str, enum.Enum):
    STARTING = "Starting"
    RUNNING = "Running"
    SHUTTING_DOWN = "ShuttingDown"
    STOPPED = "Stopped"


def spec_diff(old: api.NatsCluster, new: api.NatsCluster):
    """
    Returns the names of the fields that differ between the specs of two clusters.
    """
    fields = ["size", "version", "tls", "server_config"]
    return [
        field
        for field in fields
        if getattr(old.spec, field) != getattr(new.spec, field)
    ]


class Operator:
    """
    Dispatches cluster events to a controller for each cluster and manages the
    lifecycle of those controllers.
    """
    def __init__(
        self,
        ekclient,
        events: EventQueue,
        *,
        registrar = None,
        runtime_factory = None,
        reconcile_interval = None,
        stop_grace_period = None
    ):
        self.ekclient = ekclient
        self.events = events
        self.registrar = registrar or CRDRegistrar(ekclient)
        self.runtime_factory = runtime_factory or functools.partial(ClusterRuntime, ekclient)
        self.reconcile_interval = reconcile_interval or settings.reconcile_interval
        self.stop_grace_period = stop_grace_period or settings.stop_grace_period
        self.state = OperatorState.STARTING
        self.root = CancellationToken()
        self.controllers = ControllerRegistry()
        self.supervisor = Supervisor()

    async def start(self, crds):
        """
        Checks that the Kubernetes API is reachable and registers the CRDs.
        """
        await self.registrar.check_connectivity()
        for crd in crds:
            ready = await self.registrar.register(crd)
            if not ready:
                logger.warning(
                    "continuing without CRD %s - reconciliation may fail until it is ready",
                    crd["metadata"]["name"]
                )

    async def _next_event(self):
        getter = asyncio.ensure_future(self.events.get())
        cancelled = asyncio.ensure_future(self.root.wait())
        try:
            await asyncio.wait({getter, cancelled}, return_when = asyncio.FIRST_COMPLETED)
        finally:
            cancelled.cancel()
            if not getter.done():
                getter.cancel()
        return getter.result() if getter.done() and not getter.cancelled() else None

    async def serve(self):
        """
        Dispatches events until the operator is shut down and returns the reason.
        """
        if self.state == OperatorState.STARTING:
            self.state = OperatorState.RUNNING
        logger.info("operator running")
        while not self.root.cancelled:
            event = await self._next_event()
            if event is not None:
                await self.dispatch(event)
        self.state = OperatorState.STOPPED
        logger.info("operator stopped")
        return self.root.reason

    async def run(self, crds):
        """
        Starts the operator and dispatches events until it is shut down.
        """
        await self.start(crds)
        return await self.serve()

    async def dispatch(self, event):
        if self.state != OperatorState.RUNNING:
            logger.info(
                "ignoring %s event for %s/%s - operator is %s",
                type(event).__name__,
                *event.key,
                self.state.value
            )
            return
        if isinstance(event, Added):
            await self.on_added(event.cluster)
        elif isinstance(event, Updated):
            await self.on_updated(event.old, event.new)
        elif isinstance(event, Deleted):
            await self.on_deleted(event.cluster)

    async def on_added(self, cluster: api.NatsCluster):
        key = cluster.key
        if key in self.controllers:
            logger.info("[%s/%s] cluster already has a controller", *key)
            return
        controller = ClusterController(
            cluster,
            self.runtime_factory(cluster.metadata.namespace),
            self.root.child(),
            interval = self.reconcile_interval
        )
        try:
            self.controllers.insert(key, controller)
        except DuplicateRegistrationError as exc:
            logger.info("%s", exc)
            controller.token.detach()
            return
        logger.info("[%s/%s] starting controller for cluster", *key)
        controller.task = self.supervisor.spawn(
            controller.run(),
            name = "controller:{}/{}".format(*key)
        )

    async def on_updated(self, old, new: api.NatsCluster):
        controller = self.controllers.get(new.key)
        if controller is None:
            logger.info("[%s/%s] update for unknown cluster - adding it", *new.key)
            await self.on_added(new)
            return
        changed = spec_diff(controller.cluster, new)
        if changed:
            logger.info("[%s/%s] cluster changed: %s", *new.key, ", ".join(changed))
            controller.update(new)
        else:
            logger.debug("[%s/%s] no relevant changes", *new.key)

    async def on_deleted(self, cluster: api.NatsCluster):
        controller = self.controllers.get(cluster.key)
        if controller is None:
            logger.info("[%s/%s] deleted cluster has no controller", *cluster.key)
            return
        logger.info("[%s/%s] cluster deleted - stopping controller", *cluster.key)
        await self.stop_controller(controller)

    async def stop_controller(self, controller: ClusterController):
        """
        Stops the controller and waits for it to finish, up to the grace period.
        """
        controller.stop()
        try:
            await asyncio.wait_for(controller.done.wait(), self.stop_grace_period)
        except asyncio.TimeoutError:
            controller.logger.error(
                "controller took longer than %ss to stop",
                self.stop_grace_period
            )
            if controller.task is not None:
                self.supervisor.abandon(controller.task)
        self.controllers.remove(controller.key, controller)

    async def shutdown(self):
        """
        Stops all the controllers and then the operator itself.
        """
        if self.state in {OperatorState.SHUTTING_DOWN, OperatorState.STOPPED}:
            return
        logger.info("shutting down")
        self.state = OperatorState.SHUTTING_DOWN
        controllers = self.controllers.snapshot()
        await asyncio.gather(*(self.stop_controller(c) for c in controllers))
        if self.supervisor.outstanding:
            logger.info("waiting for %d controllers to finish", self.supervisor.outstanding)
        await self.supervisor.wait_idle()
        self.root.cancel(ShutdownRequested("operator shut down"))


def model_handler(model, register_fn, /, **kwargs):
    """
    Decorator that registers a handler with kopf for the specified model.
    """
    api_version = f"{settings.api_group}/{model._meta.version}"
    def decorator(func):
        return register_fn(api_version, model._meta.plural_name, **kwargs)(func)
    return decorator


def in_watched_namespace(namespace, **kwargs):
    return settings.watch_namespace is None or namespace == settings.watch_namespace


@kopf.on.startup()
async def on_startup(memo, **kwargs):
    """
    Apply kopf settings and start the operator.
    """
    kopf_settings = kwargs["settings"]
    kopf_settings.watching.client_timeout = settings.watch_timeout
    memo.ekclient = (
        Configuration
            .from_environment(json_encoder = pydantic_encoder)
            .async_client(default_field_manager = settings.easykube_field_manager)
    )
    memo.events = EventQueue()
    memo.operator = Operator(memo.ekclient, memo.events)
    try:
        await memo.operator.start(crd.kubernetes_resource() for crd in registry)
    except (ConnectivityError, RegistrationError):
        logger.exception("unable to start operator - exiting")
        sys.exit(1)
    memo.operator_task = asyncio.create_task(memo.operator.serve())
    if settings.metrics.enabled:
        memo.metrics_task = asyncio.create_task(metrics.metrics_server(memo.ekclient))


@model_handler(api.NatsCluster, kopf.on.event, when = in_watched_namespace)
async def on_nats_cluster_event(type, body, memo, **kwargs):
    """
    Executes on every watch event for a NATS cluster.
    """
    event = event_from_watch(type, body)
    if event is not None:
        await memo.events.put(event)


@kopf.on.cleanup()
async def on_cleanup(memo, **kwargs):
    """
    Runs on operator shutdown.
    """
    # Startup may have exited before the operator was running
    operator_task = getattr(memo, "operator_task", None)
    if operator_task:
        await memo.operator.shutdown()
        reason = await operator_task
        if not isinstance(reason, ShutdownRequested):
            logger.error("operator stopped unexpectedly: %s", reason)
    metrics_task = getattr(memo, "metrics_task", None)
    if metrics_task:
        metrics_task.cancel()
        try:
            await metrics_task
        except asyncio.CancelledError:
            pass
    ekclient = getattr(memo, "ekclient", None)
    if ekclient is not None:
        await ekclient.aclose()
