import asyncio
import logging
import threading

import httpx
from pydantic import BaseModel

from easykube import ApiError

from . import resources
from .config import settings
from .errors import ControllerStopped, ObjectCreateError, ObjectDeleteError
from .models import v1alpha2 as api
from .runtime import PODS, SERVICES

logger = logging.getLogger(__name__)


#: Pod phases from which a pod with a restart policy of Never does not recover
TERMINAL_POD_PHASES = {"Succeeded", "Failed"}


class PodRecord(BaseModel):
    """
    A pod managed by a cluster controller.
    """
    name: str
    route_address: str
    phase: str = "Pending"


class ClusterLogger(logging.LoggerAdapter):
    """
    Logger adapter that tags records with the namespace and name of a cluster.
    """
    def process(self, msg, kwargs):
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return f"[{self.extra['namespace']}/{self.extra['cluster']}] {msg}", kwargs


def _creation_order(pod):
    return (pod["metadata"].get("creationTimestamp") or "", pod["metadata"]["name"])


class ClusterController:
    """
    Converges the objects of a single NATS cluster towards its declared spec.
    """
    def __init__(
        self,
        cluster: api.NatsCluster,
        runtime,
        token,
        *,
        interval = None
    ):
        self._lock = threading.Lock()
        self._cluster = cluster
        self._pods = {}
        self.runtime = runtime
        self.token = token
        self.interval = interval or settings.reconcile_interval
        self.done = asyncio.Event()
        self.task = None
        self._wakeup = asyncio.Event()
        self._services_ready = False
        self._applied_config = None
        self.logger = ClusterLogger(
            logger,
            {
                "namespace": cluster.metadata.namespace,
                "cluster": cluster.metadata.name,
            }
        )

    @property
    def key(self):
        return self._cluster.key

    @property
    def cluster(self):
        with self._lock:
            return self._cluster

    @property
    def pods(self):
        """
        A snapshot of the pods known to the controller.
        """
        with self._lock:
            return list(self._pods.values())

    def update(self, cluster: api.NatsCluster):
        """
        Replaces the declared state of the cluster and triggers a reconciliation.
        """
        with self._lock:
            self._cluster = cluster
        self.logger.info("cluster spec updated")
        self._wakeup.set()

    def stop(self):
        """
        Signals the controller to stop at the next tick boundary.

        The objects managed by the controller are left in place.
        """
        self.logger.debug("stopping controller")
        self.token.cancel(ControllerStopped())

    async def run(self):
        """
        Runs the reconciliation loop until the controller is cancelled.
        """
        self.logger.info("starting controller")
        try:
            await self.reconcile_once()
            while not await self.token.sleep(self.interval, self._wakeup):
                await self.reconcile_once()
        finally:
            self.token.detach()
            self.logger.info("controller stopped")
            self.done.set()

    async def reconcile_once(self):
        """
        Runs a single reconciliation pass, logging any error so that the next tick
        can try again.
        """
        try:
            await self.reconcile()
        except Exception:
            self.logger.exception("reconciliation failed - retrying in %ss", self.interval)

    async def ensure_services(self):
        """
        Ensures that the routes and client services exist.
        """
        cluster = self.cluster
        ready = True
        for service in (resources.routes_service(cluster), resources.client_service(cluster)):
            try:
                result = await self.runtime.create(SERVICES, service)
            except ObjectCreateError as exc:
                self.logger.error("unable to create service: %s", exc)
                ready = False
            else:
                if result is not None:
                    self.logger.info("created service %s", service["metadata"]["name"])
        self._services_ready = ready

    async def apply_config(self, cluster, routes):
        """
        Renders the configuration for the routes and applies it if it has changed.
        """
        document = resources.render_config(cluster, routes)
        if document == self._applied_config:
            return
        try:
            await self.runtime.apply(resources.config_map(cluster, document))
        except ObjectCreateError as exc:
            self.logger.error("unable to apply configuration: %s", exc)
            self._applied_config = None
        else:
            self.logger.info("applied configuration with %d routes", len(routes))
            self._applied_config = document

    async def create_pod(self, cluster, name):
        """
        Creates the named pod, returning a record for it or None on failure.
        """
        try:
            result = await self.runtime.create(PODS, resources.pod(cluster, name))
        except ObjectCreateError as exc:
            self.logger.error("unable to create pod: %s", exc)
            return None
        if result is None:
            self.logger.warning("pod name %s is already in use - will retry", name)
            return None
        self.logger.info("created pod %s", name)
        return PodRecord(
            name = name,
            route_address = resources.route_address(
                name,
                cluster.metadata.name,
                cluster.metadata.namespace
            )
        )

    async def delete_pod(self, name, reason):
        try:
            await self.runtime.delete(PODS, name)
        except ObjectDeleteError as exc:
            self.logger.error("unable to delete pod: %s", exc)
            return False
        self.logger.info("deleted pod %s (%s)", name, reason)
        return True

    def _is_stale(self, cluster, pod):
        metadata = pod["metadata"]
        return (
            metadata.get("labels", {}).get(resources.VERSION_LABEL) != cluster.spec.version or
            metadata.get("annotations", {}).get(resources.TLS_ANNOTATION) !=
                resources.tls_fingerprint(cluster)
        )

    async def reconcile(self):
        """
        Compares the pods of the cluster with the declared size and creates, replaces
        or removes pods as required.
        """
        cluster = self.cluster
        if not self._services_ready:
            await self.ensure_services()
        try:
            pods = [
                pod
                async for pod in self.runtime.list(
                    PODS,
                    resources.selector_labels(cluster)
                )
            ]
        except (ApiError, httpx.HTTPError) as exc:
            self.logger.error("unable to list pods: %s", exc)
            return
        live = []
        for pod in pods:
            if pod["metadata"].get("deletionTimestamp"):
                continue
            phase = pod.get("status", {}).get("phase", "Pending")
            if phase in TERMINAL_POD_PHASES:
                # Terminal pods are never counted, even if the delete fails
                await self.delete_pod(pod["metadata"]["name"], f"phase {phase}")
            else:
                live.append(pod)
        desired = cluster.spec.size
        stale = sorted(
            (pod for pod in live if self._is_stale(cluster, pod)),
            key = _creation_order
        )
        current = sorted(
            (pod for pod in live if not self._is_stale(cluster, pod)),
            key = _creation_order
        )
        excess = len(live) - desired
        if excess > 0:
            # Remove the newest pods, preferring those that are out of date
            victims = (list(reversed(stale)) + list(reversed(current)))[:excess]
            reason = "scaling down"
        elif stale:
            # Replace out of date pods one at a time, oldest first
            victims = stale[:1]
            reason = "out of date"
        else:
            victims = []
            reason = None
        removed = set()
        for pod in victims:
            if await self.delete_pod(pod["metadata"]["name"], reason):
                removed.add(pod["metadata"]["name"])
        survivors = [pod for pod in current + stale if pod["metadata"]["name"] not in removed]
        survivors.sort(key = _creation_order)
        shortfall = max(desired - len(survivors), 0)
        names = [resources.generate_pod_name(cluster.metadata.name) for _ in range(shortfall)]
        routes = [
            resources.route_address(
                name,
                cluster.metadata.name,
                cluster.metadata.namespace
            )
            for name in [pod["metadata"]["name"] for pod in survivors] + names
        ]
        await self.apply_config(cluster, routes)
        records = {
            pod["metadata"]["name"]: PodRecord(
                name = pod["metadata"]["name"],
                route_address = resources.route_address(
                    pod["metadata"]["name"],
                    cluster.metadata.name,
                    cluster.metadata.namespace
                ),
                phase = pod.get("status", {}).get("phase", "Pending")
            )
            for pod in survivors
        }
        if shortfall:
            self.logger.info("creating %d pods (%d of %d running)", shortfall, len(survivors), desired)
        for name in names:
            record = await self.create_pod(cluster, name)
            if record:
                records[name] = record
        with self._lock:
            self._pods = records
