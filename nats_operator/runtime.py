import logging

import httpx

from easykube import ApiError

from .errors import ObjectCreateError, ObjectDeleteError

logger = logging.getLogger(__name__)


SERVICES = "services"
CONFIGMAPS = "configmaps"
PODS = "pods"


class ClusterRuntime:
    """
    Create, list and delete primitives for the core objects managed for a cluster,
    scoped to a single namespace.
    """
    def __init__(self, ekclient, namespace):
        self.ekclient = ekclient
        self.namespace = namespace

    async def _resource(self, kind):
        return await self.ekclient.api("v1").resource(kind)

    async def create(self, kind, obj):
        """
        Creates the object and returns it, or returns None if it already exists.
        """
        name = obj["metadata"]["name"]
        try:
            ekresource = await self._resource(kind)
            return await ekresource.create(obj, namespace = self.namespace)
        except ApiError as exc:
            if exc.status_code == 409:
                logger.debug("%s %s/%s already exists", kind, self.namespace, name)
                return None
            raise ObjectCreateError(kind, name, str(exc)) from exc
        except httpx.HTTPError as exc:
            raise ObjectCreateError(kind, name, str(exc)) from exc

    async def apply(self, obj):
        """
        Creates or replaces the object using server-side apply.
        """
        obj.setdefault("metadata", {}).setdefault("namespace", self.namespace)
        try:
            return await self.ekclient.apply_object(obj, force = True)
        except (ApiError, httpx.HTTPError) as exc:
            raise ObjectCreateError(obj["kind"], obj["metadata"]["name"], str(exc)) from exc

    async def list(self, kind, labels):
        """
        Yields the objects of the given kind that match the labels.
        """
        ekresource = await self._resource(kind)
        async for obj in ekresource.list(labels = labels, namespace = self.namespace):
            yield obj

    async def delete(self, kind, name):
        """
        Deletes the named object, succeeding if it is already gone.
        """
        try:
            ekresource = await self._resource(kind)
            await ekresource.delete(name, namespace = self.namespace)
        except ApiError as exc:
            if exc.status_code != 404:
                raise ObjectDeleteError(kind, name, str(exc)) from exc
        except httpx.HTTPError as exc:
            raise ObjectDeleteError(kind, name, str(exc)) from exc
