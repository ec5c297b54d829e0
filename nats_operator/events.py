import asyncio
import logging
import typing as t

from pydantic import BaseModel

from .models import v1alpha2 as api

logger = logging.getLogger(__name__)


class Added(BaseModel):
    """
    A cluster was added, or observed during the initial listing.
    """
    cluster: api.NatsCluster

    @property
    def key(self):
        return self.cluster.key


class Updated(BaseModel):
    """
    A cluster was modified.

    The previous state is not always known to the watch, in which case it is None.
    """
    old: t.Optional[api.NatsCluster] = None
    new: api.NatsCluster

    @property
    def key(self):
        return self.new.key


class Deleted(BaseModel):
    """
    A cluster was deleted.
    """
    cluster: api.NatsCluster

    @property
    def key(self):
        return self.cluster.key


ClusterEvent = t.Union[Added, Updated, Deleted]


def event_from_watch(type, body, old = None):
    """
    Converts a raw watch event into a typed cluster event, or None if the event
    type is not one that the operator handles.
    """
    # Objects from the initial listing have no event type
    if type in {None, "ADDED"}:
        return Added(cluster = api.NatsCluster.model_validate(body))
    elif type == "MODIFIED":
        return Updated(
            old = api.NatsCluster.model_validate(old) if old else None,
            new = api.NatsCluster.model_validate(body)
        )
    elif type == "DELETED":
        return Deleted(cluster = api.NatsCluster.model_validate(body))
    else:
        logger.debug("ignoring watch event of type %s", type)
        return None


class EventQueue:
    """
    Queue of cluster events, delivered in the order they were observed.
    """
    def __init__(self):
        self._queue = asyncio.Queue()

    async def put(self, event: ClusterEvent):
        await self._queue.put(event)

    async def get(self) -> ClusterEvent:
        return await self._queue.get()
