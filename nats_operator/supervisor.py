import asyncio
import logging

logger = logging.getLogger(__name__)


class CancellationToken:
    """
    Cooperative cancellation signal that propagates from a parent to its children.

    Cancelling a token cancels every token derived from it, but cancelling a child
    leaves its parent untouched.
    """
    def __init__(self, parent = None):
        self._event = asyncio.Event()
        self._children = set()
        self._parent = parent
        self.reason = None
        if parent is not None:
            parent._children.add(self)
            if parent.cancelled:
                self.cancel(parent.reason)

    @property
    def cancelled(self):
        return self._event.is_set()

    def child(self):
        """
        Returns a new token that is cancelled when this token is cancelled.
        """
        return CancellationToken(self)

    def detach(self):
        """
        Stops the parent from tracking this token.
        """
        if self._parent is not None:
            self._parent._children.discard(self)
            self._parent = None

    def cancel(self, reason = None):
        """
        Cancels this token and all of its children with the given reason.

        Only the first cancellation has any effect.
        """
        if self.cancelled:
            return
        self.reason = reason
        self._event.set()
        for child in list(self._children):
            child.cancel(reason)

    async def wait(self):
        """
        Waits until the token is cancelled and returns the reason.
        """
        await self._event.wait()
        return self.reason

    async def sleep(self, delay, wakeup = None):
        """
        Sleeps for the given delay, returning early if the token is cancelled or
        the optional wakeup event is set.

        Returns True if the token is cancelled, False otherwise.
        """
        if self.cancelled:
            return True
        waiters = [asyncio.ensure_future(self._event.wait())]
        if wakeup is not None:
            waiters.append(asyncio.ensure_future(wakeup.wait()))
        try:
            await asyncio.wait(waiters, timeout = delay, return_when = asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()
        if wakeup is not None:
            wakeup.clear()
        return self.cancelled


class Supervisor:
    """
    Tracks a counted set of background tasks.
    """
    def __init__(self):
        self._tasks = set()
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def outstanding(self):
        """
        The number of tasks that are still being tracked.
        """
        return len(self._tasks)

    def spawn(self, coro, name = None):
        """
        Schedules the coroutine as a task and tracks it until it completes.
        """
        task = asyncio.create_task(coro, name = name)
        self._tasks.add(task)
        self._idle.clear()
        task.add_done_callback(self._task_done)
        return task

    def abandon(self, task):
        """
        Stops tracking the given task without cancelling it.
        """
        self._forget(task)

    def _task_done(self, task):
        self._forget(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "task %s exited with an unexpected error",
                task.get_name(),
                exc_info = task.exception()
            )

    def _forget(self, task):
        self._tasks.discard(task)
        if not self._tasks:
            self._idle.set()

    async def wait_idle(self):
        """
        Waits until no tasks are being tracked.
        """
        await self._idle.wait()
