# src/webapp_session/singleflight.py

import asyncio
from typing import Awaitable, Callable, Generic, Optional, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def _retrieve_exception(task: "asyncio.Task") -> None:
    # Every waiter may have been cancelled before the operation failed
    if not task.cancelled():
        task.exception()


class SingleFlight(Generic[T]):
    """
    Runs at most one instance of an async operation at a time.

    Idle -> Refreshing: the first caller starts the operation as a task.
    Refreshing -> Refreshing: later callers attach to that same task.
    Refreshing -> Idle: the task empties the cell in its own `finally`, so the
    cell is already empty when the waiters resume and the next caller after a
    settled operation always starts a new one.

    Relies on cooperative scheduling: nothing yields between the emptiness
    check and the assignment in `run`. Under preemptive threads that step
    needs a lock.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self.started = 0
        self._task: Optional["asyncio.Task[T]"] = None

    @property
    def in_flight(self) -> bool:
        return self._task is not None

    async def run(self, operation: Callable[[], Awaitable[T]]) -> T:
        task = self._task
        if task is None:
            self.started += 1
            task = asyncio.ensure_future(self._execute(operation))
            task.add_done_callback(_retrieve_exception)
            self._task = task
            logger.debug("singleflight_started", name=self.name, count=self.started)
        else:
            logger.debug("singleflight_joined", name=self.name)
        # A cancelled waiter must not cancel the operation the others share
        return await asyncio.shield(task)

    async def _execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        try:
            return await operation()
        finally:
            self._task = None
