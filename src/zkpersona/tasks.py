"""Cancellable handle around an asyncio task."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Generator, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellableTask(Generic[T]):
    """Owns one background coroutine; cancelling it tears down every timer it awaits.

    The wrapped coroutine runs its own interval and deadline logic, so a
    single ``cancel()`` stops both at once and nothing keeps ticking after
    the caller loses interest.
    """

    def __init__(self, coro: Awaitable[T], *, name: Optional[str] = None):
        self._task: asyncio.Task = asyncio.ensure_future(coro)
        self._name = name or "task"
        self._cancel_requested = False

    def cancel(self) -> bool:
        """Request cancellation. Returns False if the task had already finished."""
        if self._task.done():
            return False
        self._cancel_requested = True
        logger.debug("Cancelling %s", self._name)
        return self._task.cancel()

    def is_cancelled(self) -> bool:
        return self._cancel_requested or self._task.cancelled()

    def done(self) -> bool:
        return self._task.done()

    def result(self) -> T:
        return self._task.result()

    async def wait(self) -> Optional[T]:
        """Await completion; returns None instead of raising if cancelled."""
        try:
            return await self._task
        except asyncio.CancelledError:
            if self._cancel_requested:
                return None
            raise

    def __await__(self) -> Generator[Any, None, T]:
        return self._task.__await__()
