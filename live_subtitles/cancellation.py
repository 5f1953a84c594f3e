"""Cancellation scope shared by the pipeline and its stages."""

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationScope:
    """Token for gracefully aborting a pipeline run.

    Stages check the scope at every suspend point; cancelling a parent scope
    cancels every child linked to it.
    """

    def __init__(self, parent: "CancellationScope | None" = None):
        """Initialize scope in non-cancelled state.

        Args:
            parent: Optional scope whose cancellation also cancels this one
        """
        self._cancelled = False
        self._event: asyncio.Event | None = None
        self._callbacks: list[Callable[[], None]] = []
        self._unlink: Callable[[], None] | None = None
        if parent is not None:
            self._unlink = parent.add_callback(self.cancel)

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        """Mark scope as cancelled and run registered callbacks once."""
        if self._cancelled:
            return
        self._cancelled = True
        if self._event is not None:
            self._event.set()

        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.warning("Cancellation callback failed: %s", e, exc_info=True)

    def raise_if_cancelled(self) -> None:
        """Raise asyncio.CancelledError if the scope is cancelled."""
        if self._cancelled:
            raise asyncio.CancelledError("cancellation scope cancelled")

    def add_callback(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register a callback run on cancellation.

        Runs the callback immediately if already cancelled.

        Returns:
            Function removing the callback again
        """
        if self._cancelled:
            callback()
            return lambda: None

        self._callbacks.append(callback)

        def _remove() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return _remove

    def detach(self) -> None:
        """Unlink from the parent scope, if any."""
        if self._unlink is not None:
            self._unlink()
            self._unlink = None

    async def wait(self) -> None:
        """Wait until the scope is cancelled."""
        if self._cancelled:
            return
        if self._event is None:
            self._event = asyncio.Event()
        await self._event.wait()

    async def guard(self, coro: Awaitable[T]) -> T:
        """Await ``coro`` unless the scope is cancelled first.

        The pending call is cancelled as soon as the scope is, so callers
        never see a result produced after cancellation.

        Raises:
            asyncio.CancelledError: If the scope is or becomes cancelled
        """
        if self._cancelled:
            if asyncio.iscoroutine(coro):
                coro.close()
            self.raise_if_cancelled()

        task = asyncio.ensure_future(coro)
        waiter = asyncio.ensure_future(self.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            await _abandon(task)
            raise
        finally:
            waiter.cancel()

        if self._cancelled:
            await _abandon(task)
            self.raise_if_cancelled()
        return task.result()


async def _abandon(task: asyncio.Future) -> None:
    task.cancel()
    await asyncio.wait({task})
    if not task.cancelled() and task.exception() is not None:
        logger.debug("Call finished with %r after cancellation", task.exception())
