"""Broadcast feeds for pipeline output and state."""

import asyncio
import logging
from typing import Callable, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

_ITEM = "item"
_ERROR = "error"
_CLOSED = "closed"


class Subscription(Generic[T]):
    """One reader's view of a BroadcastChannel.

    Iterate with ``async for``; iteration ends when the channel closes and
    raises the channel error if the producer failed.
    """

    def __init__(self, channel: "BroadcastChannel[T]", max_queue_size: int = 0):
        self._channel = channel
        self._max_queue_size = max_queue_size
        self._queue: asyncio.Queue[tuple[str, object]] = asyncio.Queue()
        self._done = False
        self.dropped = 0

    def _offer(self, kind: str, payload: object) -> None:
        if (
            kind == _ITEM
            and self._max_queue_size
            and self._queue.qsize() >= self._max_queue_size
        ):
            self._queue.get_nowait()
            self.dropped += 1
            logger.warning(
                "Subscriber of %s is lagging, dropped oldest item (%d dropped)",
                self._channel.name,
                self.dropped,
            )
        self._queue.put_nowait((kind, payload))

    def __aiter__(self) -> "Subscription[T]":
        return self

    async def __anext__(self) -> T:
        if self._done:
            raise StopAsyncIteration

        kind, payload = await self._queue.get()
        if kind == _ITEM:
            return payload  # type: ignore[return-value]

        self._done = True
        self._channel._remove(self)
        if kind == _ERROR:
            raise payload  # type: ignore[misc]
        raise StopAsyncIteration

    async def get(self, timeout: float | None = None) -> T:
        """Receive the next item.

        Raises:
            StopAsyncIteration: If the channel closed
            asyncio.TimeoutError: If nothing arrives within timeout
        """
        return await asyncio.wait_for(self.__anext__(), timeout=timeout)

    def pending(self) -> list[T]:
        """Drain items already delivered without waiting."""
        items: list[T] = []
        while not self._queue.empty():
            kind, payload = self._queue.get_nowait()
            if kind != _ITEM:
                self._queue.put_nowait((kind, payload))
                break
            items.append(payload)  # type: ignore[arg-type]
        return items

    def close(self) -> None:
        """Stop receiving from the channel."""
        if self._done:
            return
        self._channel._remove(self)
        self._offer(_CLOSED, None)

    async def __aenter__(self) -> "Subscription[T]":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


class BroadcastChannel(Generic[T]):
    """Single-producer, multi-consumer live feed.

    Every subscriber receives each item published after it subscribed.
    ``fail`` is the error slot: it terminates the channel and is raised to
    current and future subscribers.
    """

    def __init__(self, name: str, max_queue_size: int = 0):
        """Initialize channel.

        Args:
            name: Channel name used in log messages
            max_queue_size: Per-subscriber buffer bound, 0 for unbounded
        """
        self.name = name
        self.max_queue_size = max_queue_size
        self._subscribers: list[Subscription[T]] = []
        self._error: BaseException | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def error(self) -> BaseException | None:
        return self._error

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> Subscription[T]:
        """Create a new subscription receiving future items."""
        subscription: Subscription[T] = Subscription(self, self.max_queue_size)
        if self._error is not None:
            subscription._offer(_ERROR, self._error)
        elif self._closed:
            subscription._offer(_CLOSED, None)
        else:
            self._subscribers.append(subscription)
        return subscription

    def publish(self, item: T) -> None:
        """Deliver an item to every current subscriber without blocking."""
        if self._closed:
            logger.debug("Dropping item published to closed channel %s", self.name)
            return
        for subscription in list(self._subscribers):
            subscription._offer(_ITEM, item)

    def fail(self, error: BaseException) -> None:
        """Terminate the channel with an error."""
        if self._closed:
            return
        self._error = error
        self._closed = True
        subscribers, self._subscribers = self._subscribers, []
        for subscription in subscribers:
            subscription._offer(_ERROR, error)
        logger.debug("Channel %s failed: %s", self.name, error)

    def close(self) -> None:
        """Terminate the channel, ending all subscriptions."""
        if self._closed:
            return
        self._closed = True
        subscribers, self._subscribers = self._subscribers, []
        for subscription in subscribers:
            subscription._offer(_CLOSED, None)

    def _remove(self, subscription: Subscription[T]) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)


class StateObservable(Generic[T]):
    """Current value plus change notifications.

    Subscribers first receive the current value, then every change.
    """

    def __init__(self, initial: T, name: str = "state"):
        self._value = initial
        self._channel: BroadcastChannel[T] = BroadcastChannel(name)

    @property
    def value(self) -> T:
        return self._value

    def set(self, value: T) -> None:
        if value == self._value:
            return
        self._value = value
        self._channel.publish(value)

    def subscribe(self) -> Subscription[T]:
        subscription = self._channel.subscribe()
        subscription._offer(_ITEM, self._value)
        return subscription

    async def wait_for(
        self,
        predicate: Callable[[T], bool],
        timeout: float | None = None,
    ) -> T:
        """Wait until the value satisfies predicate.

        Raises:
            asyncio.TimeoutError: If the value does not match within timeout
        """
        if predicate(self._value):
            return self._value

        async def _wait() -> T:
            async with self.subscribe() as changes:
                async for value in changes:
                    if predicate(value):
                        return value
            raise RuntimeError(f"{self._channel.name} closed while waiting")

        return await asyncio.wait_for(_wait(), timeout=timeout)
