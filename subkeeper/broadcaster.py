"""
Task update fan-out using asyncio queues.

Producers (executor threads, the scheduler, request handlers) call
``publish`` from any thread. Each subscriber owns a bounded queue on its
own event loop; deliveries are scheduled onto that loop and dropped when
the queue is full, so a slow consumer never holds up the publisher or the
other subscribers. State can always be re-read from the store.
"""

import asyncio
import threading
from collections.abc import Callable
from contextlib import asynccontextmanager

from subkeeper.core.logging import get_logger
from subkeeper.services.task_store import TaskSnapshot

logger = get_logger("broadcaster")

TaskPredicate = Callable[[TaskSnapshot], bool]

_CLOSED = object()


class Subscription:
    """One subscriber's view of the update stream."""

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        queue_size: int,
        predicate: TaskPredicate | None = None,
    ):
        self.loop = loop
        self.predicate = predicate
        self.dropped = 0
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def accepts(self, snapshot: TaskSnapshot) -> bool:
        return self.predicate is None or bool(self.predicate(snapshot))

    def _deliver(self, snapshot: TaskSnapshot) -> None:
        """Runs on the subscriber's loop."""
        if self._closed:
            return
        try:
            self._queue.put_nowait(snapshot)
        except asyncio.QueueFull:
            self.dropped += 1

    def _close(self) -> None:
        """Runs on the subscriber's loop."""
        if self._closed:
            return
        self._closed = True
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSED)

    async def get(self) -> TaskSnapshot | None:
        """
        Wait for the next snapshot.

        Returns:
            The next snapshot, or None once the broadcaster has stopped.
        """
        item = await self._queue.get()
        if item is _CLOSED:
            # Leave the marker for any other waiter
            self._queue.put_nowait(_CLOSED)
            return None
        return item

    def __aiter__(self):
        return self

    async def __anext__(self) -> TaskSnapshot:
        item = await self.get()
        if item is None:
            raise StopAsyncIteration
        return item


class TaskUpdateBroadcaster:
    """
    Multicast of task snapshots to live subscribers.

    Subscribers see every publish from the moment they subscribe, in
    publish order, with no replay of earlier events.
    """

    def __init__(self, queue_size: int = 100):
        self.queue_size = queue_size
        self._subscribers: set[Subscription] = set()
        self._lock = threading.Lock()
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def start(self) -> None:
        self._running = True
        logger.info("Broadcaster started")

    def stop(self) -> None:
        """Stop accepting publishes and end every open subscription."""
        self._running = False
        with self._lock:
            subscribers = list(self._subscribers)
            self._subscribers.clear()

        for subscription in subscribers:
            try:
                subscription.loop.call_soon_threadsafe(subscription._close)
            except RuntimeError:
                # Subscriber's loop already closed
                pass
        logger.info("Broadcaster stopped, closed %d subscriptions", len(subscribers))

    @asynccontextmanager
    async def subscribe(self, predicate: TaskPredicate | None = None):
        """
        Subscribe to task updates.

        Args:
            predicate: Optional filter evaluated for each published snapshot.

        Yields:
            A Subscription that can be iterated or awaited with ``get()``.

        Example:
            async with broadcaster.subscribe(lambda t: t.video_id == "42") as sub:
                async for snapshot in sub:
                    ...
        """
        subscription = Subscription(
            asyncio.get_running_loop(), self.queue_size, predicate
        )
        with self._lock:
            self._subscribers.add(subscription)
        logger.debug("Subscriber added (%d total)", self.subscriber_count)
        try:
            yield subscription
        finally:
            self._remove(subscription)
            logger.debug("Subscriber removed (%d total)", self.subscriber_count)

    def publish(self, snapshot: TaskSnapshot) -> None:
        """
        Fan a snapshot out to all matching subscribers.

        Thread-safe and non-blocking. Never raises.
        """
        if not self._running or snapshot is None:
            return

        with self._lock:
            subscribers = list(self._subscribers)

        for subscription in subscribers:
            try:
                if not subscription.accepts(snapshot):
                    continue
                subscription.loop.call_soon_threadsafe(
                    subscription._deliver, snapshot
                )
            except RuntimeError:
                logger.debug("Dropping subscriber with closed event loop")
                self._remove(subscription)
            except Exception:
                logger.warning(
                    "Dropping subscriber whose filter raised", exc_info=True
                )
                self._remove(subscription)

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            self._subscribers.discard(subscription)
