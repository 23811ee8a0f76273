"""Typed event stream for feature activity.

Every event carries a feature id and a payload. Events are persisted to the
event log (when a Database is attached) before delivery, so a subscriber that
reconnects can replay what it missed with replay(feature_id, after_id).

Delivery:
- callbacks run synchronously in emit order; a failing callback is logged
  and skipped, it never affects other subscribers or the emitter
- queue subscribers get their own unbounded asyncio.Queue, so nothing is
  dropped and per-feature order is the emit order
- no ordering guarantee across features beyond emit order
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import AsyncIterator, Callable
from typing import Any

from agentboard.core.state import Database, Event, EventType

logger = logging.getLogger(__name__)

EventCallback = Callable[[Event], None]

# The seven events every stream consumer must understand
CORE_EVENT_TYPES = frozenset(
    {
        EventType.FEATURE_STARTED,
        EventType.FEATURE_PROGRESS,
        EventType.FEATURE_TOOL_USE,
        EventType.FEATURE_COMPLETED,
        EventType.FEATURE_ERROR,
        EventType.FEATURE_COMMITTED,
        EventType.FEATURE_STOPPED,
    }
)


class Subscription:
    """Async iterator over events, optionally filtered to one feature.

    USAGE:
        async with bus.subscribe_queue("feat-1") as sub:
            async for event in sub:
                ...
    """

    def __init__(self, bus: EventBus, feature_id: str | None = None):
        self._bus = bus
        self.feature_id = feature_id
        self.queue: asyncio.Queue[Event | None] = asyncio.Queue()
        self._loop = asyncio.get_running_loop()
        self.closed = False

    def _deliver(self, event: Event) -> None:
        if self.closed:
            return
        if self.feature_id is not None and event.feature_id != self.feature_id:
            return
        self._put(event)

    def _put(self, item: Event | None) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self.queue.put_nowait(item)
        else:
            # Emitted from a worker thread
            self._loop.call_soon_threadsafe(self.queue.put_nowait, item)

    async def get(self, timeout: float | None = None) -> Event | None:
        """Next event, or None once closed. Raises TimeoutError on timeout."""
        if timeout is None:
            return await self.queue.get()
        return await asyncio.wait_for(self.queue.get(), timeout=timeout)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._bus._remove_subscription(self)
        self._put(None)

    def __aiter__(self) -> AsyncIterator[Event]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Event]:
        while True:
            event = await self.queue.get()
            if event is None:
                return
            yield event

    async def __aenter__(self) -> Subscription:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.close()
        return False


class EventBus:
    """Publish feature events to callbacks and queue subscribers."""

    def __init__(self, db: Database | None = None):
        self.db = db
        self._callbacks: list[EventCallback] = []
        self._subscriptions: list[Subscription] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        """Register a callback. Returns a function that unsubscribes it."""
        with self._lock:
            self._callbacks.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._callbacks:
                    self._callbacks.remove(callback)

        return unsubscribe

    def subscribe_queue(self, feature_id: str | None = None) -> Subscription:
        """Create a queue subscription. Must be called inside a running loop."""
        subscription = Subscription(self, feature_id)
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def _remove_subscription(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def _record(self, event: Event) -> None:
        if self.db is None:
            return
        try:
            event.id = self.db.append_event(event)
        except Exception as e:
            # Live subscribers still get the event
            logger.error(
                f"Failed to persist {event.event_type.value} for {event.feature_id}: {e}"
            )

    def emit(
        self,
        feature_id: str,
        event_type: EventType,
        payload: dict[str, Any] | None = None,
        status: str | None = None,
    ) -> Event:
        """Record an event in the log (if attached) and deliver it."""
        event = Event(
            feature_id=feature_id,
            event_type=event_type,
            status=status,
            payload=payload or {},
        )
        self._record(event)
        self.publish(event)
        return event

    async def emit_async(
        self,
        feature_id: str,
        event_type: EventType,
        payload: dict[str, Any] | None = None,
        status: str | None = None,
    ) -> Event:
        """Like emit(), but the log write runs in a worker thread.

        Delivery still happens on the calling loop, after the write.
        """
        event = Event(
            feature_id=feature_id,
            event_type=event_type,
            status=status,
            payload=payload or {},
        )
        await asyncio.to_thread(self._record, event)
        self.publish(event)
        return event

    def publish(self, event: Event) -> None:
        """Deliver an already-recorded event to subscribers."""
        with self._lock:
            callbacks = list(self._callbacks)
            subscriptions = list(self._subscriptions)

        for callback in callbacks:
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Event subscriber failed on {event.event_type.value}: {e}")

        for subscription in subscriptions:
            try:
                subscription._deliver(event)
            except Exception as e:
                logger.error(f"Failed to queue {event.event_type.value}: {e}")

    def replay(self, feature_id: str, after_id: int = 0) -> list[Event]:
        """Events recorded for a feature after the given event id."""
        if self.db is None:
            return []
        return self.db.get_events(feature_id, after_id=after_id)
