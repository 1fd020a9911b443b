"""Per-session publish/subscribe channels with explicit lifetime."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Dict, List, Optional

from src.services import events as ev
from src.services.events import SessionEvent

LOGGER = logging.getLogger(__name__)

EventHandler = Callable[[SessionEvent], None]
Unsubscribe = Callable[[], None]


@dataclass(eq=False)
class _Subscription:
    handler: EventHandler
    removed: bool = False

    def __call__(self, event: SessionEvent) -> None:
        self.handler(event)


@dataclass
class _Channel:
    handlers: List[_Subscription] = field(default_factory=list)
    run_refs: int = 0

    @property
    def idle(self) -> bool:
        return not self.handlers and self.run_refs <= 0


class EventBus:
    """Routes session events to the handlers subscribed to that session.

    A channel exists from the first subscription or run acquisition until it
    has neither subscribers nor active runs. Publishing to a session without
    a channel is a no-op.
    """

    def __init__(self) -> None:
        self._channels: Dict[str, _Channel] = {}

    def subscribe(self, session_id: str, handler: EventHandler) -> Unsubscribe:
        """Register ``handler`` for one session.

        Returns:
            Idempotent callable that removes the subscription.
        """
        channel = self._channels.setdefault(session_id, _Channel())
        # Each subscription gets its own token so the same handler may be
        # registered twice and removed once.
        subscription = _Subscription(handler)
        channel.handlers.append(subscription)

        def unsubscribe() -> None:
            if subscription.removed:
                return
            subscription.removed = True
            current = self._channels.get(session_id)
            if current is None or subscription not in current.handlers:
                return
            current.handlers.remove(subscription)
            self._maybe_teardown(session_id)

        return unsubscribe

    def publish(self, session_id: str, event: SessionEvent) -> None:
        """Deliver ``event`` synchronously to the session's handlers in order."""
        channel = self._channels.get(session_id)
        if channel is None:
            return
        for handler in list(channel.handlers):
            try:
                handler(event)
            except Exception:  # pylint: disable=broad-except
                LOGGER.exception("Event handler failed for session %s (%s)", session_id, event.event_type)

    def acquire(self, session_id: str) -> None:
        """Hold the session channel open for the duration of a run."""
        self._channels.setdefault(session_id, _Channel()).run_refs += 1

    def release(self, session_id: str) -> None:
        channel = self._channels.get(session_id)
        if channel is None:
            return
        channel.run_refs = max(0, channel.run_refs - 1)
        self._maybe_teardown(session_id)

    def discard(self, session_id: str) -> None:
        """Drop the channel and all of its subscribers (session deleted).

        Every subscriber receives a final ``session:deleted`` event and is
        detached, so its unsubscribe callable becomes a no-op.
        """
        channel = self._channels.pop(session_id, None)
        if channel is None:
            return
        event = ev.session_deleted(session_id)
        for subscription in channel.handlers:
            subscription.removed = True
            try:
                subscription(event)
            except Exception:  # pylint: disable=broad-except
                LOGGER.exception("Event handler failed for session %s (%s)", session_id, event.event_type)
        LOGGER.debug("Discarded event channel for session %s", session_id)

    def has_channel(self, session_id: str) -> bool:
        return session_id in self._channels

    def subscriber_count(self, session_id: str) -> int:
        channel = self._channels.get(session_id)
        return len(channel.handlers) if channel else 0

    def _maybe_teardown(self, session_id: str) -> None:
        channel = self._channels.get(session_id)
        if channel is not None and channel.idle:
            del self._channels[session_id]
            LOGGER.debug("Closed idle event channel for session %s", session_id)


class EventStream:
    """Queue-backed subscription consumed by streaming transports."""

    def __init__(self, bus: EventBus, session_id: str, max_queue_size: int = 100) -> None:
        self.session_id = session_id
        self._queue: asyncio.Queue[SessionEvent] = asyncio.Queue(maxsize=max_queue_size)
        self._unsubscribe: Optional[Unsubscribe] = bus.subscribe(session_id, self._put)

    @property
    def closed(self) -> bool:
        return self._unsubscribe is None

    def _put(self, event: SessionEvent) -> None:
        if event.event_type == ev.SESSION_DELETED and self._queue.full():
            # The terminal event must reach the consumer
            self._queue.get_nowait()
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            LOGGER.warning("Event queue full for session %s; dropping %s", self.session_id, event.event_type)

    async def get(self, timeout: Optional[float] = None) -> Optional[SessionEvent]:
        """Return the next event, or ``None`` when ``timeout`` elapses."""
        if timeout is None:
            return await self._queue.get()
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    async def iter_events(self, keepalive_interval: float = 15.0) -> AsyncIterator[SessionEvent]:
        """Yield events, emitting keepalives while idle.

        Ends after yielding ``session:deleted`` or once the stream is closed.
        """
        while not self.closed:
            event = await self.get(timeout=keepalive_interval)
            if event is None:
                yield ev.keepalive(self.session_id)
                continue
            yield event
            if event.event_type == ev.SESSION_DELETED:
                self.close()
                return

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
