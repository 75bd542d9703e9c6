"""Outbound notification channel.

The core publishes named events here; transports (Telegram relay, a
dashboard) consume them. ``publish`` never blocks: when a subscriber queue
is full its oldest event is dropped.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

OPPORTUNITY_NEW = "opportunity:new"
TRADE_CREATED = "trade:created"
TRADE_SETTLED = "trade:settled"
TRADE_CANCELLED = "trade:cancelled"
ALERT_NEW = "alert:new"
KILL_SWITCH_ACTIVATED = "kill_switch:activated"
KILL_SWITCH_DEACTIVATED = "kill_switch:deactivated"
BALANCE_UPDATE = "balance:update"
SETTINGS_CHANGED = "settings:changed"

EVENT_NAMES = frozenset({
    OPPORTUNITY_NEW,
    TRADE_CREATED,
    TRADE_SETTLED,
    TRADE_CANCELLED,
    ALERT_NEW,
    KILL_SWITCH_ACTIVATED,
    KILL_SWITCH_DEACTIVATED,
    BALANCE_UPDATE,
    SETTINGS_CHANGED,
})

DEFAULT_QUEUE_SIZE = 1000

EventHandler = Callable[["Event"], Awaitable[None]]


@dataclass(frozen=True)
class Event:
    name: str
    payload: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(
        default_factory=lambda: datetime.now(tz=timezone.utc)
    )


def _put_dropping_oldest(queue: asyncio.Queue, event: Event) -> None:
    try:
        queue.put_nowait(event)
    except asyncio.QueueFull:
        dropped = queue.get_nowait()
        logger.warning("Event queue full, dropped %s", dropped.name)
        queue.put_nowait(event)


class EventBus:
    """Bounded fan-out queue of named events.

    Every ``subscribe`` call adds an independent queue. With ``buffered=True``
    the bus also keeps a default queue read with ``drain``/``get``; leave it
    off when nothing reads it, or it fills up and drops on every publish.
    """

    def __init__(self, maxsize: int = DEFAULT_QUEUE_SIZE, buffered: bool = False):
        self._maxsize = maxsize
        self._queue: Optional[asyncio.Queue[Event]] = (
            asyncio.Queue(maxsize=maxsize) if buffered else None
        )
        self._subscribers: list[asyncio.Queue[Event]] = []

    def publish(self, name: str, payload: Optional[dict[str, Any]] = None) -> Event:
        if name not in EVENT_NAMES:
            raise ValueError(f"Unknown event: {name}")
        event = Event(name=name, payload=payload or {})
        if self._queue is not None:
            _put_dropping_oldest(self._queue, event)
        for queue in self._subscribers:
            _put_dropping_oldest(queue, event)
        logger.debug("Event %s", name)
        return event

    def subscribe(self) -> asyncio.Queue[Event]:
        queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=self._maxsize)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[Event]) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    @property
    def buffered(self) -> bool:
        return self._queue is not None

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    def drain(self) -> list[Event]:
        """Default queue 의 모든 이벤트를 꺼내 반환."""
        events: list[Event] = []
        if self._queue is None:
            return events
        while not self._queue.empty():
            events.append(self._queue.get_nowait())
        return events

    async def get(self) -> Event:
        if self._queue is None:
            raise RuntimeError("EventBus is not buffered, use subscribe()")
        return await self._queue.get()

    async def relay(self, handler: EventHandler) -> None:
        """Forward every event to ``handler`` until cancelled.

        Handler errors are logged; the relay keeps running.
        """
        queue = self.subscribe()
        try:
            while True:
                event = await queue.get()
                try:
                    await handler(event)
                except Exception:
                    logger.exception("Event handler failed for %s", event.name)
        finally:
            self.unsubscribe(queue)
