"""Tests for EventBus and AlertService."""

from __future__ import annotations

import asyncio
import logging

import pytest

from polyarb.monitoring.alerts import AlertService
from polyarb.monitoring.events import (
    ALERT_NEW,
    BALANCE_UPDATE,
    EVENT_NAMES,
    TRADE_CREATED,
    EventBus,
)


class TestEventBus:
    def test_nine_event_names(self):
        assert len(EVENT_NAMES) == 9

    def test_publish_and_drain(self):
        bus = EventBus(buffered=True)
        bus.publish(TRADE_CREATED, {"id": 1})
        bus.publish(BALANCE_UPDATE, {"balance": 10.0})
        assert bus.pending == 2
        events = bus.drain()
        assert [e.name for e in events] == [TRADE_CREATED, BALANCE_UPDATE]
        assert events[0].payload == {"id": 1}
        assert bus.pending == 0

    def test_unknown_event(self):
        with pytest.raises(ValueError):
            EventBus().publish("trade:exploded")

    def test_full_queue_drops_oldest(self):
        bus = EventBus(maxsize=2, buffered=True)
        for i in range(3):
            bus.publish(BALANCE_UPDATE, {"balance": float(i)})
        assert [e.payload["balance"] for e in bus.drain()] == [1.0, 2.0]

    def test_subscribers_get_every_event(self):
        bus = EventBus()
        first, second = bus.subscribe(), bus.subscribe()
        bus.publish(TRADE_CREATED)
        assert first.qsize() == 1
        assert second.qsize() == 1
        bus.unsubscribe(first)
        bus.publish(TRADE_CREATED)
        assert first.qsize() == 1
        assert second.qsize() == 2

    @pytest.mark.asyncio
    async def test_relay_survives_handler_error(self):
        bus = EventBus()
        seen = []

        async def handler(event):
            seen.append(event.payload["n"])
            if event.payload["n"] == 1:
                raise RuntimeError("transport down")

        task = asyncio.create_task(bus.relay(handler))
        await asyncio.sleep(0)
        bus.publish(BALANCE_UPDATE, {"n": 1})
        bus.publish(BALANCE_UPDATE, {"n": 2})
        for _ in range(5):
            await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert seen == [1, 2]

    @pytest.mark.asyncio
    async def test_relay_only_bus_never_drops(self, caplog):
        bus = EventBus(maxsize=10)
        seen = []

        async def handler(event):
            seen.append(event.payload["n"])

        task = asyncio.create_task(bus.relay(handler))
        await asyncio.sleep(0)
        with caplog.at_level(logging.WARNING, logger="polyarb.monitoring.events"):
            for n in range(15):
                bus.publish(BALANCE_UPDATE, {"n": n})
                await asyncio.sleep(0)
        for _ in range(5):
            await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert seen == list(range(15))
        assert "dropped" not in caplog.text
        assert not bus.buffered
        assert bus.drain() == []


class TestAlertService:
    def test_persists_and_publishes(self, repo):
        bus = EventBus(buffered=True)
        alerts = AlertService(repo, bus)

        alert = alerts.warning("trade", "Trade cancelled", {"trade_id": 3})

        assert alert.id is not None
        assert repo.count_unread_alerts() == 1
        event = bus.drain()[0]
        assert event.name == ALERT_NEW
        assert event.payload["severity"] == "warning"
        assert event.payload["data"] == {"trade_id": 3}

    def test_unknown_severity(self, repo):
        with pytest.raises(ValueError):
            AlertService(repo, EventBus()).raise_alert("x", "fatal", "msg")
