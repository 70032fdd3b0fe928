"""Unit tests for EventBus."""

import asyncio

import pytest

from smarthome_dispatch.broker import (
    BrokerDisconnected,
    BrokerEvent,
    DeviceUpdate,
    EventBus,
    InboundMessage,
    SensorData,
)


def _update():
    return DeviceUpdate(topic="devices/light.kitchen/state", entity_id="light.kitchen", data={"state": "on"})


class TestEventBus:
    """Tests for subscribe/publish."""

    @pytest.mark.asyncio
    async def test_sync_and_async_handlers(self):
        bus = EventBus()
        seen = []

        async def on_update(event):
            seen.append(("async", event.entity_id))

        _ = bus.subscribe(DeviceUpdate, lambda e: seen.append(("sync", e.entity_id)))
        _ = bus.subscribe(DeviceUpdate, on_update)

        delivered = await bus.publish(_update())

        assert delivered == 2
        assert seen == [("sync", "light.kitchen"), ("async", "light.kitchen")]

    @pytest.mark.asyncio
    async def test_base_class_handler_receives_subclasses(self):
        bus = EventBus()
        seen = []
        _ = bus.subscribe(InboundMessage, seen.append)

        _ = await bus.publish(_update())
        _ = await bus.publish(SensorData(topic="sensors/t/data", sensor_id="t", data=1))
        _ = await bus.publish(BrokerDisconnected(reason="x"))

        assert [type(e) for e in seen] == [DeviceUpdate, SensorData]

    @pytest.mark.asyncio
    async def test_unrelated_type_not_delivered(self):
        bus = EventBus()
        seen = []
        _ = bus.subscribe(SensorData, seen.append)

        assert await bus.publish(_update()) == 0
        assert seen == []

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_block_others(self):
        bus = EventBus()
        seen = []

        def broken(_event):
            raise RuntimeError("handler bug")

        _ = bus.subscribe(BrokerEvent, broken)
        _ = bus.subscribe(BrokerEvent, seen.append)

        delivered = await bus.publish(_update())

        assert delivered == 1
        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self):
        bus = EventBus()

        async def cancelled(_event):
            raise asyncio.CancelledError

        _ = bus.subscribe(DeviceUpdate, cancelled)

        with pytest.raises(asyncio.CancelledError):
            _ = await bus.publish(_update())

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        bus = EventBus()
        seen = []
        unsubscribe = bus.subscribe(DeviceUpdate, seen.append)

        unsubscribe()
        unsubscribe()

        assert await bus.publish(_update()) == 0
        assert bus.handler_count(DeviceUpdate) == 0

    def test_handler_count(self):
        bus = EventBus()
        _ = bus.subscribe(DeviceUpdate, print)
        _ = bus.subscribe(SensorData, print)

        assert bus.handler_count() == 2
        assert bus.handler_count(SensorData) == 1

    def test_events_are_immutable(self):
        event = _update()

        with pytest.raises(AttributeError):
            event.entity_id = "other"  # type: ignore[misc]
