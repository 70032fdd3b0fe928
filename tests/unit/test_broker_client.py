"""
Unit tests for BrokerClient.

Tests connection lifecycle (presence, resubscription, reconnect supervisor),
publishing while connected and disconnected, and message classification.
"""

import asyncio
import contextlib
import json
from unittest.mock import AsyncMock, MagicMock, patch

import aiomqtt
import pytest

from smarthome_dispatch.broker import (
    BrokerClient,
    BrokerConnected,
    BrokerDisconnected,
    BrokerEvent,
    BrokerState,
    DeviceUpdate,
    EventBus,
    GenericMessage,
    SensorData,
    classify_message,
    encode_payload,
)
from smarthome_dispatch.const import OFFLINE_MSG, ONLINE_MSG
from smarthome_dispatch.exceptions import NotConnected, TransportError

PRESENCE = "smart-home/status"


class _Messages:
    """Async iterable standing in for ``aiomqtt.Client.messages``."""

    def __init__(self, items=(), error=None, block=False):
        self.items = list(items)
        self.error = error
        self.block = block

    def __aiter__(self):
        return self._gen()

    async def _gen(self):
        for item in self.items:
            yield item
        if self.error is not None:
            raise self.error
        if self.block:
            _ = await asyncio.Event().wait()


def _message(topic, payload):
    message = MagicMock()
    message.topic.value = topic
    message.payload = payload
    return message


def _mqtt_session(messages=None):
    """Mock aiomqtt.Client instance."""
    session = MagicMock()
    session.__aenter__ = AsyncMock(return_value=session)
    session.__aexit__ = AsyncMock(return_value=None)
    session.publish = AsyncMock()
    session.subscribe = AsyncMock()
    session.unsubscribe = AsyncMock()
    session.messages = messages or _Messages(block=True)
    return session


def _presence_publishes(session):
    return [c for c in session.publish.await_args_list if c.args[:2] == (PRESENCE, ONLINE_MSG)]


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def events(event_bus):
    """Every event published on the bus, in order."""
    received = []
    _ = event_bus.subscribe(BrokerEvent, received.append)
    return received


@pytest.fixture
def broker(event_bus):
    return BrokerClient(event_bus, host="broker.local", port=1883, presence_topic=PRESENCE, reconnect_delay=0)


class TestBrokerConnect:
    """Tests for single connection attempts."""

    @pytest.mark.asyncio
    async def test_connect_announces_presence(self, broker, events):
        """Test connect publishes retained online status and emits BrokerConnected."""
        session = _mqtt_session()
        with patch("smarthome_dispatch.broker.client.aiomqtt.Client", return_value=session):
            assert await broker.connect() is True

        assert broker.state == BrokerState.CONNECTED
        session.publish.assert_awaited_once_with(PRESENCE, ONLINE_MSG, qos=1, retain=True)
        assert isinstance(events[-1], BrokerConnected)
        assert events[-1].reconnect is False

    @pytest.mark.asyncio
    async def test_connect_sets_last_will(self, broker):
        """Test the session is built with an offline last will on the presence topic."""
        with patch("smarthome_dispatch.broker.client.aiomqtt.Client", return_value=_mqtt_session()) as mock_cls:
            _ = await broker.connect()

        will = mock_cls.call_args.kwargs["will"]
        assert will.topic == PRESENCE
        assert will.payload == OFFLINE_MSG
        assert will.retain is True

    @pytest.mark.asyncio
    async def test_connect_failure_returns_false(self, broker, events):
        """Test an unreachable broker leaves the client disconnected."""
        session = _mqtt_session()
        session.__aenter__.side_effect = aiomqtt.MqttError("Connection refused")
        with patch("smarthome_dispatch.broker.client.aiomqtt.Client", return_value=session):
            assert await broker.connect() is False

        assert broker.state == BrokerState.DISCONNECTED
        assert broker.client is None
        assert events == []

    @pytest.mark.asyncio
    async def test_presence_failure_counts_as_connect_failure(self, broker):
        """Test a failed online publish closes the session and reports failure."""
        session = _mqtt_session()
        session.publish.side_effect = aiomqtt.MqttError("not authorised")
        with patch("smarthome_dispatch.broker.client.aiomqtt.Client", return_value=session):
            assert await broker.connect() is False

        session.__aexit__.assert_awaited_once()
        assert broker.is_connected is False

    @pytest.mark.asyncio
    async def test_connect_when_connected_is_noop(self, broker):
        """Test a second connect does not open another session."""
        with patch("smarthome_dispatch.broker.client.aiomqtt.Client", return_value=_mqtt_session()) as mock_cls:
            _ = await broker.connect()
            assert await broker.connect() is True

        assert mock_cls.call_count == 1


class TestBrokerReconnect:
    """Tests for resubscription and presence after reconnecting."""

    @pytest.mark.asyncio
    async def test_reconnect_resubscribes_and_announces_once(self, broker, events):
        """Test both held topics are resubscribed and online is published exactly once after reconnect."""
        first, second = _mqtt_session(), _mqtt_session()
        with patch("smarthome_dispatch.broker.client.aiomqtt.Client", side_effect=[first, second]):
            assert await broker.subscribe("devices/+/state") is False
            assert await broker.subscribe("sensors/+/data", qos=1) is False
            _ = await broker.connect()
            await broker._handle_connection_lost("keepalive timeout")
            assert broker.state == BrokerState.DISCONNECTED
            _ = await broker.connect()

        subscribed = {(c.args[0], c.kwargs["qos"]) for c in second.subscribe.await_args_list}
        assert subscribed == {("devices/+/state", 0), ("sensors/+/data", 1)}
        assert len(_presence_publishes(second)) == 1
        kinds = [type(e) for e in events]
        assert kinds == [BrokerConnected, BrokerDisconnected, BrokerConnected]
        assert events[-1].reconnect is True

    @pytest.mark.asyncio
    async def test_resubscribe_continues_after_failure(self, broker):
        """Test one failing topic does not stop the others from being resubscribed."""
        session = _mqtt_session()
        session.subscribe.side_effect = [aiomqtt.MqttError("denied"), None]
        _ = await broker.subscribe("a/#")
        _ = await broker.subscribe("b/#")
        with patch("smarthome_dispatch.broker.client.aiomqtt.Client", return_value=session):
            assert await broker.connect() is True

        assert session.subscribe.await_count == 2
        assert broker.subscriptions == {"a/#": 0, "b/#": 0}

    @pytest.mark.asyncio
    async def test_connection_lost_is_idempotent(self, broker, events):
        """Test repeated loss notifications emit a single BrokerDisconnected."""
        with patch("smarthome_dispatch.broker.client.aiomqtt.Client", return_value=_mqtt_session()):
            _ = await broker.connect()

        await broker._handle_connection_lost("gone")
        await broker._handle_connection_lost("gone again")

        assert sum(isinstance(e, BrokerDisconnected) for e in events) == 1

    @pytest.mark.asyncio
    async def test_supervisor_reconnects_after_stream_error(self, broker, events):
        """Test start() reconnects after the message stream fails and keeps delivering messages."""
        first = _mqtt_session(_Messages(error=aiomqtt.MqttError("Disconnected during message iteration")))
        second = _mqtt_session(
            _Messages(items=[_message("devices/light.kitchen/state", b'{"state": "on"}')], block=True),
        )
        _ = await broker.subscribe("devices/#")

        with patch("smarthome_dispatch.broker.client.aiomqtt.Client", side_effect=[first, second]):
            broker.start_task = asyncio.create_task(broker.start())
            await asyncio.sleep(0.05)

            assert broker.is_connected
            assert len(_presence_publishes(second)) == 1
            second.subscribe.assert_awaited_once_with("devices/#", qos=0)
            updates = [e for e in events if isinstance(e, DeviceUpdate)]
            assert len(updates) == 1
            assert updates[0].entity_id == "light.kitchen"

            await broker.disconnect()
            with contextlib.suppress(asyncio.CancelledError):
                await broker.start_task

        second.publish.assert_any_await(PRESENCE, OFFLINE_MSG, qos=1, retain=True)

    @pytest.mark.asyncio
    async def test_supervisor_retries_unreachable_broker(self, broker):
        """Test start() keeps trying while the broker is down."""
        broker.connect = AsyncMock(return_value=False)

        start_task = asyncio.create_task(broker.start())
        await asyncio.sleep(0.05)
        start_task.cancel()

        with contextlib.suppress(asyncio.CancelledError):
            await start_task

        assert broker.connect.await_count >= 2


class TestBrokerPublish:
    """Tests for publish and subscription calls."""

    @pytest.mark.asyncio
    async def test_publish_while_disconnected_raises(self, broker):
        """Test publish raises NotConnected and nothing is queued."""
        with pytest.raises(NotConnected) as exc_info:
            await broker.publish("devices/light.kitchen/set", {"state": "on"})

        assert exc_info.value.topic == "devices/light.kitchen/set"
        assert exc_info.value.error_code == "NOT_CONNECTED"

    @pytest.mark.asyncio
    async def test_publish_encodes_payload(self, broker):
        """Test dict payloads are JSON encoded."""
        session = _mqtt_session()
        with patch("smarthome_dispatch.broker.client.aiomqtt.Client", return_value=session):
            _ = await broker.connect()

        await broker.send_device_command("devices/fan/set", {"speed": 2}, qos=1)

        session.publish.assert_awaited_with("devices/fan/set", b'{"speed": 2}', qos=1, retain=False)

    @pytest.mark.asyncio
    async def test_request_device_status_sends_empty_payload(self, broker):
        """Test status requests publish an empty message."""
        session = _mqtt_session()
        with patch("smarthome_dispatch.broker.client.aiomqtt.Client", return_value=session):
            _ = await broker.connect()

        await broker.request_device_status("devices/fan/get")

        session.publish.assert_awaited_with("devices/fan/get", b"", qos=0, retain=False)

    @pytest.mark.asyncio
    async def test_publish_error_drops_connection(self, broker, events):
        """Test a broker error during publish raises TransportError and marks the session down."""
        session = _mqtt_session()
        with patch("smarthome_dispatch.broker.client.aiomqtt.Client", return_value=session):
            _ = await broker.connect()
        session.publish.side_effect = aiomqtt.MqttError("Operation timed out")

        with pytest.raises(TransportError):
            await broker.publish("devices/fan/set", "on")

        assert broker.state == BrokerState.DISCONNECTED
        assert isinstance(events[-1], BrokerDisconnected)

    @pytest.mark.asyncio
    async def test_subscribe_when_connected(self, broker):
        """Test subscribe is applied immediately on a live session."""
        session = _mqtt_session()
        with patch("smarthome_dispatch.broker.client.aiomqtt.Client", return_value=session):
            _ = await broker.connect()

        assert await broker.subscribe("homeassistant/sensor/#") is True
        session.subscribe.assert_awaited_once_with("homeassistant/sensor/#", qos=0)

    @pytest.mark.asyncio
    async def test_unsubscribe_removes_topic(self, broker):
        """Test unsubscribed topics are not replayed on reconnect."""
        session = _mqtt_session()
        _ = await broker.subscribe("devices/#")
        await broker.unsubscribe("devices/#")
        with patch("smarthome_dispatch.broker.client.aiomqtt.Client", return_value=session):
            _ = await broker.connect()

        assert broker.subscriptions == {}
        session.subscribe.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_disconnect_announces_offline(self, broker, events):
        """Test disconnect publishes offline and emits BrokerDisconnected."""
        session = _mqtt_session()
        with patch("smarthome_dispatch.broker.client.aiomqtt.Client", return_value=session):
            _ = await broker.connect()

        await broker.disconnect()

        session.publish.assert_awaited_with(PRESENCE, OFFLINE_MSG, qos=1, retain=True)
        session.__aexit__.assert_awaited_once()
        assert broker.state == BrokerState.DISCONNECTED
        assert events[-1].reason == "client disconnect"

    @pytest.mark.asyncio
    async def test_disconnect_closes_when_offline_publish_fails(self, broker, events):
        """Test a failed offline announcement is swallowed and the session still closes."""
        session = _mqtt_session()
        with patch("smarthome_dispatch.broker.client.aiomqtt.Client", return_value=session):
            _ = await broker.connect()
        session.publish.side_effect = aiomqtt.MqttError("broker went away")

        await broker.disconnect()

        session.publish.assert_awaited_with(PRESENCE, OFFLINE_MSG, qos=1, retain=True)
        session.__aexit__.assert_awaited_once()
        assert broker.state == BrokerState.DISCONNECTED
        assert broker.is_connected is False
        assert isinstance(events[-1], BrokerDisconnected)


class TestClassifyMessage:
    """Tests for topic-based message classification."""

    def test_device_topic(self):
        event = classify_message("devices/light.kitchen/state", b'{"state": "off"}')

        assert isinstance(event, DeviceUpdate)
        assert event.entity_id == "light.kitchen"
        assert event.data == {"state": "off"}

    def test_home_assistant_sensor_topic(self):
        event = classify_message("homeassistant/sensor/outdoor_temp/state", b"21.5")

        assert isinstance(event, DeviceUpdate)
        assert event.entity_id == "outdoor_temp"
        assert event.data == 21.5

    def test_sensor_topic(self):
        event = classify_message("sensors/hallway_motion/reading", b'{"motion": true}')

        assert isinstance(event, SensorData)
        assert event.sensor_id == "hallway_motion"

    def test_other_topic_is_generic(self):
        event = classify_message("smart-home/status", b'"online"')

        assert isinstance(event, GenericMessage)
        assert event.payload == "online"
        assert event.decoded is True

    def test_undecodable_payload_is_generic(self):
        """Test non-JSON payloads keep their raw bytes, even on device topics."""
        event = classify_message("devices/light.kitchen/state", b"online")

        assert isinstance(event, GenericMessage)
        assert event.payload == b"online"
        assert event.decoded is False


class TestEncodePayload:
    """Tests for outbound payload encoding."""

    @pytest.mark.parametrize(
        ("payload", "expected"),
        [
            (None, b""),
            (b"raw", b"raw"),
            ("text", b"text"),
            ({"a": 1}, json.dumps({"a": 1}).encode()),
            (5, b"5"),
        ],
    )
    def test_encode(self, payload, expected):
        assert encode_payload(payload) == expected
