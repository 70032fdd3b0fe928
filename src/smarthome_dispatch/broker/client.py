"""MQTT broker client with presence, automatic reconnection and resubscription."""

from __future__ import annotations

import asyncio
import json
from enum import StrEnum
from typing import Any

import aiomqtt

from smarthome_dispatch.broker.events import (
    BrokerConnected,
    BrokerDisconnected,
    DeviceUpdate,
    EventBus,
    GenericMessage,
    InboundMessage,
    SensorData,
)
from smarthome_dispatch.config import DispatchConfig
from smarthome_dispatch.const import (
    BROKER_CONN_DELAY,
    BROKER_PRESENCE_TOPIC,
    DEVICE_UPDATE_PREFIXES,
    MQTT_CLIENT_ID,
    MQTT_HOST,
    MQTT_PORT,
    OFFLINE_MSG,
    ONLINE_MSG,
    SENSOR_DATA_PREFIXES,
)
from smarthome_dispatch.correlation import ensure_correlation_id
from smarthome_dispatch.exceptions import NotConnected, TransportError
from smarthome_dispatch.instrumentation import timed_async
from smarthome_dispatch.logging_abstraction import get_logger
from smarthome_dispatch.metrics import (
    record_broker_message,
    record_broker_publish,
    record_broker_reconnect,
    record_broker_state,
)

__all__ = ["BrokerClient", "BrokerState", "classify_message", "encode_payload"]

logger = get_logger(__name__)


class BrokerState(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


def encode_payload(payload: Any) -> bytes:
    """Bytes and str are sent as-is; dicts, lists and numbers are JSON encoded."""
    if payload is None:
        return b""
    if isinstance(payload, bytes | bytearray):
        return bytes(payload)
    if isinstance(payload, str):
        return payload.encode()
    return json.dumps(payload).encode()


def _topic_segment(topic: str, index: int) -> str:
    parts = topic.split("/")
    return parts[index] if len(parts) > index else ""


def classify_message(topic: str, payload: bytes) -> InboundMessage:
    """Turn a received message into a typed event by topic prefix.

    Payloads that are not valid JSON are emitted as ``GenericMessage`` carrying
    the raw bytes, whatever the topic.
    """
    try:
        data: Any = json.loads(payload)
    except (ValueError, UnicodeDecodeError):
        return GenericMessage(topic=topic, payload=payload, decoded=False)

    for prefix in DEVICE_UPDATE_PREFIXES:
        if topic.startswith(prefix):
            # devices/<id>/... and homeassistant/sensor/<id>/...
            index = prefix.count("/")
            return DeviceUpdate(topic=topic, entity_id=_topic_segment(topic, index), data=data)
    for prefix in SENSOR_DATA_PREFIXES:
        if topic.startswith(prefix):
            return SensorData(topic=topic, sensor_id=_topic_segment(topic, prefix.count("/")), data=data)
    return GenericMessage(topic=topic, payload=data)


def _raw_payload(payload: object) -> bytes:
    if payload is None:
        return b""
    if isinstance(payload, bytes | bytearray):
        return bytes(payload)
    return str(payload).encode()


class BrokerClient:
    """Long-lived broker session owned by one supervisor task (``start``).

    The subscription set survives disconnects and is replayed after every
    successful connection. ``publish`` never buffers: it raises NotConnected
    while the session is down.
    """

    lp: str = "BrokerClient:"

    def __init__(
        self,
        event_bus: EventBus,
        host: str = MQTT_HOST,
        port: int = MQTT_PORT,
        username: str | None = None,
        password: str | None = None,
        client_id: str = MQTT_CLIENT_ID,
        presence_topic: str = BROKER_PRESENCE_TOPIC,
        reconnect_delay: float = BROKER_CONN_DELAY,
    ) -> None:
        self.event_bus: EventBus = event_bus
        self.broker_host: str = host
        self.broker_port: int = port
        self.broker_username: str | None = username
        self.broker_password: str | None = password
        self.broker_client_id: str = client_id
        self.presence_topic: str = presence_topic
        self.reconnect_delay: float = reconnect_delay

        self.client: aiomqtt.Client | None = None
        self.start_task: asyncio.Task[None] | None = None
        self._state: BrokerState = BrokerState.DISCONNECTED
        self._subscriptions: dict[str, int] = {}
        self._reconnect_lock = asyncio.Lock()
        self._connect_count: int = 0
        self._stopping: bool = False
        record_broker_state(self._state)

    @classmethod
    def from_config(cls, config: DispatchConfig, event_bus: EventBus) -> BrokerClient:
        return cls(
            event_bus,
            host=config.mqtt_host,
            port=config.mqtt_port,
            username=config.mqtt_user,
            password=config.mqtt_pass,
            client_id=config.mqtt_client_id,
            presence_topic=config.presence_topic,
            reconnect_delay=config.broker_conn_delay,
        )

    @property
    def state(self) -> BrokerState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == BrokerState.CONNECTED

    @property
    def subscriptions(self) -> dict[str, int]:
        """Snapshot of held topics and their QoS."""
        return dict(self._subscriptions)

    def _set_state(self, state: BrokerState) -> None:
        if state != self._state:
            logger.debug("%s state %s -> %s", self.lp, self._state, state)
            self._state = state
            record_broker_state(state)

    def _build_client(self) -> aiomqtt.Client:
        lwt = aiomqtt.Will(topic=self.presence_topic, payload=OFFLINE_MSG, qos=1, retain=True)
        return aiomqtt.Client(
            hostname=self.broker_host,
            port=self.broker_port,
            username=self.broker_username,
            password=self.broker_password,
            identifier=self.broker_client_id,
            will=lwt,
        )

    async def connect(self) -> bool:
        """Make one connection attempt.

        On success publishes ``online`` (retained, QoS 1) to the presence topic and
        resubscribes every held topic. Returns False when the broker is unreachable.
        """
        lp = f"{self.lp}connect:"
        async with self._reconnect_lock:
            if self._state == BrokerState.CONNECTED:
                return True
            self._set_state(BrokerState.CONNECTING)
            logger.debug("%s Connecting to MQTT broker...", lp)
            client = self._build_client()
            try:
                _ = await client.__aenter__()
            except aiomqtt.MqttError as mqtt_err_exc:
                # [code:134] Bad user name or password
                logger.warning(
                    "%s Connection failed [MqttError] -> %s",
                    lp,
                    mqtt_err_exc,
                    extra={"host": self.broker_host, "port": self.broker_port},
                )
                self._set_state(BrokerState.DISCONNECTED)
                return False

            self.client = client
            try:
                await client.publish(self.presence_topic, ONLINE_MSG, qos=1, retain=True)
            except aiomqtt.MqttError as mqtt_err_exc:
                logger.warning("%s presence publish failed [MqttError] -> %s", lp, mqtt_err_exc)
                await self._close_client()
                self._set_state(BrokerState.DISCONNECTED)
                return False

            self._set_state(BrokerState.CONNECTED)
            self._connect_count += 1
            logger.info(
                "%s Connected to MQTT broker: %s port: %s",
                lp,
                self.broker_host,
                self.broker_port,
                extra={"connection": self._connect_count},
            )
            await self._resubscribe()

        _ = await self.event_bus.publish(
            BrokerConnected(host=self.broker_host, port=self.broker_port, reconnect=self._connect_count > 1),
        )
        return True

    async def _resubscribe(self) -> None:
        """Replay the subscription set; one failing topic does not block the rest."""
        lp = f"{self.lp}resubscribe:"
        assert self.client is not None, "client must be initialized"
        for topic, qos in list(self._subscriptions.items()):
            try:
                await self.client.subscribe(topic, qos=qos)
            except aiomqtt.MqttError as mqtt_err:
                logger.warning("%s failed to resubscribe %s [MqttError] -> %s", lp, topic, mqtt_err)
            else:
                logger.debug("%s resubscribed %s (qos %d)", lp, topic, qos)

    async def _close_client(self) -> None:
        client, self.client = self.client, None
        if client is None:
            return
        try:
            await client.__aexit__(None, None, None)
        except aiomqtt.MqttError as ce:
            logger.debug("%s closing broker session failed: %s", self.lp, ce)

    async def _handle_connection_lost(self, reason: str) -> None:
        if self._state == BrokerState.DISCONNECTED and self.client is None:
            return
        logger.warning("%s connection lost: %s", self.lp, reason)
        self._set_state(BrokerState.DISCONNECTED)
        await self._close_client()
        _ = await self.event_bus.publish(BrokerDisconnected(reason=reason))

    async def _receive(self) -> None:
        """Consume messages until the session drops."""
        assert self.client is not None, "client must be initialized"
        async for message in self.client.messages:
            await self._handle_message(message.topic.value, _raw_payload(message.payload))

    async def _handle_message(self, topic: str, payload: bytes) -> None:
        event = classify_message(topic, payload)
        kind = type(event).__name__
        record_broker_message(kind)
        logger.debug("%s received %s on %s", self.lp, kind, topic)
        _ = await self.event_bus.publish(event)

    async def start(self) -> None:
        """Supervisor loop: connect, receive, and reconnect every ``reconnect_delay`` seconds forever."""
        lp = f"{self.lp}start:"
        _ = ensure_correlation_id()
        itr = 0
        self._stopping = False
        try:
            while not self._stopping:
                itr += 1
                if itr > 1:
                    record_broker_reconnect()
                if await self.connect():
                    reason = "message stream ended"
                    try:
                        await self._receive()
                    except aiomqtt.MqttError as msg_err:
                        reason = str(msg_err)
                    if self._stopping:
                        break
                    await self._handle_connection_lost(reason)
                if self._stopping:
                    break
                logger.info(
                    "%s broker unavailable, sleeping for %s seconds before re-trying...",
                    lp,
                    self.reconnect_delay,
                )
                await asyncio.sleep(self.reconnect_delay)
        except asyncio.CancelledError:
            logger.debug("%s supervisor cancelled", lp)
            raise

    @timed_async("broker_publish")
    async def publish(self, topic: str, payload: Any = b"", qos: int = 0, retain: bool = False) -> None:
        """Publish one message.

        Raises:
            NotConnected: The session is not up; nothing is queued
            TransportError: The broker rejected or dropped the publish (client is now disconnected)

        """
        lp = f"{self.lp}publish:"
        if self._state != BrokerState.CONNECTED or self.client is None:
            record_broker_publish("not_connected")
            raise NotConnected(topic, self._state)
        data = encode_payload(payload)
        try:
            await self.client.publish(topic, data, qos=qos, retain=retain)
        except aiomqtt.MqttError as mqtt_err:
            record_broker_publish("error")
            logger.warning("%s [MqttError] -> %s", lp, mqtt_err, extra={"topic": topic})
            await self._handle_connection_lost(f"publish failed: {mqtt_err}")
            raise TransportError(f"publish to {topic} failed: {mqtt_err}") from mqtt_err
        record_broker_publish("success")
        logger.debug("%s sent %d bytes to %s", lp, len(data), topic, extra={"qos": qos, "retain": retain})

    async def subscribe(self, topic: str, qos: int = 0) -> bool:
        """Hold ``topic`` in the subscription set; subscribe now if connected.

        Returns:
            True if the broker acknowledged now; False if deferred to the next connection

        """
        lp = f"{self.lp}subscribe:"
        self._subscriptions[topic] = qos
        if self._state != BrokerState.CONNECTED or self.client is None:
            logger.debug("%s %s recorded, applied on next connection", lp, topic)
            return False
        try:
            await self.client.subscribe(topic, qos=qos)
        except aiomqtt.MqttError as mqtt_err:
            logger.warning("%s %s failed [MqttError] -> %s", lp, topic, mqtt_err)
            return False
        logger.info("%s subscribed %s", lp, topic, extra={"qos": qos})
        return True

    async def unsubscribe(self, topic: str) -> None:
        lp = f"{self.lp}unsubscribe:"
        if self._subscriptions.pop(topic, None) is None:
            return
        if self._state == BrokerState.CONNECTED and self.client is not None:
            try:
                await self.client.unsubscribe(topic)
            except aiomqtt.MqttError as mqtt_err:
                logger.warning("%s %s failed [MqttError] -> %s", lp, topic, mqtt_err)
                return
        logger.info("%s unsubscribed %s", lp, topic)

    async def send_device_command(self, topic: str, command: Any, qos: int = 0, retain: bool = False) -> None:
        await self.publish(topic, command, qos=qos, retain=retain)
        logger.info("%s device command sent", self.lp, extra={"topic": topic})

    async def request_device_status(self, topic: str) -> None:
        """Ask a device for its state with an empty payload."""
        await self.publish(topic, b"")
        logger.info("%s device status requested", self.lp, extra={"topic": topic})

    async def disconnect(self) -> None:
        """Announce ``offline`` (best effort), close the session and stop the supervisor."""
        lp = f"{self.lp}disconnect:"
        self._stopping = True
        was_connected = self._state == BrokerState.CONNECTED
        if was_connected and self.client is not None:
            try:
                await self.client.publish(self.presence_topic, OFFLINE_MSG, qos=1, retain=True)
            except aiomqtt.MqttError as mqtt_err:
                logger.warning("%s offline publish failed [MqttError] -> %s", lp, mqtt_err)
        await self._close_client()
        self._set_state(BrokerState.DISCONNECTED)
        if self.start_task and not self.start_task.done():
            logger.debug("%s FINISHING: Cancelling start task", lp)
            _ = self.start_task.cancel()
        if was_connected:
            logger.info("%s Disconnected from MQTT broker", lp)
            _ = await self.event_bus.publish(BrokerDisconnected(reason="client disconnect"))
