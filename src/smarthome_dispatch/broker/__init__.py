"""MQTT broker client and typed inbound events."""

from smarthome_dispatch.broker.client import BrokerClient, BrokerState, classify_message, encode_payload
from smarthome_dispatch.broker.events import (
    BrokerConnected,
    BrokerDisconnected,
    BrokerEvent,
    DeviceUpdate,
    EventBus,
    GenericMessage,
    InboundMessage,
    SensorData,
)

__all__ = [
    "BrokerClient",
    "BrokerConnected",
    "BrokerDisconnected",
    "BrokerEvent",
    "BrokerState",
    "DeviceUpdate",
    "EventBus",
    "GenericMessage",
    "InboundMessage",
    "SensorData",
    "classify_message",
    "encode_payload",
]
