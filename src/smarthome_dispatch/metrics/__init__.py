"""Metrics module."""

from . import registry
from .registry import (
    record_adapter_state,
    record_attempt,
    record_attempt_latency,
    record_broker_message,
    record_broker_publish,
    record_broker_reconnect,
    record_broker_state,
    record_command_abandoned,
    record_device_api_request,
    record_queue_depth,
    record_retry_scheduled,
    start_metrics_server,
)

__all__ = [
    "record_adapter_state",
    "record_attempt",
    "record_attempt_latency",
    "record_broker_message",
    "record_broker_publish",
    "record_broker_reconnect",
    "record_broker_state",
    "record_command_abandoned",
    "record_device_api_request",
    "record_queue_depth",
    "record_retry_scheduled",
    "registry",
    "start_metrics_server",
]
