"""Prometheus metrics registry for command dispatch."""

import threading
from typing import Final

from prometheus_client import (  # type: ignore[import-untyped]
    Counter,
    Gauge,
    Histogram,
    start_http_server,
)

# Dispatch metrics
smarthome_dispatch_attempts_total: Final = Counter(  # type: ignore[assignment]
    "smarthome_dispatch_attempts_total",
    "Total dispatch attempts by final attempt outcome",
    ["domain", "outcome"],
)

smarthome_dispatch_attempt_latency_seconds: Final = Histogram(  # type: ignore[assignment]
    "smarthome_dispatch_attempt_latency_seconds",
    "Transport call latency per dispatch attempt in seconds",
    ["transport"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

smarthome_dispatch_retries_scheduled_total: Final = Counter(  # type: ignore[assignment]
    "smarthome_dispatch_retries_scheduled_total",
    "Total retries scheduled after a failed attempt",
    ["domain", "error_code"],
)

smarthome_dispatch_abandoned_total: Final = Counter(  # type: ignore[assignment]
    "smarthome_dispatch_abandoned_total",
    "Total commands that ended without confirmation",
    ["reason"],
)

smarthome_scheduler_queue_depth: Final = Gauge(  # type: ignore[assignment]
    "smarthome_scheduler_queue_depth",
    "Commands queued or in flight in the scheduler worker pool",
)

# Device adapter metrics
smarthome_device_api_requests_total: Final = Counter(  # type: ignore[assignment]
    "smarthome_device_api_requests_total",
    "Total device API requests",
    ["method", "outcome"],
)

smarthome_device_adapter_state: Final = Gauge(  # type: ignore[assignment]
    "smarthome_device_adapter_state",
    "Device adapter connection state from the last probe",
    ["state"],
)

# Broker metrics
smarthome_broker_state: Final = Gauge(  # type: ignore[assignment]
    "smarthome_broker_state",
    "Current broker connection state",
    ["state"],
)

smarthome_broker_reconnects_total: Final = Counter(  # type: ignore[assignment]
    "smarthome_broker_reconnects_total",
    "Total broker connection attempts after the first",
)

smarthome_broker_messages_total: Final = Counter(  # type: ignore[assignment]
    "smarthome_broker_messages_total",
    "Total inbound broker messages by event kind",
    ["kind"],
)

smarthome_broker_publish_total: Final = Counter(  # type: ignore[assignment]
    "smarthome_broker_publish_total",
    "Total broker publish calls",
    ["outcome"],
)

_server_state = {"started": False}
_server_lock = threading.Lock()


def start_metrics_server(port: int = 9400) -> None:
    """Start Prometheus HTTP metrics server (idempotent)."""
    with _server_lock:
        if not _server_state["started"]:
            start_http_server(port)  # type: ignore[no-untyped-call]
            _server_state["started"] = True


def record_attempt(domain: str, outcome: str) -> None:
    """Record a finished dispatch attempt."""
    smarthome_dispatch_attempts_total.labels(domain=domain, outcome=outcome).inc()  # type: ignore[no-untyped-call]


def record_attempt_latency(transport: str, latency_seconds: float) -> None:
    """Record transport latency for one attempt."""
    smarthome_dispatch_attempt_latency_seconds.labels(transport=transport).observe(latency_seconds)  # type: ignore[no-untyped-call]


def record_retry_scheduled(domain: str, error_code: str) -> None:
    """Record a retry scheduled after a failure."""
    smarthome_dispatch_retries_scheduled_total.labels(domain=domain, error_code=error_code).inc()  # type: ignore[no-untyped-call]


def record_command_abandoned(reason: str) -> None:
    """Record a command that ended failed, timed out, expired, or cancelled."""
    smarthome_dispatch_abandoned_total.labels(reason=reason).inc()  # type: ignore[no-untyped-call]


def record_queue_depth(depth: int) -> None:
    """Record scheduler queue depth."""
    smarthome_scheduler_queue_depth.set(depth)  # type: ignore[no-untyped-call]


def record_device_api_request(method: str, outcome: str) -> None:
    """Record a device API request."""
    smarthome_device_api_requests_total.labels(method=method, outcome=outcome).inc()  # type: ignore[no-untyped-call]


def record_adapter_state(state: str) -> None:
    """Record device adapter connection state."""
    # Set gauge to 1 for current state, 0 for all others
    for s in ["connected", "disconnected", "simulated"]:
        value = 1 if s == state else 0
        smarthome_device_adapter_state.labels(state=s).set(value)  # type: ignore[no-untyped-call]


def record_broker_state(state: str) -> None:
    """Record broker connection state change."""
    for s in ["disconnected", "connecting", "connected"]:
        value = 1 if s == state else 0
        smarthome_broker_state.labels(state=s).set(value)  # type: ignore[no-untyped-call]


def record_broker_reconnect() -> None:
    """Record a broker reconnection attempt."""
    smarthome_broker_reconnects_total.inc()  # type: ignore[no-untyped-call]


def record_broker_message(kind: str) -> None:
    """Record an inbound broker message."""
    smarthome_broker_messages_total.labels(kind=kind).inc()  # type: ignore[no-untyped-call]


def record_broker_publish(outcome: str) -> None:
    """Record a broker publish call."""
    smarthome_broker_publish_total.labels(outcome=outcome).inc()  # type: ignore[no-untyped-call]
