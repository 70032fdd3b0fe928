"""Device-control adapter with live and simulated backends."""

from smarthome_dispatch.devices.adapter import DeviceAdapter, normalize_entity
from smarthome_dispatch.devices.backends import (
    Backend,
    ConnectionState,
    LiveBackend,
    SimulatedBackend,
)
from smarthome_dispatch.devices.validation import ServiceCall, resolve_service

__all__ = [
    "Backend",
    "ConnectionState",
    "DeviceAdapter",
    "LiveBackend",
    "ServiceCall",
    "SimulatedBackend",
    "normalize_entity",
    "resolve_service",
]
