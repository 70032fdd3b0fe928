"""Device API backends.

The backend is picked once when the adapter is built and never changes for
the life of the process, so live and simulated calls are never mixed.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any

__all__ = [
    "SIMULATED_ENTITIES",
    "Backend",
    "ConnectionState",
    "LiveBackend",
    "SimulatedBackend",
]


class ConnectionState(StrEnum):
    """Advisory state from the last connectivity probe."""

    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    SIMULATED = "simulated"


@dataclass(frozen=True, slots=True)
class LiveBackend:
    base_url: str
    token: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "base_url", self.base_url.rstrip("/"))

    @property
    def api_url(self) -> str:
        return f"{self.base_url}/api"

    def __repr__(self) -> str:
        # token stays out of logs
        return f"LiveBackend(base_url={self.base_url!r})"


@dataclass(frozen=True, slots=True)
class SimulatedBackend:
    """Deterministic stand-in used when no device API is configured."""


type Backend = LiveBackend | SimulatedBackend


# Raw entity records in the device API's /api/states shape
SIMULATED_ENTITIES: tuple[dict[str, Any], ...] = (
    {
        "entity_id": "light.kitchen",
        "state": "off",
        "attributes": {"friendly_name": "Kitchen Light", "brightness": 0},
    },
    {
        "entity_id": "light.living_room",
        "state": "on",
        "attributes": {"friendly_name": "Living Room Lamp", "brightness": 180},
    },
    {
        "entity_id": "switch.kitchen_outlet",
        "state": "on",
        "attributes": {"friendly_name": "Kitchen Outlet"},
    },
    {
        "entity_id": "climate.hallway",
        "state": "cool",
        "attributes": {"friendly_name": "Hallway Thermostat", "temperature": 21, "hvac_mode": "cool"},
    },
    {
        "entity_id": "media_player.living_room_tv",
        "state": "idle",
        "attributes": {"friendly_name": "Living Room TV", "volume_level": 0.3},
    },
)
