"""Allow-list validation that maps a logical action onto a device API service.

Every dispatch path goes through ``resolve_service`` before any transport call,
so an unsupported action or a malformed climate request never reaches a device.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from smarthome_dispatch.exceptions import MissingParameter, UnsupportedAction

__all__ = [
    "CLIMATE_SETTINGS",
    "DOMAIN_ACTIONS",
    "ServiceCall",
    "resolve_service",
]

_MEDIA_PLAYER_SERVICES = (
    "turn_on",
    "turn_off",
    "toggle",
    "play_media",
    "media_play",
    "media_pause",
    "media_stop",
    "media_next_track",
    "media_previous_track",
    "volume_up",
    "volume_down",
    "volume_mute",
)

# domain -> {action: service}
DOMAIN_ACTIONS: dict[str, dict[str, str]] = {
    "light": {"on": "turn_on", "set": "turn_on", "off": "turn_off", "toggle": "toggle"},
    "switch": {"on": "turn_on", "off": "turn_off", "toggle": "toggle"},
    "media_player": {name: name for name in _MEDIA_PLAYER_SERVICES},
    "scene": {"activate": "turn_on", "on": "turn_on"},
    "automation": {"trigger": "trigger"},
}

# climate parameter -> service; a "set" carries exactly one of these
CLIMATE_SETTINGS: dict[str, str] = {
    "temperature": "set_temperature",
    "hvac_mode": "set_hvac_mode",
    "fan_mode": "set_fan_mode",
}


@dataclass(frozen=True, slots=True)
class ServiceCall:
    """A validated device API call: ``POST /api/services/{domain}/{service}`` with ``data``."""

    domain: str
    service: str
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def path(self) -> str:
        return f"/api/services/{self.domain}/{self.service}"


def _resolve_climate(action: str, parameters: Mapping[str, Any]) -> str:
    if action in CLIMATE_SETTINGS.values():
        # explicit service name: only its own parameter is required
        param = next(p for p, s in CLIMATE_SETTINGS.items() if s == action)
        if parameters.get(param) is None:
            raise MissingParameter("climate", [param])
        return action
    if action != "set":
        raise UnsupportedAction("climate", action, ["set", *CLIMATE_SETTINGS.values()])
    provided = [p for p in CLIMATE_SETTINGS if parameters.get(p) is not None]
    if len(provided) != 1:
        raise MissingParameter("climate", CLIMATE_SETTINGS, provided)
    return CLIMATE_SETTINGS[provided[0]]


def resolve_service(
    domain: str,
    action: str,
    entity_id: str,
    parameters: Mapping[str, Any] | None = None,
) -> ServiceCall:
    """Validate ``action`` for ``domain`` and build the service call.

    Raises:
        UnsupportedAction: Unknown domain, or action outside the domain allow-list
        MissingParameter: A climate request without exactly one setting

    """
    parameters = dict(parameters or {})
    if domain == "climate":
        service = _resolve_climate(action, parameters)
    else:
        actions = DOMAIN_ACTIONS.get(domain)
        if actions is None:
            raise UnsupportedAction(domain, action)
        service = actions.get(action)
        if service is None:
            raise UnsupportedAction(domain, action, actions)

    parameters.pop("entity_id", None)
    return ServiceCall(domain=domain, service=service, data={"entity_id": entity_id, **parameters})
