"""Process configuration for the dispatch engine.

``const`` holds import-time defaults; ``DispatchConfig.from_env()`` re-reads the
environment so values loaded later from an env file (``--env``) take effect.
A YAML file can override any field by name.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any, cast

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from smarthome_dispatch.const import (
    BROKER_CONN_DELAY,
    BROKER_PRESENCE_TOPIC,
    DEFAULT_SUBSCRIPTIONS,
    DEVICE_API_TIMEOUT,
    DEVICE_API_TOKEN,
    DEVICE_API_URL,
    DISPATCH_ATTEMPT_TIMEOUT,
    DISPATCH_MAX_ATTEMPTS,
    DISPATCH_RETRY_BASE_DELAY,
    DISPATCH_RETRY_MAX_DELAY,
    DISPATCH_SCHEDULE_EXPIRY,
    MQTT_CLIENT_ID,
    MQTT_HOST,
    MQTT_PASS,
    MQTT_PORT,
    MQTT_USER,
    PLACEHOLDER_TOKEN,
    SCHEDULER_TICK_INTERVAL,
    SCHEDULER_WORKERS,
    SMARTHOME_METRICS_PORT,
)
from smarthome_dispatch.logging_abstraction import get_logger

__all__ = ["DispatchConfig", "load_config_file"]

logger = get_logger(__name__)

# field name -> environment variable
_ENV_FIELDS: dict[str, str] = {
    "device_api_url": "SMARTHOME_DEVICE_API_URL",
    "device_api_token": "SMARTHOME_DEVICE_API_TOKEN",
    "device_api_timeout": "SMARTHOME_DEVICE_API_TIMEOUT",
    "mqtt_host": "SMARTHOME_MQTT_HOST",
    "mqtt_port": "SMARTHOME_MQTT_PORT",
    "mqtt_user": "SMARTHOME_MQTT_USER",
    "mqtt_pass": "SMARTHOME_MQTT_PASS",
    "mqtt_client_id": "SMARTHOME_MQTT_CLIENT_ID",
    "broker_conn_delay": "SMARTHOME_MQTT_CONN_DELAY",
    "presence_topic": "SMARTHOME_PRESENCE_TOPIC",
    "max_attempts": "SMARTHOME_MAX_ATTEMPTS",
    "retry_base_delay": "SMARTHOME_RETRY_BASE_DELAY",
    "retry_max_delay": "SMARTHOME_RETRY_MAX_DELAY",
    "attempt_timeout": "SMARTHOME_ATTEMPT_TIMEOUT",
    "schedule_expiry": "SMARTHOME_SCHEDULE_EXPIRY",
    "tick_interval": "SMARTHOME_TICK_INTERVAL",
    "workers": "SMARTHOME_WORKERS",
    "metrics_port": "SMARTHOME_METRICS_PORT",
}


class DispatchConfig(BaseModel):
    """Settings passed explicitly to each service at construction."""

    model_config = ConfigDict(extra="ignore")

    device_api_url: str | None = DEVICE_API_URL or None
    device_api_token: str | None = DEVICE_API_TOKEN
    device_api_timeout: float = Field(default=DEVICE_API_TIMEOUT, gt=0)

    mqtt_host: str = MQTT_HOST
    mqtt_port: int = Field(default=MQTT_PORT, gt=0, lt=65536)
    mqtt_user: str | None = MQTT_USER
    mqtt_pass: str | None = MQTT_PASS
    mqtt_client_id: str = MQTT_CLIENT_ID
    broker_conn_delay: float = Field(default=BROKER_CONN_DELAY, gt=0)
    presence_topic: str = BROKER_PRESENCE_TOPIC
    subscriptions: list[str] = Field(default_factory=lambda: list(DEFAULT_SUBSCRIPTIONS))

    max_attempts: int = Field(default=DISPATCH_MAX_ATTEMPTS, ge=1)
    retry_base_delay: float = Field(default=DISPATCH_RETRY_BASE_DELAY, gt=0)
    retry_max_delay: float = Field(default=DISPATCH_RETRY_MAX_DELAY, gt=0)
    attempt_timeout: float = Field(default=DISPATCH_ATTEMPT_TIMEOUT, gt=0)
    schedule_expiry: float = Field(default=DISPATCH_SCHEDULE_EXPIRY, ge=0)

    tick_interval: float = Field(default=SCHEDULER_TICK_INTERVAL, gt=0)
    workers: int = Field(default=SCHEDULER_WORKERS, ge=1)

    metrics_port: int = Field(default=SMARTHOME_METRICS_PORT, ge=0)

    @property
    def simulated(self) -> bool:
        """True when the device API is not fully configured (no URL or no real token)."""
        return not self.device_api_url or not self.device_api_token or self.device_api_token == PLACEHOLDER_TOKEN

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> DispatchConfig:
        """Build a config from SMARTHOME_* environment variables; unset or empty keep defaults."""
        environ = os.environ if environ is None else environ
        values: dict[str, Any] = {}
        for field_name, env_name in _ENV_FIELDS.items():
            raw = environ.get(env_name)
            if raw:
                values[field_name] = raw
        subs = environ.get("SMARTHOME_SUBSCRIPTIONS")
        if subs:
            values["subscriptions"] = [x.strip() for x in subs.split(",") if x.strip()]
        if "device_api_url" in values:
            values["device_api_url"] = values["device_api_url"].rstrip("/")
        return cls.model_validate(values)

    def merged(self, overrides: Mapping[str, object]) -> DispatchConfig:
        """Return a copy with ``overrides`` applied and re-validated."""
        data = self.model_dump()
        data.update(overrides)
        return DispatchConfig.model_validate(data)


def load_config_file(config_file: Path, base: DispatchConfig | None = None) -> DispatchConfig:
    """Apply a YAML config file on top of ``base`` (environment config by default).

    Unknown keys are ignored. A root that is not a mapping leaves ``base`` unchanged.

    Raises:
        OSError: The file cannot be read
        yaml.YAMLError: The file is not valid YAML
        pydantic.ValidationError: A value has the wrong type or is out of range

    """
    base = base or DispatchConfig.from_env()
    logger.debug("Parsing config file: %s", config_file)

    try:
        with config_file.open() as f:
            raw_config_obj = cast("Mapping[str, object] | None", yaml.safe_load(f))
    except (OSError, yaml.YAMLError):
        logger.exception("Failed to parse config file: %s", config_file)
        raise

    if not isinstance(raw_config_obj, Mapping):
        logger.warning("Invalid config structure: expected mapping at root", extra={"path": str(config_file)})
        return base

    overrides = {str(k): v for k, v in raw_config_obj.items()}
    if isinstance(overrides.get("device_api_url"), str):
        overrides["device_api_url"] = cast("str", overrides["device_api_url"]).rstrip("/")
    try:
        config = base.merged(overrides)
    except ValidationError:
        logger.exception("Invalid value in config file: %s", config_file)
        raise

    logger.info(
        "Configuration loaded",
        extra={"config_path": str(config_file), "keys": sorted(overrides)},
    )
    return config
