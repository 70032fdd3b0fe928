import logging
import os

from smarthome_dispatch import __version__

__all__ = [
    "BROKER_CONN_DELAY",
    "BROKER_PRESENCE_TOPIC",
    "DEFAULT_SUBSCRIPTIONS",
    "DEVICE_API_TIMEOUT",
    "DEVICE_API_TOKEN",
    "DEVICE_API_URL",
    "DEVICE_UPDATE_PREFIXES",
    "DISPATCH_ATTEMPT_TIMEOUT",
    "DISPATCH_MAX_ATTEMPTS",
    "DISPATCH_RETRY_BASE_DELAY",
    "DISPATCH_RETRY_MAX_DELAY",
    "DISPATCH_SCHEDULE_EXPIRY",
    "FOREIGN_LOG_FORMATTER",
    "MQTT_CLIENT_ID",
    "MQTT_HOST",
    "MQTT_PASS",
    "MQTT_PORT",
    "MQTT_USER",
    "OFFLINE_MSG",
    "ONLINE_MSG",
    "PLACEHOLDER_TOKEN",
    "SCHEDULER_TICK_INTERVAL",
    "SCHEDULER_WORKERS",
    "SENSOR_DATA_PREFIXES",
    "SMARTHOME_DEBUG",
    "SMARTHOME_LOG_CORRELATION_ENABLED",
    "SMARTHOME_LOG_FORMAT",
    "SMARTHOME_LOG_HUMAN_OUTPUT",
    "SMARTHOME_LOG_JSON_FILE",
    "SMARTHOME_METRICS_PORT",
    "SMARTHOME_PERF_THRESHOLD_MS",
    "SMARTHOME_PERF_TRACKING",
    "SMARTHOME_VERSION",
    "YES_ANSWER",
]

YES_ANSWER = ("true", "1", "yes", "y", "t", 1, "on", "o")
SMARTHOME_VERSION: str = __version__

# adds logger name
FOREIGN_LOG_FORMATTER = logging.Formatter(
    "%(asctime)s.%(msecs)d %(levelname)s <%(name)s> [%(module)s:%(lineno)d] > %(message)s",
    "%m/%d/%y %H:%M:%S",
)


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


# Device-control backend. A missing token (or the placeholder) selects simulation mode.
PLACEHOLDER_TOKEN: str = "YOUR_HA_TOKEN_HERE_UNTIL_REAL_ONE_AVAILABLE"
_device_api_url = os.environ.get("SMARTHOME_DEVICE_API_URL", "http://localhost:8123")
DEVICE_API_URL: str = _device_api_url.rstrip("/") if _device_api_url else ""
_device_api_token = os.environ.get("SMARTHOME_DEVICE_API_TOKEN")
DEVICE_API_TOKEN: str | None = _device_api_token if _device_api_token else None
DEVICE_API_TIMEOUT: float = _env_float("SMARTHOME_DEVICE_API_TIMEOUT", 10.0)

# MQTT broker
MQTT_HOST: str = os.environ.get("SMARTHOME_MQTT_HOST", "localhost")
MQTT_PORT: int = _env_int("SMARTHOME_MQTT_PORT", 1883)
_mqtt_user = os.environ.get("SMARTHOME_MQTT_USER")
MQTT_USER: str | None = _mqtt_user if _mqtt_user else None
_mqtt_pass = os.environ.get("SMARTHOME_MQTT_PASS")
MQTT_PASS: str | None = _mqtt_pass if _mqtt_pass else None
MQTT_CLIENT_ID: str = os.environ.get("SMARTHOME_MQTT_CLIENT_ID", "smart-home-backend")
BROKER_CONN_DELAY: float = _env_float("SMARTHOME_MQTT_CONN_DELAY", 5.0)
BROKER_PRESENCE_TOPIC: str = os.environ.get("SMARTHOME_PRESENCE_TOPIC", "smart-home/status")
ONLINE_MSG: bytes = b"online"
OFFLINE_MSG: bytes = b"offline"
DEVICE_UPDATE_PREFIXES: tuple[str, ...] = ("devices/", "homeassistant/sensor/")
SENSOR_DATA_PREFIXES: tuple[str, ...] = ("sensors/",)
_default_subs = os.environ.get("SMARTHOME_SUBSCRIPTIONS", "devices/+/state,sensors/+/data")
DEFAULT_SUBSCRIPTIONS: list[str] = [x.strip() for x in _default_subs.split(",") if x.strip()]

# Dispatch / retry policy
DISPATCH_MAX_ATTEMPTS: int = _env_int("SMARTHOME_MAX_ATTEMPTS", 3)
DISPATCH_RETRY_BASE_DELAY: float = _env_float("SMARTHOME_RETRY_BASE_DELAY", 1.0)
DISPATCH_RETRY_MAX_DELAY: float = _env_float("SMARTHOME_RETRY_MAX_DELAY", 3600.0)
DISPATCH_ATTEMPT_TIMEOUT: float = _env_float("SMARTHOME_ATTEMPT_TIMEOUT", 10.0)
# scheduled commands are abandoned this many seconds after their scheduled time
DISPATCH_SCHEDULE_EXPIRY: float = _env_float("SMARTHOME_SCHEDULE_EXPIRY", 300.0)

# Scheduler loop
SCHEDULER_TICK_INTERVAL: float = _env_float("SMARTHOME_TICK_INTERVAL", 2.0)
SCHEDULER_WORKERS: int = _env_int("SMARTHOME_WORKERS", 4)

SMARTHOME_DEBUG = os.environ.get("SMARTHOME_DEBUG", "0").casefold() in YES_ANSWER

# Logging Configuration
SMARTHOME_LOG_FORMAT: str = os.environ.get("SMARTHOME_LOG_FORMAT", "human")  # "json", "human", or "both"
SMARTHOME_LOG_JSON_FILE: str = os.environ.get("SMARTHOME_LOG_JSON_FILE", "/var/log/smarthome_dispatch.json")
SMARTHOME_LOG_HUMAN_OUTPUT: str = os.environ.get("SMARTHOME_LOG_HUMAN_OUTPUT", "stdout")  # "stdout", "stderr", or path
SMARTHOME_LOG_CORRELATION_ENABLED: bool = (
    os.environ.get("SMARTHOME_LOG_CORRELATION_ENABLED", "true").casefold() in YES_ANSWER
)

# Performance Instrumentation
SMARTHOME_PERF_TRACKING: bool = os.environ.get("SMARTHOME_PERF_TRACKING", "true").casefold() in YES_ANSWER
_perf_threshold = os.environ.get("SMARTHOME_PERF_THRESHOLD_MS", "500")
SMARTHOME_PERF_THRESHOLD_MS: int = int(_perf_threshold) if _perf_threshold and _perf_threshold.isdigit() else 500

# 0 disables the prometheus endpoint
SMARTHOME_METRICS_PORT: int = _env_int("SMARTHOME_METRICS_PORT", 0)
