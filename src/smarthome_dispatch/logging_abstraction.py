"""Logging for the dispatch engine.

Every line can be written twice: as a JSON document for log shippers and as
a human-readable line for the console. Both carry the active correlation id.
While a dispatch attempt runs, that id is ``<command_id>#<attempt>``, and the
JSON output splits it back into ``command_id`` and ``attempt`` fields so
attempts of one command can be queried without parsing messages.

Call sites pass structured context with ``extra=``. Well-known trace keys
(``TRACE_FIELDS``) become top-level JSON fields; everything else is nested
under ``context``.
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import override

__all__ = [
    "TRACE_FIELDS",
    "DispatchLogger",
    "HumanReadableFormatter",
    "JSONFormatter",
    "get_logger",
]

TRACE_FIELDS: tuple[str, ...] = ("command_id", "batch_id", "device_id", "topic", "error_code")


def _record_context(record: logging.LogRecord) -> dict[str, object]:
    extra_data = getattr(record, "extra_data", None)
    if isinstance(extra_data, Mapping):
        return {str(k): v for k, v in extra_data.items()}
    return {}


def _split_trace(context: Mapping[str, object]) -> tuple[dict[str, object], dict[str, object]]:
    trace = {k: context[k] for k in TRACE_FIELDS if context.get(k) is not None}
    rest = {k: v for k, v in context.items() if k not in trace}
    return trace, rest


def _short_tag(correlation_id: str | None) -> str:
    from smarthome_dispatch.correlation import split_correlation_id

    if not correlation_id:
        return "[--------]"
    command_id, attempt = split_correlation_id(correlation_id)
    if command_id is not None:
        return f"[{command_id[:8]}#{attempt}]"
    return f"[{correlation_id[:8]}]"


class JSONFormatter(logging.Formatter):
    """One JSON object per record, with trace fields promoted to the top level."""

    @override
    def format(self, record: logging.LogRecord) -> str:
        from smarthome_dispatch.correlation import get_correlation_id, split_correlation_id

        correlation_id = get_correlation_id()
        log_data: dict[str, object] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
            "message": record.getMessage(),
            "correlation_id": correlation_id,
        }

        command_id, attempt = split_correlation_id(correlation_id)
        if command_id is not None:
            log_data["command_id"] = command_id
            log_data["attempt"] = attempt

        trace, context = _split_trace(_record_context(record))
        # explicit context wins over the id taken from the correlation
        log_data.update(trace)
        if context:
            log_data["context"] = context

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            log_data["stack_info"] = self.formatStack(record.stack_info)

        return json.dumps(log_data, default=str)


class HumanReadableFormatter(logging.Formatter):
    """``timestamp LEVEL [module:line] [cmd#n] > message | key=value ...``"""

    def __init__(self) -> None:
        super().__init__(
            fmt="%(asctime)s.%(msecs)03d %(levelname)s [%(module)s:%(lineno)d] %(correlation_tag)s > %(message)s",
            datefmt="%m/%d/%y %H:%M:%S",
        )

    @override
    def format(self, record: logging.LogRecord) -> str:
        from smarthome_dispatch.const import SMARTHOME_LOG_CORRELATION_ENABLED
        from smarthome_dispatch.correlation import get_correlation_id

        record.correlation_tag = _short_tag(get_correlation_id() if SMARTHOME_LOG_CORRELATION_ENABLED else None)
        formatted = super().format(record)

        trace, context = _split_trace(_record_context(record))
        pairs = [*trace.items(), *context.items()]
        if pairs:
            formatted = f"{formatted} | " + " | ".join(f"{k}={v}" for k, v in pairs)
        return formatted


def _file_handler(path: str | Path) -> logging.Handler | None:
    try:
        file_path = Path(path)
        file_path.parent.mkdir(parents=True, exist_ok=True)
        return logging.FileHandler(file_path, mode="a")
    except OSError as e:
        print(f"Warning: cannot open log file {path}: {e}", file=sys.stderr)
        return None


def _human_handler(output: str | None) -> logging.Handler:
    match output or "stdout":
        case "stdout":
            return logging.StreamHandler(sys.stdout)
        case "stderr":
            return logging.StreamHandler(sys.stderr)
        case path:
            return _file_handler(path) or logging.StreamHandler(sys.stdout)


class DispatchLogger:
    """Wrapper around a stdlib logger that turns ``extra=`` into structured context.

    Handlers are attached once per logger name, so repeated ``get_logger``
    calls for a module share output.
    """

    def __init__(
        self,
        name: str,
        log_format: str = "human",
        json_file: str | Path | None = None,
        human_output: str | None = "stdout",
    ) -> None:
        """
        Args:
            name: Logger name (usually ``__name__``)
            log_format: "json", "human" or "both"
            json_file: Destination of JSON lines; JSON output is skipped without one
            human_output: "stdout", "stderr" or a file path

        """
        from smarthome_dispatch.const import SMARTHOME_DEBUG

        self.name: str = name
        self.log_format: str = log_format
        self.logger: logging.Logger = logging.getLogger(name)
        self.logger.setLevel(logging.DEBUG if SMARTHOME_DEBUG else logging.INFO)

        if not self.logger.handlers:
            for handler in self._build_handlers(json_file, human_output):
                handler.setLevel(self.logger.level)
                self.logger.addHandler(handler)

    def _build_handlers(self, json_file: str | Path | None, human_output: str | None) -> list[logging.Handler]:
        handlers: list[logging.Handler] = []
        if self.log_format in ("json", "both") and json_file:
            json_handler = _file_handler(json_file)
            if json_handler is not None:
                json_handler.setFormatter(JSONFormatter())
                handlers.append(json_handler)
        if self.log_format in ("human", "both"):
            human_handler = _human_handler(human_output)
            human_handler.setFormatter(HumanReadableFormatter())
            handlers.append(human_handler)
        return handlers

    def _emit(
        self,
        level: int,
        msg: str,
        *args: object,
        extra: Mapping[str, object] | None = None,
        exc_info: bool = False,
    ) -> None:
        payload = {"extra_data": dict(extra)} if extra else None
        # stacklevel points module:line at the caller, not this wrapper
        self.logger.log(level, msg, *args, extra=payload, exc_info=exc_info, stacklevel=3)

    def debug(self, msg: str, *args: object, extra: Mapping[str, object] | None = None) -> None:
        self._emit(logging.DEBUG, msg, *args, extra=extra)

    def info(self, msg: str, *args: object, extra: Mapping[str, object] | None = None) -> None:
        self._emit(logging.INFO, msg, *args, extra=extra)

    def warning(self, msg: str, *args: object, extra: Mapping[str, object] | None = None) -> None:
        self._emit(logging.WARNING, msg, *args, extra=extra)

    def error(self, msg: str, *args: object, extra: Mapping[str, object] | None = None) -> None:
        self._emit(logging.ERROR, msg, *args, extra=extra)

    def critical(self, msg: str, *args: object, extra: Mapping[str, object] | None = None) -> None:
        self._emit(logging.CRITICAL, msg, *args, extra=extra)

    def exception(self, msg: str, *args: object, extra: Mapping[str, object] | None = None) -> None:
        """Log at ERROR with the active exception's traceback."""
        self._emit(logging.ERROR, msg, *args, extra=extra, exc_info=True)

    def set_level(self, level: int) -> None:
        self.logger.setLevel(level)

    @property
    def handlers(self) -> list[logging.Handler]:
        return self.logger.handlers


def get_logger(
    name: str,
    log_format: str | None = None,
    json_file: str | Path | None = None,
    human_output: str | None = None,
) -> DispatchLogger:
    """Return a DispatchLogger, defaulting unset options to the SMARTHOME_LOG_* environment."""
    from smarthome_dispatch.const import (
        SMARTHOME_LOG_FORMAT,
        SMARTHOME_LOG_HUMAN_OUTPUT,
        SMARTHOME_LOG_JSON_FILE,
    )

    return DispatchLogger(
        name=name,
        log_format=log_format or SMARTHOME_LOG_FORMAT,
        json_file=json_file or SMARTHOME_LOG_JSON_FILE,
        human_output=human_output or SMARTHOME_LOG_HUMAN_OUTPUT,
    )
