"""
Correlation IDs for tracing a command through dispatch, transport and retries.

Uses contextvars so every log line emitted while an attempt is running
(adapter call, broker publish, state transition) carries the same id.
"""

from __future__ import annotations

import contextvars
import uuid
from collections.abc import Generator
from contextlib import contextmanager

__all__ = [
    "attempt_correlation_id",
    "correlation_context",
    "ensure_correlation_id",
    "generate_correlation_id",
    "get_correlation_id",
    "set_correlation_id",
    "split_correlation_id",
]

_correlation_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "correlation_id",
    default=None,
)


def generate_correlation_id() -> str:
    """Return a fresh UUID4 hex id."""
    return uuid.uuid4().hex


def attempt_correlation_id(command_id: str, attempt: int) -> str:
    """
    Build the correlation id for one dispatch attempt.

    The command id comes first so the 8-char prefix shown in human-readable
    logs matches across all attempts of the same command.
    """
    return f"{command_id}#{attempt}"


def split_correlation_id(correlation_id: str | None) -> tuple[str | None, int | None]:
    """Return ``(command_id, attempt)`` for an attempt id, ``(None, None)`` otherwise."""
    if not correlation_id or "#" not in correlation_id:
        return None, None
    command_id, _, attempt = correlation_id.rpartition("#")
    if not command_id or not attempt.isdigit():
        return None, None
    return command_id, int(attempt)


def get_correlation_id() -> str | None:
    return _correlation_id.get()


def set_correlation_id(correlation_id: str | None) -> None:
    _correlation_id.set(correlation_id)


@contextmanager
def correlation_context(
    correlation_id: str | None = None,
    auto_generate: bool = True,
) -> Generator[str | None]:
    """
    Scope a correlation id, restoring the previous one on exit.

    Args:
        correlation_id: Specific id to use (None to auto-generate)
        auto_generate: Generate a new id if correlation_id is None

    Example:
        with correlation_context(attempt_correlation_id(cmd.id, 2)):
            await dispatcher.attempt(cmd.id)
    """
    previous_id = get_correlation_id()

    if correlation_id is None and auto_generate:
        correlation_id = generate_correlation_id()

    set_correlation_id(correlation_id)
    try:
        yield correlation_id
    finally:
        set_correlation_id(previous_id)


def ensure_correlation_id() -> str:
    """Return the current correlation id, creating one for task entry points."""
    current_id = get_correlation_id()
    if current_id is None:
        current_id = generate_correlation_id()
        set_correlation_id(current_id)
    return current_id
