"""Exception hierarchy for command dispatch.

Validation errors (InvalidDependency, UnsupportedAction, MissingParameter) are
raised to the caller immediately and never retried. Transient errors
(TransportError, DispatchTimeout) are absorbed by the dispatcher into the
command's own state machine. NotConnected is raised by the broker client only.
"""

from __future__ import annotations

from collections.abc import Iterable

__all__ = [
    "CommandNotFound",
    "CommandNotReady",
    "DispatchError",
    "DispatchTimeout",
    "InvalidDependency",
    "MissingParameter",
    "NotConnected",
    "TransportError",
    "UnsupportedAction",
]


class DispatchError(Exception):
    """Base class for every error raised by the dispatch engine.

    Attributes:
        error_code: Stable code written into ``response.error_code``

    """

    error_code: str = "DISPATCH_ERROR"


class InvalidDependency(DispatchError):
    """A submitted command lists a ``depends_on`` id the store does not know.

    Attributes:
        command_id: Id of the command being submitted
        missing: Dependency ids that could not be resolved

    """

    error_code = "INVALID_DEPENDENCY"

    def __init__(self, command_id: str, missing: Iterable[str]) -> None:
        self.command_id: str = command_id
        self.missing: list[str] = list(missing)
        super().__init__(f"Command {command_id} depends on unknown command(s): {', '.join(self.missing)}")


class UnsupportedAction(DispatchError):
    """The action is not in the allow-list for the domain (or the domain is unknown).

    Attributes:
        domain: Device domain (light, switch, climate, ...)
        action: Requested action
        allowed: Actions accepted for the domain (empty for unknown domains)

    """

    error_code = "UNSUPPORTED_ACTION"

    def __init__(self, domain: str, action: str, allowed: Iterable[str] = ()) -> None:
        self.domain: str = domain
        self.action: str = action
        self.allowed: list[str] = sorted(allowed)
        if self.allowed:
            msg = f"Action '{action}' is not supported for domain '{domain}' (allowed: {', '.join(self.allowed)})"
        else:
            msg = f"Domain '{domain}' is not supported (action: '{action}')"
        super().__init__(msg)


class MissingParameter(DispatchError):
    """A required parameter is absent, or mutually exclusive parameters were combined.

    Attributes:
        domain: Device domain
        expected: Parameter names of which exactly one is required
        provided: Matching parameter names that were actually provided

    """

    error_code = "MISSING_PARAMETER"

    def __init__(self, domain: str, expected: Iterable[str], provided: Iterable[str] = ()) -> None:
        self.domain: str = domain
        self.expected: list[str] = list(expected)
        self.provided: list[str] = list(provided)
        super().__init__(
            f"Domain '{domain}' requires exactly one of: {', '.join(self.expected)} "
            f"(provided: {', '.join(self.provided) or 'none'})",
        )


class CommandNotFound(DispatchError):
    """No command with the given id exists in the store."""

    error_code = "COMMAND_NOT_FOUND"

    def __init__(self, command_id: str) -> None:
        self.command_id: str = command_id
        super().__init__(f"Command not found: {command_id}")


class CommandNotReady(DispatchError):
    """``attempt()`` preconditions are not met; nothing was dispatched.

    Raised when:
    - The command is not ``pending`` (already processing, or terminal)
    - ``scheduled_for`` or ``retry_after`` is still in the future
    - A ``depends_on`` prerequisite is not yet ``confirmed``

    Attributes:
        command_id: Command id
        reason: Specific precondition that failed
        status: Command status when the check ran

    """

    error_code = "COMMAND_NOT_READY"

    def __init__(self, command_id: str, reason: str, status: str = "unknown") -> None:
        self.command_id: str = command_id
        self.reason: str = reason
        self.status: str = status
        super().__init__(f"Command {command_id} not ready: {reason} (status: {status})")


class TransportError(DispatchError):
    """The device API or broker call failed (connectivity, HTTP status, broker error).

    Attributes:
        reason: Description of the underlying failure
        http_status: HTTP status code when the backend answered with an error

    """

    error_code = "TRANSPORT_ERROR"

    def __init__(self, reason: str, http_status: int | None = None) -> None:
        self.reason: str = reason
        self.http_status: int | None = http_status
        super().__init__(f"Transport error: {reason}")


class DispatchTimeout(TransportError):
    """A transport call did not complete within the configured timeout.

    Attributes:
        timeout_seconds: Timeout that was exceeded

    """

    error_code = "TIMEOUT"

    def __init__(self, timeout_seconds: float, operation: str = "transport call") -> None:
        self.timeout_seconds: float = timeout_seconds
        self.operation: str = operation
        super().__init__(f"{operation} timed out after {timeout_seconds}s")


class NotConnected(DispatchError):
    """The broker client was asked to publish while disconnected.

    Messages are never buffered; the caller decides whether to retry.

    Attributes:
        topic: Topic the caller tried to publish to
        state: Broker connection state at the time of the call

    """

    error_code = "NOT_CONNECTED"

    def __init__(self, topic: str, state: str = "disconnected") -> None:
        self.topic: str = topic
        self.state: str = state
        super().__init__(f"Broker not connected (state: {state}), cannot publish to {topic}")
