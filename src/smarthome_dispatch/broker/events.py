"""Typed events emitted by the broker client and the bus that delivers them.

Subscribers register for an event class; a handler registered for a base
class also receives its subclasses. Handlers may be plain functions or
coroutines. A failing handler is logged and does not affect the others.
"""

from __future__ import annotations

import asyncio
import datetime
import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from smarthome_dispatch.logging_abstraction import get_logger
from smarthome_dispatch.models import utcnow

__all__ = [
    "BrokerConnected",
    "BrokerDisconnected",
    "BrokerEvent",
    "DeviceUpdate",
    "EventBus",
    "GenericMessage",
    "InboundMessage",
    "SensorData",
]

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True, kw_only=True)
class BrokerEvent:
    received_at: datetime.datetime = field(default_factory=utcnow)


@dataclass(frozen=True, slots=True, kw_only=True)
class InboundMessage(BrokerEvent):
    """Base for every event built from a received broker message."""

    topic: str


@dataclass(frozen=True, slots=True, kw_only=True)
class DeviceUpdate(InboundMessage):
    entity_id: str
    data: Any


@dataclass(frozen=True, slots=True, kw_only=True)
class SensorData(InboundMessage):
    sensor_id: str
    data: Any


@dataclass(frozen=True, slots=True, kw_only=True)
class GenericMessage(InboundMessage):
    """Unclassified topic, or a payload that could not be decoded (``payload`` is then raw bytes)."""

    payload: Any
    decoded: bool = True


@dataclass(frozen=True, slots=True, kw_only=True)
class BrokerConnected(BrokerEvent):
    host: str
    port: int
    reconnect: bool = False


@dataclass(frozen=True, slots=True, kw_only=True)
class BrokerDisconnected(BrokerEvent):
    reason: str


type EventHandler = Callable[[Any], Awaitable[None] | None]


class EventBus:
    """In-process publish/subscribe keyed on event type."""

    lp: str = "EventBus:"

    def __init__(self) -> None:
        self._handlers: dict[type[BrokerEvent], list[EventHandler]] = {}

    def subscribe[E: BrokerEvent](
        self,
        event_type: type[E],
        handler: Callable[[E], Awaitable[None] | None],
    ) -> Callable[[], None]:
        """Register ``handler`` for ``event_type``; returns a function that unregisters it."""
        handlers = self._handlers.setdefault(event_type, [])
        handlers.append(handler)

        def _unsubscribe() -> None:
            if handler in handlers:
                handlers.remove(handler)

        return _unsubscribe

    def handler_count(self, event_type: type[BrokerEvent] | None = None) -> int:
        if event_type is None:
            return sum(len(h) for h in self._handlers.values())
        return len(self._handlers.get(event_type, []))

    def _handlers_for(self, event: BrokerEvent) -> list[EventHandler]:
        matched: list[EventHandler] = []
        for event_type, handlers in self._handlers.items():
            if isinstance(event, event_type):
                matched.extend(handlers)
        return matched

    async def publish(self, event: BrokerEvent) -> int:
        """Deliver ``event`` to every matching handler in registration order.

        Returns:
            Number of handlers that completed without raising

        """
        delivered = 0
        for handler in self._handlers_for(event):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(
                    "%s handler failed for %s",
                    self.lp,
                    type(event).__name__,
                    extra={"handler": getattr(handler, "__qualname__", repr(handler)), "error": str(e)},
                )
            else:
                delivered += 1
        return delivered
