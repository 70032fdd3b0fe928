"""
Shared fixtures for unit tests.

This module provides reusable fixtures for testing dispatch components.
"""

import datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from smarthome_dispatch.devices import DeviceAdapter, SimulatedBackend, resolve_service
from smarthome_dispatch.dispatcher import CommandDispatcher
from smarthome_dispatch.models import (
    Command,
    CommandSource,
    CommandTarget,
    CommandType,
    ExecutionRecord,
    Priority,
)
from smarthome_dispatch.retry_policy import RetryPolicy
from smarthome_dispatch.store import InMemoryCommandStore

T0 = datetime.datetime(2026, 1, 15, 12, 0, 0, tzinfo=datetime.UTC)


class FakeClock:
    """Manually advanced clock for deterministic retry and expiry tests."""

    def __init__(self, start: datetime.datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime.datetime:
        return self.now

    def advance(self, seconds: float) -> datetime.datetime:
        self.now += datetime.timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryCommandStore()


@pytest.fixture
def sim_adapter():
    """DeviceAdapter with the deterministic simulated backend."""
    return DeviceAdapter(SimulatedBackend())


@pytest.fixture
def mock_adapter():
    """
    Mock DeviceAdapter for testing transport failures.

    Validation is real; ``invoke`` is an AsyncMock the test configures.
    """
    adapter = MagicMock(spec=DeviceAdapter)
    adapter.resolve_service = MagicMock(side_effect=resolve_service)
    adapter.invoke = AsyncMock()
    return adapter


@pytest.fixture
def mock_broker():
    """
    Mock BrokerClient for testing broker-routed commands.

    Returns a MagicMock with async publish helpers.
    """
    broker = MagicMock()
    broker.publish = AsyncMock()
    broker.send_device_command = AsyncMock()
    broker.is_connected = True
    return broker


@pytest.fixture
def make_dispatcher(store, clock):
    """Build a CommandDispatcher on the shared store and clock."""

    def _make(adapter, broker=None, **kwargs):
        kwargs.setdefault("retry_policy", RetryPolicy(base_delay_seconds=1.0, max_delay_seconds=3600.0))
        return CommandDispatcher(store, adapter, broker, clock=clock, **kwargs)

    return _make


@pytest.fixture
def dispatcher(make_dispatcher, sim_adapter):
    return make_dispatcher(sim_adapter)


@pytest.fixture
def make_command(clock):
    """Factory for commands targeting ``light.kitchen`` by default."""

    def _make(
        device_id="light.kitchen",
        action="on",
        parameters=None,
        priority=Priority.NORMAL,
        scheduled_for=None,
        max_attempts=3,
        depends_on=None,
        topic=None,
        created_at=None,
    ):
        return Command(
            type=CommandType.MANUAL,
            source=CommandSource.USER,
            target=CommandTarget(device_id=device_id, topic=topic),
            user_id="user-1",
            action=action,
            parameters=parameters or {},
            priority=priority,
            execution=ExecutionRecord(max_attempts=max_attempts, scheduled_for=scheduled_for),
            depends_on=depends_on or [],
            created_at=created_at or clock(),
        )

    return _make
