"""Unit tests for the Prometheus metrics registry."""

from unittest.mock import patch

import pytest
from prometheus_client import REGISTRY

from smarthome_dispatch.exceptions import TransportError
from smarthome_dispatch.metrics import (
    record_adapter_state,
    record_attempt,
    record_broker_state,
    record_queue_depth,
    record_retry_scheduled,
    registry,
    start_metrics_server,
)
from smarthome_dispatch.models import CommandStatus


def _value(name, labels=None):
    return REGISTRY.get_sample_value(name, labels or {}) or 0.0


class TestMetricHelpers:
    """Tests for the record_* helpers."""

    def test_record_attempt_increments(self):
        before = _value("smarthome_dispatch_attempts_total", {"domain": "fan", "outcome": "confirmed"})

        record_attempt("fan", "confirmed")

        after = _value("smarthome_dispatch_attempts_total", {"domain": "fan", "outcome": "confirmed"})
        assert after == before + 1

    def test_record_retry_scheduled(self):
        labels = {"domain": "fan", "error_code": "TIMEOUT"}
        before = _value("smarthome_dispatch_retries_scheduled_total", labels)

        record_retry_scheduled("fan", "TIMEOUT")

        assert _value("smarthome_dispatch_retries_scheduled_total", labels) == before + 1

    def test_queue_depth(self):
        record_queue_depth(7)

        assert _value("smarthome_scheduler_queue_depth") == 7

    def test_state_gauges_are_one_hot(self):
        record_adapter_state("simulated")
        record_broker_state("connecting")

        assert _value("smarthome_device_adapter_state", {"state": "simulated"}) == 1
        assert _value("smarthome_device_adapter_state", {"state": "connected"}) == 0
        assert _value("smarthome_broker_state", {"state": "connecting"}) == 1
        assert _value("smarthome_broker_state", {"state": "disconnected"}) == 0


class TestDispatchMetrics:
    """Tests for metrics emitted by the dispatcher."""

    @pytest.mark.asyncio
    async def test_retry_counts_are_recorded(self, make_dispatcher, mock_adapter, make_command):
        labels = {"domain": "light", "error_code": "TRANSPORT_ERROR"}
        before = _value("smarthome_dispatch_retries_scheduled_total", labels)
        mock_adapter.invoke.side_effect = TransportError("down")
        dispatcher = make_dispatcher(mock_adapter)
        command_id = await dispatcher.submit(make_command())

        outcome = await dispatcher.attempt(command_id)

        assert outcome.status == CommandStatus.PENDING
        assert _value("smarthome_dispatch_retries_scheduled_total", labels) == before + 1


class TestMetricsServer:
    """Tests for start_metrics_server()."""

    def test_start_is_idempotent(self):
        with (
            patch.dict(registry._server_state, {"started": False}),
            patch("smarthome_dispatch.metrics.registry.start_http_server") as mock_start,
        ):
            start_metrics_server(9400)
            start_metrics_server(9400)

        mock_start.assert_called_once_with(9400)
