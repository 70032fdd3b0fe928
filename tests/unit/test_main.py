"""Unit tests for main.py module.

Tests CLI parsing, layered configuration, and the DispatchService startup and
shutdown flow.
"""

import asyncio
import signal
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from smarthome_dispatch.config import DispatchConfig
from smarthome_dispatch.main import DispatchService, build_config, main, parse_cli


@pytest.fixture
def sim_config():
    """Config that selects the simulated device backend."""
    return DispatchConfig(
        device_api_url=None,
        device_api_token=None,
        subscriptions=["devices/+/state", "sensors/+/data"],
    )


@pytest.fixture
def service(sim_config):
    """DispatchService with broker and scheduler loops replaced by mocks."""
    svc = DispatchService(sim_config)
    svc.broker.start = AsyncMock()
    svc.broker.subscribe = AsyncMock(return_value=False)
    svc.broker.disconnect = AsyncMock()
    svc.scheduler.start = AsyncMock()
    svc.scheduler.stop = AsyncMock()
    return svc


class TestParseCli:
    """Tests for parse_cli()."""

    def test_defaults(self):
        args = parse_cli([])

        assert args.debug is False
        assert args.env is None
        assert args.config is None
        assert args.metrics_port is None

    def test_all_flags(self):
        args = parse_cli(["-D", "--env", "/tmp/dispatch.env", "--config", "/tmp/d.yaml", "--metrics-port", "9400"])

        assert args.debug is True
        assert args.env == Path("/tmp/dispatch.env")
        assert args.config == Path("/tmp/d.yaml")
        assert args.metrics_port == 9400


class TestBuildConfig:
    """Tests for build_config() layering."""

    def test_env_file_then_yaml_then_cli(self, tmp_path, monkeypatch):
        # registered so the variables loaded from the env file are removed afterwards
        monkeypatch.setenv("SMARTHOME_MAX_ATTEMPTS", "1")
        monkeypatch.setenv("SMARTHOME_WORKERS", "1")
        env_file = tmp_path / "dispatch.env"
        env_file.write_text("SMARTHOME_MAX_ATTEMPTS=4\nSMARTHOME_WORKERS=8\n")
        yaml_file = tmp_path / "dispatch.yaml"
        yaml_file.write_text("workers: 2\nmetrics_port: 9100\n")

        config = build_config(
            parse_cli(["--env", str(env_file), "--config", str(yaml_file), "--metrics-port", "9200"]),
        )

        assert config.max_attempts == 4
        assert config.workers == 2
        assert config.metrics_port == 9200

    def test_missing_env_file_is_not_fatal(self, tmp_path):
        config = build_config(parse_cli(["--env", str(tmp_path / "nope.env")]))

        assert isinstance(config, DispatchConfig)


class TestDispatchService:
    """Tests for DispatchService lifecycle."""

    def test_wires_services_together(self, service):
        assert service.adapter.simulated is True
        assert service.dispatcher.store is service.store
        assert service.dispatcher.broker is service.broker
        assert service.scheduler.dispatcher is service.dispatcher
        assert service.event_bus.handler_count() == 5

    @pytest.mark.asyncio
    async def test_start_subscribes_and_stops(self, service):
        task = asyncio.create_task(service.start())
        await asyncio.sleep(0.01)

        service.request_stop(signal.SIGTERM)
        await asyncio.wait_for(task, timeout=1)

        subscribed = [c.args[0] for c in service.broker.subscribe.await_args_list]
        assert subscribed == ["devices/+/state", "sensors/+/data"]
        service.broker.start.assert_awaited_once()
        service.scheduler.start.assert_awaited_once()
        service.scheduler.stop.assert_awaited_once()
        service.broker.disconnect.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_start_starts_metrics_server(self, service):
        service.config = service.config.merged({"metrics_port": 9400})

        with patch("smarthome_dispatch.main.start_metrics_server") as mock_metrics:
            task = asyncio.create_task(service.start())
            await asyncio.sleep(0.01)
            service.request_stop()
            await asyncio.wait_for(task, timeout=1)

        mock_metrics.assert_called_once_with(9400)


class TestMain:
    """Tests for the main() entry point."""

    def test_invalid_config_returns_error(self):
        with patch("smarthome_dispatch.main.build_config", side_effect=ValueError("bad value")):
            assert main([]) == 1
