"""Main entrypoint and lifecycle management for the dispatch service."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import Protocol, cast, runtime_checkable

import dotenv
import uvloop

from smarthome_dispatch.broker import (
    BrokerClient,
    BrokerConnected,
    BrokerDisconnected,
    DeviceUpdate,
    EventBus,
    GenericMessage,
    SensorData,
)
from smarthome_dispatch.config import DispatchConfig, load_config_file
from smarthome_dispatch.const import FOREIGN_LOG_FORMATTER, SMARTHOME_DEBUG, SMARTHOME_VERSION
from smarthome_dispatch.correlation import correlation_context, ensure_correlation_id
from smarthome_dispatch.devices import DeviceAdapter
from smarthome_dispatch.dispatcher import CommandDispatcher
from smarthome_dispatch.logging_abstraction import get_logger
from smarthome_dispatch.metrics import start_metrics_server
from smarthome_dispatch.scheduler import Scheduler
from smarthome_dispatch.store import InMemoryCommandStore

logger = get_logger(__name__)

BROKER_START_TASK_NAME = "broker_supervisor"
SCHEDULER_START_TASK_NAME = "dispatch_scheduler"

# Suppress verbose MQTT library warnings
mqtt_handler = logging.StreamHandler(sys.stdout)
mqtt_handler.setFormatter(FOREIGN_LOG_FORMATTER)
mqtt_logger = logging.getLogger("mqtt")
mqtt_logger.setLevel(logging.ERROR)
mqtt_logger.propagate = False
mqtt_logger.addHandler(mqtt_handler)


@runtime_checkable
class _CLIArgs(Protocol):
    debug: bool
    env: Path | None
    config: Path | None
    metrics_port: int | None


class DispatchService:
    """Builds every process-scoped service once and runs them until stopped."""

    lp: str = "DispatchService:"

    def __init__(self, config: DispatchConfig) -> None:
        self.config: DispatchConfig = config
        self.event_bus: EventBus = EventBus()
        self.store: InMemoryCommandStore = InMemoryCommandStore()
        self.adapter: DeviceAdapter = DeviceAdapter.from_config(config)
        self.broker: BrokerClient = BrokerClient.from_config(config, self.event_bus)
        self.dispatcher: CommandDispatcher = CommandDispatcher.from_config(
            config,
            self.store,
            self.adapter,
            self.broker,
        )
        self.scheduler: Scheduler = Scheduler.from_config(config, self.dispatcher)
        self._stop_event: asyncio.Event = asyncio.Event()
        self._register_event_handlers()

    def _register_event_handlers(self) -> None:
        _ = self.event_bus.subscribe(DeviceUpdate, self._on_device_update)
        _ = self.event_bus.subscribe(SensorData, self._on_sensor_data)
        _ = self.event_bus.subscribe(GenericMessage, self._on_generic_message)
        _ = self.event_bus.subscribe(BrokerConnected, self._on_broker_connected)
        _ = self.event_bus.subscribe(BrokerDisconnected, self._on_broker_disconnected)

    def _on_device_update(self, event: DeviceUpdate) -> None:
        logger.debug("%s device update", self.lp, extra={"entity_id": event.entity_id, "topic": event.topic})

    def _on_sensor_data(self, event: SensorData) -> None:
        logger.debug("%s sensor data", self.lp, extra={"sensor_id": event.sensor_id, "topic": event.topic})

    def _on_generic_message(self, event: GenericMessage) -> None:
        logger.debug("%s message", self.lp, extra={"topic": event.topic, "decoded": event.decoded})

    def _on_broker_connected(self, event: BrokerConnected) -> None:
        logger.info(" Broker online", extra={"host": event.host, "port": event.port, "reconnect": event.reconnect})

    def _on_broker_disconnected(self, event: BrokerDisconnected) -> None:
        logger.warning(" Broker offline", extra={"reason": event.reason})

    def request_stop(self, signum: int | None = None) -> None:
        if signum is not None:
            logger.info("%s Intercepted signal: %s (%s)", self.lp, signal.Signals(signum).name, signum)
        self._stop_event.set()

    async def start(self) -> None:
        """Start the broker supervisor and the scheduler, then wait for a stop request."""
        _ = ensure_correlation_id()

        if self.config.metrics_port:
            start_metrics_server(self.config.metrics_port)
            logger.info(" Metrics endpoint started", extra={"port": self.config.metrics_port})

        if not await self.adapter.test_connectivity():
            logger.warning(
                " Device API unreachable at startup, commands will retry",
                extra={"device_api_url": self.config.device_api_url},
            )

        for topic in self.config.subscriptions:
            _ = await self.broker.subscribe(topic)

        self.broker.start_task = asyncio.create_task(self.broker.start(), name=BROKER_START_TASK_NAME)
        self.scheduler.start_task = asyncio.create_task(self.scheduler.start(), name=SCHEDULER_START_TASK_NAME)
        logger.info(
            " Dispatch service running",
            extra={"simulated": self.adapter.simulated, "workers": self.config.workers},
        )

        try:
            _ = await self._stop_event.wait()
        finally:
            await self.stop()

    async def stop(self) -> None:
        logger.info(" Shutting down dispatch service...")
        await self.scheduler.stop()
        await self.broker.disconnect()
        if self.broker.start_task is not None:
            _ = await asyncio.gather(self.broker.start_task, return_exceptions=True)
        await self.adapter.close()


def _load_env_file(env_file: Path) -> None:
    env_path = env_file.expanduser().resolve()
    if not env_path.exists():
        logger.error("Environment file not found", extra={"path": str(env_path)})
        return
    if dotenv.load_dotenv(env_path, override=True):
        logger.info(" Environment variables loaded", extra={"source": str(env_path)})
    else:
        logger.warning("No environment variables loaded from file", extra={"path": str(env_path)})


def parse_cli(argv: Sequence[str] | None = None) -> _CLIArgs:
    """Parse CLI arguments for the dispatch process."""
    parser = argparse.ArgumentParser(description="Smart home command dispatch service")
    _ = parser.add_argument(
        "-D",
        "--debug",
        action="store_true",
        help="Enable debug mode",
    )
    _ = parser.add_argument("--env", help="Path to the environment file", default=None, type=Path)
    _ = parser.add_argument("--config", help="Path to a YAML config file", default=None, type=Path)
    _ = parser.add_argument(
        "--metrics-port",
        dest="metrics_port",
        help="Serve Prometheus metrics on this port (0 disables)",
        default=None,
        type=int,
    )
    return cast("_CLIArgs", cast("object", parser.parse_args(argv)))


def build_config(args: _CLIArgs) -> DispatchConfig:
    """Environment (after ``--env``), then the YAML file, then CLI flags."""
    if args.env:
        _load_env_file(args.env)
    config = DispatchConfig.from_env()
    if args.config:
        config = load_config_file(args.config, config)
    if args.metrics_port is not None:
        config = config.merged({"metrics_port": args.metrics_port})
    return config


def _enable_debug() -> None:
    logger.set_level(logging.DEBUG)
    for handler in logger.handlers:
        handler.setLevel(logging.DEBUG)


def main(argv: Sequence[str] | None = None) -> int:
    """Run the dispatch service entry point."""
    with correlation_context():
        logger.info("Starting smarthome-dispatch", extra={"version": SMARTHOME_VERSION})
        args = parse_cli(argv)
        if args.debug or SMARTHOME_DEBUG:
            _enable_debug()
            logger.info("Debug mode enabled")

        try:
            config = build_config(args)
        except Exception as e:
            logger.exception(" Invalid configuration", extra={"error": str(e)})
            return 1

        loop = uvloop.new_event_loop()
        asyncio.set_event_loop(loop)
        service = DispatchService(config)
        loop.add_signal_handler(signal.SIGINT, service.request_stop, signal.SIGINT)
        loop.add_signal_handler(signal.SIGTERM, service.request_stop, signal.SIGTERM)
        logger.debug("Signal handlers configured for SIGINT & SIGTERM")

        try:
            loop.run_until_complete(service.start())
        except KeyboardInterrupt:
            logger.info("Keyboard interrupt received, shutting down...")
        except Exception as e:
            logger.exception(" Fatal error in main loop", extra={"error": str(e)})
            return 1
        else:
            logger.info(" Dispatch service stopped gracefully")
        finally:
            if not loop.is_closed():
                loop.close()
        return 0


if __name__ == "__main__":
    sys.exit(main())
