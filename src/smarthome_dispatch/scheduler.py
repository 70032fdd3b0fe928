"""Periodic scheduler that feeds due commands to a bounded worker pool."""

from __future__ import annotations

import asyncio
import contextlib

from smarthome_dispatch.config import DispatchConfig
from smarthome_dispatch.const import SCHEDULER_TICK_INTERVAL, SCHEDULER_WORKERS
from smarthome_dispatch.correlation import ensure_correlation_id
from smarthome_dispatch.dispatcher import CommandDispatcher
from smarthome_dispatch.exceptions import CommandNotFound, CommandNotReady, MissingParameter, UnsupportedAction
from smarthome_dispatch.logging_abstraction import get_logger
from smarthome_dispatch.metrics import record_queue_depth

__all__ = ["Scheduler"]

logger = get_logger(__name__)


class Scheduler:
    """Tick loop plus a fixed number of workers calling ``CommandDispatcher.attempt``.

    Each tick expires stale scheduled commands, cancels dependents of failed
    commands, then queues due commands in dispatch order. A command that is
    already queued or being attempted is not queued again.
    """

    lp: str = "Scheduler:"

    def __init__(
        self,
        dispatcher: CommandDispatcher,
        tick_interval: float = SCHEDULER_TICK_INTERVAL,
        workers: int = SCHEDULER_WORKERS,
    ) -> None:
        if workers < 1:
            msg = "workers must be at least 1"
            raise ValueError(msg)
        self.dispatcher: CommandDispatcher = dispatcher
        self.tick_interval: float = tick_interval
        self.worker_count: int = workers
        self.running: bool = False
        self.start_task: asyncio.Task[None] | None = None
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._queued: set[str] = set()
        self._workers: list[asyncio.Task[None]] = []

    @classmethod
    def from_config(cls, config: DispatchConfig, dispatcher: CommandDispatcher) -> Scheduler:
        return cls(dispatcher, tick_interval=config.tick_interval, workers=config.workers)

    @property
    def in_flight(self) -> frozenset[str]:
        """Ids queued or currently being attempted."""
        return frozenset(self._queued)

    async def tick(self) -> list[str]:
        """Run one scheduling pass; returns the ids queued by it."""
        lp = f"{self.lp}tick:"
        expired = await self.dispatcher.expire_stale()
        orphaned = await self.dispatcher.cancel_orphaned_dependents()
        if expired or orphaned:
            logger.info("%s housekeeping", lp, extra={"expired": len(expired), "orphaned": len(orphaned)})

        queued: list[str] = []
        for command in await self.dispatcher.due_commands():
            if command.id in self._queued:
                continue
            self._queued.add(command.id)
            self._queue.put_nowait(command.id)
            queued.append(command.id)

        record_queue_depth(len(self._queued))
        if queued:
            logger.debug("%s queued %d command(s)", lp, len(queued), extra={"queue_size": self._queue.qsize()})
        return queued

    async def _worker(self, number: int) -> None:
        lp = f"{self.lp}worker-{number}:"
        while True:
            command_id = await self._queue.get()
            try:
                outcome = await self.dispatcher.attempt(command_id)
                logger.debug(
                    "%s attempt finished",
                    lp,
                    extra={"command_id": command_id, "status": outcome.status, "attempts": outcome.attempts},
                )
            except (CommandNotReady, CommandNotFound) as e:
                logger.debug("%s skipped: %s", lp, e)
            except (UnsupportedAction, MissingParameter) as e:
                logger.warning("%s rejected: %s", lp, e, extra={"command_id": command_id})
            except Exception:
                logger.exception("%s attempt failed unexpectedly", lp, extra={"command_id": command_id})
            finally:
                self._queued.discard(command_id)
                self._queue.task_done()
                record_queue_depth(len(self._queued))

    def start_workers(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(n), name=f"dispatch-worker-{n}") for n in range(1, self.worker_count + 1)
        ]
        logger.debug("%s started %d worker(s)", self.lp, len(self._workers))

    async def join(self) -> None:
        """Wait until every queued command has been attempted."""
        await self._queue.join()

    async def start(self) -> None:
        """Tick forever (until ``stop``) with the worker pool running."""
        lp = f"{self.lp}start:"
        _ = ensure_correlation_id()
        self.running = True
        self.start_workers()
        logger.info(
            "%s Starting scheduler (tick every %ss, %d workers)",
            lp,
            self.tick_interval,
            self.worker_count,
        )
        try:
            while self.running:
                try:
                    _ = await self.tick()
                except Exception as e:
                    logger.exception("%s Error in scheduler tick", lp, extra={"error": str(e)})
                await asyncio.sleep(self.tick_interval)
        except asyncio.CancelledError:
            logger.info("%s Scheduler task cancelled", lp)
            raise
        finally:
            await self._stop_workers()

    async def _stop_workers(self) -> None:
        workers, self._workers = self._workers, []
        for task in workers:
            _ = task.cancel()
        for task in workers:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def stop(self) -> None:
        self.running = False
        if self.start_task and not self.start_task.done():
            _ = self.start_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self.start_task
        await self._stop_workers()
        logger.info("%s Scheduler stopped", self.lp)
