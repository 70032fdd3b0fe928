"""Command state machine: submit, attempt, retry, expire and cancel.

The dispatcher is the only writer of command execution state. Each attempt
claims its command with a compare-and-set from ``pending`` to ``processing``,
so a command is never attempted twice at the same time. Transport failures
never escape ``attempt``; they are written into the command and, while
attempts remain, turned into a retry scheduled with exponential backoff.
"""

from __future__ import annotations

import asyncio
import datetime
import time
import uuid
from collections.abc import Callable, Iterable, Mapping, Sequence
from typing import Any

from smarthome_dispatch.broker.client import BrokerClient
from smarthome_dispatch.config import DispatchConfig
from smarthome_dispatch.const import (
    DISPATCH_ATTEMPT_TIMEOUT,
    DISPATCH_MAX_ATTEMPTS,
    DISPATCH_SCHEDULE_EXPIRY,
)
from smarthome_dispatch.correlation import attempt_correlation_id, correlation_context
from smarthome_dispatch.devices.adapter import DeviceAdapter
from smarthome_dispatch.exceptions import (
    CommandNotFound,
    CommandNotReady,
    DispatchError,
    DispatchTimeout,
    InvalidDependency,
    MissingParameter,
    NotConnected,
    TransportError,
    UnsupportedAction,
)
from smarthome_dispatch.instrumentation import measure_time
from smarthome_dispatch.logging_abstraction import get_logger
from smarthome_dispatch.metrics import (
    record_attempt,
    record_attempt_latency,
    record_command_abandoned,
    record_retry_scheduled,
)
from smarthome_dispatch.models import (
    PRIORITY_RANK,
    AttemptRecord,
    BatchMembership,
    Command,
    CommandRequest,
    CommandResponse,
    CommandStats,
    CommandStatus,
    ExecutionOutcome,
    ExecutionRecord,
    TransportResult,
    utcnow,
)
from smarthome_dispatch.retry_policy import RetryPolicy
from smarthome_dispatch.store import CommandRepository

__all__ = ["CommandDispatcher"]

logger = get_logger(__name__)

EXPIRED_ERROR_CODE = "EXPIRED"
CANCELLED_ERROR_CODE = "CANCELLED"
INTERNAL_ERROR_CODE = "INTERNAL_ERROR"


def _outcome(command: Command) -> ExecutionOutcome:
    return ExecutionOutcome(
        command_id=command.id,
        status=command.execution.status,
        success=command.response.success,
        attempts=command.execution.attempts,
        message=command.response.message,
        error_code=command.response.error_code,
        retry_after=command.execution.retry_after,
    )


def _priority_key(command: Command) -> tuple[int, datetime.datetime, int, str]:
    sequence = command.batch.sequence_number if command.batch else 0
    return PRIORITY_RANK[command.priority], command.created_at, sequence, command.id


class CommandDispatcher:
    """Owns the command lifecycle and routes attempts to the device API or the broker.

    Commands with a ``target.topic`` are published to the broker (fire-and-forget:
    a successful publish confirms the command). All others go through the device
    adapter, whose allow-list validation runs before the command is claimed.
    """

    lp: str = "CommandDispatcher:"

    def __init__(
        self,
        store: CommandRepository,
        adapter: DeviceAdapter,
        broker: BrokerClient | None = None,
        retry_policy: RetryPolicy | None = None,
        attempt_timeout: float = DISPATCH_ATTEMPT_TIMEOUT,
        schedule_expiry: float = DISPATCH_SCHEDULE_EXPIRY,
        default_max_attempts: int = DISPATCH_MAX_ATTEMPTS,
        clock: Callable[[], datetime.datetime] = utcnow,
    ) -> None:
        self.store: CommandRepository = store
        self.adapter: DeviceAdapter = adapter
        self.broker: BrokerClient | None = broker
        self.retry_policy: RetryPolicy = retry_policy or RetryPolicy()
        self.attempt_timeout: float = attempt_timeout
        self.schedule_expiry: float = schedule_expiry
        self.default_max_attempts: int = default_max_attempts
        self.clock: Callable[[], datetime.datetime] = clock

    @classmethod
    def from_config(
        cls,
        config: DispatchConfig,
        store: CommandRepository,
        adapter: DeviceAdapter,
        broker: BrokerClient | None = None,
    ) -> CommandDispatcher:
        return cls(
            store,
            adapter,
            broker,
            retry_policy=RetryPolicy(config.retry_base_delay, config.retry_max_delay),
            attempt_timeout=config.attempt_timeout,
            schedule_expiry=config.schedule_expiry,
            default_max_attempts=config.max_attempts,
        )

    # Submission

    async def _missing_dependencies(self, depends_on: Iterable[str]) -> list[str]:
        wanted = list(dict.fromkeys(depends_on))
        if not wanted:
            return []
        found = await self.store.get_many(wanted)
        return [cid for cid in wanted if cid not in found]

    async def submit(self, command: Command) -> str:
        """Store ``command`` as pending and return its id.

        Raises:
            InvalidDependency: A ``depends_on`` id is not in the store

        """
        missing = await self._missing_dependencies(command.depends_on)
        if missing:
            logger.warning(
                "%s rejecting command with unknown dependencies",
                self.lp,
                extra={"command_id": command.id, "missing": missing},
            )
            raise InvalidDependency(command.id, missing)

        # only the attempt limit and the schedule survive submission
        command = command.model_copy(deep=True)
        command.execution = ExecutionRecord(
            max_attempts=command.execution.max_attempts,
            scheduled_for=command.execution.scheduled_for,
        )
        command.response = CommandResponse()
        command.history = []
        command.updated_at = utcnow()
        await self.store.add(command)
        logger.info(
            "%s submitted %s %s for %s",
            self.lp,
            command.type,
            command.action,
            command.target.device_id,
            extra={
                "command_id": command.id,
                "priority": command.priority,
                "scheduled_for": command.execution.scheduled_for,
                "depends_on": command.depends_on,
            },
        )
        return command.id

    async def submit_request(self, request: CommandRequest | Mapping[str, Any]) -> tuple[str, CommandStatus]:
        """Accept the external submission shape (camelCase keys allowed).

        Raises:
            pydantic.ValidationError: Malformed request
            InvalidDependency: A ``dependsOn`` id is not in the store

        """
        if not isinstance(request, CommandRequest):
            request = CommandRequest.model_validate(request)
        command_id = await self.submit(request.to_command(self.default_max_attempts))
        return command_id, CommandStatus.PENDING

    async def submit_batch(
        self,
        requests: Sequence[CommandRequest | Mapping[str, Any]],
    ) -> tuple[str, list[str]]:
        """Submit an ordered batch; each member depends on the one before it.

        Nothing is stored if any member references an unknown dependency.

        Returns:
            (batch_id, member ids in sequence order)

        """
        if not requests:
            msg = "batch must contain at least one command"
            raise ValueError(msg)
        parsed = [r if isinstance(r, CommandRequest) else CommandRequest.model_validate(r) for r in requests]
        commands = [r.to_command(self.default_max_attempts) for r in parsed]

        for command in commands:
            missing = await self._missing_dependencies(command.depends_on)
            if missing:
                raise InvalidDependency(command.id, missing)

        batch_id = uuid.uuid4().hex
        ids: list[str] = []
        previous: str | None = None
        for sequence, command in enumerate(commands, start=1):
            command.batch = BatchMembership(batch_id=batch_id, sequence_number=sequence)
            if previous is not None and previous not in command.depends_on:
                command.depends_on.insert(0, previous)
            ids.append(await self.submit(command))
            previous = command.id

        logger.info("%s submitted batch of %d", self.lp, len(ids), extra={"batch_id": batch_id})
        return batch_id, ids

    async def resubmit(self, command_id: str) -> str:
        """Submit a fresh pending copy of an existing command; returns the new id."""
        command = await self.store.get(command_id)
        if command is None:
            raise CommandNotFound(command_id)
        clone = command.clone()
        logger.info("%s resubmitting command", self.lp, extra={"command_id": command_id, "new_id": clone.id})
        return await self.submit(clone)

    async def get(self, command_id: str) -> Command | None:
        """Read a command; an expired pending command is forced to ``timeout`` first."""
        command = await self.store.get(command_id)
        if command is None or command.execution.status != CommandStatus.PENDING:
            return command
        now = self.clock()
        if self.is_expired(command, now):
            expired = await self._expire(command_id, now)
            return expired or await self.store.get(command_id)
        return command

    # Readiness

    def is_expired(self, command: Command, now: datetime.datetime | None = None) -> bool:
        return command.is_expired(now or self.clock(), self.schedule_expiry)

    def is_retry_eligible(self, command: Command, now: datetime.datetime | None = None) -> bool:
        """``failed`` with attempts left and not expired."""
        return command.can_retry(now or self.clock(), self.schedule_expiry)

    def _readiness_problem(
        self,
        command: Command,
        now: datetime.datetime,
        known: Mapping[str, Command],
    ) -> str | None:
        """Why ``command`` cannot be attempted now, or None when it can.

        ``known`` must contain the command's dependencies and its batch siblings.
        """
        execution = command.execution
        if execution.status != CommandStatus.PENDING:
            return f"status is {execution.status}"
        if execution.attempts >= execution.max_attempts:
            return "no attempts left"
        if execution.scheduled_for is not None and execution.scheduled_for > now:
            return f"scheduled for {execution.scheduled_for.isoformat()}"
        if execution.retry_after is not None and execution.retry_after > now:
            return f"retry not before {execution.retry_after.isoformat()}"
        for dep_id in command.depends_on:
            dep = known.get(dep_id)
            if dep is None:
                return f"dependency {dep_id} not found"
            if dep.execution.status != CommandStatus.CONFIRMED:
                return f"waiting on dependency {dep_id} ({dep.execution.status})"
        if command.batch is not None:
            for other in known.values():
                if (
                    other.batch is not None
                    and other.batch.batch_id == command.batch.batch_id
                    and other.batch.sequence_number < command.batch.sequence_number
                    and not other.is_terminal
                ):
                    return f"batch member {other.batch.sequence_number} has not finished"
        return None

    async def _related(self, command: Command) -> dict[str, Command]:
        known = await self.store.get_many(command.depends_on)
        if command.batch is not None:
            batch_id = command.batch.batch_id
            siblings = await self.store.query(lambda c: c.batch is not None and c.batch.batch_id == batch_id)
            known.update({c.id: c for c in siblings})
        return known

    async def due_commands(self, now: datetime.datetime | None = None) -> list[Command]:
        """Pending commands that may be attempted now, in dispatch order.

        Order is priority tier (critical first), then ``created_at``; batch
        members never precede unfinished lower-numbered members of their batch.
        """
        now = now or self.clock()
        snapshot = {c.id: c for c in await self.store.query()}
        due = [
            c
            for c in snapshot.values()
            if c.execution.status == CommandStatus.PENDING
            and not self.is_expired(c, now)
            and self._readiness_problem(c, now, snapshot) is None
        ]
        due.sort(key=_priority_key)
        return due

    # Attempt

    async def attempt(self, command_id: str) -> ExecutionOutcome:
        """Run one dispatch attempt.

        Raises:
            CommandNotFound: Unknown id
            CommandNotReady: Not pending, not yet due, or dependencies unconfirmed
            UnsupportedAction: The action is not allowed for the domain (command is failed)
            MissingParameter: Climate request without exactly one setting (command is failed)

        Transport errors and timeouts are never raised; they are recorded on the
        command and reported through the returned outcome.

        """
        command = await self.store.get(command_id)
        if command is None:
            raise CommandNotFound(command_id)
        with correlation_context(attempt_correlation_id(command.id, command.execution.attempts + 1)):
            return await self._attempt(command)

    async def _attempt(self, command: Command) -> ExecutionOutcome:
        lp = f"{self.lp}attempt:"
        now = self.clock()

        if command.execution.status == CommandStatus.PENDING and self.is_expired(command, now):
            expired = await self._expire(command.id, now)
            if expired is None:
                current = await self.store.get(command.id)
                status = current.execution.status if current else "unknown"
                raise CommandNotReady(command.id, "status changed during expiry", status)
            return _outcome(expired)

        problem = self._readiness_problem(command, now, await self._related(command))
        if problem is not None:
            logger.debug("%s not ready: %s", lp, problem, extra={"command_id": command.id})
            raise CommandNotReady(command.id, problem, command.execution.status)

        if not command.target.via_broker:
            try:
                _ = self.adapter.resolve_service(
                    command.target.resolved_domain,
                    command.action,
                    command.target.device_id,
                    command.parameters,
                )
            except (UnsupportedAction, MissingParameter) as e:
                await self._fail_validation(command, e, now)
                raise

        claimed = await self.store.compare_and_set(command.id, {CommandStatus.PENDING}, self._claim(now))
        if claimed is None:
            current = await self.store.get(command.id)
            status = current.execution.status if current else "unknown"
            raise CommandNotReady(command.id, "claimed by another attempt", status)

        logger.info(
            "%s attempt %d/%d for %s %s",
            lp,
            claimed.execution.attempts,
            claimed.execution.max_attempts,
            claimed.target.device_id,
            claimed.action,
            extra={"command_id": claimed.id},
        )

        transport = "broker" if claimed.target.via_broker else "device_api"
        start = time.perf_counter()
        try:
            async with asyncio.timeout(self.attempt_timeout):
                result = await self._dispatch(claimed)
        except TimeoutError:
            record_attempt_latency(transport, measure_time(start) / 1000)
            error: DispatchError = DispatchTimeout(self.attempt_timeout, "dispatch attempt")
            return await self._record_failure(claimed, CommandStatus.TIMEOUT, error)
        except DispatchTimeout as e:
            record_attempt_latency(transport, measure_time(start) / 1000)
            return await self._record_failure(claimed, CommandStatus.TIMEOUT, e)
        except (TransportError, NotConnected) as e:
            record_attempt_latency(transport, measure_time(start) / 1000)
            return await self._record_failure(claimed, CommandStatus.FAILED, e)
        except Exception as e:
            logger.exception("%s unexpected error during dispatch", lp, extra={"command_id": claimed.id})
            internal = DispatchError(f"unexpected error: {e}")
            internal.error_code = INTERNAL_ERROR_CODE
            return await self._record_failure(claimed, CommandStatus.FAILED, internal)

        record_attempt_latency(transport, measure_time(start) / 1000)
        return await self._record_success(claimed, result)

    def _claim(self, now: datetime.datetime) -> Callable[[Command], None]:
        def mutate(cmd: Command) -> None:
            # re-checked against the stored record; raising leaves it untouched
            execution = cmd.execution
            if execution.attempts >= execution.max_attempts:
                raise CommandNotReady(cmd.id, "no attempts left", execution.status)
            if execution.scheduled_for is not None and execution.scheduled_for > now:
                raise CommandNotReady(cmd.id, "not yet scheduled", execution.status)
            if execution.retry_after is not None and execution.retry_after > now:
                raise CommandNotReady(cmd.id, "retry backoff not elapsed", execution.status)
            cmd.execution.status = CommandStatus.PROCESSING
            cmd.execution.attempts += 1
            cmd.execution.start_time = now
            cmd.execution.end_time = None
            cmd.execution.duration_ms = None
            cmd.execution.retry_after = None

        return mutate

    async def _dispatch(self, command: Command) -> TransportResult:
        target = command.target
        if target.via_broker:
            if self.broker is None:
                msg = f"no broker configured for topic {target.topic}"
                raise TransportError(msg)
            topic = str(target.topic)
            await self.broker.send_device_command(
                topic,
                {
                    "command_id": command.id,
                    "device_id": target.device_id,
                    "action": command.action,
                    "parameters": command.parameters,
                },
            )
            return TransportResult(success=True, message=f"Command published to {topic}")
        return await self.adapter.invoke(
            target.resolved_domain,
            command.action,
            target.device_id,
            command.parameters,
        )

    async def _record_success(self, claimed: Command, result: TransportResult) -> ExecutionOutcome:
        end = self.clock()

        def mutate(cmd: Command) -> None:
            cmd.execution.status = CommandStatus.CONFIRMED
            cmd.execution.end_time = end
            cmd.execution.duration_ms = _elapsed_ms(cmd.execution.start_time, end)
            cmd.response = CommandResponse(
                success=True,
                message=result.message,
                http_status=result.http_status,
                response_time_ms=result.response_time_ms,
                device_response=result.data,
            )
            cmd.history.append(
                AttemptRecord(
                    attempt=cmd.execution.attempts,
                    status=CommandStatus.CONFIRMED,
                    started_at=cmd.execution.start_time,
                    finished_at=end,
                    message=result.message,
                ),
            )

        updated = await self.store.compare_and_set(claimed.id, {CommandStatus.PROCESSING}, mutate)
        if updated is None:
            return await self._discarded(claimed.id, "success")
        record_attempt(claimed.target.resolved_domain, "confirmed")
        logger.info("%s confirmed", self.lp, extra={"command_id": claimed.id, "attempts": updated.execution.attempts})
        return _outcome(updated)

    async def _record_failure(
        self,
        claimed: Command,
        status: CommandStatus,
        error: DispatchError,
    ) -> ExecutionOutcome:
        end = self.clock()
        error_code = error.error_code
        http_status = getattr(error, "http_status", None)

        def mutate(cmd: Command) -> None:
            execution = cmd.execution
            cmd.response = CommandResponse(
                success=False,
                message=str(error),
                error_code=error_code,
                http_status=http_status,
            )
            execution.status = status
            execution.end_time = end
            execution.duration_ms = _elapsed_ms(execution.start_time, end)
            record = AttemptRecord(
                attempt=execution.attempts,
                status=status,
                started_at=execution.start_time,
                finished_at=end,
                error_code=error_code,
                message=str(error),
            )
            if execution.attempts < execution.max_attempts and not cmd.is_expired(end, self.schedule_expiry):
                # failed -> pending is internal; the audit record keeps the failure
                retry_after = self.retry_policy.retry_after(execution.attempts, end)
                record.retry_after = retry_after
                execution.retry_after = retry_after
                execution.status = CommandStatus.PENDING
                execution.end_time = None
            cmd.history.append(record)

        updated = await self.store.compare_and_set(claimed.id, {CommandStatus.PROCESSING}, mutate)
        if updated is None:
            return await self._discarded(claimed.id, str(status))

        domain = claimed.target.resolved_domain
        record_attempt(domain, str(status))
        if updated.execution.status == CommandStatus.PENDING:
            record_retry_scheduled(domain, error_code)
            logger.warning(
                "%s attempt %d failed, retry scheduled: %s",
                self.lp,
                updated.execution.attempts,
                error,
                extra={"command_id": claimed.id, "error_code": error_code, "retry_after": updated.execution.retry_after},
            )
        else:
            record_command_abandoned(str(status))
            logger.error(
                "%s giving up after %d attempt(s): %s",
                self.lp,
                updated.execution.attempts,
                error,
                extra={"command_id": claimed.id, "error_code": error_code, "status": updated.execution.status},
            )
        return _outcome(updated)

    async def _discarded(self, command_id: str, result: str) -> ExecutionOutcome:
        """The command left ``processing`` while in flight (cancelled); drop the late result."""
        current = await self.store.get(command_id)
        if current is None:
            raise CommandNotFound(command_id)
        logger.info(
            "%s discarding late %s result",
            self.lp,
            result,
            extra={"command_id": command_id, "status": current.execution.status},
        )
        return _outcome(current)

    async def _fail_validation(self, command: Command, error: DispatchError, now: datetime.datetime) -> None:
        def mutate(cmd: Command) -> None:
            cmd.execution.status = CommandStatus.FAILED
            cmd.execution.end_time = now
            cmd.execution.retry_after = None
            cmd.response = CommandResponse(success=False, message=str(error), error_code=error.error_code)
            cmd.history.append(
                AttemptRecord(
                    attempt=cmd.execution.attempts,
                    status=CommandStatus.FAILED,
                    finished_at=now,
                    error_code=error.error_code,
                    message=str(error),
                ),
            )

        updated = await self.store.compare_and_set(command.id, {CommandStatus.PENDING}, mutate)
        if updated is not None:
            record_command_abandoned("validation")
            logger.warning(
                "%s rejected: %s",
                self.lp,
                error,
                extra={"command_id": command.id, "error_code": error.error_code},
            )

    # Expiry and cancellation

    async def _expire(self, command_id: str, now: datetime.datetime) -> Command | None:
        def mutate(cmd: Command) -> None:
            scheduled_for = cmd.execution.scheduled_for
            message = (
                f"expired: scheduled for {scheduled_for.isoformat() if scheduled_for else 'unknown'}, "
                f"not dispatched within {self.schedule_expiry:g}s"
            )
            cmd.execution.status = CommandStatus.TIMEOUT
            cmd.execution.end_time = now
            cmd.execution.retry_after = None
            cmd.response = CommandResponse(success=False, message=message, error_code=EXPIRED_ERROR_CODE)
            cmd.history.append(
                AttemptRecord(
                    attempt=cmd.execution.attempts,
                    status=CommandStatus.TIMEOUT,
                    finished_at=now,
                    error_code=EXPIRED_ERROR_CODE,
                    message=message,
                ),
            )

        updated = await self.store.compare_and_set(command_id, {CommandStatus.PENDING}, mutate)
        if updated is not None:
            record_command_abandoned("expired")
            logger.warning("%s %s", self.lp, updated.response.message, extra={"command_id": command_id})
        return updated

    async def expire_stale(self, now: datetime.datetime | None = None) -> list[str]:
        """Force every expired pending command to ``timeout``; returns their ids."""
        now = now or self.clock()
        stale = await self.store.query(
            lambda c: c.execution.status == CommandStatus.PENDING and c.is_expired(now, self.schedule_expiry),
        )
        expired: list[str] = []
        for command in stale:
            if await self._expire(command.id, now) is not None:
                expired.append(command.id)
        return expired

    async def cancel(self, command_id: str, reason: str = "cancelled") -> Command:
        """Cancel a pending or in-flight command; terminal commands are returned unchanged.

        An in-flight transport call is not aborted; its result is discarded when it arrives.
        """
        now = self.clock()

        def mutate(cmd: Command) -> None:
            cmd.execution.status = CommandStatus.CANCELLED
            cmd.execution.end_time = now
            cmd.execution.retry_after = None
            cmd.response = CommandResponse(success=False, message=reason, error_code=CANCELLED_ERROR_CODE)

        updated = await self.store.compare_and_set(
            command_id,
            {CommandStatus.PENDING, CommandStatus.PROCESSING},
            mutate,
        )
        if updated is None:
            current = await self.store.get(command_id)
            if current is None:
                raise CommandNotFound(command_id)
            logger.debug("%s cancel ignored, already %s", self.lp, current.execution.status, extra={"command_id": command_id})
            return current
        record_command_abandoned("cancelled")
        logger.info("%s cancelled: %s", self.lp, reason, extra={"command_id": command_id})
        return updated

    async def cancel_orphaned_dependents(self) -> list[str]:
        """Cancel pending commands whose dependency ended without confirmation."""
        snapshot = {c.id: c for c in await self.store.query()}
        cancelled: list[str] = []
        for command in snapshot.values():
            if command.execution.status != CommandStatus.PENDING or not command.depends_on:
                continue
            for dep_id in command.depends_on:
                dep = snapshot.get(dep_id)
                if dep is None:
                    reason = f"dependency {dep_id} no longer exists"
                elif dep.is_terminal and dep.execution.status != CommandStatus.CONFIRMED:
                    reason = f"dependency {dep_id} ended {dep.execution.status}"
                else:
                    continue
                updated = await self.cancel(command.id, reason)
                if updated.execution.status == CommandStatus.CANCELLED:
                    cancelled.append(command.id)
                    # dependents of this command are picked up on the next pass
                break
        return cancelled

    # Housekeeping

    async def stats(self) -> CommandStats:
        commands = await self.store.query()
        stats = CommandStats(total=len(commands))
        response_times: list[float] = []
        for command in commands:
            status = command.execution.status
            match status:
                case CommandStatus.CONFIRMED:
                    stats.successful += 1
                    if command.response.response_time_ms is not None:
                        response_times.append(command.response.response_time_ms)
                case CommandStatus.FAILED:
                    stats.failed += 1
                case CommandStatus.TIMEOUT:
                    stats.timed_out += 1
                case CommandStatus.CANCELLED:
                    stats.cancelled += 1
                case CommandStatus.PENDING:
                    stats.pending += 1
                case CommandStatus.PROCESSING:
                    stats.processing += 1
            stats.by_type[command.type] = stats.by_type.get(command.type, 0) + 1
            stats.by_source[command.source] = stats.by_source.get(command.source, 0) + 1
        if response_times:
            stats.average_response_time_ms = round(sum(response_times) / len(response_times), 2)
        return stats

    async def cleanup(self, older_than: datetime.timedelta = datetime.timedelta(days=30)) -> int:
        """Delete terminal commands created before ``now - older_than``.

        Commands still referenced by a non-terminal dependent are kept.
        """
        cutoff = self.clock() - older_than
        commands = await self.store.query()
        referenced = {dep for c in commands if not c.is_terminal for dep in c.depends_on}
        victims = [c.id for c in commands if c.is_terminal and c.created_at < cutoff and c.id not in referenced]
        removed = await self.store.delete(victims)
        if removed:
            logger.info("%s cleaned up %d command(s)", self.lp, removed, extra={"cutoff": cutoff})
        return removed


def _elapsed_ms(start: datetime.datetime | None, end: datetime.datetime) -> float | None:
    if start is None:
        return None
    return round((end - start).total_seconds() * 1000, 3)
