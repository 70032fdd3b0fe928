"""Canonical data model for commands, devices and transport results.

A single ``Command`` model is the source of truth; ``CommandSummary`` is the
flat subset handed to clients that only need the headline fields.
"""

from __future__ import annotations

import datetime
import uuid
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator, model_validator

from smarthome_dispatch.const import DISPATCH_MAX_ATTEMPTS, DISPATCH_SCHEDULE_EXPIRY

__all__ = [
    "AttemptRecord",
    "BatchMembership",
    "Command",
    "CommandMetadata",
    "CommandRequest",
    "CommandResponse",
    "CommandSource",
    "CommandStats",
    "CommandStatus",
    "CommandSummary",
    "CommandTarget",
    "CommandType",
    "DeviceSnapshot",
    "ExecutionOutcome",
    "ExecutionRecord",
    "PRIORITY_RANK",
    "Priority",
    "TERMINAL_STATUSES",
    "TransportResult",
    "as_utc",
    "new_command_id",
    "utcnow",
]


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


def new_command_id() -> str:
    return uuid.uuid4().hex


def as_utc(value: datetime.datetime | None) -> datetime.datetime | None:
    """Naive timestamps are taken as UTC; aware ones are converted to UTC."""
    if value is None:
        return None
    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        return value.replace(tzinfo=datetime.UTC)
    return value.astimezone(datetime.UTC)


class CommandType(StrEnum):
    MANUAL = "manual"
    AI = "ai"
    AUTOMATION = "automation"
    SCENE = "scene"
    SCHEDULE = "schedule"


class CommandSource(StrEnum):
    USER = "user"
    AI_ASSISTANT = "ai_assistant"
    AUTOMATION = "automation"
    EXTERNAL_API = "external_api"
    VOICE_COMMAND = "voice_command"
    MOBILE_APP = "mobile_app"
    WEB_APP = "web_app"


class CommandStatus(StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


TERMINAL_STATUSES: frozenset[CommandStatus] = frozenset(
    {CommandStatus.CONFIRMED, CommandStatus.FAILED, CommandStatus.TIMEOUT, CommandStatus.CANCELLED},
)


class Priority(StrEnum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"


# lower rank is dispatched first
PRIORITY_RANK: dict[Priority, int] = {
    Priority.CRITICAL: 0,
    Priority.HIGH: 1,
    Priority.NORMAL: 2,
    Priority.LOW: 3,
}


class CommandTarget(BaseModel):
    """Device reference for a command.

    ``device_id`` is an entity id such as ``light.kitchen``. When ``topic`` is set
    the command is published to the broker instead of calling the device API.
    """

    device_id: str
    domain: str | None = None
    topic: str | None = None

    @property
    def resolved_domain(self) -> str:
        if self.domain:
            return self.domain
        if "." in self.device_id:
            return self.device_id.split(".", 1)[0]
        return ""

    @property
    def via_broker(self) -> bool:
        return bool(self.topic)


class ExecutionRecord(BaseModel):
    status: CommandStatus = CommandStatus.PENDING
    start_time: datetime.datetime | None = None
    end_time: datetime.datetime | None = None
    duration_ms: float | None = None
    attempts: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=DISPATCH_MAX_ATTEMPTS, ge=1)
    retry_after: datetime.datetime | None = None
    scheduled_for: datetime.datetime | None = None

    @field_validator("start_time", "end_time", "retry_after", "scheduled_for")
    @classmethod
    def _utc_timestamps(cls, value: datetime.datetime | None) -> datetime.datetime | None:
        return as_utc(value)

    @model_validator(mode="after")
    def _attempts_within_limit(self) -> ExecutionRecord:
        if self.attempts > self.max_attempts:
            msg = f"attempts ({self.attempts}) exceeds max_attempts ({self.max_attempts})"
            raise ValueError(msg)
        return self


class CommandResponse(BaseModel):
    success: bool = False
    message: str | None = None
    error_code: str | None = None
    http_status: int | None = None
    response_time_ms: float | None = None
    device_response: Any = None


class BatchMembership(BaseModel):
    batch_id: str
    sequence_number: int = Field(ge=1)


class AttemptRecord(BaseModel):
    """Audit entry for one finished attempt, including retried failures."""

    attempt: int
    status: CommandStatus
    started_at: datetime.datetime | None = None
    finished_at: datetime.datetime
    error_code: str | None = None
    message: str | None = None
    retry_after: datetime.datetime | None = None


class CommandMetadata(BaseModel):
    tags: list[str] = Field(default_factory=list)
    category: str | None = None
    notes: str | None = None


class Command(BaseModel):
    """A unit of intent to change or query device state, tracked through execution."""

    id: str = Field(default_factory=new_command_id)
    type: CommandType
    source: CommandSource
    target: CommandTarget
    user_id: str
    action: str
    parameters: dict[str, Any] = Field(default_factory=dict)
    priority: Priority = Priority.NORMAL
    original_input: str | None = None
    execution: ExecutionRecord = Field(default_factory=ExecutionRecord)
    response: CommandResponse = Field(default_factory=CommandResponse)
    batch: BatchMembership | None = None
    depends_on: list[str] = Field(default_factory=list)
    history: list[AttemptRecord] = Field(default_factory=list)
    metadata: CommandMetadata = Field(default_factory=CommandMetadata)
    created_at: datetime.datetime = Field(default_factory=utcnow)
    updated_at: datetime.datetime = Field(default_factory=utcnow)

    @field_validator("created_at", "updated_at")
    @classmethod
    def _utc_timestamps(cls, value: datetime.datetime) -> datetime.datetime:
        return as_utc(value)

    @property
    def status(self) -> CommandStatus:
        return self.execution.status

    @property
    def is_terminal(self) -> bool:
        return self.execution.status in TERMINAL_STATUSES

    @property
    def is_successful(self) -> bool:
        return self.response.success is True

    @property
    def execution_duration(self) -> datetime.timedelta | None:
        if self.execution.start_time and self.execution.end_time:
            return self.execution.end_time - self.execution.start_time
        return None

    def is_expired(
        self,
        now: datetime.datetime | None = None,
        expiry_seconds: float = DISPATCH_SCHEDULE_EXPIRY,
    ) -> bool:
        """True once ``now`` is past ``scheduled_for`` plus the expiry window."""
        scheduled_for = self.execution.scheduled_for
        if scheduled_for is None:
            return False
        now = now or utcnow()
        return now > scheduled_for + datetime.timedelta(seconds=expiry_seconds)

    def can_retry(
        self,
        now: datetime.datetime | None = None,
        expiry_seconds: float = DISPATCH_SCHEDULE_EXPIRY,
    ) -> bool:
        return (
            self.execution.status == CommandStatus.FAILED
            and self.execution.attempts < self.execution.max_attempts
            and not self.is_expired(now, expiry_seconds)
        )

    def clone(self) -> Command:
        """Fresh pending copy with the same intent (target, action, parameters)."""
        return Command(
            type=self.type,
            source=self.source,
            target=self.target.model_copy(),
            user_id=self.user_id,
            action=self.action,
            parameters=dict(self.parameters),
            priority=self.priority,
            original_input=self.original_input,
            execution=ExecutionRecord(max_attempts=self.execution.max_attempts),
            metadata=self.metadata.model_copy(deep=True),
        )

    def summary(self) -> CommandSummary:
        return CommandSummary(
            id=self.id,
            type=self.type,
            source=self.source,
            device_id=self.target.device_id,
            action=self.action,
            priority=self.priority,
            status=self.execution.status,
            success=self.response.success,
            attempts=self.execution.attempts,
            message=self.response.message,
            created_at=self.created_at,
        )


class CommandSummary(BaseModel):
    """Flat view of a command for clients that do not need execution detail."""

    model_config = ConfigDict(frozen=True)

    id: str
    type: CommandType
    source: CommandSource
    device_id: str
    action: str
    priority: Priority
    status: CommandStatus
    success: bool
    attempts: int
    message: str | None = None
    created_at: datetime.datetime


class CommandRequest(BaseModel):
    """Submission payload as produced by the HTTP layer (camelCase accepted)."""

    model_config = ConfigDict(populate_by_name=True)

    type: CommandType
    source: CommandSource
    device_id: str = Field(alias="deviceId")
    user_id: str = Field(alias="userId")
    action: str
    parameters: dict[str, Any] = Field(default_factory=dict)
    priority: Priority = Priority.NORMAL
    scheduled_for: datetime.datetime | None = Field(default=None, alias="scheduledFor")
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")
    domain: str | None = None
    topic: str | None = None
    original_input: str | None = Field(default=None, alias="originalInput")
    max_attempts: int | None = Field(default=None, alias="maxAttempts", ge=1)

    @field_validator("scheduled_for")
    @classmethod
    def _utc_scheduled_for(cls, value: datetime.datetime | None) -> datetime.datetime | None:
        return as_utc(value)

    def to_command(self, default_max_attempts: int = DISPATCH_MAX_ATTEMPTS) -> Command:
        return Command(
            type=self.type,
            source=self.source,
            target=CommandTarget(device_id=self.device_id, domain=self.domain, topic=self.topic),
            user_id=self.user_id,
            action=self.action,
            parameters=dict(self.parameters),
            priority=self.priority,
            original_input=self.original_input,
            execution=ExecutionRecord(
                max_attempts=self.max_attempts or default_max_attempts,
                scheduled_for=self.scheduled_for,
            ),
            depends_on=list(self.depends_on),
        )


class DeviceSnapshot(BaseModel):
    """Normalized device record returned by the device adapter."""

    id: str
    name: str
    type: str
    state: str | None = None
    attributes: dict[str, Any] = Field(default_factory=dict)


class TransportResult(BaseModel):
    success: bool
    message: str | None = None
    data: Any = None
    http_status: int | None = None
    response_time_ms: float | None = None
    simulated: bool = False


class ExecutionOutcome(BaseModel):
    """Result of one ``CommandDispatcher.attempt`` call."""

    model_config = ConfigDict(frozen=True)

    command_id: str
    status: CommandStatus
    success: bool
    attempts: int
    message: str | None = None
    error_code: str | None = None
    retry_after: datetime.datetime | None = None

    @computed_field
    @property
    def will_retry(self) -> bool:
        return self.status == CommandStatus.PENDING and self.retry_after is not None


class CommandStats(BaseModel):
    """Aggregate counts over the command store."""

    total: int = 0
    successful: int = 0
    failed: int = 0
    timed_out: int = 0
    cancelled: int = 0
    pending: int = 0
    processing: int = 0
    average_response_time_ms: float | None = None
    by_type: dict[str, int] = Field(default_factory=dict)
    by_source: dict[str, int] = Field(default_factory=dict)

    @computed_field
    @property
    def success_rate(self) -> float:
        finished = self.successful + self.failed + self.timed_out
        return round(self.successful / finished, 4) if finished else 0.0
