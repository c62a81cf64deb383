"""
SQLAlchemy models for scheduled calls and call attempts (call logs).
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum as SQLEnum,
    Float,
    ForeignKey,
    Integer,
    String,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from callscheduler.shared.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops the offset on read)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _enum(enum_cls: type[Enum], name: str) -> SQLEnum:
    return SQLEnum(
        enum_cls,
        name=name,
        values_callable=lambda members: [m.value for m in members],
    )


class ScheduledCallStatus(str, Enum):
    """Scheduled call lifecycle state."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class MachineDetection(str, Enum):
    """Answering machine detection mode (Twilio `MachineDetection` values)."""

    ENABLE = "Enable"
    DETECT_MESSAGE_END = "DetectMessageEnd"
    DISABLED = "Disabled"


class CallLogStatus(str, Enum):
    """Status of a single call attempt."""

    INITIATED = "initiated"
    RINGING = "ringing"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    BUSY = "busy"
    NO_ANSWER = "no_answer"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_CALL_STATUSES


TERMINAL_CALL_STATUSES = frozenset(
    {
        CallLogStatus.COMPLETED,
        CallLogStatus.FAILED,
        CallLogStatus.BUSY,
        CallLogStatus.NO_ANSWER,
        CallLogStatus.CANCELED,
    }
)

RETRYABLE_CALL_STATUSES = frozenset(
    {CallLogStatus.FAILED, CallLogStatus.BUSY, CallLogStatus.NO_ANSWER}
)


class AnsweredBy(str, Enum):
    """Answering machine detection result."""

    HUMAN = "human"
    MACHINE_START = "machine_start"
    MACHINE_END_BEEP = "machine_end_beep"
    MACHINE_END_SILENCE = "machine_end_silence"
    MACHINE_END_OTHER = "machine_end_other"
    FAX = "fax"
    UNKNOWN = "unknown"


class ScheduledCall(Base):
    """Durable definition of when and how a call is placed."""

    __tablename__ = "scheduled_calls"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    phone_number: Mapped[str] = mapped_column(String(20), nullable=False)
    contact_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    recording_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    next_run_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    recurrence_pattern: Mapped[str | None] = mapped_column(String(100), nullable=True)
    recurrence_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    machine_detection: Mapped[MachineDetection] = mapped_column(
        _enum(MachineDetection, "machine_detection"),
        nullable=False,
        default=MachineDetection.DETECT_MESSAGE_END,
    )
    machine_detection_timeout: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    post_beep_delay: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    provider_options: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    status: Mapped[ScheduledCallStatus] = mapped_column(
        _enum(ScheduledCallStatus, "scheduled_call_status"),
        nullable=False,
        default=ScheduledCallStatus.PENDING,
        index=True,
    )
    last_run_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    @property
    def is_recurring(self) -> bool:
        return bool(self.recurrence_enabled and self.recurrence_pattern)

    def __repr__(self) -> str:
        return f"<ScheduledCall(id={self.id}, status={self.status}, recurring={self.is_recurring})>"


class CallLog(Base):
    """One concrete call attempt and its outcome."""

    __tablename__ = "call_logs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    scheduled_call_id: Mapped[UUID | None] = mapped_column(
        Uuid,
        ForeignKey("scheduled_calls.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    contact_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    recording_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    phone_number: Mapped[str] = mapped_column(String(20), nullable=False)
    provider_call_id: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
        unique=True,
        index=True,
    )
    status: Mapped[CallLogStatus] = mapped_column(
        _enum(CallLogStatus, "call_log_status"),
        nullable=False,
        default=CallLogStatus.INITIATED,
        index=True,
    )
    amd_result: Mapped[AnsweredBy | None] = mapped_column(
        _enum(AnsweredBy, "answered_by"),
        nullable=True,
    )
    duration: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    post_beep_delay: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    initiated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    answered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    retry_of: Mapped[UUID | None] = mapped_column(
        Uuid,
        ForeignKey("call_logs.id", ondelete="SET NULL"),
        nullable=True,
    )

    @property
    def is_correlatable(self) -> bool:
        """False until the provider call identifier has been written back."""
        return self.provider_call_id is not None

    def __repr__(self) -> str:
        return f"<CallLog(id={self.id}, provider_call_id={self.provider_call_id}, status={self.status})>"
