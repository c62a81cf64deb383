"""
Pydantic schemas for scheduled calls and call history.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from callscheduler.calls.cron import ApschedulerCron, InvalidCronPatternError
from callscheduler.calls.models import (
    AnsweredBy,
    CallLogStatus,
    MachineDetection,
    ScheduledCallStatus,
    as_utc,
)

E164_PATTERN = r"^\+[1-9]\d{1,14}$"

# Synchronous detection is required so the greeting ends before playback.
ASYNC_AMD_PARAMS = frozenset({"AsyncAmd", "AsyncAmdStatusCallback", "AsyncAmdStatusCallbackMethod"})

# ProviderOptions field -> Twilio call-creation parameter
_OPTION_PARAM_NAMES = {
    "timeout": "Timeout",
    "time_limit": "TimeLimit",
    "record": "Record",
    "send_digits": "SendDigits",
    "machine_detection_speech_threshold": "MachineDetectionSpeechThreshold",
    "machine_detection_speech_end_threshold": "MachineDetectionSpeechEndThreshold",
    "machine_detection_silence_timeout": "MachineDetectionSilenceTimeout",
}


def _check_pattern(v: str | None) -> str | None:
    if v is None or not v.strip():
        return None
    try:
        ApschedulerCron().validate(v.strip())
    except InvalidCronPatternError as e:
        raise ValueError(str(e)) from e
    return v.strip()


class ProviderOptions(BaseModel):
    """Typed provider call options plus a raw passthrough for anything else.

    `extra` carries Twilio call-creation parameters by their wire name
    (e.g. {"CallerId": "..."}). Async AMD parameters are always dropped.
    """

    model_config = ConfigDict(extra="forbid")

    timeout: int | None = Field(default=None, ge=5, le=600, description="Ring timeout in seconds")
    time_limit: int | None = Field(default=None, ge=1, le=14400, description="Max call length in seconds")
    record: bool | None = None
    send_digits: str | None = Field(default=None, max_length=32)
    machine_detection_speech_threshold: int | None = Field(default=None, ge=1000, le=6000)
    machine_detection_speech_end_threshold: int | None = Field(default=None, ge=500, le=5000)
    machine_detection_silence_timeout: int | None = Field(default=None, ge=2000, le=10000)
    extra: dict[str, str] = Field(default_factory=dict)

    def to_provider_params(self) -> dict[str, str]:
        """Render as Twilio form parameters."""
        params = {k: v for k, v in self.extra.items() if k not in ASYNC_AMD_PARAMS}
        for field_name, param in _OPTION_PARAM_NAMES.items():
            value = getattr(self, field_name)
            if value is None:
                continue
            params[param] = str(value).lower() if isinstance(value, bool) else str(value)
        return params


class ScheduledCallBase(BaseModel):
    phone_number: str = Field(..., pattern=E164_PATTERN, description="Destination in E.164 format")
    contact_id: UUID | None = None
    recording_id: UUID
    scheduled_at: datetime
    recurrence_pattern: str | None = None
    recurrence_enabled: bool = False
    # Unset values fall back to the TELEPHONY_DEFAULT_* settings when the call is created.
    machine_detection: MachineDetection | None = None
    machine_detection_timeout: int | None = Field(default=None, ge=2, le=60)
    post_beep_delay: float | None = Field(default=None, ge=0, le=10)
    provider_options: ProviderOptions = Field(default_factory=ProviderOptions)

    @field_validator("scheduled_at")
    @classmethod
    def assume_utc(cls, v: datetime) -> datetime:
        return as_utc(v)

    @field_validator("recurrence_pattern")
    @classmethod
    def validate_pattern(cls, v: str | None) -> str | None:
        return _check_pattern(v)

    @model_validator(mode="after")
    def recurring_needs_pattern(self) -> "ScheduledCallBase":
        if self.recurrence_enabled and not self.recurrence_pattern:
            raise ValueError("recurrence_pattern is required when recurrence_enabled is true")
        return self


class ScheduledCallCreate(ScheduledCallBase):
    """Create payload; `trigger_immediately` places the first call right away."""

    trigger_immediately: bool = False


NON_NULLABLE_FIELDS = frozenset(
    {
        "phone_number",
        "recording_id",
        "scheduled_at",
        "recurrence_enabled",
        "machine_detection",
        "machine_detection_timeout",
        "post_beep_delay",
        "provider_options",
    }
)


class ScheduledCallUpdate(BaseModel):
    """Partial update payload.

    Omitted fields are left alone. Only `contact_id` and `recurrence_pattern`
    may be cleared with an explicit null.
    """

    phone_number: str | None = Field(default=None, pattern=E164_PATTERN)
    contact_id: UUID | None = None
    recording_id: UUID | None = None
    scheduled_at: datetime | None = None
    recurrence_pattern: str | None = None
    recurrence_enabled: bool | None = None
    machine_detection: MachineDetection | None = None
    machine_detection_timeout: int | None = Field(default=None, ge=2, le=60)
    post_beep_delay: float | None = Field(default=None, ge=0, le=10)
    provider_options: ProviderOptions | None = None

    @field_validator("scheduled_at")
    @classmethod
    def assume_utc(cls, v: datetime | None) -> datetime | None:
        return as_utc(v)

    @field_validator("recurrence_pattern")
    @classmethod
    def validate_pattern(cls, v: str | None) -> str | None:
        return _check_pattern(v)

    @model_validator(mode="after")
    def reject_required_nulls(self) -> "ScheduledCallUpdate":
        nulls = sorted(
            name for name in self.model_fields_set & NON_NULLABLE_FIELDS if getattr(self, name) is None
        )
        if nulls:
            raise ValueError("cannot be null: " + ", ".join(nulls))
        return self


class ScheduledCallRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    phone_number: str
    contact_id: UUID | None
    recording_id: UUID
    scheduled_at: datetime
    next_run_at: datetime | None
    recurrence_pattern: str | None
    recurrence_enabled: bool
    machine_detection: MachineDetection
    machine_detection_timeout: int
    post_beep_delay: float
    provider_options: dict[str, Any]
    status: ScheduledCallStatus
    last_run_at: datetime | None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class TriggerResult(BaseModel):
    """Outcome of a successful call initiation."""

    call_log_id: UUID
    provider_call_id: str


class ScheduledCallCreated(ScheduledCallRead):
    call_result: TriggerResult | None = None


class CallLogRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    scheduled_call_id: UUID | None
    contact_id: UUID | None
    recording_id: UUID
    phone_number: str
    provider_call_id: str | None
    status: CallLogStatus
    amd_result: AnsweredBy | None
    duration: int | None
    error_code: str | None
    error_message: str | None
    initiated_at: datetime
    answered_at: datetime | None
    ended_at: datetime | None
    retry_of: UUID | None


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


class CallHistoryPage(BaseModel):
    data: list[CallLogRead]
    pagination: Pagination
