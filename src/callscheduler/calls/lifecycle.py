"""
Call lifecycle state machine driven by provider webhooks.

Status callbacks move a CallLog forward through
initiated -> ringing -> in_progress -> terminal. Late or duplicate events
that would move it backwards are ignored, and terminal states are final.

Webhooks for calls we cannot correlate (unknown CallSid, or a CallLog whose
provider call id has not been written yet) are logged and dropped so the
provider is never asked to retry them.
"""

import asyncio
import time
import weakref
from dataclasses import dataclass
from uuid import UUID

from callscheduler.calls.models import AnsweredBy, CallLog, CallLogStatus, utcnow
from callscheduler.calls.repository import CallLogRepository
from callscheduler.shared.database import DatabaseManager
from callscheduler.shared.exceptions import UnknownCorrelationError
from callscheduler.shared.logging import get_logger
from callscheduler.shared.metrics import MetricsRegistry, get_metrics_registry
from callscheduler.telephony.config import TelephonyConfig
from callscheduler.telephony.twiml import build_instruction_document

logger = get_logger(__name__)

_STATUS_TOKENS: dict[str, CallLogStatus] = {
    "queued": CallLogStatus.INITIATED,
    "initiated": CallLogStatus.INITIATED,
    "ringing": CallLogStatus.RINGING,
    "in-progress": CallLogStatus.IN_PROGRESS,
    "in_progress": CallLogStatus.IN_PROGRESS,
    "completed": CallLogStatus.COMPLETED,
    "failed": CallLogStatus.FAILED,
    "busy": CallLogStatus.BUSY,
    "no-answer": CallLogStatus.NO_ANSWER,
    "no_answer": CallLogStatus.NO_ANSWER,
    "canceled": CallLogStatus.CANCELED,
}

_RANK: dict[CallLogStatus, int] = {
    CallLogStatus.INITIATED: 0,
    CallLogStatus.RINGING: 1,
    CallLogStatus.IN_PROGRESS: 2,
}
_TERMINAL_RANK = 3


def normalize_status(token: str | None) -> CallLogStatus | None:
    """Map a provider status token to CallLogStatus; None if unrecognized."""
    if not token:
        return None
    return _STATUS_TOKENS.get(token.strip().lower())


def map_answered_by(value: str | None) -> AnsweredBy | None:
    """Map the provider's AnsweredBy value onto the closed detection enum."""
    if not value:
        return None
    try:
        return AnsweredBy(value.strip().lower())
    except ValueError:
        return AnsweredBy.UNKNOWN


def _rank(status: CallLogStatus) -> int:
    return _TERMINAL_RANK if status.is_terminal else _RANK[status]


def is_forward_transition(current: CallLogStatus, new: CallLogStatus) -> bool:
    if current.is_terminal:
        return False
    return _rank(new) > _rank(current)


@dataclass(frozen=True)
class StatusEvent:
    """One status callback from the provider."""

    call_sid: str
    status: str
    duration: int | None = None
    error_code: str | None = None
    error_message: str | None = None
    call_log_id: UUID | None = None

    @classmethod
    def from_form(cls, form: dict[str, str], call_log_id: UUID | None = None) -> "StatusEvent":
        duration: int | None = None
        raw_duration = form.get("CallDuration")
        if raw_duration:
            try:
                duration = int(raw_duration)
            except ValueError:
                logger.warning("Ignoring non-integer CallDuration", extra={"value": raw_duration})
        return cls(
            call_sid=form.get("CallSid", ""),
            status=form.get("CallStatus", ""),
            duration=duration,
            error_code=form.get("ErrorCode") or None,
            error_message=form.get("ErrorMessage") or None,
            call_log_id=call_log_id,
        )


class CallLifecycleStateMachine:
    """Applies provider webhooks to CallLog rows."""

    def __init__(
        self,
        db: DatabaseManager,
        config: TelephonyConfig,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        self._db = db
        self._config = config
        self._metrics = metrics or get_metrics_registry()
        # Entries vanish once no handler holds or waits on the lock.
        self._locks: weakref.WeakValueDictionary[UUID, asyncio.Lock] = weakref.WeakValueDictionary()

    def _get_lock(self, call_log_id: UUID) -> asyncio.Lock:
        lock = self._locks.get(call_log_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[call_log_id] = lock
        return lock

    def audio_url_for(self, recording_id: UUID) -> str:
        return self._config.get_webhook_url(f"/api/twilio/audio/{recording_id}")

    async def _resolve_call_log_id(self, call_sid: str, hint: UUID | None = None) -> UUID:
        async with self._db.session() as session:
            repo = CallLogRepository(session)
            call_log = await repo.get_by_provider_call_id(call_sid) if call_sid else None
            if call_log is None and hint is not None:
                pending = await repo.get_by_id(hint)
                if pending is not None and not pending.is_correlatable:
                    logger.info(
                        "Call log not yet correlatable with provider call id",
                        extra={"call_log_id": str(hint), "call_sid": call_sid},
                    )
        if call_log is None:
            raise UnknownCorrelationError(call_sid or "<missing CallSid>")
        return call_log.id

    async def handle_status_event(self, event: StatusEvent) -> bool:
        """Apply a status callback.

        Returns:
            True if the CallLog changed, False if the event was dropped.
        """
        new_status = normalize_status(event.status)
        if new_status is None:
            logger.warning(
                "Dropping status callback with unrecognized status",
                extra={"call_sid": event.call_sid, "call_status": event.status},
            )
            return False

        try:
            call_log_id = await self._resolve_call_log_id(event.call_sid, event.call_log_id)
        except UnknownCorrelationError as e:
            logger.warning(
                "Dropping status callback for unknown call",
                extra={"call_sid": event.call_sid, "call_status": event.status, "error": e.message},
            )
            return False

        async with self._get_lock(call_log_id):
            async with self._db.session() as session:
                repo = CallLogRepository(session)
                call_log = await repo.get_by_id(call_log_id)
                if call_log is None:
                    logger.warning("Call log disappeared", extra={"call_log_id": str(call_log_id)})
                    return False
                if not is_forward_transition(call_log.status, new_status):
                    logger.info(
                        "Ignoring out-of-order status callback",
                        extra={
                            "call_log_id": str(call_log_id),
                            "current_status": call_log.status.value,
                            "event_status": new_status.value,
                        },
                    )
                    return False
                self._apply(call_log, new_status, event)

        logger.info(
            "Call status updated",
            extra={
                "call_log_id": str(call_log_id),
                "call_sid": event.call_sid,
                "status": new_status.value,
            },
        )
        if new_status.is_terminal:
            self._record_terminal_metrics(new_status, event.duration)
        return True

    def _apply(self, call_log: CallLog, status: CallLogStatus, event: StatusEvent) -> None:
        call_log.status = status
        if status == CallLogStatus.IN_PROGRESS:
            call_log.answered_at = utcnow()
        if status.is_terminal:
            call_log.ended_at = utcnow()
            if event.duration is not None:
                call_log.duration = event.duration
            if event.error_code:
                call_log.error_code = event.error_code
            if event.error_message:
                call_log.error_message = event.error_message[:1000]

    def _record_terminal_metrics(self, status: CallLogStatus, duration: int | None) -> None:
        if duration is not None:
            self._metrics.call_duration_seconds.observe(duration)
        self._metrics.calls_total.inc(status=status.value)
        self._metrics.last_call_timestamp.set(time.time())

    def _persist_detection(self, call_log: CallLog, answered_by: str) -> AnsweredBy | None:
        result = map_answered_by(answered_by)
        if result is not None:
            call_log.amd_result = result
            logger.info(
                "Answering machine detection result",
                extra={
                    "call_log_id": str(call_log.id),
                    "answered_by": answered_by,
                    "amd_result": result.value,
                },
            )
        return result

    async def handle_instruction_fetch(self, call_log_id: UUID, answered_by: str | None = None) -> str | None:
        """Persist any detection result, then build the call's instruction document.

        Returns:
            TwiML document, or None if the call log is unknown.
        """
        async with self._get_lock(call_log_id):
            async with self._db.session() as session:
                call_log = await CallLogRepository(session).get_by_id(call_log_id)
                if call_log is None:
                    logger.warning("Instruction fetch for unknown call log", extra={"call_log_id": str(call_log_id)})
                    return None
                if answered_by:
                    self._persist_detection(call_log, answered_by)
                recording_id = call_log.recording_id
                post_beep_delay = call_log.post_beep_delay or 0

        return build_instruction_document(self.audio_url_for(recording_id), post_beep_delay)

    async def handle_detection_callback(self, call_sid: str, answered_by: str | None) -> bool:
        """Legacy asynchronous detection callback, correlated by CallSid."""
        try:
            call_log_id = await self._resolve_call_log_id(call_sid)
        except UnknownCorrelationError as e:
            logger.warning("Dropping detection callback for unknown call", extra={"error": e.message})
            return False
        if not answered_by:
            return False

        async with self._get_lock(call_log_id):
            async with self._db.session() as session:
                call_log = await CallLogRepository(session).get_by_id(call_log_id)
                if call_log is None:
                    return False
                self._persist_detection(call_log, answered_by)
        return True
