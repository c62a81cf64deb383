"""
Scheduled call and call history operations behind the REST API.

Every mutation of a ScheduledCall is paired with the matching scheduler
operation so the job registry stays in step with the persisted status.
"""

import csv
import io
import math
from collections.abc import Sequence
from datetime import datetime
from typing import Any
from uuid import UUID

from callscheduler.calls.cron import ApschedulerCron, CronSchedule
from callscheduler.calls.executor import CallData, CallExecutor
from callscheduler.calls.models import (
    RETRYABLE_CALL_STATUSES,
    CallLog,
    CallLogStatus,
    MachineDetection,
    ScheduledCall,
    ScheduledCallStatus,
    utcnow,
)
from callscheduler.calls.repository import CallLogRepository, ScheduledCallRepository
from callscheduler.calls.scheduler import CallScheduler
from callscheduler.calls.schemas import (
    CallHistoryPage,
    CallLogRead,
    Pagination,
    ProviderOptions,
    ScheduledCallCreate,
    ScheduledCallUpdate,
    TriggerResult,
)
from callscheduler.shared.database import DatabaseManager
from callscheduler.shared.exceptions import NotFoundError, ValidationError
from callscheduler.shared.logging import get_logger
from callscheduler.telephony.config import TelephonyConfig

logger = get_logger(__name__)

CSV_HEADERS = [
    "ID",
    "Phone Number",
    "Contact",
    "Recording",
    "Status",
    "AMD Result",
    "Duration",
    "Initiated At",
    "Error",
]


class ScheduledCallService:
    """Orchestrates scheduled call CRUD, manual triggers and retries."""

    def __init__(
        self,
        db: DatabaseManager,
        scheduler: CallScheduler,
        executor: CallExecutor,
        config: TelephonyConfig,
        cron: CronSchedule | None = None,
    ) -> None:
        self._db = db
        self._scheduler = scheduler
        self._executor = executor
        self._config = config
        self._cron = cron or ApschedulerCron()

    # ---------------------------------------------------------------- scheduled

    async def list_scheduled(self, status: ScheduledCallStatus | None = None) -> Sequence[ScheduledCall]:
        async with self._db.session() as session:
            return await ScheduledCallRepository(session).list_all(status)

    async def get_scheduled(self, call_id: UUID) -> ScheduledCall:
        async with self._db.session() as session:
            call = await ScheduledCallRepository(session).get_by_id(call_id)
        if call is None:
            raise NotFoundError("Scheduled call", call_id)
        return call

    def _first_run(self, scheduled_at: datetime, pattern: str | None, recurring: bool) -> datetime | None:
        if recurring and pattern:
            return self._cron.next_fire_time(pattern, utcnow())
        return scheduled_at

    async def create(self, payload: ScheduledCallCreate) -> tuple[ScheduledCall, TriggerResult | None]:
        """Persist a scheduled call, then arm it (or place the first call now)."""
        data = payload.model_dump(exclude={"trigger_immediately", "provider_options"})
        data["provider_options"] = payload.provider_options.model_dump(exclude_defaults=True)
        if data["machine_detection"] is None:
            data["machine_detection"] = self._config.default_machine_detection
        if data["machine_detection_timeout"] is None:
            data["machine_detection_timeout"] = self._config.default_machine_detection_timeout
        if data["post_beep_delay"] is None:
            data["post_beep_delay"] = self._config.default_post_beep_delay
        recurring = bool(payload.recurrence_enabled and payload.recurrence_pattern)
        data["next_run_at"] = self._first_run(payload.scheduled_at, payload.recurrence_pattern, recurring)
        data["status"] = ScheduledCallStatus.PENDING

        async with self._db.session() as session:
            call = await ScheduledCallRepository(session).create(**data)

        logger.info(
            "Scheduled call created",
            extra={"scheduled_call_id": str(call.id), "trigger_immediately": payload.trigger_immediately},
        )

        call_result: TriggerResult | None = None
        if payload.trigger_immediately:
            call_result = await self._trigger(call)
        else:
            await self._scheduler.schedule_call(call)

        await self._scheduler.refresh_scheduled_gauge()
        return await self.get_scheduled(call.id), call_result

    async def update(self, call_id: UUID, payload: ScheduledCallUpdate) -> ScheduledCall:
        changes: dict[str, Any] = payload.model_dump(exclude_unset=True, exclude={"provider_options"})
        if payload.provider_options is not None:
            changes["provider_options"] = payload.provider_options.model_dump(exclude_defaults=True)

        async with self._db.session() as session:
            repo = ScheduledCallRepository(session)
            call = await repo.get_by_id(call_id)
            if call is None:
                raise NotFoundError("Scheduled call", call_id)
            for name, value in changes.items():
                setattr(call, name, value)
            if call.recurrence_enabled and not call.recurrence_pattern:
                raise ValidationError("recurrence_pattern is required when recurrence_enabled is true")
            if {"scheduled_at", "recurrence_pattern", "recurrence_enabled"} & changes.keys():
                call.next_run_at = self._first_run(call.scheduled_at, call.recurrence_pattern, call.is_recurring)
            await session.flush()
            await session.refresh(call)

        # schedule_call replaces any armed job; other statuses must not keep one.
        if call.status == ScheduledCallStatus.PENDING:
            await self._scheduler.schedule_call(call)
        else:
            await self._scheduler.cancel_scheduled_job(call_id)

        logger.info("Scheduled call updated", extra={"scheduled_call_id": str(call_id), "fields": sorted(changes)})
        return await self.get_scheduled(call_id)

    async def delete(self, call_id: UUID) -> None:
        await self._scheduler.cancel_scheduled_job(call_id)
        async with self._db.session() as session:
            deleted = await ScheduledCallRepository(session).delete(call_id)
        if not deleted:
            raise NotFoundError("Scheduled call", call_id)
        await self._scheduler.refresh_scheduled_gauge()
        logger.info("Scheduled call deleted", extra={"scheduled_call_id": str(call_id)})

    async def pause(self, call_id: UUID) -> ScheduledCall:
        call = await self.get_scheduled(call_id)
        if call.status not in (ScheduledCallStatus.PENDING, ScheduledCallStatus.IN_PROGRESS):
            raise ValidationError(f"Cannot pause a call with status {call.status.value}")

        await self._scheduler.cancel_scheduled_job(call_id)
        async with self._db.session() as session:
            call = await ScheduledCallRepository(session).update(call_id, status=ScheduledCallStatus.PAUSED)
        await self._scheduler.refresh_scheduled_gauge()
        logger.info("Scheduled call paused", extra={"scheduled_call_id": str(call_id)})
        return call

    async def resume(self, call_id: UUID) -> ScheduledCall:
        call = await self.get_scheduled(call_id)
        if call.status != ScheduledCallStatus.PAUSED:
            raise ValidationError(f"Cannot resume a call with status {call.status.value}")

        fields: dict[str, Any] = {"status": ScheduledCallStatus.PENDING}
        if call.is_recurring:
            fields["next_run_at"] = self._first_run(call.scheduled_at, call.recurrence_pattern, True)
        async with self._db.session() as session:
            call = await ScheduledCallRepository(session).update(call_id, **fields)

        await self._scheduler.schedule_call(call)
        await self._scheduler.refresh_scheduled_gauge()
        logger.info("Scheduled call resumed", extra={"scheduled_call_id": str(call_id)})
        return await self.get_scheduled(call_id)

    async def trigger_now(self, call_id: UUID) -> TriggerResult:
        """Place the call immediately, outside its schedule."""
        call = await self.get_scheduled(call_id)
        await self._scheduler.cancel_scheduled_job(call_id)
        result = await self._trigger(call)
        await self._scheduler.refresh_scheduled_gauge()
        logger.info("Call triggered manually", extra={"scheduled_call_id": str(call_id)})
        return result

    async def _trigger(self, call: ScheduledCall) -> TriggerResult:
        """Place a call for `call` now and settle its status.

        One-shot calls end up completed (or failed); recurring calls stay on
        their schedule and are re-armed.
        """
        call_data = CallData.from_scheduled_call(call)
        try:
            result = await self._executor.trigger_call(call_data)
        except Exception:
            await self._settle_after_trigger(call.id, succeeded=False)
            raise
        await self._settle_after_trigger(call.id, succeeded=True)
        return result

    async def _settle_after_trigger(self, call_id: UUID, succeeded: bool) -> None:
        async with self._db.session() as session:
            call = await ScheduledCallRepository(session).get_by_id(call_id)
            if call is None:
                return
            call.last_run_at = utcnow()
            if not call.is_recurring:
                call.status = ScheduledCallStatus.COMPLETED if succeeded else ScheduledCallStatus.FAILED
                call.next_run_at = None
            rearm = call.is_recurring and call.status == ScheduledCallStatus.PENDING

        if rearm:
            await self._scheduler.schedule_call(call)

    # ------------------------------------------------------------------ history

    async def list_history(
        self,
        *,
        status: CallLogStatus | None = None,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
        phone: str | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> CallHistoryPage:
        async with self._db.session() as session:
            rows, total = await CallLogRepository(session).query(
                status=status,
                date_from=date_from,
                date_to=date_to,
                phone_number=phone,
                offset=(page - 1) * limit,
                limit=limit,
            )
        return CallHistoryPage(
            data=[CallLogRead.model_validate(row) for row in rows],
            pagination=Pagination(
                page=page,
                limit=limit,
                total=total,
                total_pages=math.ceil(total / limit) if limit else 0,
            ),
        )

    async def get_history(self, call_log_id: UUID) -> CallLog:
        async with self._db.session() as session:
            call_log = await CallLogRepository(session).get_by_id(call_log_id)
        if call_log is None:
            raise NotFoundError("Call log", call_log_id)
        return call_log

    async def retry(self, call_log_id: UUID) -> TriggerResult:
        """Place a new attempt for a failed, busy or unanswered call."""
        async with self._db.session() as session:
            original = await CallLogRepository(session).get_by_id(call_log_id)
            if original is None:
                raise NotFoundError("Call log", call_log_id)
            if original.status not in RETRYABLE_CALL_STATUSES:
                raise ValidationError("Can only retry failed, busy or unanswered calls")
            scheduled = (
                await ScheduledCallRepository(session).get_by_id(original.scheduled_call_id)
                if original.scheduled_call_id
                else None
            )
            call_data = self._retry_call_data(original, scheduled)

        result = await self._executor.trigger_call(call_data, retry_of=original.id)
        logger.info(
            "Call retried",
            extra={"original_call_log_id": str(call_log_id), "call_log_id": str(result.call_log_id)},
        )
        return result

    def _retry_call_data(self, original: CallLog, scheduled: ScheduledCall | None) -> CallData:
        if scheduled is not None:
            return CallData(
                phone_number=original.phone_number,
                recording_id=original.recording_id,
                scheduled_call_id=scheduled.id,
                contact_id=original.contact_id,
                machine_detection=MachineDetection(scheduled.machine_detection),
                machine_detection_timeout=scheduled.machine_detection_timeout,
                post_beep_delay=original.post_beep_delay,
                provider_options=ProviderOptions.model_validate(scheduled.provider_options or {}),
            )
        return CallData(
            phone_number=original.phone_number,
            recording_id=original.recording_id,
            contact_id=original.contact_id,
            machine_detection=self._config.default_machine_detection,
            machine_detection_timeout=self._config.default_machine_detection_timeout,
            post_beep_delay=original.post_beep_delay,
        )

    async def export_csv(
        self,
        *,
        status: CallLogStatus | None = None,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
        phone: str | None = None,
    ) -> str:
        async with self._db.session() as session:
            rows, _ = await CallLogRepository(session).query(
                status=status,
                date_from=date_from,
                date_to=date_to,
                phone_number=phone,
            )

        buf = io.StringIO()
        writer = csv.writer(buf, lineterminator="\n")
        writer.writerow(CSV_HEADERS)
        for row in rows:
            writer.writerow(
                [
                    str(row.id),
                    row.phone_number,
                    str(row.contact_id) if row.contact_id else "",
                    str(row.recording_id),
                    row.status.value,
                    row.amd_result.value if row.amd_result else "",
                    row.duration if row.duration is not None else "",
                    row.initiated_at.isoformat() if row.initiated_at else "",
                    row.error_message or "",
                ]
            )
        return buf.getvalue()
