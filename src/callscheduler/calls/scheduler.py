"""
Call scheduler: arms timers for pending scheduled calls and fires them.

A scheduled call has a registry entry exactly while it is pending:
- one-shot calls are armed for `scheduled_at` (overdue ones fire right
  away) and leave the registry when they fire
- recurring calls follow their cron pattern and stay registered; after
  each firing they go back to pending with `next_run_at` advanced

Any failure in a firing is contained at the firing boundary: it is logged,
the call is marked failed (one-shot) or returned to pending (recurring),
and the scheduler keeps running.
"""

import asyncio
from collections.abc import Callable
from datetime import datetime
from uuid import UUID

from callscheduler.calls.cron import ApschedulerCron, CronSchedule, InvalidCronPatternError
from callscheduler.calls.executor import CallData, CallExecutor
from callscheduler.calls.models import ScheduledCall, ScheduledCallStatus, as_utc, utcnow
from callscheduler.calls.registry import JobHandle, JobKind, JobRegistry
from callscheduler.calls.repository import ScheduledCallRepository
from callscheduler.calls.schemas import TriggerResult
from callscheduler.shared.database import DatabaseManager
from callscheduler.shared.exceptions import ScheduleExecutionError
from callscheduler.shared.logging import get_logger
from callscheduler.shared.metrics import MetricsRegistry, get_metrics_registry

logger = get_logger(__name__)


class CallScheduler:
    """Owns the job registry and the firing of scheduled calls."""

    def __init__(
        self,
        db: DatabaseManager,
        executor: CallExecutor,
        cron: CronSchedule | None = None,
        registry: JobRegistry | None = None,
        clock: Callable[[], datetime] = utcnow,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        self._db = db
        self._executor = executor
        self._cron = cron or ApschedulerCron()
        self._registry = registry or JobRegistry()
        self._clock = clock
        self._metrics = metrics or get_metrics_registry()
        self._inflight: set[asyncio.Task] = set()

    @property
    def registry(self) -> JobRegistry:
        return self._registry

    async def init_scheduler(self) -> int:
        """Arm every pending scheduled call. Overdue one-shots fire immediately.

        Returns:
            Number of pending scheduled calls found.
        """
        async with self._db.session() as session:
            pending = list(
                await ScheduledCallRepository(session).list_by_status(ScheduledCallStatus.PENDING)
            )

        logger.info("Restoring scheduled calls", extra={"pending": len(pending)})
        for call in pending:
            await self.schedule_call(call)

        await self.refresh_scheduled_gauge()
        return len(pending)

    async def schedule_call(self, call: ScheduledCall) -> None:
        """Arm (or re-arm) the job for `call`. Idempotent per call id."""
        call_id = call.id
        fire_now = False

        async with self._registry.lock_for(call_id):
            self._registry.cancel(call_id)

            if call.is_recurring:
                pattern = call.recurrence_pattern or ""
                try:
                    self._cron.next_fire_time(pattern, self._clock())
                except InvalidCronPatternError:
                    logger.error(
                        "Invalid recurrence pattern, call not scheduled",
                        extra={"scheduled_call_id": str(call_id), "pattern": pattern},
                    )
                    return
                handle = JobHandle(call_id=call_id, kind=JobKind.RECURRING)
                handle.task = asyncio.create_task(self._recurring_timer(handle, pattern))
                self._registry.register(handle)
                logger.info(
                    "Recurring call scheduled",
                    extra={"scheduled_call_id": str(call_id), "pattern": pattern},
                )
            else:
                delay = (as_utc(call.scheduled_at) - self._clock()).total_seconds()
                if delay <= 0:
                    fire_now = True
                else:
                    handle = JobHandle(call_id=call_id, kind=JobKind.ONE_SHOT)
                    handle.task = asyncio.create_task(self._one_shot_timer(handle, delay))
                    self._registry.register(handle)
                    logger.info(
                        "One-shot call scheduled",
                        extra={"scheduled_call_id": str(call_id), "delay_seconds": round(delay, 3)},
                    )

        if fire_now:
            logger.info("Scheduled time already passed, executing now", extra={"scheduled_call_id": str(call_id)})
            await self._run_firing(call_id)

    async def cancel_scheduled_job(self, call_id: UUID) -> bool:
        """Disarm the job for `call_id`; unknown ids are a no-op."""
        async with self._registry.lock_for(call_id):
            return self._registry.cancel(call_id)

    async def _one_shot_timer(self, handle: JobHandle, delay: float) -> None:
        await asyncio.sleep(delay)
        async with self._registry.lock_for(handle.call_id):
            if handle.cancelled:
                return
            self._registry.discard(handle)
        self._dispatch(handle.call_id)

    async def _recurring_timer(self, handle: JobHandle, pattern: str) -> None:
        after = self._clock()
        while not handle.cancelled:
            fire_at = self._cron.next_fire_time(pattern, after)
            if fire_at is None:
                logger.warning(
                    "Recurrence pattern has no further occurrences",
                    extra={"scheduled_call_id": str(handle.call_id), "pattern": pattern},
                )
                async with self._registry.lock_for(handle.call_id):
                    self._registry.discard(handle)
                return
            await asyncio.sleep(max((fire_at - self._clock()).total_seconds(), 0))
            if handle.cancelled:
                return
            self._dispatch(handle.call_id)
            # The loop timer can wake slightly early; never fire the same occurrence twice.
            after = max(self._clock(), fire_at)

    def _dispatch(self, call_id: UUID) -> None:
        task = asyncio.create_task(self._run_firing(call_id))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _run_firing(self, call_id: UUID) -> TriggerResult | None:
        """Firing boundary: nothing raised below escapes into the timers."""
        try:
            return await self.execute_scheduled_call(call_id)
        except ScheduleExecutionError as e:
            logger.error(
                "Scheduled call execution failed",
                extra={"scheduled_call_id": str(call_id), "error": e.message},
            )
        except Exception:
            logger.exception(
                "Unexpected error while firing scheduled call",
                extra={"scheduled_call_id": str(call_id)},
            )
        return None

    async def execute_scheduled_call(self, call_id: UUID) -> TriggerResult | None:
        """Fire one occurrence of a scheduled call.

        Returns None when the call was deleted or is no longer pending.

        Raises:
            ScheduleExecutionError: The call attempt could not be placed.
        """
        async with self._db.session() as session:
            repo = ScheduledCallRepository(session)
            call = await repo.get_by_id(call_id)
            if call is None or call.status != ScheduledCallStatus.PENDING:
                logger.info(
                    "Skipping firing, call no longer pending",
                    extra={
                        "scheduled_call_id": str(call_id),
                        "status": call.status.value if call else None,
                    },
                )
                return None
            call.status = ScheduledCallStatus.IN_PROGRESS
            call.last_run_at = self._clock()
            call_data = CallData.from_scheduled_call(call)

        try:
            result = await self._executor.trigger_call(call_data)
        except Exception as e:
            await self._finish_firing(call_id, succeeded=False)
            raise ScheduleExecutionError(call_id, str(e)) from e

        await self._finish_firing(call_id, succeeded=True)
        return result

    async def _finish_firing(self, call_id: UUID, succeeded: bool) -> None:
        # Reads the row again: an update during the firing may have changed the recurrence.
        async with self._db.session() as session:
            call = await ScheduledCallRepository(session).get_by_id(call_id)
            if call is None or call.status != ScheduledCallStatus.IN_PROGRESS:
                return
            if call.is_recurring:
                call.status = ScheduledCallStatus.PENDING
                try:
                    call.next_run_at = self._cron.next_fire_time(call.recurrence_pattern or "", self._clock())
                except InvalidCronPatternError:
                    call.next_run_at = None
            else:
                call.status = ScheduledCallStatus.COMPLETED if succeeded else ScheduledCallStatus.FAILED
                call.next_run_at = None
            new_status = call.status

        logger.info(
            "Scheduled call fired",
            extra={
                "scheduled_call_id": str(call_id),
                "succeeded": succeeded,
                "status": new_status.value,
            },
        )
        # An update or manual trigger during the firing disarms the recurring job.
        if new_status == ScheduledCallStatus.PENDING and call_id not in self._registry:
            await self.schedule_call(call)
        await self.refresh_scheduled_gauge()

    async def refresh_scheduled_gauge(self) -> int:
        async with self._db.session() as session:
            count = await ScheduledCallRepository(session).count_by_status(ScheduledCallStatus.PENDING)
        self._metrics.calls_scheduled.set(count)
        return count

    async def wait_idle(self) -> None:
        """Wait for every in-flight firing to finish."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def shutdown(self) -> None:
        """Disarm every job and wait for in-flight firings."""
        timers = [
            handle.task
            for handle in (self._registry.get(call_id) for call_id in self._registry.ids())
            if handle is not None and handle.task is not None
        ]
        cancelled = self._registry.cancel_all()
        await asyncio.gather(*timers, return_exceptions=True)
        await self.wait_idle()
        logger.info("Call scheduler stopped", extra={"disarmed": cancelled})
