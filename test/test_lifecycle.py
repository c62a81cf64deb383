"""Tests for the call lifecycle state machine."""

from uuid import UUID, uuid4

import pytest

from callscheduler.calls.executor import CallData, CallExecutor
from callscheduler.calls.lifecycle import (
    CallLifecycleStateMachine,
    StatusEvent,
    is_forward_transition,
    map_answered_by,
    normalize_status,
)
from callscheduler.calls.models import AnsweredBy, CallLog, CallLogStatus
from callscheduler.calls.repository import CallLogRepository
from callscheduler.shared.database import DatabaseManager
from callscheduler.shared.metrics import MetricsRegistry


async def _place_call(executor: CallExecutor, post_beep_delay: float = 0) -> tuple[UUID, str, UUID]:
    recording_id = uuid4()
    result = await executor.trigger_call(
        CallData(phone_number="+14155551234", recording_id=recording_id, post_beep_delay=post_beep_delay)
    )
    return result.call_log_id, result.provider_call_id, recording_id


async def _load(db: DatabaseManager, call_log_id: UUID) -> CallLog:
    async with db.session() as session:
        return await session.get(CallLog, call_log_id)


class TestNormalization:
    @pytest.mark.parametrize(
        ("token", "expected"),
        [
            ("no-answer", CallLogStatus.NO_ANSWER),
            ("in-progress", CallLogStatus.IN_PROGRESS),
            ("queued", CallLogStatus.INITIATED),
            ("Ringing", CallLogStatus.RINGING),
            ("canceled", CallLogStatus.CANCELED),
        ],
    )
    def test_known_tokens(self, token: str, expected: CallLogStatus) -> None:
        assert normalize_status(token) == expected

    @pytest.mark.parametrize("token", ["", None, "exploded", "answered"])
    def test_unknown_tokens(self, token) -> None:
        assert normalize_status(token) is None

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("human", AnsweredBy.HUMAN),
            ("machine_end_beep", AnsweredBy.MACHINE_END_BEEP),
            ("fax", AnsweredBy.FAX),
            ("robot_overlord", AnsweredBy.UNKNOWN),
        ],
    )
    def test_answered_by_mapping(self, value: str, expected: AnsweredBy) -> None:
        assert map_answered_by(value) == expected

    def test_answered_by_absent(self) -> None:
        assert map_answered_by(None) is None

    def test_transitions_are_monotonic(self) -> None:
        assert is_forward_transition(CallLogStatus.INITIATED, CallLogStatus.RINGING)
        assert is_forward_transition(CallLogStatus.RINGING, CallLogStatus.COMPLETED)
        assert not is_forward_transition(CallLogStatus.IN_PROGRESS, CallLogStatus.RINGING)
        assert not is_forward_transition(CallLogStatus.RINGING, CallLogStatus.RINGING)
        assert not is_forward_transition(CallLogStatus.COMPLETED, CallLogStatus.FAILED)


class TestStatusEvents:
    @pytest.mark.asyncio
    async def test_no_answer_is_terminal(
        self,
        db: DatabaseManager,
        executor: CallExecutor,
        lifecycle: CallLifecycleStateMachine,
        metrics: MetricsRegistry,
    ) -> None:
        call_log_id, sid, _ = await _place_call(executor)

        applied = await lifecycle.handle_status_event(StatusEvent(call_sid=sid, status="no-answer"))

        log = await _load(db, call_log_id)
        assert applied is True
        assert log.status == CallLogStatus.NO_ANSWER
        assert log.ended_at is not None
        assert metrics.calls_total.get(status="no_answer") == 1
        assert metrics.last_call_timestamp.get() > 0
        assert len(lifecycle._locks) == 0

    @pytest.mark.asyncio
    async def test_full_progression_records_timestamps_and_duration(
        self,
        db: DatabaseManager,
        executor: CallExecutor,
        lifecycle: CallLifecycleStateMachine,
        metrics: MetricsRegistry,
    ) -> None:
        call_log_id, sid, _ = await _place_call(executor)

        for token in ("ringing", "in-progress"):
            await lifecycle.handle_status_event(StatusEvent(call_sid=sid, status=token))
        answered = await _load(db, call_log_id)
        assert answered.status == CallLogStatus.IN_PROGRESS
        assert answered.answered_at is not None
        assert answered.ended_at is None

        await lifecycle.handle_status_event(StatusEvent(call_sid=sid, status="completed", duration=42))

        log = await _load(db, call_log_id)
        assert log.status == CallLogStatus.COMPLETED
        assert log.duration == 42
        assert log.ended_at is not None
        assert metrics.call_duration_seconds.count() == 1
        assert metrics.calls_total.get(status="completed") == 1

    @pytest.mark.asyncio
    async def test_late_events_do_not_regress(
        self,
        db: DatabaseManager,
        executor: CallExecutor,
        lifecycle: CallLifecycleStateMachine,
    ) -> None:
        call_log_id, sid, _ = await _place_call(executor)
        await lifecycle.handle_status_event(StatusEvent(call_sid=sid, status="completed", duration=10))

        assert await lifecycle.handle_status_event(StatusEvent(call_sid=sid, status="ringing")) is False
        assert await lifecycle.handle_status_event(StatusEvent(call_sid=sid, status="failed")) is False

        log = await _load(db, call_log_id)
        assert log.status == CallLogStatus.COMPLETED
        assert log.duration == 10

    @pytest.mark.asyncio
    async def test_failed_event_stores_error(
        self,
        db: DatabaseManager,
        executor: CallExecutor,
        lifecycle: CallLifecycleStateMachine,
    ) -> None:
        call_log_id, sid, _ = await _place_call(executor)

        await lifecycle.handle_status_event(
            StatusEvent(call_sid=sid, status="failed", error_code="13224", error_message="Invalid number")
        )

        log = await _load(db, call_log_id)
        assert log.status == CallLogStatus.FAILED
        assert log.error_code == "13224"
        assert log.error_message == "Invalid number"

    @pytest.mark.asyncio
    async def test_unknown_call_sid_dropped(self, lifecycle: CallLifecycleStateMachine) -> None:
        assert await lifecycle.handle_status_event(StatusEvent(call_sid="CA_UNKNOWN", status="completed")) is False

    @pytest.mark.asyncio
    async def test_unrecognized_status_dropped(
        self,
        db: DatabaseManager,
        executor: CallExecutor,
        lifecycle: CallLifecycleStateMachine,
    ) -> None:
        call_log_id, sid, _ = await _place_call(executor)

        assert await lifecycle.handle_status_event(StatusEvent(call_sid=sid, status="exploded")) is False
        assert (await _load(db, call_log_id)).status == CallLogStatus.INITIATED

    @pytest.mark.asyncio
    async def test_not_yet_correlatable_log_is_treated_as_unknown(
        self,
        db: DatabaseManager,
        lifecycle: CallLifecycleStateMachine,
    ) -> None:
        async with db.session() as session:
            log = await CallLogRepository(session).create(
                phone_number="+14155551234",
                recording_id=uuid4(),
                status=CallLogStatus.INITIATED,
            )

        event = StatusEvent(call_sid="CA_NOT_WRITTEN_YET", status="ringing", call_log_id=log.id)

        assert await lifecycle.handle_status_event(event) is False
        assert (await _load(db, log.id)).status == CallLogStatus.INITIATED

    def test_event_from_form(self) -> None:
        event = StatusEvent.from_form(
            {"CallSid": "CA1", "CallStatus": "completed", "CallDuration": "17", "ErrorCode": ""}
        )

        assert event.call_sid == "CA1"
        assert event.duration == 17
        assert event.error_code is None


class TestInstructionFetch:
    @pytest.mark.asyncio
    async def test_persists_detection_then_builds_document(
        self,
        db: DatabaseManager,
        executor: CallExecutor,
        lifecycle: CallLifecycleStateMachine,
    ) -> None:
        call_log_id, _, recording_id = await _place_call(executor, post_beep_delay=2)

        document = await lifecycle.handle_instruction_fetch(call_log_id, "machine_end_beep")

        log = await _load(db, call_log_id)
        assert log.amd_result == AnsweredBy.MACHINE_END_BEEP
        assert '<Pause length="2" />' in document
        assert f"https://calls.example.com/api/twilio/audio/{recording_id}" in document

    @pytest.mark.asyncio
    async def test_unrecognized_detection_stored_as_unknown(
        self,
        db: DatabaseManager,
        executor: CallExecutor,
        lifecycle: CallLifecycleStateMachine,
    ) -> None:
        call_log_id, _, _ = await _place_call(executor)

        await lifecycle.handle_instruction_fetch(call_log_id, "something_new")

        assert (await _load(db, call_log_id)).amd_result == AnsweredBy.UNKNOWN

    @pytest.mark.asyncio
    async def test_document_does_not_depend_on_detection(
        self,
        executor: CallExecutor,
        lifecycle: CallLifecycleStateMachine,
    ) -> None:
        call_log_id, _, _ = await _place_call(executor)

        human = await lifecycle.handle_instruction_fetch(call_log_id, "human")
        machine = await lifecycle.handle_instruction_fetch(call_log_id, "machine_end_silence")
        absent = await lifecycle.handle_instruction_fetch(call_log_id, None)

        assert human == machine == absent

    @pytest.mark.asyncio
    async def test_unknown_call_log(self, lifecycle: CallLifecycleStateMachine) -> None:
        assert await lifecycle.handle_instruction_fetch(uuid4(), "human") is None


class TestDetectionCallback:
    @pytest.mark.asyncio
    async def test_persists_by_call_sid(
        self,
        db: DatabaseManager,
        executor: CallExecutor,
        lifecycle: CallLifecycleStateMachine,
    ) -> None:
        call_log_id, sid, _ = await _place_call(executor)

        assert await lifecycle.handle_detection_callback(sid, "human") is True
        assert (await _load(db, call_log_id)).amd_result == AnsweredBy.HUMAN

    @pytest.mark.asyncio
    async def test_unknown_call_sid(self, lifecycle: CallLifecycleStateMachine) -> None:
        assert await lifecycle.handle_detection_callback("CA_UNKNOWN", "human") is False
