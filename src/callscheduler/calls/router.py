"""
REST API for scheduled calls and call history.
"""

from datetime import datetime
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, Response, status

from callscheduler.calls.models import CallLogStatus, ScheduledCallStatus
from callscheduler.calls.schemas import (
    CallHistoryPage,
    CallLogRead,
    ScheduledCallCreate,
    ScheduledCallCreated,
    ScheduledCallRead,
    ScheduledCallUpdate,
    TriggerResult,
)
from callscheduler.calls.service import ScheduledCallService

router = APIRouter(prefix="/api/calls", tags=["calls"])


def get_call_service(request: Request) -> ScheduledCallService:
    """Dependency returning the service built at app startup."""
    return request.app.state.call_service


ServiceDep = Annotated[ScheduledCallService, Depends(get_call_service)]


# ============ Scheduled calls ============


@router.get("/scheduled", response_model=list[ScheduledCallRead])
async def list_scheduled_calls(
    service: ServiceDep,
    status_filter: Annotated[ScheduledCallStatus | None, Query(alias="status")] = None,
) -> list[ScheduledCallRead]:
    calls = await service.list_scheduled(status_filter)
    return [ScheduledCallRead.model_validate(c) for c in calls]


@router.get("/scheduled/{call_id}", response_model=ScheduledCallRead)
async def get_scheduled_call(call_id: UUID, service: ServiceDep) -> ScheduledCallRead:
    return ScheduledCallRead.model_validate(await service.get_scheduled(call_id))


@router.post(
    "/scheduled",
    response_model=ScheduledCallCreated,
    status_code=status.HTTP_201_CREATED,
    summary="Create a scheduled call",
    description="Schedule a one-shot or recurring call. With trigger_immediately "
    "the first call is placed right away.",
)
async def create_scheduled_call(payload: ScheduledCallCreate, service: ServiceDep) -> ScheduledCallCreated:
    call, call_result = await service.create(payload)
    read = ScheduledCallRead.model_validate(call)
    return ScheduledCallCreated(**read.model_dump(), call_result=call_result)


@router.patch("/scheduled/{call_id}", response_model=ScheduledCallRead)
async def update_scheduled_call(
    call_id: UUID,
    payload: ScheduledCallUpdate,
    service: ServiceDep,
) -> ScheduledCallRead:
    return ScheduledCallRead.model_validate(await service.update(call_id, payload))


@router.delete("/scheduled/{call_id}")
async def delete_scheduled_call(call_id: UUID, service: ServiceDep) -> dict[str, bool]:
    await service.delete(call_id)
    return {"success": True}


@router.post("/scheduled/{call_id}/pause", response_model=ScheduledCallRead)
async def pause_scheduled_call(call_id: UUID, service: ServiceDep) -> ScheduledCallRead:
    return ScheduledCallRead.model_validate(await service.pause(call_id))


@router.post("/scheduled/{call_id}/resume", response_model=ScheduledCallRead)
async def resume_scheduled_call(call_id: UUID, service: ServiceDep) -> ScheduledCallRead:
    return ScheduledCallRead.model_validate(await service.resume(call_id))


@router.post("/scheduled/{call_id}/trigger", response_model=TriggerResult)
async def trigger_scheduled_call(call_id: UUID, service: ServiceDep) -> TriggerResult:
    return await service.trigger_now(call_id)


# ============ Call history ============


@router.get("/history", response_model=CallHistoryPage)
async def list_call_history(
    service: ServiceDep,
    status_filter: Annotated[CallLogStatus | None, Query(alias="status")] = None,
    date_from: Annotated[datetime | None, Query(alias="from")] = None,
    date_to: Annotated[datetime | None, Query(alias="to")] = None,
    phone: str | None = None,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=200)] = 20,
) -> CallHistoryPage:
    return await service.list_history(
        status=status_filter,
        date_from=date_from,
        date_to=date_to,
        phone=phone,
        page=page,
        limit=limit,
    )


# Declared before /history/{call_log_id} so "export" is not parsed as an id.
@router.get("/history/export")
async def export_call_history(
    service: ServiceDep,
    status_filter: Annotated[CallLogStatus | None, Query(alias="status")] = None,
    date_from: Annotated[datetime | None, Query(alias="from")] = None,
    date_to: Annotated[datetime | None, Query(alias="to")] = None,
    phone: str | None = None,
) -> Response:
    content = await service.export_csv(
        status=status_filter,
        date_from=date_from,
        date_to=date_to,
        phone=phone,
    )
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": "attachment; filename=call-history.csv"},
    )


@router.get("/history/{call_log_id}", response_model=CallLogRead)
async def get_call_log(call_log_id: UUID, service: ServiceDep) -> CallLogRead:
    return CallLogRead.model_validate(await service.get_history(call_log_id))


@router.post("/history/{call_log_id}/retry", response_model=TriggerResult)
async def retry_call(call_log_id: UUID, service: ServiceDep) -> TriggerResult:
    return await service.retry(call_log_id)
