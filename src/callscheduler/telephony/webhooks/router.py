"""
FastAPI router for Twilio webhook endpoints.

- /status: call progress callbacks (always 200 unless we failed internally)
- /twiml/{call_log_id}: instruction fetch, carries the synchronous AMD result
- /amd: legacy asynchronous AMD callback
"""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.responses import PlainTextResponse

from callscheduler.calls.lifecycle import CallLifecycleStateMachine, StatusEvent
from callscheduler.shared.logging import correlation_scope, get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/api/twilio", tags=["webhooks"])


def get_lifecycle(request: Request) -> CallLifecycleStateMachine:
    return request.app.state.lifecycle


LifecycleDep = Annotated[CallLifecycleStateMachine, Depends(get_lifecycle)]


async def _read_payload(request: Request) -> dict[str, str]:
    """Form body merged over query parameters."""
    payload = {k: str(v) for k, v in request.query_params.items()}
    if request.method == "POST":
        form = await request.form()
        payload.update({k: v for k, v in form.items() if isinstance(v, str)})
    return payload


def _parse_uuid(value: str | None) -> UUID | None:
    if not value:
        return None
    try:
        return UUID(value)
    except ValueError:
        return None


@router.post("/status", response_class=PlainTextResponse)
async def status_callback(request: Request, lifecycle: LifecycleDep) -> str:
    payload = await _read_payload(request)
    event = StatusEvent.from_form(payload, call_log_id=_parse_uuid(payload.get("call_log_id")))
    with correlation_scope(event.call_sid):
        logger.info(
            "Status callback received",
            extra={"call_sid": event.call_sid, "call_status": event.status},
        )
        try:
            await lifecycle.handle_status_event(event)
        except Exception:
            logger.exception("Error processing status callback", extra={"call_sid": event.call_sid})
            # 500 makes Twilio retry the callback.
            raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Error")
    return "OK"


@router.post("/amd", response_class=PlainTextResponse)
async def amd_callback(request: Request, lifecycle: LifecycleDep) -> str:
    payload = await _read_payload(request)
    call_sid = payload.get("CallSid", "")
    with correlation_scope(call_sid):
        try:
            await lifecycle.handle_detection_callback(call_sid, payload.get("AnsweredBy"))
        except Exception:
            logger.exception("Error processing AMD callback", extra={"call_sid": call_sid})
            raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Error")
    return "OK"


@router.api_route("/twiml/{call_log_id}", methods=["GET", "POST"])
async def instruction_document(call_log_id: UUID, request: Request, lifecycle: LifecycleDep) -> Response:
    payload = await _read_payload(request)
    with correlation_scope(payload.get("CallSid")):
        logger.info(
            "Instruction fetch",
            extra={"call_log_id": str(call_log_id), "answered_by": payload.get("AnsweredBy")},
        )
        document = await lifecycle.handle_instruction_fetch(call_log_id, payload.get("AnsweredBy"))

    if document is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Call log not found")
    return Response(content=document, media_type="text/xml")
