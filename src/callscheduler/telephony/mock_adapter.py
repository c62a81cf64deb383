"""
In-process telephony provider for local runs and tests.

Records every request and answers like Twilio would: a sequential call id
and a `queued` status. Failures can be armed to exercise error paths.
"""

from datetime import datetime, timezone
from itertools import count

from callscheduler.shared.logging import get_logger
from callscheduler.telephony.interface import (
    CallInitiationError,
    CallInitiationRequest,
    CallInitiationResponse,
    TelephonyProvider,
)

logger = get_logger(__name__)


class MockTelephonyAdapter(TelephonyProvider):
    """Records call requests instead of dialing."""

    name = "mock"

    def __init__(self, configured: bool = True, call_id_prefix: str = "MOCK_CALL_") -> None:
        self._configured = configured
        self._call_id_prefix = call_id_prefix
        self._requests: list[CallInitiationRequest] = []
        self._ids = count(1)
        self._failure: tuple[str, str] | None = None

    def reset(self) -> None:
        self._requests.clear()
        self._ids = count(1)
        self._failure = None

    def configure_failure(
        self,
        should_fail: bool = True,
        error_message: str = "Mock failure",
        error_code: str = "MOCK_ERROR",
    ) -> None:
        """Make every following call fail (or succeed again with should_fail=False)."""
        self._failure = (error_message, error_code) if should_fail else None

    def is_configured(self) -> bool:
        return self._configured

    @property
    def calls(self) -> list[CallInitiationRequest]:
        """Successfully placed requests, oldest first."""
        return list(self._requests)

    def get_last_call(self) -> CallInitiationRequest | None:
        return self._requests[-1] if self._requests else None

    def initiate_call_sync(self, request: CallInitiationRequest) -> CallInitiationResponse:
        if self._failure is not None:
            message, code = self._failure
            logger.info("Mock: refusing call", extra={"to": request.to, "error_code": code})
            raise CallInitiationError(message=message, error_code=code)

        self._requests.append(request)
        sid = f"{self._call_id_prefix}{next(self._ids):06d}"
        logger.info(
            "Mock: call placed",
            extra={"to": request.to, "provider_call_id": sid, "machine_detection": request.machine_detection.value},
        )
        return CallInitiationResponse(
            provider_call_id=sid,
            status="queued",
            created_at=datetime.now(timezone.utc),
            raw_response={"sid": sid, "status": "queued", "to": request.to, "from": request.from_number},
        )
