"""
Twilio provider: creates calls through the REST API (Calls.json).

Detection is always requested synchronously, so Twilio only fetches the
instruction document once the greeting has ended and passes `AnsweredBy`
along with that fetch. Async AMD parameters are never sent.
"""

from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any

import httpx

from callscheduler.calls.schemas import ASYNC_AMD_PARAMS
from callscheduler.shared.logging import get_logger
from callscheduler.telephony.config import TelephonyConfig, get_telephony_config
from callscheduler.telephony.interface import (
    CallInitiationError,
    CallInitiationRequest,
    CallInitiationResponse,
    TelephonyProvider,
)

logger = get_logger(__name__)

STATUS_CALLBACK_EVENTS = ["initiated", "ringing", "answered", "completed"]


def _created_at(raw: str | None) -> datetime:
    # Twilio dates are RFC 2822 ("Mon, 15 Jan 2024 10:30:00 +0000").
    if raw:
        try:
            return parsedate_to_datetime(raw)
        except (TypeError, ValueError):
            logger.debug("Unparsed Twilio date_created", extra={"value": raw})
    return datetime.now(timezone.utc)


def _rejection(response: httpx.Response) -> CallInitiationError:
    try:
        body: dict[str, Any] = response.json() if response.content else {}
    except ValueError:
        body = {"message": response.text}
    return CallInitiationError(
        message=body.get("message", f"Twilio returned HTTP {response.status_code}"),
        error_code=str(body.get("code", response.status_code)),
        provider_response=body,
    )


class TwilioAdapter(TelephonyProvider):
    """Blocking httpx client against the Twilio REST API.

    An injected `http_client` is borrowed and never closed here.
    """

    name = "twilio"

    def __init__(
        self,
        config: TelephonyConfig | None = None,
        http_client: httpx.Client | None = None,
    ) -> None:
        self._config = config or get_telephony_config()
        self._http_client = http_client
        self._owns_client = http_client is None

    @property
    def calls_url(self) -> str:
        base = self._config.twilio_api_base.rstrip("/")
        return f"{base}/Accounts/{self._config.twilio_account_sid}/Calls.json"

    def _client(self) -> httpx.Client:
        if self._http_client is None:
            self._http_client = httpx.Client(timeout=httpx.Timeout(self._config.http_timeout_seconds))
        return self._http_client

    def close(self) -> None:
        if self._owns_client and self._http_client is not None:
            self._http_client.close()
            self._http_client = None

    def is_configured(self) -> bool:
        cfg = self._config
        return bool(cfg.twilio_account_sid and cfg.twilio_auth_token and cfg.twilio_from_number)

    def build_payload(self, request: CallInitiationRequest) -> dict[str, str | list[str]]:
        """Form parameters for one call creation."""
        payload: dict[str, str | list[str]] = {
            "To": request.to,
            "From": request.from_number,
            "Url": request.instruction_url,
            "Method": "POST",
            "StatusCallback": request.status_callback_url,
            "StatusCallbackEvent": list(STATUS_CALLBACK_EVENTS),
            "StatusCallbackMethod": "POST",
        }
        if request.detection_enabled:
            payload["MachineDetection"] = request.machine_detection.value
            payload["MachineDetectionTimeout"] = str(request.machine_detection_timeout)

        payload.update({k: v for k, v in request.options.items() if k not in ASYNC_AMD_PARAMS})
        return payload

    def initiate_call_sync(self, request: CallInitiationRequest) -> CallInitiationResponse:
        payload = self.build_payload(request)
        logger.info(
            "Creating Twilio call",
            extra={"to": request.to, "machine_detection": request.machine_detection.value},
        )

        try:
            response = self._client().post(
                self.calls_url,
                data=payload,
                auth=(self._config.twilio_account_sid, self._config.twilio_auth_token),
            )
        except httpx.HTTPError as e:
            logger.exception("Twilio unreachable", extra={"to": request.to})
            raise CallInitiationError(message=f"HTTP error: {e!s}", error_code="HTTP_ERROR") from e

        if response.is_error:
            error = _rejection(response)
            logger.error(
                "Twilio rejected call",
                extra={
                    "to": request.to,
                    "http_status": response.status_code,
                    "error_code": error.error_code,
                    "error": error.message,
                },
            )
            raise error

        data = response.json()
        return CallInitiationResponse(
            provider_call_id=data["sid"],
            status=data.get("status", "queued"),
            created_at=_created_at(data.get("date_created")),
            raw_response=data,
        )
