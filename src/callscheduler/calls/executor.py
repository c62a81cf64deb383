"""
Call executor: turns call data into a CallLog and a provider call.

Ordering of side effects for one attempt:
1. configuration check (no rows written when it fails)
2. CallLog(status=initiated) committed
3. provider call with instruction + status callback URLs
4. provider call id written back once, or the CallLog marked failed
"""

import ipaddress
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlsplit
from uuid import UUID

from callscheduler.calls.models import CallLogStatus, MachineDetection, ScheduledCall, utcnow
from callscheduler.calls.repository import CallLogRepository
from callscheduler.calls.schemas import ProviderOptions, TriggerResult
from callscheduler.shared.database import DatabaseManager
from callscheduler.shared.exceptions import ConfigurationError, ProviderError
from callscheduler.shared.logging import get_logger
from callscheduler.shared.metrics import MetricsRegistry, get_metrics_registry
from callscheduler.telephony.config import TelephonyConfig
from callscheduler.telephony.interface import CallInitiationRequest, TelephonyProvider

logger = get_logger(__name__)


@dataclass(frozen=True)
class CallData:
    """Everything needed to place one call attempt."""

    phone_number: str
    recording_id: UUID
    scheduled_call_id: UUID | None = None
    contact_id: UUID | None = None
    machine_detection: MachineDetection = MachineDetection.DETECT_MESSAGE_END
    machine_detection_timeout: int = 30
    post_beep_delay: float = 0
    provider_options: ProviderOptions = field(default_factory=ProviderOptions)

    @classmethod
    def from_scheduled_call(cls, call: ScheduledCall) -> "CallData":
        return cls(
            phone_number=call.phone_number,
            recording_id=call.recording_id,
            scheduled_call_id=call.id,
            contact_id=call.contact_id,
            machine_detection=MachineDetection(call.machine_detection),
            machine_detection_timeout=call.machine_detection_timeout,
            post_beep_delay=call.post_beep_delay,
            provider_options=ProviderOptions.model_validate(call.provider_options or {}),
        )


def _is_unroutable(host: str) -> bool:
    host = host.lower().rstrip(".")
    if host == "localhost" or host.endswith(".localhost"):
        return True
    try:
        addr = ipaddress.ip_address(host)
    except ValueError:
        return False
    return addr.is_loopback or addr.is_unspecified


def validate_base_url(url: str) -> str:
    """Return the normalized public base URL or raise ConfigurationError.

    The provider must be able to reach it, so loopback and unspecified
    hosts are rejected.
    """
    url = (url or "").strip().rstrip("/")
    if not url:
        raise ConfigurationError(
            "Public base URL is not configured (TELEPHONY_WEBHOOK_BASE_URL)"
        )
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https") or not parts.hostname:
        raise ConfigurationError(f"Public base URL is not a valid http(s) URL: {url}")
    if _is_unroutable(parts.hostname):
        raise ConfigurationError(
            f"Public base URL {url} is not reachable by the telephony provider; "
            "configure a public URL"
        )
    return url


class CallExecutor:
    """Places call attempts through the telephony provider."""

    def __init__(
        self,
        db: DatabaseManager,
        provider: TelephonyProvider,
        config: TelephonyConfig,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        self._db = db
        self._provider = provider
        self._config = config
        self._metrics = metrics or get_metrics_registry()

    def _check_preconditions(self) -> str:
        base_url = validate_base_url(self._config.webhook_base_url)
        if not self._provider.is_configured():
            raise ConfigurationError("Telephony provider credentials or outbound number are not configured")
        return base_url

    async def trigger_call(self, call_data: CallData, retry_of: UUID | None = None) -> TriggerResult:
        """Place one call attempt.

        Raises:
            ConfigurationError: Base URL or credentials unusable; nothing persisted.
            ProviderError: Provider rejected the call; the CallLog is marked failed.
        """
        base_url = self._check_preconditions()

        async with self._db.session() as session:
            call_log = await CallLogRepository(session).create(
                scheduled_call_id=call_data.scheduled_call_id,
                contact_id=call_data.contact_id,
                recording_id=call_data.recording_id,
                phone_number=call_data.phone_number,
                status=CallLogStatus.INITIATED,
                post_beep_delay=call_data.post_beep_delay,
                retry_of=retry_of,
            )
            call_log_id = call_log.id

        request = CallInitiationRequest(
            to=call_data.phone_number,
            from_number=self._config.twilio_from_number,
            instruction_url=f"{base_url}/api/twilio/twiml/{call_log_id}",
            status_callback_url=f"{base_url}/api/twilio/status?call_log_id={call_log_id}",
            machine_detection=call_data.machine_detection,
            machine_detection_timeout=call_data.machine_detection_timeout,
            options=call_data.provider_options.to_provider_params(),
        )

        try:
            response = await self._provider.initiate_call(request)
        except Exception as e:
            await self._mark_failed(call_log_id, e)
            self._metrics.calls_total.inc(status=CallLogStatus.FAILED.value)
            raise

        async with self._db.session() as session:
            written = await CallLogRepository(session).set_provider_call_id(
                call_log_id, response.provider_call_id
            )
        if not written:
            logger.warning(
                "Provider call id already set, keeping the first one",
                extra={"call_log_id": str(call_log_id), "provider_call_id": response.provider_call_id},
            )

        logger.info(
            "Call initiated",
            extra={
                "call_log_id": str(call_log_id),
                "scheduled_call_id": str(call_data.scheduled_call_id) if call_data.scheduled_call_id else None,
                "provider": self._provider.name,
                "provider_call_id": response.provider_call_id,
                "retry_of": str(retry_of) if retry_of else None,
            },
        )
        return TriggerResult(call_log_id=call_log_id, provider_call_id=response.provider_call_id)

    async def _mark_failed(self, call_log_id: UUID, error: Exception) -> None:
        fields: dict[str, Any] = {
            "status": CallLogStatus.FAILED,
            "error_message": str(error)[:1000],
            "ended_at": utcnow(),
        }
        if isinstance(error, ProviderError) and error.error_code:
            fields["error_code"] = error.error_code
        async with self._db.session() as session:
            await CallLogRepository(session).update(call_log_id, **fields)
        logger.error(
            "Call initiation failed",
            extra={"call_log_id": str(call_log_id), "error": str(error)},
        )
