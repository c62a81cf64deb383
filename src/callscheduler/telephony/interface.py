"""
Telephony provider contract.

Providers implement a blocking `initiate_call_sync`; the scheduler and API
await `initiate_call`, which runs it on a worker thread so a slow provider
never stalls the event loop.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, ClassVar

import anyio

from callscheduler.calls.models import MachineDetection
from callscheduler.shared.exceptions import ProviderError


@dataclass(frozen=True)
class CallInitiationRequest:
    """One outbound call as the provider needs it.

    `instruction_url` is fetched by the provider once the callee answers
    (and detection finishes); `status_callback_url` receives progress events.
    `options` are extra provider parameters by wire name.
    """

    to: str
    from_number: str
    instruction_url: str
    status_callback_url: str
    machine_detection: MachineDetection = MachineDetection.DETECT_MESSAGE_END
    machine_detection_timeout: int = 30
    options: dict[str, str] = field(default_factory=dict)

    @property
    def detection_enabled(self) -> bool:
        return self.machine_detection != MachineDetection.DISABLED


@dataclass(frozen=True)
class CallInitiationResponse:
    """Provider acknowledgement of a created call."""

    provider_call_id: str
    status: str
    created_at: datetime
    raw_response: dict[str, Any] = field(default_factory=dict)


class TelephonyProviderError(ProviderError):
    """Base exception for telephony provider errors."""


class CallInitiationError(TelephonyProviderError):
    """The provider refused the call or could not be reached."""


class TelephonyProvider(ABC):
    """Places outbound calls."""

    name: ClassVar[str] = "unknown"

    async def initiate_call(self, request: CallInitiationRequest) -> CallInitiationResponse:
        return await anyio.to_thread.run_sync(self.initiate_call_sync, request)

    @abstractmethod
    def initiate_call_sync(self, request: CallInitiationRequest) -> CallInitiationResponse:
        """Create the call (blocking).

        Raises:
            CallInitiationError: Rejected by the provider or transport failure.
        """

    @abstractmethod
    def is_configured(self) -> bool:
        """True when credentials and an outbound number are present."""

    def close(self) -> None:
        """Release provider resources."""
