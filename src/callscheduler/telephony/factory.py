"""
Telephony provider selection.

TelephonyConfig is the only source of provider settings; nothing here reads
TWILIO_* variables directly.
"""

from collections.abc import Callable

from callscheduler.shared.logging import get_logger
from callscheduler.telephony.config import ProviderType, TelephonyConfig, get_telephony_config
from callscheduler.telephony.interface import TelephonyProvider
from callscheduler.telephony.mock_adapter import MockTelephonyAdapter
from callscheduler.telephony.twilio_adapter import TwilioAdapter

logger = get_logger(__name__)

_BUILDERS: dict[ProviderType, Callable[[TelephonyConfig], TelephonyProvider]] = {
    ProviderType.TWILIO: lambda cfg: TwilioAdapter(cfg),
    ProviderType.MOCK: lambda cfg: MockTelephonyAdapter(),
}


def _mask(secret: str, keep: int = 6) -> str:
    if len(secret) <= keep:
        return "*" * len(secret)
    return f"{secret[:keep]}***"


def create_telephony_provider(config: TelephonyConfig | None = None) -> TelephonyProvider:
    """Build the provider named by `provider_type`."""
    cfg = config or get_telephony_config()
    try:
        builder = _BUILDERS[cfg.provider_type]
    except KeyError:
        raise ValueError(f"Unsupported telephony provider_type: {cfg.provider_type}") from None

    provider = builder(cfg)
    logger.info(
        "Telephony provider selected",
        extra={
            "provider": provider.name,
            "configured": provider.is_configured(),
            "twilio_account_sid": _mask(cfg.twilio_account_sid),
            "twilio_from_number": cfg.twilio_from_number,
            "webhook_base_url": cfg.base_url,
        },
    )
    return provider
