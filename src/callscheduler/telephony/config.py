"""
Telephony settings, read from TELEPHONY_* environment variables (and .env).
"""

import re
from enum import Enum

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from callscheduler.calls.models import MachineDetection
from callscheduler.calls.schemas import E164_PATTERN


class ProviderType(str, Enum):
    TWILIO = "twilio"
    MOCK = "mock"


class TelephonyConfig(BaseSettings):
    """Provider credentials, the public callback base URL and per-call defaults."""

    model_config = SettingsConfigDict(
        env_prefix="TELEPHONY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    provider_type: ProviderType = ProviderType.TWILIO

    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_from_number: str = Field(default="", description="Caller id in E.164 format")
    twilio_api_base: str = "https://api.twilio.com/2010-04-01"

    # Must be reachable by the provider; calls are refused while it is unset or loopback.
    webhook_base_url: str = ""

    # Applied to new scheduled calls that leave these unset, and to retries without a scheduled call
    default_machine_detection: MachineDetection = MachineDetection.DETECT_MESSAGE_END
    default_machine_detection_timeout: int = Field(default=30, ge=2, le=60)
    default_post_beep_delay: float = Field(default=0, ge=0, le=10)

    # Unset: no client-side timeout on the call creation request
    http_timeout_seconds: float | None = Field(default=None, gt=0)

    @field_validator("twilio_from_number")
    @classmethod
    def check_from_number(cls, v: str) -> str:
        v = v.strip()
        if v and not re.match(E164_PATTERN, v):
            raise ValueError("twilio_from_number must be in E.164 format (e.g. +14155550000)")
        return v

    @property
    def base_url(self) -> str:
        return self.webhook_base_url.strip().rstrip("/")

    def get_webhook_url(self, path: str) -> str:
        return f"{self.base_url}{path}"


def get_telephony_config() -> TelephonyConfig:
    return TelephonyConfig()
