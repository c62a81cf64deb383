"""Tests for environment-driven configuration and provider selection."""

import pytest

from callscheduler.calls.models import MachineDetection
from callscheduler.config import get_settings
from callscheduler.telephony.config import ProviderType, TelephonyConfig, get_telephony_config
from callscheduler.telephony.factory import create_telephony_provider
from callscheduler.telephony.interface import CallInitiationError, CallInitiationRequest
from callscheduler.telephony.mock_adapter import MockTelephonyAdapter
from callscheduler.telephony.twilio_adapter import TwilioAdapter


class TestTelephonyConfig:
    def test_reads_prefixed_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("TELEPHONY_PROVIDER_TYPE", "mock")
        monkeypatch.setenv("TELEPHONY_WEBHOOK_BASE_URL", "https://calls.example.com/")
        monkeypatch.setenv("TELEPHONY_DEFAULT_MACHINE_DETECTION", "Enable")
        monkeypatch.setenv("TELEPHONY_HTTP_TIMEOUT_SECONDS", "15")

        config = get_telephony_config()

        assert config.provider_type == ProviderType.MOCK
        assert config.base_url == "https://calls.example.com"
        assert config.get_webhook_url("/api/twilio/status") == "https://calls.example.com/api/twilio/status"
        assert config.default_machine_detection == MachineDetection.ENABLE
        assert config.http_timeout_seconds == 15

    def test_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("TELEPHONY_WEBHOOK_BASE_URL", raising=False)
        monkeypatch.delenv("TELEPHONY_HTTP_TIMEOUT_SECONDS", raising=False)

        config = TelephonyConfig(_env_file=None)

        assert config.default_machine_detection == MachineDetection.DETECT_MESSAGE_END
        assert config.default_machine_detection_timeout == 30
        assert config.http_timeout_seconds is None


class TestSettings:
    def test_scheduler_toggle(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SCHEDULER_ENABLED", "false")
        monkeypatch.setenv("CORS_ORIGINS", "https://a.example.com, https://b.example.com")

        settings = get_settings()

        assert settings.scheduler_enabled is False
        assert settings.cors_origins_list == ["https://a.example.com", "https://b.example.com"]


class TestProviderFactory:
    def test_mock_provider(self, telephony_config: TelephonyConfig) -> None:
        assert isinstance(create_telephony_provider(telephony_config), MockTelephonyAdapter)

    def test_twilio_provider(self, telephony_config: TelephonyConfig) -> None:
        config = telephony_config.model_copy(update={"provider_type": ProviderType.TWILIO})

        provider = create_telephony_provider(config)

        assert isinstance(provider, TwilioAdapter)
        assert provider.is_configured() is True


class TestFromNumberValidation:
    def test_rejects_non_e164(self) -> None:
        with pytest.raises(ValueError):
            TelephonyConfig(_env_file=None, twilio_from_number="4155550000")

    def test_empty_allowed(self) -> None:
        assert TelephonyConfig(_env_file=None, twilio_from_number="").twilio_from_number == ""


class TestMockAdapter:
    def test_sequential_ids_and_reset(self) -> None:
        adapter = MockTelephonyAdapter()
        request = CallInitiationRequest(
            to="+14155551234",
            from_number="+14155550000",
            instruction_url="https://calls.example.com/api/twilio/twiml/x",
            status_callback_url="https://calls.example.com/api/twilio/status",
        )

        first = adapter.initiate_call_sync(request)
        second = adapter.initiate_call_sync(request)
        assert (first.provider_call_id, second.provider_call_id) == ("MOCK_CALL_000001", "MOCK_CALL_000002")
        assert first.status == "queued"

        adapter.reset()
        assert adapter.calls == []
        assert adapter.initiate_call_sync(request).provider_call_id == "MOCK_CALL_000001"

    def test_armed_failure_can_be_cleared(self) -> None:
        adapter = MockTelephonyAdapter()
        request = CallInitiationRequest(
            to="+14155551234",
            from_number="+14155550000",
            instruction_url="https://calls.example.com/api/twilio/twiml/x",
            status_callback_url="https://calls.example.com/api/twilio/status",
        )
        adapter.configure_failure(error_message="nope", error_code="21215")

        with pytest.raises(CallInitiationError) as exc_info:
            adapter.initiate_call_sync(request)
        assert exc_info.value.error_code == "21215"
        assert adapter.calls == []

        adapter.configure_failure(should_fail=False)
        assert adapter.initiate_call_sync(request).provider_call_id == "MOCK_CALL_000001"
