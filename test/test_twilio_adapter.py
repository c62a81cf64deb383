"""Tests for Twilio telephony adapter (sync, no network)."""

from unittest.mock import MagicMock

import httpx
import pytest

from callscheduler.calls.models import MachineDetection
from callscheduler.telephony.config import ProviderType, TelephonyConfig
from callscheduler.telephony.interface import CallInitiationError, CallInitiationRequest
from callscheduler.telephony.twilio_adapter import TwilioAdapter


@pytest.fixture
def twilio_config() -> TelephonyConfig:
    return TelephonyConfig(
        provider_type=ProviderType.TWILIO,
        twilio_account_sid="AC_TEST_ACCOUNT_SID",
        twilio_auth_token="test_auth_token_12345",
        twilio_from_number="+14155550000",
        webhook_base_url="https://calls.example.com",
    )


@pytest.fixture
def call_request() -> CallInitiationRequest:
    return CallInitiationRequest(
        to="+14155551234",
        from_number="+14155550000",
        instruction_url="https://calls.example.com/api/twilio/twiml/abc",
        status_callback_url="https://calls.example.com/api/twilio/status?call_log_id=abc",
        machine_detection=MachineDetection.DETECT_MESSAGE_END,
        machine_detection_timeout=45,
    )


def _client_returning(response: httpx.Response) -> MagicMock:
    client = MagicMock(spec=httpx.Client)
    client.post.return_value = response
    return client


class TestTwilioAdapterPayload:
    def test_payload_requests_synchronous_detection(
        self,
        twilio_config: TelephonyConfig,
        call_request: CallInitiationRequest,
    ) -> None:
        payload = TwilioAdapter(config=twilio_config).build_payload(call_request)

        assert payload["To"] == "+14155551234"
        assert payload["From"] == "+14155550000"
        assert payload["Url"] == call_request.instruction_url
        assert payload["StatusCallback"] == call_request.status_callback_url
        assert payload["StatusCallbackEvent"] == ["initiated", "ringing", "answered", "completed"]
        assert payload["StatusCallbackMethod"] == "POST"
        assert payload["MachineDetection"] == "DetectMessageEnd"
        assert payload["MachineDetectionTimeout"] == "45"
        assert "AsyncAmd" not in payload

    def test_disabled_detection_omits_parameters(self, twilio_config: TelephonyConfig) -> None:
        request = CallInitiationRequest(
            to="+14155551234",
            from_number="+14155550000",
            instruction_url="https://calls.example.com/api/twilio/twiml/abc",
            status_callback_url="https://calls.example.com/api/twilio/status",
            machine_detection=MachineDetection.DISABLED,
        )

        payload = TwilioAdapter(config=twilio_config).build_payload(request)

        assert "MachineDetection" not in payload
        assert "MachineDetectionTimeout" not in payload

    def test_async_detection_options_are_stripped(self, twilio_config: TelephonyConfig) -> None:
        request = CallInitiationRequest(
            to="+14155551234",
            from_number="+14155550000",
            instruction_url="https://calls.example.com/api/twilio/twiml/abc",
            status_callback_url="https://calls.example.com/api/twilio/status",
            options={
                "AsyncAmd": "true",
                "AsyncAmdStatusCallback": "https://elsewhere.example.com/amd",
                "AsyncAmdStatusCallbackMethod": "POST",
                "Record": "true",
            },
        )

        payload = TwilioAdapter(config=twilio_config).build_payload(request)

        assert payload["Record"] == "true"
        for key in ("AsyncAmd", "AsyncAmdStatusCallback", "AsyncAmdStatusCallbackMethod"):
            assert key not in payload


class TestTwilioAdapterInitiateCallSync:
    def test_initiate_call_success(
        self,
        twilio_config: TelephonyConfig,
        call_request: CallInitiationRequest,
    ) -> None:
        mock_client = _client_returning(
            httpx.Response(
                status_code=201,
                json={
                    "sid": "CA_TEST_CALL_SID_123",
                    "status": "queued",
                    "date_created": "Mon, 15 Jan 2024 10:30:00 +0000",
                },
            )
        )

        adapter = TwilioAdapter(config=twilio_config, http_client=mock_client)
        response = adapter.initiate_call_sync(call_request)

        assert response.provider_call_id == "CA_TEST_CALL_SID_123"
        assert response.status == "queued"
        assert response.created_at.year == 2024

        mock_client.post.assert_called_once()
        args, kwargs = mock_client.post.call_args
        assert args[0] == "https://api.twilio.com/2010-04-01/Accounts/AC_TEST_ACCOUNT_SID/Calls.json"
        assert kwargs["auth"] == ("AC_TEST_ACCOUNT_SID", "test_auth_token_12345")
        assert kwargs["data"]["MachineDetection"] == "DetectMessageEnd"

    def test_initiate_call_api_error(
        self,
        twilio_config: TelephonyConfig,
        call_request: CallInitiationRequest,
    ) -> None:
        mock_client = _client_returning(
            httpx.Response(
                status_code=400,
                json={"code": 21211, "message": "The 'To' number is not a valid phone number."},
            )
        )
        adapter = TwilioAdapter(config=twilio_config, http_client=mock_client)

        with pytest.raises(CallInitiationError) as exc_info:
            adapter.initiate_call_sync(call_request)

        assert exc_info.value.error_code == "21211"
        assert "not a valid phone number" in exc_info.value.message
        assert exc_info.value.provider_response["code"] == 21211

    def test_initiate_call_http_error(
        self,
        twilio_config: TelephonyConfig,
        call_request: CallInitiationRequest,
    ) -> None:
        mock_client = MagicMock(spec=httpx.Client)
        mock_client.post.side_effect = httpx.ConnectError("connection refused")
        adapter = TwilioAdapter(config=twilio_config, http_client=mock_client)

        with pytest.raises(CallInitiationError) as exc_info:
            adapter.initiate_call_sync(call_request)

        assert exc_info.value.error_code == "HTTP_ERROR"


class TestTwilioAdapterConfiguration:
    def test_is_configured(self, twilio_config: TelephonyConfig) -> None:
        assert TwilioAdapter(config=twilio_config).is_configured() is True

    def test_missing_credentials(self) -> None:
        config = TelephonyConfig(twilio_account_sid="", twilio_auth_token="", twilio_from_number="")

        assert TwilioAdapter(config=config).is_configured() is False

    def test_close_leaves_injected_client_open(self, twilio_config: TelephonyConfig) -> None:
        mock_client = MagicMock(spec=httpx.Client)
        adapter = TwilioAdapter(config=twilio_config, http_client=mock_client)

        adapter.close()

        mock_client.close.assert_not_called()
