"""
Pytest configuration and shared fixtures.
"""

from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

import pytest
import pytest_asyncio

from callscheduler.calls.executor import CallExecutor
from callscheduler.calls.lifecycle import CallLifecycleStateMachine
from callscheduler.calls.models import MachineDetection, ScheduledCall, ScheduledCallStatus
from callscheduler.calls.repository import ScheduledCallRepository
from callscheduler.calls.scheduler import CallScheduler
from callscheduler.calls.service import ScheduledCallService
from callscheduler.shared.database import DatabaseManager
from callscheduler.shared.metrics import MetricsRegistry
from callscheduler.telephony.config import ProviderType, TelephonyConfig
from callscheduler.telephony.interface import CallInitiationRequest, CallInitiationResponse
from callscheduler.telephony.mock_adapter import MockTelephonyAdapter

PUBLIC_BASE_URL = "https://calls.example.com"


class InlineMockProvider(MockTelephonyAdapter):
    """Mock provider that runs inline on the event loop.

    `before_call` lets a test observe persisted state at the moment the
    provider is contacted.
    """

    def __init__(self) -> None:
        super().__init__()
        self.before_call: Callable[[CallInitiationRequest], Awaitable[None]] | None = None

    async def initiate_call(self, request: CallInitiationRequest) -> CallInitiationResponse:
        if self.before_call is not None:
            await self.before_call(request)
        return self.initiate_call_sync(request)


class FakeClock:
    """Settable clock for the scheduler."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: Any) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def telephony_config() -> TelephonyConfig:
    return TelephonyConfig(
        provider_type=ProviderType.MOCK,
        twilio_account_sid="AC_TEST_ACCOUNT_SID",
        twilio_auth_token="test_auth_token_12345",
        twilio_from_number="+14155550000",
        webhook_base_url=PUBLIC_BASE_URL,
    )


@pytest.fixture
def metrics() -> MetricsRegistry:
    return MetricsRegistry()


@pytest.fixture
def provider() -> InlineMockProvider:
    return InlineMockProvider()


@pytest_asyncio.fixture
async def db() -> AsyncGenerator[DatabaseManager, None]:
    manager = DatabaseManager("sqlite+aiosqlite:///:memory:")
    await manager.create_all()
    yield manager
    await manager.close()


@pytest.fixture
def executor(
    db: DatabaseManager,
    provider: InlineMockProvider,
    telephony_config: TelephonyConfig,
    metrics: MetricsRegistry,
) -> CallExecutor:
    return CallExecutor(db, provider, telephony_config, metrics)


@pytest_asyncio.fixture
async def scheduler(
    db: DatabaseManager,
    executor: CallExecutor,
    metrics: MetricsRegistry,
) -> AsyncGenerator[CallScheduler, None]:
    sched = CallScheduler(db, executor, metrics=metrics)
    yield sched
    await sched.shutdown()


@pytest.fixture
def lifecycle(
    db: DatabaseManager,
    telephony_config: TelephonyConfig,
    metrics: MetricsRegistry,
) -> CallLifecycleStateMachine:
    return CallLifecycleStateMachine(db, telephony_config, metrics)


@pytest.fixture
def call_service(
    db: DatabaseManager,
    scheduler: CallScheduler,
    executor: CallExecutor,
    telephony_config: TelephonyConfig,
) -> ScheduledCallService:
    return ScheduledCallService(db, scheduler, executor, telephony_config)


@pytest.fixture
def make_scheduled_call(db: DatabaseManager) -> Callable[..., Awaitable[ScheduledCall]]:
    """Insert a pending one-shot scheduled call; keyword args override columns."""

    async def _make(**overrides: Any) -> ScheduledCall:
        scheduled_at = overrides.pop("scheduled_at", datetime.now(timezone.utc) + timedelta(hours=1))
        fields: dict[str, Any] = {
            "phone_number": "+14155551234",
            "recording_id": uuid4(),
            "scheduled_at": scheduled_at,
            "next_run_at": scheduled_at,
            "machine_detection": MachineDetection.DETECT_MESSAGE_END,
            "machine_detection_timeout": 30,
            "post_beep_delay": 0,
            "provider_options": {},
            "status": ScheduledCallStatus.PENDING,
        }
        fields.update(overrides)
        async with db.session() as session:
            return await ScheduledCallRepository(session).create(**fields)

    return _make
