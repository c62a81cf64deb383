"""
Repositories for scheduled call and call log database operations.
"""

from collections.abc import Sequence
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from callscheduler.calls.models import (
    CallLog,
    CallLogStatus,
    ScheduledCall,
    ScheduledCallStatus,
)


class ScheduledCallRepository:
    """Repository for scheduled call database operations."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with database session.

        Args:
            session: Async database session.
        """
        self._session = session

    async def create(self, **fields: Any) -> ScheduledCall:
        """Create a new scheduled call.

        Args:
            **fields: Column values for the new row.

        Returns:
            Created ScheduledCall instance.
        """
        call = ScheduledCall(**fields)
        self._session.add(call)
        await self._session.flush()
        await self._session.refresh(call)
        return call

    async def get_by_id(self, call_id: UUID) -> ScheduledCall | None:
        stmt = select(ScheduledCall).where(ScheduledCall.id == call_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def update(self, call_id: UUID, **fields: Any) -> ScheduledCall | None:
        """Apply column updates and return the refreshed row (None if missing)."""
        call = await self.get_by_id(call_id)
        if call is None:
            return None
        for name, value in fields.items():
            setattr(call, name, value)
        await self._session.flush()
        await self._session.refresh(call)
        return call

    async def delete(self, call_id: UUID) -> bool:
        result = await self._session.execute(
            delete(ScheduledCall).where(ScheduledCall.id == call_id)
        )
        return (result.rowcount or 0) > 0

    async def list_by_status(self, status: ScheduledCallStatus) -> Sequence[ScheduledCall]:
        stmt = (
            select(ScheduledCall)
            .where(ScheduledCall.status == status)
            .order_by(ScheduledCall.scheduled_at)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def list_all(self, status: ScheduledCallStatus | None = None) -> Sequence[ScheduledCall]:
        stmt = select(ScheduledCall).order_by(ScheduledCall.scheduled_at)
        if status is not None:
            stmt = stmt.where(ScheduledCall.status == status)
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def count_by_status(self, status: ScheduledCallStatus) -> int:
        stmt = select(func.count()).select_from(ScheduledCall).where(ScheduledCall.status == status)
        result = await self._session.execute(stmt)
        return int(result.scalar_one())


class CallLogRepository:
    """Repository for call log (call attempt) database operations."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, **fields: Any) -> CallLog:
        """Create a new call log.

        Args:
            **fields: Column values for the new row.

        Returns:
            Created CallLog instance.
        """
        log = CallLog(**fields)
        self._session.add(log)
        await self._session.flush()
        await self._session.refresh(log)
        return log

    async def get_by_id(self, call_log_id: UUID) -> CallLog | None:
        stmt = select(CallLog).where(CallLog.id == call_log_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_provider_call_id(self, provider_call_id: str) -> CallLog | None:
        """Get call log by provider call identifier (Twilio CallSid)."""
        stmt = select(CallLog).where(CallLog.provider_call_id == provider_call_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def update(self, call_log_id: UUID, **fields: Any) -> CallLog | None:
        log = await self.get_by_id(call_log_id)
        if log is None:
            return None
        for name, value in fields.items():
            setattr(log, name, value)
        await self._session.flush()
        await self._session.refresh(log)
        return log

    async def set_provider_call_id(self, call_log_id: UUID, provider_call_id: str) -> bool:
        """Write the provider call id once.

        Returns:
            False if the row is missing or already carries a provider id.
        """
        result = await self._session.execute(
            update(CallLog)
            .where(CallLog.id == call_log_id, CallLog.provider_call_id.is_(None))
            .values(provider_call_id=provider_call_id)
        )
        return (result.rowcount or 0) > 0

    async def query(
        self,
        *,
        status: CallLogStatus | None = None,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
        phone_number: str | None = None,
        offset: int = 0,
        limit: int | None = None,
    ) -> tuple[Sequence[CallLog], int]:
        """Filter call history, newest first.

        Returns:
            Tuple of (page of rows, total matching rows).
        """
        conditions = []
        if status is not None:
            conditions.append(CallLog.status == status)
        if date_from is not None:
            conditions.append(CallLog.initiated_at >= date_from)
        if date_to is not None:
            conditions.append(CallLog.initiated_at <= date_to)
        if phone_number:
            conditions.append(CallLog.phone_number.contains(phone_number))

        count_stmt = select(func.count()).select_from(CallLog).where(*conditions)
        total = int((await self._session.execute(count_stmt)).scalar_one())

        stmt = select(CallLog).where(*conditions).order_by(CallLog.initiated_at.desc()).offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self._session.execute(stmt)
        return result.scalars().all(), total
