"""
In-memory registry of armed scheduled-call jobs.

One entry per scheduled call id. Mutations for a given id are serialized
with a per-key asyncio lock; callers take `lock_for(call_id)` around any
cancel-then-register sequence.
"""

import asyncio
import weakref
from dataclasses import dataclass, field
from enum import Enum
from uuid import UUID

from callscheduler.shared.logging import get_logger

logger = get_logger(__name__)


class JobKind(str, Enum):
    ONE_SHOT = "one_shot"
    RECURRING = "recurring"


@dataclass
class JobHandle:
    """Timer handle for one armed scheduled call.

    The task only waits for the fire time. Firings run in their own tasks,
    so cancelling a handle never interrupts a call already being placed.
    """

    call_id: UUID
    kind: JobKind
    task: asyncio.Task | None = None
    cancelled: bool = field(default=False)

    def cancel(self) -> None:
        self.cancelled = True
        if self.task is not None and not self.task.done():
            self.task.cancel()


class JobRegistry:
    """Mapping of scheduled call id to its armed JobHandle."""

    def __init__(self) -> None:
        self._jobs: dict[UUID, JobHandle] = {}
        # Weak values: a lock lives only while someone holds or waits on it.
        self._locks: weakref.WeakValueDictionary[UUID, asyncio.Lock] = weakref.WeakValueDictionary()

    def lock_for(self, call_id: UUID) -> asyncio.Lock:
        lock = self._locks.get(call_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[call_id] = lock
        return lock

    def register(self, handle: JobHandle) -> None:
        """Register a handle, cancelling whatever was armed for the same id."""
        previous = self._jobs.get(handle.call_id)
        if previous is not None and previous is not handle:
            previous.cancel()
        self._jobs[handle.call_id] = handle

    def cancel(self, call_id: UUID) -> bool:
        """Disarm and remove. Returns False (and does nothing) for unknown ids."""
        handle = self._jobs.pop(call_id, None)
        if handle is None:
            return False
        handle.cancel()
        logger.debug("Job disarmed", extra={"scheduled_call_id": str(call_id)})
        return True

    def discard(self, handle: JobHandle) -> None:
        """Remove `handle` if it is still the registered one, without cancelling it."""
        if self._jobs.get(handle.call_id) is handle:
            del self._jobs[handle.call_id]

    def get(self, call_id: UUID) -> JobHandle | None:
        return self._jobs.get(call_id)

    def ids(self) -> list[UUID]:
        return list(self._jobs)

    def cancel_all(self) -> int:
        handles = list(self._jobs.values())
        self._jobs.clear()
        for handle in handles:
            handle.cancel()
        return len(handles)

    def __contains__(self, call_id: object) -> bool:
        return call_id in self._jobs

    def __len__(self) -> int:
        return len(self._jobs)
