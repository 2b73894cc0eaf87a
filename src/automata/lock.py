from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Literal

logger = logging.getLogger(__name__)

LockOperation = Literal["starting", "resuming"]

LOCK_STALE_SECONDS = 30.0


@dataclass(slots=True)
class LockEntry:
    operation: LockOperation
    acquired_at: float


class OrchestratorLockRegistry:
    """Process-wide guard against starting two orchestrator loops for one task.

    Entries older than ``LOCK_STALE_SECONDS`` are treated as abandoned and
    replaced on the next acquisition. A running loop keeps its entry fresh with
    :meth:`heartbeat`. Nothing here survives a process restart; ghost agent
    assignments left behind by a crash are cleared by stale-agent recovery.
    """

    def __init__(
        self,
        *,
        stale_after_seconds: float = LOCK_STALE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.stale_after_seconds = stale_after_seconds
        self._clock = clock
        self._entries: dict[str, LockEntry] = {}
        self._mutex = threading.Lock()

    def _age(self, entry: LockEntry) -> float:
        return self._clock() - entry.acquired_at

    def acquire(self, task_id: str, operation: LockOperation) -> bool:
        with self._mutex:
            existing = self._entries.get(task_id)
            if existing is not None:
                age = self._age(existing)
                if age < self.stale_after_seconds:
                    return False
                logger.warning(
                    "Replacing stale orchestrator lock for task %s (age %.1fs)", task_id, age
                )
            self._entries[task_id] = LockEntry(operation=operation, acquired_at=self._clock())
            return True

    def release(self, task_id: str) -> None:
        with self._mutex:
            self._entries.pop(task_id, None)

    def is_locked(self, task_id: str) -> bool:
        with self._mutex:
            entry = self._entries.get(task_id)
            if entry is None:
                return False
            age = self._age(entry)
            if age >= self.stale_after_seconds:
                logger.warning("Orchestrator lock for task %s is stale (age %.1fs)", task_id, age)
                del self._entries[task_id]
                return False
            return True

    def heartbeat(self, task_id: str) -> bool:
        with self._mutex:
            entry = self._entries.get(task_id)
            if entry is None:
                return False
            entry.acquired_at = self._clock()
            return True

    def sweep(self) -> list[str]:
        with self._mutex:
            stale = [
                task_id
                for task_id, entry in self._entries.items()
                if self._age(entry) >= self.stale_after_seconds
            ]
            for task_id in stale:
                del self._entries[task_id]
        for task_id in stale:
            logger.warning("Swept stale orchestrator lock for task %s", task_id)
        return stale

    def active_locks(self) -> list[dict[str, object]]:
        with self._mutex:
            return [
                {
                    "task_id": task_id,
                    "operation": entry.operation,
                    "age_seconds": round(self._age(entry), 3),
                }
                for task_id, entry in self._entries.items()
            ]
