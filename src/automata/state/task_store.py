from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from automata.tasks import WORKFLOW_PHASES, Task, now_ms

logger = logging.getLogger(__name__)

STATE_DIR_NAME = ".code-automata"
SUMMARY_VERSION = "1.0"


class TaskStoreError(RuntimeError):
    """Raised when task persistence fails for reasons other than a missing file."""


def pid_alive(pid: int | None) -> bool:
    """Best-effort check that a local process still exists."""
    if pid is None or pid <= 0:
        return False
    if os.name == "nt":
        # os.kill with signal 0 terminates the process on Windows; assume it is alive.
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class TaskStore:
    """File-backed task persistence: one JSON document per task.

    A summary document grouping tasks by phase is rewritten on every save and
    delete so external tooling can read the board without loading each task.
    """

    def __init__(self, project_dir: Path) -> None:
        self.project_dir = project_dir.resolve()
        self.state_dir = self.project_dir / STATE_DIR_NAME
        self.tasks_dir = self.state_dir / "tasks"
        self.summary_path = self.state_dir / "implementation_plan.json"
        self.lock_file = self.state_dir / ".lock"

    def _ensure_dir(self) -> None:
        self.tasks_dir.mkdir(parents=True, exist_ok=True)

    def task_path(self, task_id: str) -> Path:
        return self.tasks_dir / f"{task_id}.json"

    def task_dir(self, task_id: str) -> Path:
        return self.tasks_dir / task_id

    def _lock_owner(self) -> int | None:
        try:
            return int(self.lock_file.read_text(encoding="utf-8").strip())
        except (OSError, ValueError):
            return None

    @contextmanager
    def _state_lock(self, timeout_seconds: float = 3.0) -> Iterator[None]:
        self._ensure_dir()
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                holder = self._lock_owner()
                if holder is not None and not pid_alive(holder):
                    logger.warning("Removing task store lock left by dead process %d", holder)
                    try:
                        self.lock_file.unlink()
                    except FileNotFoundError:
                        pass
                    continue
                if time.monotonic() - start > timeout_seconds:
                    raise TaskStoreError("Timed out waiting for task store lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    @staticmethod
    def _write_atomic(path: Path, payload: Any) -> None:
        serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(serialized)
            os.replace(temp_name, path)
        except OSError as exc:
            try:
                os.unlink(temp_name)
            except OSError:
                pass
            raise TaskStoreError(f"Failed to write {path}: {exc}") from exc

    def save_task(self, task: Task) -> None:
        with self._state_lock():
            self._write_atomic(self.task_path(task.id), task.to_dict())
            self._write_summary()

    def load_task(self, task_id: str) -> Task | None:
        path = self.task_path(task_id)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise TaskStoreError(f"Failed to read {path}: {exc}") from exc

        try:
            payload = json.loads(raw)
            if not isinstance(payload, dict):
                raise ValueError("task document is not a JSON object")
            return Task.from_dict(payload)
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            # A corrupted file must not take down listing of the other tasks.
            logger.error("Corrupted task file %s: %s", path, exc)
            return None

    def list_tasks(self) -> list[Task]:
        self._ensure_dir()
        task_files = sorted(self.tasks_dir.glob("*.json"))
        tasks: list[Task] = []
        skipped = 0
        for task_file in task_files:
            task = self.load_task(task_file.stem)
            if task is None:
                skipped += 1
                continue
            tasks.append(task)
        if skipped:
            logger.warning("Skipped %d corrupted task file(s)", skipped)
        tasks.sort(key=lambda task: task.created_at, reverse=True)
        return tasks

    def delete_task(self, task_id: str) -> bool:
        with self._state_lock():
            try:
                self.task_path(task_id).unlink()
            except FileNotFoundError:
                return False
            self._write_summary()
        return True

    def update_task(self, task_id: str, mutator: Callable[[Task], None]) -> Task | None:
        """Reload, mutate and save a task; last write wins."""
        task = self.load_task(task_id)
        if task is None:
            return None
        mutator(task)
        task.updated_at = now_ms()
        self.save_task(task)
        return task

    def _write_summary(self) -> None:
        tasks = self.list_tasks()
        summary = {
            "version": SUMMARY_VERSION,
            "updated": datetime.now(UTC).replace(microsecond=0).isoformat(),
            "total_tasks": len(tasks),
            "phases": [
                {
                    "name": phase,
                    "tasks": [
                        {
                            "id": task.id,
                            "title": task.title,
                            "status": task.status,
                            "subtasks": len(task.subtasks),
                            "assigned_agent": task.assigned_agent.to_dict(),
                        }
                        for task in tasks
                        if task.phase == phase
                    ],
                }
                for phase in WORKFLOW_PHASES
            ],
        }
        try:
            self._write_atomic(self.summary_path, summary)
        except TaskStoreError as exc:
            logger.error("Failed to update task summary: %s", exc)
