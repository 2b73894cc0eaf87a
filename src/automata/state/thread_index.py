from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path

from automata.state.task_store import STATE_DIR_NAME

logger = logging.getLogger(__name__)


class ThreadIndex:
    """Maps agent thread ids to the task that started them.

    Kept on disk so a thread can be traced back to its task without any
    in-memory registry, e.g. after a restart.
    """

    def __init__(self, project_dir: Path) -> None:
        self.path = project_dir.resolve() / STATE_DIR_NAME / "thread-index.json"

    def _read(self) -> dict[str, str]:
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable thread index %s: %s", self.path, exc)
            return {}
        if not isinstance(payload, dict):
            return {}
        return {str(key): str(value) for key, value in payload.items()}

    def _write(self, index: dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(prefix=".thread-index.", dir=self.path.parent)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(index, handle, ensure_ascii=False, indent=2)
        os.replace(temp_name, self.path)

    def set_task_id(self, thread_id: str, task_id: str) -> None:
        index = self._read()
        index[thread_id] = task_id
        self._write(index)

    def get_task_id(self, thread_id: str) -> str | None:
        return self._read().get(thread_id)

    def remove(self, thread_id: str) -> None:
        index = self._read()
        if index.pop(thread_id, None) is not None:
            self._write(index)
