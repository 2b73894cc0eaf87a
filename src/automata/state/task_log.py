from __future__ import annotations

import logging
from datetime import UTC, datetime
from pathlib import Path

logger = logging.getLogger(__name__)

RULE = "=" * 80


class TaskLog:
    """Human-readable, append-only log for one task and one lifecycle stage.

    Lines are mirrored to the module logger so they also show up in the
    process log.
    """

    def __init__(self, path: Path, *, task_id: str) -> None:
        self.path = path
        self.task_id = task_id

    @classmethod
    def for_task(cls, task_dir: Path, task_id: str, kind: str) -> TaskLog:
        return cls(task_dir / f"{kind}-logs.txt", task_id=task_id)

    def exists(self) -> bool:
        return self.path.exists()

    def start(self, heading: str, title: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(
            f"{heading} for task: {title}\n"
            f"Task ID: {self.task_id}\n"
            f"Started at: {datetime.now(UTC).replace(microsecond=0).isoformat()}\n"
            f"{RULE}\n\n",
            encoding="utf-8",
        )

    def append(self, message: str, *, level: int = logging.INFO) -> None:
        logger.log(level, "[%s] %s", self.task_id, message.strip())
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(message if message.endswith("\n") else f"{message}\n")

    def error(self, message: str) -> None:
        self.append(message, level=logging.ERROR)

    def banner(self, message: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        logger.info("[%s] %s", self.task_id, message)
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(f"\n{RULE}\n{message}\n{RULE}\n")

    def read(self) -> str:
        try:
            return self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return ""
