from __future__ import annotations

import asyncio
import logging
import os
import uuid
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from pathlib import Path

from automata.backends.base import AgentBackend, BackendExecutionError
from automata.specialists import SPECIALISTS, SpecialistAgent
from automata.state.thread_index import ThreadIndex
from automata.tasks import Task

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AgentResult:
    success: bool
    output: str = ""
    error: str | None = None


CompletionHandler = Callable[[AgentResult], Awaitable[None]]


class AgentGateway(ABC):
    """Starts coding-agent threads and reports their completion."""

    # Written into agent assignments; None means liveness is only known locally.
    owner: str | None = None

    @abstractmethod
    def start_agent(
        self,
        task: Task,
        prompt: str,
        *,
        working_dir: Path,
        on_complete: CompletionHandler,
        role: str = "developer",
    ) -> str:
        """Start an agent thread and return its id.

        ``on_complete`` is awaited exactly once, after the agent finishes,
        fails or is stopped. It is never invoked before this method returns.
        """

    @abstractmethod
    def is_thread_active(self, thread_id: str) -> bool: ...

    @abstractmethod
    def stop(self, thread_id: str) -> bool: ...


class BackendGateway(AgentGateway):
    """Runs each agent thread as an asyncio task over a CLI backend."""

    def __init__(
        self,
        backend: AgentBackend,
        *,
        thread_index: ThreadIndex | None = None,
        models: Mapping[str, str | None] | None = None,
        system_prompts: Mapping[str, str | None] | None = None,
    ) -> None:
        self.backend = backend
        self.thread_index = thread_index
        self.owner = f"{os.getpid()}:{uuid.uuid4().hex[:8]}"
        models = models or {}
        system_prompts = system_prompts or {}
        self.specialists: dict[str, SpecialistAgent] = {
            role: specialist_cls(
                backend,
                model=models.get(role),
                system_prompt=system_prompts.get(role),
            )
            for role, specialist_cls in SPECIALISTS.items()
        }
        self._threads: dict[str, asyncio.Task[None]] = {}
        self._work: dict[str, asyncio.Future[object]] = {}
        self._stop_requested: set[str] = set()

    def start_agent(
        self,
        task: Task,
        prompt: str,
        *,
        working_dir: Path,
        on_complete: CompletionHandler,
        role: str = "developer",
    ) -> str:
        try:
            specialist = self.specialists[role]
        except KeyError as exc:
            raise ValueError(f"Unknown agent role: {role}") from exc

        thread_id = f"thread-{uuid.uuid4().hex[:12]}"
        if self.thread_index is not None:
            self.thread_index.set_task_id(thread_id, task.id)
        runner = asyncio.get_running_loop().create_task(
            self._run(thread_id, specialist, task.id, prompt, working_dir, on_complete),
            name=f"agent-{thread_id}",
        )
        self._threads[thread_id] = runner
        logger.info("Started %s agent %s for task %s", role, thread_id, task.id)
        return thread_id

    async def _run(
        self,
        thread_id: str,
        specialist: SpecialistAgent,
        task_id: str,
        prompt: str,
        working_dir: Path,
        on_complete: CompletionHandler,
    ) -> None:
        work = asyncio.ensure_future(
            specialist.run(prompt, {"_working_directory": str(working_dir), "task_id": task_id})
        )
        self._work[thread_id] = work
        if thread_id in self._stop_requested:
            work.cancel()
        try:
            response = await work
            result = AgentResult(success=True, output=response.content)
        except asyncio.CancelledError:
            logger.info("Agent %s was stopped", thread_id)
            result = AgentResult(success=False, error="Agent was stopped")
        except BackendExecutionError as exc:
            logger.error("Agent %s failed: %s", thread_id, exc)
            result = AgentResult(success=False, error=str(exc))
        except Exception as exc:
            logger.exception("Agent %s crashed", thread_id)
            result = AgentResult(success=False, error=f"{type(exc).__name__}: {exc}")
        finally:
            self._work.pop(thread_id, None)
            self._stop_requested.discard(thread_id)

        try:
            await on_complete(result)
        except Exception:
            logger.exception("Completion handler for agent %s failed", thread_id)
        finally:
            self._threads.pop(thread_id, None)
            if self.thread_index is not None:
                self.thread_index.remove(thread_id)

    def is_thread_active(self, thread_id: str) -> bool:
        runner = self._threads.get(thread_id)
        return runner is not None and not runner.done()

    def stop(self, thread_id: str) -> bool:
        if not self.is_thread_active(thread_id):
            return False
        # The completion handler still runs, with a failed result.
        self._stop_requested.add(thread_id)
        work = self._work.get(thread_id)
        if work is not None:
            work.cancel()
        return True

    def active_threads(self) -> list[str]:
        return [thread_id for thread_id, runner in self._threads.items() if not runner.done()]

    async def wait_idle(self) -> None:
        while self._threads:
            await asyncio.gather(*list(self._threads.values()), return_exceptions=True)
