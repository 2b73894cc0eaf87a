from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Literal

from automata.gateway import AgentGateway, AgentResult
from automata.generation import working_dir_for
from automata.lock import OrchestratorLockRegistry
from automata.state.task_log import TaskLog
from automata.state.task_store import TaskStore
from automata.tasks import AgentAssignment, Task, now_ms

logger = logging.getLogger(__name__)

SubtaskOutcome = Literal["completed", "skipped", "deleted", "failed", "paused", "timeout"]

DEFAULT_WAIT_SECONDS = 30 * 60.0
DEFAULT_POLL_INTERVAL = 1.0


class SubtaskExecutor:
    """Runs one subtask through the agent gateway and waits for it to settle.

    The completion handler wakes the waiter immediately. In between, the
    store is polled so that a skip, delete or pause made from outside is
    observed without waiting for the agent.
    """

    def __init__(
        self,
        store: TaskStore,
        gateway: AgentGateway,
        *,
        lock: OrchestratorLockRegistry | None = None,
        wait_seconds: float = DEFAULT_WAIT_SECONDS,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.lock = lock
        self.wait_seconds = wait_seconds
        self.poll_interval = poll_interval

    def working_dir(self, task: Task) -> Path:
        return working_dir_for(task, self.store.project_dir)

    async def execute(
        self,
        task_id: str,
        subtask_id: str,
        prompt: str,
        log: TaskLog,
        *,
        role: str = "developer",
    ) -> SubtaskOutcome:
        task = self.store.load_task(task_id)
        subtask = task.find_subtask(subtask_id) if task else None
        if task is None or subtask is None:
            return "deleted"
        if subtask.status == "completed":
            return "skipped"

        def _mark_started(current: Task) -> None:
            target = current.find_subtask(subtask_id)
            if target is not None:
                target.status = "in_progress"
            current.status = "in_progress"

        task = self.store.update_task(task_id, _mark_started) or task

        done = asyncio.Event()
        settled: list[SubtaskOutcome] = []

        async def on_complete(result: AgentResult) -> None:
            try:
                if result.success:
                    settled.append(self._handle_success(task_id, subtask_id, result, log))
                else:
                    settled.append(self._handle_failure(task_id, subtask_id, result, log))
            finally:
                done.set()

        thread_id = self.gateway.start_agent(
            task,
            prompt,
            working_dir=self.working_dir(task),
            on_complete=on_complete,
            role=role,
        )

        def _assign(current: Task) -> None:
            current.assigned_agent = AgentAssignment.running(thread_id, self.gateway.owner)

        self.store.update_task(task_id, _assign)
        log.append(f"[Subtask {subtask_id}] Agent started: {thread_id}")
        return await self._wait(task_id, subtask_id, thread_id, done, settled, log)

    async def _wait(
        self,
        task_id: str,
        subtask_id: str,
        thread_id: str,
        done: asyncio.Event,
        settled: list[SubtaskOutcome],
        log: TaskLog,
    ) -> SubtaskOutcome:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.wait_seconds
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                log.error(
                    f"[Subtask {subtask_id}] Timed out after {self.wait_seconds:.0f}s "
                    "waiting for the agent"
                )
                return "timeout"
            try:
                await asyncio.wait_for(done.wait(), min(self.poll_interval, remaining))
            except TimeoutError:
                pass
            if settled:
                return settled[0]
            if self.lock is not None:
                self.lock.heartbeat(task_id)
            observed = self._observe(task_id, subtask_id)
            if observed is not None:
                if observed in ("skipped", "deleted", "paused"):
                    # The agent's late result must not touch the task any more; a pause
                    # may come from another process that cannot stop this thread.
                    self.gateway.stop(thread_id)
                log.append(f"[Subtask {subtask_id}] Observed {observed} while agent was running")
                return observed

    def _observe(self, task_id: str, subtask_id: str) -> SubtaskOutcome | None:
        task = self.store.load_task(task_id)
        if task is None:
            return "deleted"
        subtask = task.find_subtask(subtask_id)
        if subtask is None:
            return "deleted"
        if subtask.status == "completed":
            return "skipped"
        if task.status == "blocked":
            return "failed"
        if task.assigned_agent.is_idle:
            return "paused"
        return None

    def _handle_success(
        self, task_id: str, subtask_id: str, result: AgentResult, log: TaskLog
    ) -> SubtaskOutcome:
        log.append(f"[Subtask {subtask_id}] Completed\n[Output]\n{result.output}")
        outcome: list[SubtaskOutcome] = []

        def _apply(current: Task) -> None:
            target = current.find_subtask(subtask_id)
            if target is None:
                outcome.append("deleted")
                return
            if target.status != "completed":
                target.status = "completed"
                target.completed_at = now_ms()
            if current.phase == "in_progress" and current.all_dev_completed():
                current.phase = "ai_review"
            outcome.append("completed")

        if self.store.update_task(task_id, _apply) is None:
            return "deleted"
        return outcome[0]

    def _handle_failure(
        self, task_id: str, subtask_id: str, result: AgentResult, log: TaskLog
    ) -> SubtaskOutcome:
        task = self.store.load_task(task_id)
        subtask = task.find_subtask(subtask_id) if task else None
        if task is None or subtask is None:
            log.append(f"[Subtask {subtask_id}] Agent ended after the subtask was removed")
            return "deleted"
        if subtask.status == "completed":
            log.append(f"[Subtask {subtask_id}] Agent ended after the subtask was skipped")
            return "skipped"
        if task.assigned_agent.is_idle:
            log.append(f"[Subtask {subtask_id}] Agent stopped because the task was paused")
            return "paused"

        log.error(f"[Subtask {subtask_id}] Failed: {result.error}")

        def _apply(current: Task) -> None:
            target = current.find_subtask(subtask_id)
            if target is not None and target.status == "in_progress":
                target.status = "pending"
            current.status = "blocked"
            current.assigned_agent = AgentAssignment.idle()

        self.store.update_task(task_id, _apply)
        return "failed"
