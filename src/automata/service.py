from __future__ import annotations

import asyncio
import logging
import shutil
import uuid
from collections.abc import Callable, Coroutine, Sequence
from pathlib import Path
from typing import Any

from automata.checks import AutomatedChecksRunner, QACheckResult
from automata.cleanup import clean_planning_artifacts, clear_stale_agent, clear_stale_agents_from_tasks
from automata.config import AutomataConfig
from automata.executor import SubtaskExecutor
from automata.gateway import AgentGateway
from automata.generation import PlanGenerationPipeline, SubtaskGenerationPipeline, working_dir_for
from automata.lock import OrchestratorLockRegistry
from automata.orchestrator import DevQALoop, LoopResult
from automata.prompts import PlanningAnswer
from automata.state.task_store import TaskStore
from automata.tasks import (
    TASK_STATUSES,
    WORKFLOW_PHASES,
    AgentAssignment,
    PhaseTransitionError,
    Task,
    is_phase_transition_allowed,
    now_ms,
)

logger = logging.getLogger(__name__)

RESUMABLE_PHASES = ("in_progress", "ai_review")


class TaskNotFoundError(LookupError):
    """Raised when a task or subtask id does not exist."""


class OrchestratorBusyError(RuntimeError):
    """Raised when another orchestrator or agent already owns the task."""


class InvalidTaskStateError(RuntimeError):
    """Raised when a task is not in a state that allows the operation."""


class TaskService:
    """Request-level task operations on top of the store and orchestrator.

    Long-running work (subtask generation and the dev+QA loop) runs as
    detached asyncio tasks; :meth:`wait_for_background` lets callers that own
    the event loop, like the CLI, wait for them.
    """

    def __init__(
        self,
        project_dir: Path,
        gateway: AgentGateway,
        *,
        config: AutomataConfig | None = None,
        lock: OrchestratorLockRegistry | None = None,
        checks: AutomatedChecksRunner | None = None,
    ) -> None:
        self.config = config or AutomataConfig.default()
        self.store = TaskStore(project_dir)
        self.project_dir = self.store.project_dir
        self.gateway = gateway
        self.lock = lock or OrchestratorLockRegistry()
        self.checks = checks or AutomatedChecksRunner(self.config.checks)
        self.executor = SubtaskExecutor(
            self.store,
            gateway,
            lock=self.lock,
            wait_seconds=self.config.orchestrator.subtask_wait_seconds,
            poll_interval=self.config.orchestrator.poll_interval_seconds,
        )
        self.dev_qa_loop = DevQALoop(self.store, self.executor, self.checks, lock=self.lock)
        self._background: dict[str, asyncio.Task[Any]] = {}

    def get_task(self, task_id: str) -> Task:
        task = self.store.load_task(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task not found: {task_id}")
        return task

    def _update(self, task_id: str, mutator: Callable[[Task], None]) -> Task:
        task = self.store.update_task(task_id, mutator)
        if task is None:
            raise TaskNotFoundError(f"Task not found: {task_id}")
        return task

    def create_task(
        self, title: str, description: str = "", *, worktree_path: str | None = None
    ) -> Task:
        if not title.strip():
            raise InvalidTaskStateError("Task title must not be empty")
        task = Task(
            id=f"task-{now_ms()}-{uuid.uuid4().hex[:6]}",
            title=title.strip(),
            description=description.strip(),
            worktree_path=worktree_path,
        )
        self.store.save_task(task)
        logger.info("Created task %s: %s", task.id, task.title)
        return task

    def list_tasks(self) -> list[Task]:
        """List all tasks, clearing agent assignments whose thread is gone."""
        tasks = self.store.list_tasks()
        stale = clear_stale_agents_from_tasks(tasks, lock=self.lock, gateway=self.gateway)
        for task in stale:
            self.store.update_task(
                task.id, lambda current: clear_stale_agent(current, lock=self.lock, gateway=self.gateway)
            )
        if stale:
            logger.info("Recovered %d task(s) with stale agents", len(stale))
        return tasks

    async def generate_plan(
        self, task_id: str, answers: Sequence[PlanningAnswer] | None = None
    ) -> bool:
        task = self.get_task(task_id)
        if task.phase != "planning":
            raise InvalidTaskStateError(f"Task {task_id} is not in planning (phase: {task.phase})")
        if not task.assigned_agent.is_idle:
            raise OrchestratorBusyError(f"Task {task_id} already has an agent: {task.assigned_agent}")

        def _reset(current: Task) -> None:
            current.plan_approved = False
            current.planning_status = "generating_plan"

        self._update(task_id, _reset)
        pipeline = PlanGenerationPipeline(
            self.store,
            self.gateway,
            backend_name=self.config.backend.name,
            answers=answers,
        )
        return await pipeline.run(task_id)

    def approve_plan(self, task_id: str) -> Task:
        task = self.get_task(task_id)
        if not task.plan_content:
            raise InvalidTaskStateError(f"Task {task_id} has no plan to approve")

        def _approve(current: Task) -> None:
            current.plan_approved = True

        return self._update(task_id, _approve)

    def _spawn(self, task_id: str, work: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        runner = asyncio.get_running_loop().create_task(
            self._guarded(task_id, work), name=f"orchestrator-{task_id}"
        )
        self._background[task_id] = runner

        def _forget(done: asyncio.Task[Any]) -> None:
            if self._background.get(task_id) is done:
                del self._background[task_id]

        runner.add_done_callback(_forget)
        return runner

    async def _guarded(self, task_id: str, work: Coroutine[Any, Any, Any]) -> Any:
        try:
            return await work
        except Exception:
            logger.exception("Orchestrator for task %s crashed", task_id)

            def _block(current: Task) -> None:
                if current.assigned_agent.is_placeholder:
                    current.assigned_agent = AgentAssignment.idle()
                    current.status = "blocked"

            self.store.update_task(task_id, _block)
            return None
        finally:
            self.lock.release(task_id)

    async def start_development(self, task_id: str) -> asyncio.Task[Any]:
        """Generate subtasks from the approved plan, then run the dev+QA loop."""
        if not self.lock.acquire(task_id, "starting"):
            raise OrchestratorBusyError(f"Orchestrator is already starting or running for {task_id}")
        try:
            task = self.get_task(task_id)
            if not task.plan_approved or not task.plan_content:
                raise InvalidTaskStateError(
                    "Task must have an approved plan before starting development"
                )
            if task.phase != "planning":
                raise InvalidTaskStateError(
                    f"Task {task_id} is already past planning (phase: {task.phase}); use resume"
                )
            if not task.assigned_agent.is_idle:
                raise OrchestratorBusyError(f"Task {task_id} already has an agent: {task.assigned_agent}")

            def _mark_starting(current: Task) -> None:
                current.assigned_agent = AgentAssignment.starting(self.gateway.owner)
                current.status = "in_progress"

            self._update(task_id, _mark_starting)
        except Exception:
            self.lock.release(task_id)
            raise
        return self._spawn(task_id, self._develop(task_id))

    async def _develop(self, task_id: str) -> LoopResult | None:
        pipeline = SubtaskGenerationPipeline(self.store, self.gateway, lock=self.lock)
        if not await pipeline.run(task_id):
            return None
        return await self.dev_qa_loop.run(task_id)

    async def resume_task(self, task_id: str) -> asyncio.Task[Any]:
        if not self.lock.acquire(task_id, "resuming"):
            raise OrchestratorBusyError(f"Orchestrator is already starting or resuming for {task_id}")
        try:
            task = self.get_task(task_id)
            if task.phase not in RESUMABLE_PHASES:
                raise InvalidTaskStateError(
                    f"Task {task_id} is not resumable (phase: {task.phase}); "
                    "must be in_progress or ai_review"
                )
            if not task.assigned_agent.is_idle:
                raise OrchestratorBusyError(
                    f"Task {task_id} orchestrator is already running ({task.assigned_agent})"
                )
            reset: list[int] = []

            def _mark_resuming(current: Task) -> None:
                reset.append(current.reset_in_progress_subtasks())
                current.assigned_agent = AgentAssignment.resuming(self.gateway.owner)
                current.status = "in_progress"

            self._update(task_id, _mark_resuming)
        except Exception:
            self.lock.release(task_id)
            raise
        logger.info("Resuming task %s (reset %d in_progress subtask(s))", task_id, reset[0])
        return self._spawn(task_id, self.dev_qa_loop.run(task_id))

    def pause_task(self, task_id: str) -> Task:
        task = self.get_task(task_id)
        thread_id = task.assigned_agent.thread_id

        def _pause(current: Task) -> None:
            current.assigned_agent = AgentAssignment.idle()
            current.status = "pending"

        paused = self._update(task_id, _pause)
        # The assignment is cleared first so the stopped agent is not treated as a failure.
        if thread_id:
            self.gateway.stop(thread_id)
        logger.info("Paused task %s", task_id)
        return paused

    def skip_subtask(self, task_id: str, subtask_id: str) -> Task:
        task = self.get_task(task_id)
        subtask = task.find_subtask(subtask_id)
        if subtask is None:
            raise TaskNotFoundError(f"Subtask not found: {subtask_id}")
        if subtask.status == "completed":
            raise InvalidTaskStateError("Cannot skip a completed subtask")
        running_thread = task.assigned_agent.thread_id if subtask.status == "in_progress" else None

        def _skip(current: Task) -> None:
            target = current.find_subtask(subtask_id)
            if target is None:
                return
            target.status = "completed"
            target.completed_at = now_ms()
            if current.phase == "in_progress" and current.all_dev_completed():
                current.phase = "ai_review"
                current.status = "in_progress"
                current.assigned_agent = AgentAssignment.idle()

        updated = self._update(task_id, _skip)
        if running_thread:
            self.gateway.stop(running_thread)
        return updated

    def delete_subtask(self, task_id: str, subtask_id: str) -> Task:
        task = self.get_task(task_id)
        if task.find_subtask(subtask_id) is None:
            raise TaskNotFoundError(f"Subtask not found: {subtask_id}")

        def _delete(current: Task) -> None:
            current.subtasks = [item for item in current.subtasks if item.id != subtask_id]

        return self._update(task_id, _delete)

    def delete_task(self, task_id: str) -> None:
        task = self.get_task(task_id)
        if not self.store.delete_task(task_id):
            raise TaskNotFoundError(f"Task not found: {task_id}")
        if task.assigned_agent.thread_id:
            self.gateway.stop(task.assigned_agent.thread_id)
        shutil.rmtree(self.store.task_dir(task_id), ignore_errors=True)
        logger.info("Deleted task %s", task_id)

    def update_task(
        self,
        task_id: str,
        *,
        title: str | None = None,
        description: str | None = None,
        phase: str | None = None,
        status: str | None = None,
    ) -> Task:
        task = self.get_task(task_id)
        if phase is not None:
            if phase not in WORKFLOW_PHASES:
                raise InvalidTaskStateError(f"Unknown phase: {phase}")
            if phase != task.phase and not is_phase_transition_allowed(task.phase, phase):
                raise PhaseTransitionError(
                    f"Cannot move task from {task.phase} back to {phase}. "
                    "Use planning to redo work."
                )
        if status is not None and status not in TASK_STATUSES:
            raise InvalidTaskStateError(f"Unknown status: {status}")

        def _apply(current: Task) -> None:
            if title is not None:
                current.title = title
            if description is not None:
                current.description = description
            if phase is not None:
                current.phase = phase  # type: ignore[assignment]
            if status is not None:
                current.status = status  # type: ignore[assignment]

        updated = self._update(task_id, _apply)
        if phase is not None and phase != task.phase and phase != "planning":
            clean_planning_artifacts(working_dir_for(updated, self.project_dir))
        return updated

    def move_task(self, task_id: str, phase: str) -> Task:
        return self.update_task(task_id, phase=phase)

    async def run_checks(self, task_id: str | None = None) -> QACheckResult:
        if task_id is None:
            return await self.checks.run(self.project_dir)
        return await self.checks.run(working_dir_for(self.get_task(task_id), self.project_dir))

    async def wait_for_background(self, task_id: str | None = None) -> None:
        while True:
            if task_id is not None:
                runner = self._background.get(task_id)
                pending = [runner] if runner is not None and not runner.done() else []
            else:
                pending = [runner for runner in self._background.values() if not runner.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)
