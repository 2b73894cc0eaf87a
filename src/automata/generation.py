from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from automata.cleanup import clean_planning_artifacts
from automata.extraction import extract_and_validate_subtasks, extract_json, normalize_subtasks
from automata.gateway import AgentGateway, AgentResult
from automata.lock import OrchestratorLockRegistry
from automata.prompts import (
    PlanningAnswer,
    build_fix_prompt,
    build_plan_prompt,
    build_subtask_prompt,
)
from automata.state.task_log import TaskLog
from automata.state.task_store import TaskStore
from automata.tasks import AgentAssignment, Task

logger = logging.getLogger(__name__)

MAX_PARSE_RETRIES = 2
PLAN_FALLBACK_FILES = ("implementation-plan.json", "implementation_plan.json")


def working_dir_for(task: Task, project_dir: Path) -> Path:
    return Path(task.worktree_path) if task.worktree_path else project_dir


class GenerationPipeline:
    """Runs a planner agent until its output parses, retrying with a fix agent.

    Each attempt waits for the agent to finish; invalid output triggers a fix
    prompt that embeds the previous output and the exact parse error. After
    ``MAX_PARSE_RETRIES`` fix attempts the task is blocked.
    """

    kind = "output"
    log_kind = "planning"
    agent_label = "Generation"

    def __init__(
        self,
        store: TaskStore,
        gateway: AgentGateway,
        *,
        lock: OrchestratorLockRegistry | None = None,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.lock = lock

    def build_prompt(self, task: Task) -> str:
        raise NotImplementedError

    def parse(self, output: str) -> tuple[Any | None, str | None]:
        raise NotImplementedError

    def fallback(self, task: Task) -> Any | None:
        return None

    def accept(self, task_id: str, value: Any, log: TaskLog) -> bool:
        raise NotImplementedError

    def mark_generating(self, task: Task) -> None:
        task.status = "in_progress"

    def open_log(self, task: Task) -> TaskLog:
        log = TaskLog.for_task(self.store.task_dir(task.id), task.id, self.log_kind)
        if not log.exists():
            log.start(f"{self.log_kind.capitalize()} started", task.title)
        return log

    def working_dir(self, task: Task) -> Path:
        return working_dir_for(task, self.store.project_dir)

    async def _invoke(self, task: Task, prompt: str, log: TaskLog) -> AgentResult:
        done: asyncio.Future[AgentResult] = asyncio.get_running_loop().create_future()

        async def on_complete(result: AgentResult) -> None:
            if not done.done():
                done.set_result(result)

        thread_id = self.gateway.start_agent(
            task,
            prompt,
            working_dir=self.working_dir(task),
            on_complete=on_complete,
            role="planner",
        )

        def _assign(current: Task) -> None:
            current.assigned_agent = AgentAssignment.running(thread_id, self.gateway.owner)
            self.mark_generating(current)

        self.store.update_task(task.id, _assign)
        log.append(f"[Agent Started] Thread ID: {thread_id}")
        return await done

    def _block(self, task_id: str, log: TaskLog, reason: str) -> None:
        log.error(reason)

        def _apply(current: Task) -> None:
            current.status = "blocked"
            current.assigned_agent = AgentAssignment.idle()

        self.store.update_task(task_id, _apply)
        if self.lock is not None:
            self.lock.release(task_id)

    async def run(self, task_id: str) -> bool:
        task = self.store.load_task(task_id)
        if task is None:
            logger.error("Cannot generate %s: task %s not found", self.kind, task_id)
            return False
        log = self.open_log(task)
        log.append(f"[Starting {self.agent_label}]")
        prompt = self.build_prompt(task)

        for attempt in range(MAX_PARSE_RETRIES + 1):
            label = "Fix Agent" if attempt else self.agent_label
            result = await self._invoke(task, prompt, log)
            log.append(f"\n[{label} Completed] Success: {result.success}")

            current = self.store.load_task(task_id)
            if current is None:
                log.error("[Aborted] Task was deleted while the agent was running")
                return False
            if not result.success:
                if current.assigned_agent.is_idle:
                    # Paused from outside; the stopped agent is not a failure.
                    log.append(f"[Stopped] {result.error}")
                    return False
                self._block(task_id, log, f"[Error] {result.error}")
                return False

            log.append(f"[Output]\n{result.output}")
            value, error = self.parse(result.output)
            if value is None:
                log.error(f"[Parse Error] Failed to parse JSON: {error}")
                value = self.fallback(current)
            if value is not None:
                return self.accept(task_id, value, log)

            if attempt < MAX_PARSE_RETRIES:
                log.append(
                    f"\n[Parse Retry] Attempt {attempt + 1}/{MAX_PARSE_RETRIES} - "
                    "Starting fix agent..."
                )
                prompt = build_fix_prompt(self.kind, error or "unknown error", result.output)
                task = current

        self._block(task_id, log, "[Max Parse Retries Reached] Task blocked.")
        return False


class PlanGenerationPipeline(GenerationPipeline):
    kind = "plan"
    log_kind = "planning"
    agent_label = "Plan Generation"

    def __init__(
        self,
        store: TaskStore,
        gateway: AgentGateway,
        *,
        lock: OrchestratorLockRegistry | None = None,
        backend_name: str = "claude",
        answers: Sequence[PlanningAnswer] | None = None,
    ) -> None:
        super().__init__(store, gateway, lock=lock)
        self.backend_name = backend_name
        self.answers = answers

    def build_prompt(self, task: Task) -> str:
        return build_plan_prompt(
            task, self.store.project_dir, backend=self.backend_name, answers=self.answers
        )

    def mark_generating(self, task: Task) -> None:
        task.status = "in_progress"
        task.planning_status = "generating_plan"

    def parse(self, output: str) -> tuple[str | None, str | None]:
        document, error = extract_json(output)
        if document is None:
            return None, error
        plan = document.get("plan")
        if isinstance(plan, str) and plan.strip():
            return plan, None
        return None, 'Parsed JSON has no "plan" field'

    def fallback(self, task: Task) -> str | None:
        working_dir = self.working_dir(task)
        for name in PLAN_FALLBACK_FILES:
            path = working_dir / name
            try:
                payload = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError):
                continue
            plan = payload.get("plan") if isinstance(payload, dict) else None
            if isinstance(plan, str) and plan.strip():
                logger.info("Using plan written to %s for task %s", path, task.id)
                return plan
        return None

    def accept(self, task_id: str, value: str, log: TaskLog) -> bool:
        def _apply(current: Task) -> None:
            current.plan_content = value
            current.planning_status = "plan_ready"
            current.status = "pending"
            current.assigned_agent = AgentAssignment.idle()

        task = self.store.update_task(task_id, _apply)
        if task is None:
            return False
        clean_planning_artifacts(self.working_dir(task))
        log.append("[Plan Generated]")
        return True


class SubtaskGenerationPipeline(GenerationPipeline):
    kind = "subtasks"
    log_kind = "development"
    agent_label = "Subtask Generation"

    def build_prompt(self, task: Task) -> str:
        return build_subtask_prompt(task, self.store.project_dir)

    def parse(self, output: str) -> tuple[list[dict[str, Any]] | None, str | None]:
        return extract_and_validate_subtasks(output)

    def accept(self, task_id: str, value: list[dict[str, Any]], log: TaskLog) -> bool:
        added: list[str] = []

        def _apply(current: Task) -> None:
            taken = {subtask.id for subtask in current.subtasks}
            subtasks = normalize_subtasks(value, taken_ids=taken)
            current.subtasks.extend(subtasks)
            added.extend(subtask.id for subtask in subtasks)
            current.phase = "in_progress"
            current.status = "in_progress"
            current.assigned_agent = AgentAssignment.idle()

        task = self.store.update_task(task_id, _apply)
        if task is None:
            return False
        clean_planning_artifacts(self.working_dir(task))
        log.append(f"[Validated {len(added)} subtasks] {', '.join(added)}")
        return True
