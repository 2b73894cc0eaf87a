from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from automata.checks import AutomatedChecksRunner, QACheckResult, generate_rework_feedback
from automata.cleanup import clean_planning_artifacts
from automata.executor import SubtaskExecutor, SubtaskOutcome
from automata.generation import working_dir_for
from automata.lock import OrchestratorLockRegistry
from automata.prompts import build_dev_prompt, build_qa_prompt
from automata.state.task_log import TaskLog
from automata.state.task_store import TaskStore
from automata.tasks import AgentAssignment, QAResult, Subtask, Task

logger = logging.getLogger(__name__)

MAX_REWORK = 2
CONTINUE_OUTCOMES = frozenset({"completed", "skipped", "deleted"})

LoopStatus = Literal["passed", "rework_cap", "halted", "missing"]


@dataclass(slots=True)
class LoopResult:
    status: LoopStatus
    rework_count: int = 0
    halted_on: SubtaskOutcome | None = None
    qa_result: QACheckResult | None = None


class DevQALoop:
    """Dev subtasks, then QA subtasks, then automated checks, then rework.

    A failed check run appends a rework dev subtask and goes around again,
    at most ``MAX_REWORK`` times; after that the task goes to human review
    with the failing result kept. Any subtask outcome other than completed,
    skipped or deleted stops the loop where it is.
    """

    def __init__(
        self,
        store: TaskStore,
        executor: SubtaskExecutor,
        checks: AutomatedChecksRunner,
        *,
        lock: OrchestratorLockRegistry,
    ) -> None:
        self.store = store
        self.executor = executor
        self.checks = checks
        self.lock = lock

    def _logs(self, task: Task) -> tuple[TaskLog, TaskLog]:
        task_dir = self.store.task_dir(task.id)
        dev_log = TaskLog.for_task(task_dir, task.id, "development")
        review_log = TaskLog.for_task(task_dir, task.id, "review")
        if not dev_log.exists():
            dev_log.start("Development started", task.title)
        return dev_log, review_log

    def _working_dir(self, task: Task) -> Path:
        return working_dir_for(task, self.store.project_dir)

    async def run(self, task_id: str) -> LoopResult:
        try:
            return await self._run(task_id)
        finally:
            self.lock.release(task_id)

    async def _run(self, task_id: str) -> LoopResult:
        task = self.store.load_task(task_id)
        if task is None:
            logger.error("Dev+QA loop: task %s not found", task_id)
            return LoopResult(status="missing")
        dev_log, review_log = self._logs(task)

        if task.assigned_agent.is_placeholder:

            def _clear_placeholder(current: Task) -> None:
                if current.assigned_agent.is_placeholder:
                    current.assigned_agent = AgentAssignment.idle()

            self.store.update_task(task_id, _clear_placeholder)

        while True:
            task = self.store.load_task(task_id)
            if task is None:
                return LoopResult(status="missing")
            dev_log.append(
                f"\n[Orchestrator] Starting dev+QA loop "
                f"(rework count: {task.rework_count}/{MAX_REWORK})"
            )

            halted = await self._run_dev_subtasks(task_id, dev_log)
            if halted is not None:
                return self._halt(task_id, halted, dev_log)
            self.lock.heartbeat(task_id)

            halted = await self._run_qa_subtasks(task_id, dev_log, review_log)
            if halted is not None:
                return self._halt(task_id, halted, review_log)
            self.lock.heartbeat(task_id)

            result = await self._run_checks(task_id, review_log)
            if result is None:
                return LoopResult(status="missing")
            task = self.store.load_task(task_id)
            if task is None:
                return LoopResult(status="missing")

            if result.passed:
                self._handle_pass(task, review_log)
                return LoopResult(status="passed", rework_count=task.rework_count, qa_result=result)
            if task.rework_count >= MAX_REWORK:
                self._handle_cap(task, review_log)
                return LoopResult(
                    status="rework_cap", rework_count=task.rework_count, qa_result=result
                )
            self._add_rework(task_id, result, dev_log, review_log)
            self.lock.heartbeat(task_id)

    def _halt(self, task_id: str, outcome: SubtaskOutcome, log: TaskLog) -> LoopResult:
        log.append(f"[Orchestrator] Stopping: subtask ended with outcome '{outcome}'")
        task = self.store.load_task(task_id)
        return LoopResult(
            status="halted",
            rework_count=task.rework_count if task else 0,
            halted_on=outcome,
        )

    async def _run_subtasks(
        self,
        task_id: str,
        pending: list[Subtask],
        log: TaskLog,
        *,
        kind: str,
        role: str,
        build_prompt: Callable[[Task, Subtask], str],
    ) -> SubtaskOutcome | None:
        total = len(pending)
        for index, subtask in enumerate(pending, start=1):
            current = self.store.load_task(task_id)
            if current is None:
                return "deleted"
            live = current.find_subtask(subtask.id)
            if live is None:
                log.append(f"\n[{kind} Subtask {index}/{total}] {subtask.label} - SKIPPED (deleted)")
                continue
            if live.status == "completed":
                log.append(
                    f"\n[{kind} Subtask {index}/{total}] {subtask.label} - SKIPPED (already completed)"
                )
                continue
            log.banner(f"[{kind} Subtask {index}/{total}] {live.label}")
            outcome = await self.executor.execute(
                task_id, live.id, build_prompt(current, live), log, role=role
            )
            log.append(f"[{kind} Subtask {index}/{total}] Outcome: {outcome}")
            if outcome not in CONTINUE_OUTCOMES:
                return outcome
            self.lock.heartbeat(task_id)
        return None

    async def _run_dev_subtasks(self, task_id: str, dev_log: TaskLog) -> SubtaskOutcome | None:
        task = self.store.load_task(task_id)
        if task is None:
            return "deleted"
        pending = [s for s in task.subtasks_of_type("dev") if s.status == "pending"]
        if not pending:
            dev_log.append("[Orchestrator] No pending dev subtasks to execute")
            return None
        dev_log.append(f"[Orchestrator] Executing {len(pending)} pending dev subtask(s)")
        halted = await self._run_subtasks(
            task_id,
            pending,
            dev_log,
            kind="Dev",
            role="developer",
            build_prompt=lambda current, subtask: build_dev_prompt(
                subtask, current.qa_failure_feedback
            ),
        )
        if halted is None:
            dev_log.append("\n[Orchestrator] Dev subtasks completed")
        return halted

    async def _run_qa_subtasks(
        self, task_id: str, dev_log: TaskLog, review_log: TaskLog
    ) -> SubtaskOutcome | None:
        def _enter_review(current: Task) -> None:
            current.phase = "ai_review"
            current.status = "in_progress"
            if current.rework_count > 0:
                # QA runs again in full after every rework.
                for subtask in current.subtasks_of_type("qa"):
                    subtask.status = "pending"

        task = self.store.update_task(task_id, _enter_review)
        if task is None:
            return "deleted"
        dev_log.banner("[Orchestrator] Moving to AI Review phase")
        clean_planning_artifacts(self._working_dir(task))

        if not review_log.exists():
            review_log.start("AI Review started", task.title)
        else:
            review_log.banner(f"[Rework {task.rework_count}] Re-running QA after fixes")

        qa_subtasks = task.subtasks_of_type("qa")
        review_log.append(f"[Starting QA Verification] {len(qa_subtasks)} QA subtask(s) to verify")
        pending = [s for s in qa_subtasks if s.status != "completed"]
        halted = await self._run_subtasks(
            task_id,
            pending,
            review_log,
            kind="QA",
            role="reviewer",
            build_prompt=lambda current, subtask: build_qa_prompt(
                subtask,
                completed_dev=[
                    item for item in current.subtasks_of_type("dev") if item.status == "completed"
                ],
                plan_content=current.plan_content,
            ),
        )
        if halted is None:
            review_log.append("\n[Orchestrator] QA subtasks completed")
        return halted

    async def _run_checks(self, task_id: str, review_log: TaskLog) -> QACheckResult | None:
        task = self.store.load_task(task_id)
        if task is None:
            return None
        review_log.banner("[Automated Checks] Running typecheck/build/lint...")
        result = await self.checks.run(self._working_dir(task))

        def _record(current: Task) -> None:
            current.last_qa_result = QAResult(
                overall=result.overall, summary=result.summary, details=result.details
            )

        if self.store.update_task(task_id, _record) is None:
            return None
        review_log.append(
            f"\n[Automated checks] {result.overall}: {result.summary}\n\n{result.details}"
        )
        return result

    def _handle_pass(self, task: Task, review_log: TaskLog) -> None:
        clean_planning_artifacts(self._working_dir(task))

        def _apply(current: Task) -> None:
            current.phase = "human_review"
            current.status = "completed"
            current.assigned_agent = AgentAssignment.idle()
            current.qa_failure_feedback = None

        self.store.update_task(task.id, _apply)
        self.lock.release(task.id)
        review_log.banner("[SUCCESS] All checks passed - Moving to Human Review")

    def _handle_cap(self, task: Task, review_log: TaskLog) -> None:
        def _apply(current: Task) -> None:
            current.phase = "human_review"
            current.status = "completed"
            current.assigned_agent = AgentAssignment.idle()

        self.store.update_task(task.id, _apply)
        self.lock.release(task.id)
        review_log.banner(
            f"[REWORK CAP REACHED] QA issues remain after {MAX_REWORK} rework iteration(s).\n"
            "Moving to Human Review for manual intervention."
        )

    def _add_rework(
        self, task_id: str, result: QACheckResult, dev_log: TaskLog, review_log: TaskLog
    ) -> None:
        feedback = generate_rework_feedback(result)
        added: list[Subtask] = []

        def _apply(current: Task) -> None:
            current.rework_count += 1
            attempt = current.rework_count
            subtask_id = f"subtask-rework-{attempt}"
            suffix = 1
            while current.find_subtask(subtask_id) is not None:
                suffix += 1
                subtask_id = f"subtask-rework-{attempt}-{suffix}"
            subtask = Subtask(
                id=subtask_id,
                type="dev",
                label=f"Rework ({attempt}/{MAX_REWORK})",
                content=(
                    "Fix issues identified in QA automated checks "
                    f"(rework {attempt}/{MAX_REWORK}):\n\n{result.summary}"
                ),
                active_form=f"Fixing QA issues ({attempt}/{MAX_REWORK})",
            )
            current.subtasks.append(subtask)
            current.qa_failure_feedback = feedback
            current.phase = "in_progress"
            current.status = "in_progress"
            added.append(subtask)

        task = self.store.update_task(task_id, _apply)
        if task is None:
            return
        review_log.banner(
            f"[FAILURE] Automated checks failed. Adding rework subtask "
            f"({task.rework_count}/{MAX_REWORK})..."
        )
        dev_log.banner(
            f"[Rework {task.rework_count}/{MAX_REWORK}] QA failed - "
            f"adding {added[0].id} and re-running dev"
        )
