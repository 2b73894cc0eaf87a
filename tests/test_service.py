import asyncio
import shlex
import sys
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest

from automata.backends.base import AgentBackend
from automata.checks import AutomatedChecksRunner, QACheckResult
from automata.config import AutomataConfig, ChecksConfig, OrchestratorConfig
from automata.gateway import BackendGateway
from automata.service import (
    InvalidTaskStateError,
    OrchestratorBusyError,
    TaskNotFoundError,
    TaskService,
)
from automata.tasks import AgentAssignment, PhaseTransitionError, Subtask, Task


class EchoBackend(AgentBackend):
    name = "fake"

    def __init__(self, *, block: bool = False) -> None:
        self.block = block
        self.prompts: list[str] = []

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        self.prompts.append(user_prompt)
        if self.block:
            await asyncio.sleep(3600)
        yield "done"


class PassingChecks(AutomatedChecksRunner):
    def run_sync(self, working_dir: Path) -> QACheckResult:
        return QACheckResult(overall="pass", summary="typecheck passed", details="")


def _service(tmp_path: Path, backend: AgentBackend | None = None) -> TaskService:
    config = AutomataConfig(orchestrator=OrchestratorConfig(poll_interval_seconds=0.01))
    return TaskService(
        tmp_path,
        BackendGateway(backend or EchoBackend()),
        config=config,
        checks=PassingChecks(),
    )


def _save(service: TaskService, **fields: Any) -> Task:
    task = Task(
        id="task-1",
        title="Add login",
        plan_content="# Plan",
        plan_approved=True,
        subtasks=[
            Subtask(id="subtask-1", label="Create form", content="Add LoginForm", status="completed"),
            Subtask(id="subtask-2", label="Wire endpoint", content="POST /login"),
            Subtask(id="subtask-qa-1", label="Verify login", content="Check it", type="qa"),
        ],
    )
    for name, value in fields.items():
        setattr(task, name, value)
    service.store.save_task(task)
    return task


def test_create_and_list_tasks(tmp_path: Path) -> None:
    service = _service(tmp_path)

    task = service.create_task("  Add login  ", "Email login", worktree_path=str(tmp_path / "wt"))

    assert task.id.startswith("task-")
    assert task.title == "Add login"
    assert task.phase == "planning"
    assert [item.id for item in service.list_tasks()] == [task.id]
    with pytest.raises(InvalidTaskStateError):
        service.create_task("   ")
    with pytest.raises(TaskNotFoundError):
        service.get_task("task-missing")


def test_resume_runs_remaining_subtasks(tmp_path: Path) -> None:
    backend = EchoBackend()
    service = _service(tmp_path, backend)
    _save(service, phase="in_progress", status="blocked")
    service.store.update_task(
        "task-1", lambda task: setattr(task.find_subtask("subtask-2"), "status", "in_progress")
    )

    async def _run():
        runner = await service.resume_task("task-1")
        return await runner

    result = asyncio.run(_run())

    assert result.status == "passed"
    task = service.get_task("task-1")
    assert task.phase == "human_review"
    assert all(subtask.status == "completed" for subtask in task.subtasks)
    assert len(backend.prompts) == 2
    assert "**Subtask:** Wire endpoint" in backend.prompts[0]


def test_resume_rejects_busy_and_wrong_phase(tmp_path: Path) -> None:
    service = _service(tmp_path)
    _save(service, phase="in_progress", assigned_agent=AgentAssignment.running("thread-1"))

    with pytest.raises(OrchestratorBusyError):
        asyncio.run(service.resume_task("task-1"))
    assert service.lock.is_locked("task-1") is False

    service.store.update_task("task-1", lambda task: setattr(task, "phase", "human_review"))
    with pytest.raises(InvalidTaskStateError, match="not resumable"):
        asyncio.run(service.resume_task("task-1"))

    service.lock.acquire("task-1", "starting")
    with pytest.raises(OrchestratorBusyError):
        asyncio.run(service.resume_task("task-1"))


def test_start_requires_approved_plan(tmp_path: Path) -> None:
    service = _service(tmp_path)
    _save(service, plan_approved=False, subtasks=[])

    with pytest.raises(InvalidTaskStateError, match="approved plan"):
        asyncio.run(service.start_development("task-1"))
    assert service.lock.is_locked("task-1") is False

    with pytest.raises(InvalidTaskStateError, match="no plan"):
        service.store.update_task("task-1", lambda task: setattr(task, "plan_content", None))
        service.approve_plan("task-1")


def test_generate_plan_requires_planning_phase(tmp_path: Path) -> None:
    service = _service(tmp_path)
    _save(service, phase="in_progress")

    with pytest.raises(InvalidTaskStateError, match="not in planning"):
        asyncio.run(service.generate_plan("task-1"))


def test_pause_stops_the_running_agent(tmp_path: Path) -> None:
    service = _service(tmp_path, EchoBackend(block=True))
    _save(service, phase="in_progress")

    async def _run():
        runner = await service.resume_task("task-1")
        while service.get_task("task-1").assigned_agent.state != "running":
            await asyncio.sleep(0.01)
        service.pause_task("task-1")
        return await runner

    result = asyncio.run(_run())

    assert result.status == "halted"
    assert result.halted_on == "paused"
    task = service.get_task("task-1")
    assert task.status == "pending"
    assert task.assigned_agent.is_idle
    assert service.gateway.active_threads() == []


def test_skipping_last_dev_subtask_moves_to_ai_review(tmp_path: Path) -> None:
    service = _service(tmp_path)
    _save(service, phase="in_progress", status="in_progress")

    task = service.skip_subtask("task-1", "subtask-2")

    assert task.phase == "ai_review"
    assert task.find_subtask("subtask-2").status == "completed"
    assert task.find_subtask("subtask-2").completed_at is not None
    assert task.assigned_agent.is_idle
    with pytest.raises(InvalidTaskStateError, match="completed subtask"):
        service.skip_subtask("task-1", "subtask-1")
    with pytest.raises(TaskNotFoundError):
        service.skip_subtask("task-1", "subtask-9")


def test_delete_subtask_and_task(tmp_path: Path) -> None:
    service = _service(tmp_path)
    _save(service)
    service.store.task_dir("task-1").mkdir(parents=True)

    task = service.delete_subtask("task-1", "subtask-qa-1")
    assert [s.id for s in task.subtasks] == ["subtask-1", "subtask-2"]

    service.delete_task("task-1")
    assert service.store.load_task("task-1") is None
    assert not service.store.task_dir("task-1").exists()
    with pytest.raises(TaskNotFoundError):
        service.delete_task("task-1")


def test_backwards_phase_moves_are_rejected(tmp_path: Path) -> None:
    service = _service(tmp_path)
    _save(service, phase="ai_review")

    with pytest.raises(PhaseTransitionError, match="from ai_review back to in_progress"):
        service.move_task("task-1", "in_progress")
    with pytest.raises(InvalidTaskStateError, match="Unknown phase"):
        service.move_task("task-1", "shipped")

    assert service.move_task("task-1", "planning").phase == "planning"


def test_moving_past_planning_cleans_artifacts(tmp_path: Path) -> None:
    service = _service(tmp_path)
    _save(service)
    (tmp_path / "implementation_plan.json").write_text("{}", encoding="utf-8")
    scratch = tmp_path / ".code-automata" / "scratch"
    scratch.mkdir(parents=True)

    task = service.update_task("task-1", phase="in_progress", title="Add login v2")

    assert task.title == "Add login v2"
    assert not (tmp_path / "implementation_plan.json").exists()
    assert not scratch.exists()


def test_list_tasks_recovers_stale_agents(tmp_path: Path) -> None:
    service = _service(tmp_path)
    _save(service, phase="in_progress", assigned_agent=AgentAssignment.running("thread-gone"))
    service.store.update_task(
        "task-1", lambda task: setattr(task.find_subtask("subtask-2"), "status", "in_progress")
    )
    service.store.save_task(
        Task(id="task-2", title="Resuming", assigned_agent=AgentAssignment.resuming())
    )
    service.store.save_task(
        Task(id="task-3", title="Starting", assigned_agent=AgentAssignment.starting())
    )
    service.lock.acquire("task-3", "starting")

    tasks = {task.id: task for task in service.list_tasks()}

    assert tasks["task-1"].assigned_agent.is_idle
    stored = service.get_task("task-1")
    assert stored.assigned_agent.is_idle
    assert stored.find_subtask("subtask-2").status == "pending"
    assert service.get_task("task-2").assigned_agent.is_idle
    assert service.get_task("task-3").assigned_agent.state == "starting"


def test_run_checks_uses_task_worktree(tmp_path: Path) -> None:
    worktree = tmp_path / "worktree"
    worktree.mkdir()
    (worktree / "marker.txt").write_text("x", encoding="utf-8")
    config = AutomataConfig(
        checks=ChecksConfig(
            typecheck=f"{shlex.quote(sys.executable)} -c \"open('marker.txt').read()\""
        )
    )
    service = TaskService(tmp_path, BackendGateway(EchoBackend()), config=config)
    _save(service, worktree_path=str(worktree))

    assert asyncio.run(service.run_checks("task-1")).passed is True
    assert asyncio.run(service.run_checks()).passed is False


def test_listing_from_second_runtime_keeps_live_run(tmp_path: Path) -> None:
    class SlowBackend(EchoBackend):
        async def execute(self, system_prompt, user_prompt, context):
            await asyncio.sleep(0.3)
            async for chunk in super().execute(system_prompt, user_prompt, context):
                yield chunk

    running = _service(tmp_path, SlowBackend())
    observer = _service(tmp_path)
    _save(running, phase="in_progress")

    async def _run():
        runner = await running.resume_task("task-1")
        while running.get_task("task-1").assigned_agent.state != "running":
            await asyncio.sleep(0.01)
        listed = {task.id: task for task in observer.list_tasks()}
        return listed["task-1"], await runner

    seen, result = asyncio.run(_run())

    assert seen.assigned_agent.state == "running"
    assert seen.assigned_agent.owner == running.gateway.owner
    assert result.status == "passed"
    assert running.get_task("task-1").phase == "human_review"
