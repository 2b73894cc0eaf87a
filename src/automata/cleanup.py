from __future__ import annotations

import logging
import shutil
from collections.abc import Iterable
from pathlib import Path

from automata.gateway import AgentGateway
from automata.lock import OrchestratorLockRegistry
from automata.state.task_store import STATE_DIR_NAME, pid_alive
from automata.tasks import AgentAssignment, Task

logger = logging.getLogger(__name__)

PLANNING_ARTIFACTS = (
    "implementation-plan.json",
    "implementation_plan.json",
    "planning-questions.json",
    "planning_questions.json",
)


def scratch_dir(working_dir: Path) -> Path:
    resolved = working_dir.resolve()
    # A worktree at <project>/.code-automata/worktrees/<task> shares the project scratch dir.
    if STATE_DIR_NAME in resolved.parts and "worktrees" in resolved.parts:
        return resolved.parent.parent / "scratch"
    return resolved / STATE_DIR_NAME / "scratch"


def clean_planning_artifacts(working_dir: Path) -> list[str]:
    """Remove planning files agents may have left in the working tree.

    Safe to call repeatedly; missing files are ignored.
    """
    removed: list[str] = []
    for name in PLANNING_ARTIFACTS:
        path = working_dir / name
        try:
            path.unlink()
        except FileNotFoundError:
            continue
        except OSError as exc:
            logger.warning("Failed to remove planning artifact %s: %s", path, exc)
            continue
        removed.append(name)

    scratch = scratch_dir(working_dir)
    if scratch.exists():
        shutil.rmtree(scratch, ignore_errors=True)
    if removed:
        logger.info("Removed planning artifacts from %s: %s", working_dir, ", ".join(removed))
    return removed


def owned_by_other_live_runtime(assignment: AgentAssignment, gateway: AgentGateway) -> bool:
    """True when another runtime that is still running wrote the assignment."""
    if not assignment.owner or assignment.owner == gateway.owner:
        return False
    return pid_alive(assignment.owner_pid)


def clear_stale_agent(
    task: Task,
    *,
    lock: OrchestratorLockRegistry,
    gateway: AgentGateway,
) -> bool:
    """Clear an agent assignment whose thread no longer exists.

    Returns True when the task was modified in memory; the caller saves it.
    """
    assignment = task.assigned_agent
    if assignment.is_idle:
        return False
    # Between subtasks the previous thread is gone while the loop still owns the task.
    if lock.is_locked(task.id):
        return False
    # Locks and threads of another CLI process are invisible from here.
    if owned_by_other_live_runtime(assignment, gateway):
        return False
    if assignment.thread_id and gateway.is_thread_active(assignment.thread_id):
        return False

    task.assigned_agent = AgentAssignment.idle()
    reset = task.reset_in_progress_subtasks()
    logger.info(
        "Cleared stale agent %s for task %s, reset %d in_progress subtask(s)",
        assignment,
        task.id,
        reset,
    )
    return True


def clear_stale_agents_from_tasks(
    tasks: Iterable[Task],
    *,
    lock: OrchestratorLockRegistry,
    gateway: AgentGateway,
) -> list[Task]:
    return [task for task in tasks if clear_stale_agent(task, lock=lock, gateway=gateway)]
