from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Literal

WorkflowPhase = Literal["planning", "in_progress", "ai_review", "human_review", "done"]
TaskStatus = Literal["pending", "in_progress", "completed", "blocked"]
SubtaskType = Literal["dev", "qa"]
SubtaskStatus = Literal["pending", "in_progress", "completed"]
PlanningStatus = Literal["generating_plan", "plan_ready"]
AgentState = Literal["idle", "starting", "resuming", "running"]

WORKFLOW_PHASES: tuple[str, ...] = (
    "planning",
    "in_progress",
    "ai_review",
    "human_review",
    "done",
)
TASK_STATUSES = {"pending", "in_progress", "completed", "blocked"}
SUBTASK_STATUSES = {"pending", "in_progress", "completed"}

# In Progress and AI Review are one-way states; use planning to redo work.
FORBIDDEN_TRANSITIONS: frozenset[tuple[str, str]] = frozenset(
    {
        ("ai_review", "in_progress"),
        ("done", "ai_review"),
        ("done", "in_progress"),
        ("human_review", "ai_review"),
        ("human_review", "in_progress"),
    }
)


class PhaseTransitionError(ValueError):
    """Raised when a manual phase change moves a task backwards illegally."""


def now_ms() -> int:
    return int(time.time() * 1000)


def is_phase_transition_allowed(current: str, target: str) -> bool:
    return (current, target) not in FORBIDDEN_TRANSITIONS


@dataclass(frozen=True, slots=True)
class AgentAssignment:
    """Which agent, if any, currently owns a task.

    ``starting`` and ``resuming`` are short-lived placeholders written while an
    orchestrator is being launched; the loop replaces them as its first action.
    ``owner`` identifies the runtime (``"<pid>:<token>"``) that wrote the
    assignment, so another process can tell a live run from a ghost.
    """

    state: AgentState = "idle"
    thread_id: str | None = None
    owner: str | None = None

    @classmethod
    def idle(cls) -> AgentAssignment:
        return cls()

    @classmethod
    def starting(cls, owner: str | None = None) -> AgentAssignment:
        return cls(state="starting", owner=owner)

    @classmethod
    def resuming(cls, owner: str | None = None) -> AgentAssignment:
        return cls(state="resuming", owner=owner)

    @classmethod
    def running(cls, thread_id: str, owner: str | None = None) -> AgentAssignment:
        return cls(state="running", thread_id=thread_id, owner=owner)

    @property
    def owner_pid(self) -> int | None:
        if not self.owner:
            return None
        pid, _, _ = self.owner.partition(":")
        try:
            return int(pid)
        except ValueError:
            return None

    @property
    def is_idle(self) -> bool:
        return self.state == "idle"

    @property
    def is_placeholder(self) -> bool:
        return self.state in {"starting", "resuming"}

    def to_dict(self) -> dict[str, Any] | None:
        if self.is_idle:
            return None
        payload: dict[str, Any] = {"state": self.state, "thread_id": self.thread_id}
        if self.owner:
            payload["owner"] = self.owner
        return payload

    @classmethod
    def from_value(cls, value: Any) -> AgentAssignment:
        if value is None or value == "":
            return cls.idle()
        if isinstance(value, str):
            # Older task files stored the thread id or the sentinel directly.
            if value == "starting":
                return cls.starting()
            if value == "resuming":
                return cls.resuming()
            return cls.running(value)
        if isinstance(value, dict):
            state = str(value.get("state") or "idle")
            thread_id = value.get("thread_id")
            owner = value.get("owner") if isinstance(value.get("owner"), str) else None
            if state == "running" and isinstance(thread_id, str) and thread_id:
                return cls.running(thread_id, owner)
            if state == "starting":
                return cls.starting(owner)
            if state == "resuming":
                return cls.resuming(owner)
        return cls.idle()

    def __str__(self) -> str:
        if self.state == "running":
            return str(self.thread_id)
        return self.state


@dataclass(slots=True)
class Subtask:
    id: str
    label: str
    content: str
    type: SubtaskType = "dev"
    active_form: str = ""
    status: SubtaskStatus = "pending"
    completed_at: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "label": self.label,
            "content": self.content,
            "active_form": self.active_form,
            "status": self.status,
            "completed_at": self.completed_at,
        }

    @staticmethod
    def from_dict(payload: dict[str, Any]) -> Subtask:
        status = str(payload.get("status") or "pending")
        return Subtask(
            id=str(payload["id"]),
            type="qa" if payload.get("type") == "qa" else "dev",
            label=str(payload.get("label") or ""),
            content=str(payload.get("content") or ""),
            active_form=str(payload.get("active_form") or payload.get("activeForm") or ""),
            status=status if status in SUBTASK_STATUSES else "pending",  # type: ignore[arg-type]
            completed_at=payload.get("completed_at"),
        )


@dataclass(slots=True)
class QAResult:
    overall: Literal["pass", "fail"]
    summary: str
    details: str

    def to_dict(self) -> dict[str, Any]:
        return {"overall": self.overall, "summary": self.summary, "details": self.details}


@dataclass(slots=True)
class Task:
    id: str
    title: str
    description: str = ""
    phase: WorkflowPhase = "planning"
    status: TaskStatus = "pending"
    subtasks: list[Subtask] = field(default_factory=list)
    assigned_agent: AgentAssignment = field(default_factory=AgentAssignment.idle)
    plan_content: str | None = None
    plan_approved: bool = False
    planning_status: PlanningStatus | None = None
    rework_count: int = 0
    qa_failure_feedback: str | None = None
    last_qa_result: QAResult | None = None
    worktree_path: str | None = None
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)

    def find_subtask(self, subtask_id: str) -> Subtask | None:
        for subtask in self.subtasks:
            if subtask.id == subtask_id:
                return subtask
        return None

    def subtasks_of_type(self, subtask_type: str) -> list[Subtask]:
        return [subtask for subtask in self.subtasks if subtask.type == subtask_type]

    def all_dev_completed(self) -> bool:
        return all(subtask.status == "completed" for subtask in self.subtasks_of_type("dev"))

    def reset_in_progress_subtasks(self) -> int:
        reset = 0
        for subtask in self.subtasks:
            if subtask.status == "in_progress":
                subtask.status = "pending"
                reset += 1
        return reset

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "phase": self.phase,
            "status": self.status,
            "subtasks": [subtask.to_dict() for subtask in self.subtasks],
            "assigned_agent": self.assigned_agent.to_dict(),
            "plan_content": self.plan_content,
            "plan_approved": self.plan_approved,
            "planning_status": self.planning_status,
            "rework_count": self.rework_count,
            "qa_failure_feedback": self.qa_failure_feedback,
            "last_qa_result": self.last_qa_result.to_dict() if self.last_qa_result else None,
            "worktree_path": self.worktree_path,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @staticmethod
    def from_dict(payload: dict[str, Any]) -> Task:
        phase = str(payload.get("phase") or "planning")
        status = str(payload.get("status") or "pending")
        qa_payload = payload.get("last_qa_result")
        last_qa_result = None
        if isinstance(qa_payload, dict):
            last_qa_result = QAResult(
                overall="pass" if qa_payload.get("overall") == "pass" else "fail",
                summary=str(qa_payload.get("summary") or ""),
                details=str(qa_payload.get("details") or ""),
            )
        return Task(
            id=str(payload["id"]),
            title=str(payload.get("title") or ""),
            description=str(payload.get("description") or ""),
            phase=phase if phase in WORKFLOW_PHASES else "planning",  # type: ignore[arg-type]
            status=status if status in TASK_STATUSES else "pending",  # type: ignore[arg-type]
            subtasks=[
                Subtask.from_dict(item)
                for item in payload.get("subtasks") or []
                if isinstance(item, dict)
            ],
            assigned_agent=AgentAssignment.from_value(payload.get("assigned_agent")),
            plan_content=payload.get("plan_content"),
            plan_approved=bool(payload.get("plan_approved", False)),
            planning_status=payload.get("planning_status"),
            rework_count=int(payload.get("rework_count") or 0),
            qa_failure_feedback=payload.get("qa_failure_feedback"),
            last_qa_result=last_qa_result,
            worktree_path=payload.get("worktree_path"),
            created_at=int(payload.get("created_at") or now_ms()),
            updated_at=int(payload.get("updated_at") or now_ms()),
        )
