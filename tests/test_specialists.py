import asyncio
from collections.abc import AsyncIterator
from typing import Any

from automata.backends.base import AgentBackend
from automata.specialists import SPECIALISTS, DeveloperAgent, PlannerAgent, ReviewerAgent


class FakeBackend(AgentBackend):
    name = "fake"

    def __init__(self) -> None:
        self.execute_calls = 0
        self.last_system_prompt: str | None = None
        self.last_context: dict[str, Any] | None = None

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        self.last_system_prompt = system_prompt
        self.last_context = context
        self.execute_calls += 1
        yield "planned: "
        yield f"{user_prompt}\n"


def test_planner_specialist_runs() -> None:
    backend = FakeBackend()
    planner = PlannerAgent(backend)
    response = asyncio.run(planner.run("Design auth", {"task_id": "task-1"}))

    assert response.role == "planner"
    assert response.content == "planned: Design auth"
    assert response.metadata == {"backend": "fake", "model": None}
    assert backend.execute_calls == 1
    assert "Planner" in (backend.last_system_prompt or "")


def test_specialist_passes_model_in_context() -> None:
    backend = FakeBackend()
    developer = DeveloperAgent(backend, model="opus", system_prompt="  Custom developer.  ")
    context = {"_working_directory": "/tmp/work"}
    asyncio.run(developer.run("Implement it", context))

    assert backend.last_context == {"_working_directory": "/tmp/work", "model": "opus"}
    assert backend.last_system_prompt == "Custom developer."
    assert "model" not in context


def test_specialist_registry_covers_agent_roles() -> None:
    assert SPECIALISTS == {
        "planner": PlannerAgent,
        "developer": DeveloperAgent,
        "reviewer": ReviewerAgent,
    }
