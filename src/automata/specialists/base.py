from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from automata.backends.base import AgentBackend


@dataclass(slots=True)
class SpecialistResponse:
    role: str
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)


class SpecialistAgent:
    role: str = "specialist"
    default_prompt: str = "You are a software specialist."

    def __init__(
        self,
        backend: AgentBackend,
        *,
        model: str | None = None,
        system_prompt: str | None = None,
    ) -> None:
        self.backend = backend
        self.model = model
        self.system_prompt = (system_prompt or self.default_prompt).strip()

    async def run(self, instruction: str, context: dict[str, Any]) -> SpecialistResponse:
        run_context = dict(context)
        if self.model:
            run_context["model"] = self.model
        content = await self.backend.collect(self.system_prompt, instruction, run_context)
        return SpecialistResponse(
            role=self.role,
            content=content,
            metadata={"backend": self.backend.name, "model": self.model},
        )
