from __future__ import annotations

from automata.specialists.base import SpecialistAgent, SpecialistResponse
from automata.specialists.developer import DeveloperAgent
from automata.specialists.planner import PlannerAgent
from automata.specialists.reviewer import ReviewerAgent

SPECIALISTS: dict[str, type[SpecialistAgent]] = {
    "planner": PlannerAgent,
    "developer": DeveloperAgent,
    "reviewer": ReviewerAgent,
}

__all__ = [
    "DeveloperAgent",
    "PlannerAgent",
    "ReviewerAgent",
    "SPECIALISTS",
    "SpecialistAgent",
    "SpecialistResponse",
]
