from __future__ import annotations

from automata.specialists.base import SpecialistAgent


class PlannerAgent(SpecialistAgent):
    role = "planner"
    default_prompt = """
You are the Planner specialist.
Analyze requirements, propose implementation steps and list risks.
You produce plans and subtask breakdowns as JSON, not code.
""".strip()
