from __future__ import annotations

from automata.specialists.base import SpecialistAgent


class DeveloperAgent(SpecialistAgent):
    role = "developer"
    default_prompt = """
You are the Developer specialist.
Implement exactly the subtask you are given, following repository conventions.
Leave the working tree in a state that type-checks and builds.
""".strip()
