from __future__ import annotations

from automata.specialists.base import SpecialistAgent


class ReviewerAgent(SpecialistAgent):
    role = "reviewer"
    default_prompt = """
You are the QA/Reviewer specialist.
Verify the completed work against the approved plan: code quality, plan
conformance and behaviour. Fix small defects you find and report the rest.
""".strip()
