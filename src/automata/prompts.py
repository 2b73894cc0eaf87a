from __future__ import annotations

import json
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from automata.state.task_store import STATE_DIR_NAME
from automata.tasks import Subtask, Task

logger = logging.getLogger(__name__)

PROMPTS_FILE = "prompts.json"
MANUAL_QA_FOLDER = "manual-qa-required"
PLAN_EXCERPT_CHARS = 500

PLAN_GENERATION_TEMPLATE = """
You are an AI planning assistant. Your task is to help plan the implementation of the following task.

Title: {{task.title}}
Description: {{task.description}}

Agent backend: {{backend}}

{{user_answers}}

Create a detailed plan in EXACTLY this structure (required headings):
- ## Overview
- ## Technical Approach
- ## Implementation Steps (numbered list)
- ## Files to Modify (bullet list of file paths)
- ## Testing Strategy
- ## Potential Issues
- ## Success Criteria

Format your plan in Markdown with clear headings and bullet points.
""".strip()

NO_FILES_IN_WORKTREE = """
Do NOT create implementation-plan.json, planning-questions.json, plan.md, subtasks.json, or similar files in your working directory. They pollute the working tree and are not read back.
You must output the JSON in your chat message.
""".rstrip()

PLAN_GENERATION_SUFFIX = (
    """

Return your plan in the following JSON format:
{
  "plan": "# Implementation Plan\\n\\n## Overview\\n...full markdown plan here..."
}

Your response MUST contain the raw JSON as plain text in your message:
- Only your text output is captured. Files you create are not read.
- No markdown code fences, no explanatory text before or after the JSON.
- Your last message must be the raw JSON object, e.g. {"plan":"# Implementation Plan\\n\\n## Overview\\n..."}
"""
    + NO_FILES_IN_WORKTREE
)

DIRECT_PLAN_BLOCK = """
# PLANNING PHASE: Direct Plan Generation

Your goal is to create a comprehensive implementation plan for this task.
""".strip()

ANSWERS_INTRO = """
Based on the user's answers above, create a comprehensive implementation plan that addresses their specific requirements and preferences.
""".strip()

SUBTASK_GENERATION_TEMPLATE = """
You are an AI development assistant. Your task is to break down an implementation plan into actionable subtasks.

**Task:** {{task.title}}
**Description:** {{task.description}}

**Approved Implementation Plan:**
{{plan_content}}

# SUBTASK GENERATION

Break this plan down into 5-15 concrete, actionable subtasks that can be executed sequentially.

For each subtask, provide:
- **id**: Unique identifier (e.g., "subtask-1", "subtask-2")
- **content**: Detailed description of what needs to be done (be specific about files, logic, etc.)
- **label**: Short label (3-5 words) for display (e.g., "Create API endpoint")
- **activeForm**: Present continuous form for progress display (e.g., "Creating API endpoint")
- **type**: Either "dev" or "qa"

**Guidelines:**
1. Order subtasks logically (dependencies first)
2. Be specific about files, functions, and changes needed
3. Cap at 15 subtasks maximum
4. Include at least 2 QA subtasks ("type": "qa") that ONLY verify or test
5. Put verification steps (build/test/lint/validate/verify) under QA, not dev
6. For QA subtasks that require manual human verification, include "manual" in the label or content
7. Each QA subtask should reference the dev work it verifies (file paths or feature areas)
""".strip()

SUBTASK_GENERATION_SUFFIX = (
    """

Return your subtasks in the following JSON format:
{
  "subtasks": [
    {
      "id": "subtask-1",
      "content": "Create the API route file with the POST endpoint handler",
      "label": "Create API endpoint",
      "activeForm": "Creating API endpoint",
      "type": "dev"
    },
    {
      "id": "subtask-qa-1",
      "content": "Verify the API endpoint implementation for syntax errors, plan conformance and a clean build",
      "label": "Verify API endpoint",
      "activeForm": "Verifying API endpoint",
      "type": "qa"
    }
  ]
}

Your response MUST contain the raw JSON as plain text in your message:
- Only your text output is captured. Files you create are not read.
- No markdown code fences, no explanatory text before or after.
"""
    + NO_FILES_IN_WORKTREE
)

PLAN_FIX_FORMAT = """
Required format:
{
  "plan": "<markdown string - the full implementation plan content>"
}
""".strip()

SUBTASK_FIX_FORMAT = """
Required format:
{
  "subtasks": [
    {"id": "subtask-1", "content": "...", "label": "...", "activeForm": "...", "type": "dev"}
  ]
}

Every subtask needs non-empty "id", "content" and "label" strings.
""".strip()


@dataclass(slots=True)
class PlanningAnswer:
    question: str
    answer: str


@dataclass(slots=True)
class ProjectPrompts:
    plan_generation: str | None = None
    subtask_generation: str | None = None

    @staticmethod
    def from_dict(payload: Mapping[str, Any]) -> ProjectPrompts:
        def _template(key: str) -> str | None:
            entry = payload.get(key)
            if not isinstance(entry, Mapping) or not entry.get("custom"):
                return None
            template = entry.get("template")
            if isinstance(template, str) and template.strip():
                return template.strip()
            return None

        return ProjectPrompts(
            plan_generation=_template("plan_generation"),
            subtask_generation=_template("subtask_generation"),
        )


def load_project_prompts(project_dir: Path) -> ProjectPrompts:
    path = project_dir / STATE_DIR_NAME / PROMPTS_FILE
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return ProjectPrompts()
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Failed to load %s, using built-in prompts: %s", path, exc)
        return ProjectPrompts()
    if not isinstance(payload, Mapping):
        logger.warning("Ignoring %s: expected a JSON object", path)
        return ProjectPrompts()
    return ProjectPrompts.from_dict(payload)


def replace_placeholders(template: str, replacements: Mapping[str, str]) -> str:
    result = template
    for key, value in replacements.items():
        result = result.replace("{{" + key + "}}", value or "")
    return result


def _answers_block(answers: Sequence[PlanningAnswer] | None) -> str:
    if not answers:
        return DIRECT_PLAN_BLOCK
    lines = [
        f"Q{index}: {item.question}\nA: {item.answer.strip() or 'Not answered'}"
        for index, item in enumerate(answers, start=1)
    ]
    return (
        "# User Answers to Planning Questions\n\n"
        + "\n\n".join(lines)
        + "\n\n# PLANNING PHASE: Generate Implementation Plan\n\n"
        + ANSWERS_INTRO
    )


def build_plan_prompt(
    task: Task,
    project_dir: Path,
    *,
    backend: str = "claude",
    answers: Sequence[PlanningAnswer] | None = None,
) -> str:
    template = load_project_prompts(project_dir).plan_generation or PLAN_GENERATION_TEMPLATE
    filled = replace_placeholders(
        template,
        {
            "task.title": task.title,
            "task.description": task.description,
            "backend": backend,
            "user_answers": _answers_block(answers),
        },
    )
    return filled + PLAN_GENERATION_SUFFIX


def build_subtask_prompt(task: Task, project_dir: Path) -> str:
    template = (
        load_project_prompts(project_dir).subtask_generation or SUBTASK_GENERATION_TEMPLATE
    )
    filled = replace_placeholders(
        template,
        {
            "task.title": task.title,
            "task.description": task.description,
            "plan_content": task.plan_content or "",
        },
    )
    return filled + SUBTASK_GENERATION_SUFFIX


def build_fix_prompt(kind: str, error: str, previous_output: str) -> str:
    """Ask the agent to restate its previous answer as valid JSON."""
    required = PLAN_FIX_FORMAT if kind == "plan" else SUBTASK_FIX_FORMAT
    return (
        "Your previous response could not be parsed as valid JSON.\n\n"
        f"Parse error: {error}\n\n"
        "Here is your previous output:\n"
        "---\n"
        f"{previous_output}\n"
        "---\n\n"
        "Your task: Output ONLY valid JSON. Only your text output is captured.\n"
        "Prefer extracting the content from the output above; do NOT write new files.\n\n"
        f"{required}\n\n"
        "Rules:\n"
        '- Escape any quotes inside strings (use \\" for literal quotes)\n'
        "- Do not wrap the JSON in markdown code fences\n"
        "- Your final message must be ONLY the JSON object"
    )


def build_dev_prompt(subtask: Subtask, qa_failure_feedback: str | None = None) -> str:
    if qa_failure_feedback:
        return (
            f"{qa_failure_feedback}\n\n---\n\n"
            "Now execute the following rework subtask to address the issues above:\n\n"
            f"**Subtask:** {subtask.label}\n"
            f"**Details:** {subtask.content}\n\n"
            "Please fix the issues identified in the QA feedback and implement this subtask."
        )
    return (
        "Execute the following subtask as part of the implementation plan:\n\n"
        f"**Subtask:** {subtask.label}\n"
        f"**Details:** {subtask.content}\n\n"
        "Please implement this subtask following best practices."
    )


def is_manual_qa(subtask: Subtask) -> bool:
    return "manual" in f"{subtask.label} {subtask.content}".lower()


def _qa_base_prompt(subtask: Subtask) -> str:
    if is_manual_qa(subtask):
        doc_path = f"{MANUAL_QA_FOLDER}/{subtask.id}.md"
        return (
            "Execute the following QA verification subtask "
            "(requires manual human verification):\n\n"
            f"**QA Subtask:** {subtask.label}\n"
            f"**Details:** {subtask.content}\n\n"
            "IMPORTANT - This is a MANUAL QA subtask. You must:\n"
            "1. Create exactly ONE markdown file for human verification\n"
            f"2. Write it to: {doc_path}\n"
            "3. Keep the document CONCISE: only what the human needs to verify\n"
            "4. Do NOT write multiple docs or lengthy documentation\n"
            f"5. Create the {MANUAL_QA_FOLDER} folder if it does not exist\n\n"
            "Verify and document what a human should check. Be brief."
        )
    return (
        "Execute the following QA verification subtask:\n\n"
        f"**QA Subtask:** {subtask.label}\n"
        f"**Details:** {subtask.content}\n\n"
        "Please verify and test this thoroughly."
    )


def build_qa_prompt(
    subtask: Subtask,
    *,
    completed_dev: Sequence[Subtask] = (),
    plan_content: str | None = None,
) -> str:
    """QA prompt followed by the completed dev work and a plan excerpt."""
    completed = "\n".join(f"- {item.label}: {item.content}" for item in completed_dev)
    plan_excerpt = (plan_content or "")[:PLAN_EXCERPT_CHARS] or "No plan content available"
    return (
        f"{_qa_base_prompt(subtask)}\n\n---\n\n"
        "**Context: Completed Development Work**\n\n"
        "The following dev subtasks were completed for this task:\n\n"
        f"{completed or '(none)'}\n\n"
        "**Your QA Responsibilities:**\n\n"
        "1. **Review code for errors:** syntax issues, runtime problems, logical errors\n"
        "2. **Verify plan-code harmony:** the implementation matches the approved plan\n"
        "3. **Run verification:** execute any tests or checks relevant to this subtask\n\n"
        f"Approved Plan Summary:\n{plan_excerpt}...\n\n"
        "Please verify thoroughly."
    )
