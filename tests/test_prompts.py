import json
from pathlib import Path

from automata.prompts import (
    PLAN_GENERATION_SUFFIX,
    PlanningAnswer,
    build_dev_prompt,
    build_fix_prompt,
    build_plan_prompt,
    build_qa_prompt,
    build_subtask_prompt,
    is_manual_qa,
    load_project_prompts,
)
from automata.tasks import Subtask, Task


def _task() -> Task:
    return Task(
        id="task-1",
        title="Add login",
        description="Email and password login",
        plan_content="# Plan\n\n## Overview\nLogin form.",
    )


def _write_prompts(project_dir: Path, payload: dict) -> None:
    state_dir = project_dir / ".code-automata"
    state_dir.mkdir(parents=True, exist_ok=True)
    (state_dir / "prompts.json").write_text(json.dumps(payload), encoding="utf-8")


def test_plan_prompt_without_answers(tmp_path: Path) -> None:
    prompt = build_plan_prompt(_task(), tmp_path, backend="codex")

    assert "Title: Add login" in prompt
    assert "Description: Email and password login" in prompt
    assert "Agent backend: codex" in prompt
    assert "# PLANNING PHASE: Direct Plan Generation" in prompt
    assert prompt.endswith(PLAN_GENERATION_SUFFIX)
    assert "{{" not in prompt


def test_plan_prompt_lists_user_answers(tmp_path: Path) -> None:
    prompt = build_plan_prompt(
        _task(),
        tmp_path,
        answers=[
            PlanningAnswer(question="Which database?", answer="Postgres"),
            PlanningAnswer(question="OAuth too?", answer="  "),
        ],
    )

    assert "Q1: Which database?\nA: Postgres" in prompt
    assert "Q2: OAuth too?\nA: Not answered" in prompt
    assert "Direct Plan Generation" not in prompt


def test_custom_templates_replace_the_built_in_ones(tmp_path: Path) -> None:
    _write_prompts(
        tmp_path,
        {
            "plan_generation": {"custom": True, "template": "Plan {{task.title}} via {{backend}}"},
            "subtask_generation": {"custom": False, "template": "ignored {{plan_content}}"},
        },
    )

    prompts = load_project_prompts(tmp_path)
    plan_prompt = build_plan_prompt(_task(), tmp_path)
    subtask_prompt = build_subtask_prompt(_task(), tmp_path)

    assert prompts.plan_generation == "Plan {{task.title}} via {{backend}}"
    assert prompts.subtask_generation is None
    assert plan_prompt.startswith("Plan Add login via claude")
    assert "Return your plan in the following JSON format" in plan_prompt
    assert "## Overview\nLogin form." in subtask_prompt
    assert "ignored" not in subtask_prompt


def test_unreadable_prompts_file_falls_back(tmp_path: Path) -> None:
    state_dir = tmp_path / ".code-automata"
    state_dir.mkdir()
    (state_dir / "prompts.json").write_text("{broken", encoding="utf-8")

    assert load_project_prompts(tmp_path).plan_generation is None
    assert "Title: Add login" in build_plan_prompt(_task(), tmp_path)


def test_fix_prompt_embeds_error_and_previous_output() -> None:
    prompt = build_fix_prompt("subtasks", "Invalid JSON: Expecting value", "Sure! Here you go")

    assert prompt.startswith("Your previous response could not be parsed as valid JSON.")
    assert "Parse error: Invalid JSON: Expecting value" in prompt
    assert "---\nSure! Here you go\n---" in prompt
    assert '"subtasks": [' in prompt
    assert '"plan":' not in prompt


def test_dev_prompt_with_and_without_rework_feedback() -> None:
    subtask = Subtask(id="subtask-1", label="Create form", content="Build the login form")

    normal = build_dev_prompt(subtask)
    rework = build_dev_prompt(subtask, "## Lint Errors\nunused import")

    assert normal.startswith("Execute the following subtask as part of the implementation plan:")
    assert "**Subtask:** Create form\n**Details:** Build the login form" in normal
    assert rework.startswith("## Lint Errors\nunused import\n\n---\n\n")
    assert "Now execute the following rework subtask" in rework


def test_qa_prompt_includes_dev_context_and_plan_excerpt() -> None:
    qa = Subtask(id="subtask-qa-1", label="Verify form", content="Check the form", type="qa")
    dev = Subtask(id="subtask-1", label="Create form", content="Build it", status="completed")

    prompt = build_qa_prompt(qa, completed_dev=[dev], plan_content="P" * 600)

    assert prompt.startswith("Execute the following QA verification subtask:")
    assert "**Context: Completed Development Work**" in prompt
    assert "- Create form: Build it" in prompt
    assert f"Approved Plan Summary:\n{'P' * 500}..." in prompt
    assert "P" * 501 not in prompt


def test_manual_qa_prompt_names_the_document() -> None:
    qa = Subtask(id="subtask-qa-2", label="Manual check of UI", content="Look at it", type="qa")

    prompt = build_qa_prompt(qa)

    assert is_manual_qa(qa)
    assert "manual-qa-required/subtask-qa-2.md" in prompt
    assert "No plan content available" in prompt
