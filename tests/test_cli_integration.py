import json
import shlex
import sys
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest
from click.testing import CliRunner

from automata.backends.base import AgentBackend
from automata.cli import cli
from automata.config import load_config, save_config


class FakeBackend(AgentBackend):
    name = "fake"

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        if "Return your plan in the following JSON format" in user_prompt:
            yield json.dumps({"plan": "# Implementation Plan\n\n## Overview\nLogin form."})
            return
        if "Return your subtasks in the following JSON format" in user_prompt:
            yield json.dumps(
                {
                    "subtasks": [
                        {"id": "subtask-1", "label": "Create form", "content": "Add LoginForm"},
                        {"id": "subtask-2", "label": "Wire endpoint", "content": "POST /login"},
                    ]
                }
            )
            return
        yield "done"


def _set_safe_checks(config_path: Path, *, passing: bool = True) -> None:
    config = load_config(config_path)
    code = "print('types ok')" if passing else "raise SystemExit('error TS2304')"
    config.checks.typecheck = f"{shlex.quote(sys.executable)} -c {shlex.quote(code)}"
    config.orchestrator.poll_interval_seconds = 0.01
    save_config(config_path, config)


@pytest.fixture
def project(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr("automata.cli._build_backend", lambda config, project_dir: FakeBackend())
    return tmp_path


def test_cli_full_lifecycle_commands(project: Path) -> None:
    runner = CliRunner()

    init_result = runner.invoke(cli, ["init", "--backend", "codex"])
    assert init_result.exit_code == 0
    assert "Backend: codex" in init_result.output
    assert (project / ".code-automata" / "tasks").is_dir()
    _set_safe_checks(project / "automata.toml")

    create_result = runner.invoke(cli, ["create", "Add login", "-d", "Email and password"])
    assert create_result.exit_code == 0
    task_id = create_result.output.strip()
    assert task_id.startswith("task-")

    plan_result = runner.invoke(cli, ["plan", task_id, "--answer", "Which database?=Postgres"])
    assert plan_result.exit_code == 0
    assert "## Overview" in plan_result.output

    start_before_approval = runner.invoke(cli, ["start", task_id])
    assert start_before_approval.exit_code != 0
    assert "approved plan" in start_before_approval.output

    assert runner.invoke(cli, ["approve", task_id]).exit_code == 0

    start_result = runner.invoke(cli, ["start", task_id])
    assert start_result.exit_code == 0
    assert "Run finished: passed" in start_result.output
    assert "Last QA result: pass (typecheck passed)" in start_result.output

    list_result = runner.invoke(cli, ["list"])
    assert list_result.exit_code == 0
    assert "human_review" in list_result.output
    assert "3/3" in list_result.output

    show_result = runner.invoke(cli, ["show", task_id])
    assert show_result.exit_code == 0
    payload = json.loads(show_result.output)
    assert payload["phase"] == "human_review"
    assert [s["id"] for s in payload["subtasks"]] == ["subtask-1", "subtask-2", "subtask-qa-1"]

    logs_result = runner.invoke(cli, ["show", task_id, "--logs", "review"])
    assert "[SUCCESS] All checks passed" in logs_result.output

    backwards = runner.invoke(cli, ["move", task_id, "in_progress"])
    assert backwards.exit_code != 0
    assert "Cannot move task from human_review" in backwards.output

    done_result = runner.invoke(cli, ["move", task_id, "done"])
    assert done_result.exit_code == 0
    assert "Moved" in done_result.output

    delete_result = runner.invoke(cli, ["delete", task_id])
    assert delete_result.exit_code == 0
    assert runner.invoke(cli, ["list"]).output.strip() == "No tasks."


def test_check_command_exit_code(project: Path) -> None:
    runner = CliRunner()
    runner.invoke(cli, ["init"])
    _set_safe_checks(project / "automata.toml")

    passing = runner.invoke(cli, ["check"])
    assert passing.exit_code == 0
    assert passing.output.startswith("pass: typecheck passed")

    _set_safe_checks(project / "automata.toml", passing=False)
    failing = runner.invoke(cli, ["check"])
    assert failing.exit_code == 1
    assert "=== Typecheck ===" in failing.output
    assert "error TS2304" in failing.output


def test_unknown_task_and_bad_answers_are_reported(project: Path) -> None:
    runner = CliRunner()
    runner.invoke(cli, ["init"])

    missing = runner.invoke(cli, ["skip", "task-missing", "subtask-1"])
    assert missing.exit_code != 0
    assert "Task not found: task-missing" in missing.output

    task_id = runner.invoke(cli, ["create", "Add login"]).output.strip()
    bad_answer = runner.invoke(cli, ["plan", task_id, "--answer", "no separator"])
    assert bad_answer.exit_code == 2
    assert "QUESTION=ANSWER" in bad_answer.output

    resume = runner.invoke(cli, ["resume", task_id])
    assert resume.exit_code != 0
    assert "not resumable" in resume.output


def test_invalid_config_is_reported(project: Path) -> None:
    (project / "automata.toml").write_text("[checks]\ntest = 'pytest'\n", encoding="utf-8")

    result = CliRunner().invoke(cli, ["list"])

    assert result.exit_code != 0
    assert "Unknown key(s) in [checks]: test" in result.output
