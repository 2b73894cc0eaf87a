import asyncio
import json
import shlex
import sys
from pathlib import Path

import pytest

from automata.checks import (
    FORCE_FAIL_ENV,
    AutomatedChecksRunner,
    CheckOutcome,
    QACheckResult,
    detect_commands,
    generate_rework_feedback,
    run_command,
)
from automata.config import ChecksConfig

PYTHON = shlex.quote(sys.executable)


def _python(code: str) -> str:
    return f"{PYTHON} -c {shlex.quote(code)}"


def test_detects_package_scripts_with_package_manager(tmp_path: Path) -> None:
    (tmp_path / "package.json").write_text(
        json.dumps({"scripts": {"typecheck": "tsc --noEmit", "lint": "eslint ."}}),
        encoding="utf-8",
    )
    (tmp_path / "yarn.lock").write_text("", encoding="utf-8")

    assert detect_commands(tmp_path) == {
        "typecheck": "yarn run typecheck",
        "lint": "yarn run lint",
    }


def test_package_without_typecheck_script_falls_back_to_tsc(tmp_path: Path) -> None:
    (tmp_path / "package.json").write_text(
        json.dumps({"scripts": {"build": "vite build"}}), encoding="utf-8"
    )

    assert detect_commands(tmp_path) == {"typecheck": "npx tsc --noEmit", "build": "npm run build"}


def test_detects_python_project_and_ruff(tmp_path: Path) -> None:
    (tmp_path / "pyproject.toml").write_text(
        '[project]\nname = "demo"\n\n[tool.ruff]\nline-length = 100\n', encoding="utf-8"
    )

    commands = detect_commands(tmp_path)

    assert "-m compileall -q" in commands["typecheck"]
    assert commands["lint"] == "ruff check ."
    assert "build" not in commands


def test_configured_commands_override_detection(tmp_path: Path) -> None:
    config = ChecksConfig(typecheck="mypy src", build="make build")

    assert detect_commands(tmp_path, config) == {"typecheck": "mypy src", "build": "make build"}


def test_runner_collects_every_check(tmp_path: Path) -> None:
    runner = AutomatedChecksRunner(
        ChecksConfig(
            typecheck=_python("print('types ok')"),
            build=_python("print('build ok')"),
            lint=_python("import sys; print('E501 line too long'); sys.exit(1)"),
        )
    )

    result = asyncio.run(runner.run(tmp_path))

    assert result.overall == "fail"
    assert result.passed is False
    assert result.summary == "typecheck passed, build passed, lint failed"
    assert "=== Typecheck ===\nTypecheck passed\ntypes ok" in result.details
    assert "=== Lint ===\nLint failed\nE501 line too long" in result.details
    assert result.checks["lint"].passed is False
    assert result.to_dict()["checks"]["build"]["passed"] is True


def test_runner_passes_when_all_checks_pass(tmp_path: Path) -> None:
    runner = AutomatedChecksRunner(ChecksConfig(typecheck=_python("pass")))

    result = runner.run_sync(tmp_path)

    assert result.passed is True
    assert result.summary == "typecheck passed"
    assert "(no output)" in result.details


def test_force_fail_env_skips_real_checks(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv(FORCE_FAIL_ENV, "1")
    runner = AutomatedChecksRunner(ChecksConfig(typecheck=_python("pass")))

    result = runner.run_sync(tmp_path)

    assert result.overall == "fail"
    assert result.summary.startswith("[SIMULATED FAILURE]")
    assert result.checks == {}


def test_run_command_timeout_and_missing_binary(tmp_path: Path) -> None:
    slow = run_command(_python("import time; time.sleep(5)"), tmp_path, timeout_seconds=0.5)
    missing = run_command("definitely-not-a-real-binary --version", tmp_path, timeout_seconds=5)
    empty = run_command("   ", tmp_path, timeout_seconds=5)

    assert slow.passed is False
    assert "timed out" in slow.output
    assert missing.passed is False
    assert empty.output == "Command is empty."


def test_run_command_truncates_long_output(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("automata.checks.MAX_OUTPUT_CHARS", 10)

    outcome = run_command(_python("print('x' * 50)"), tmp_path, timeout_seconds=10)

    assert outcome.passed is True
    assert outcome.output == "x" * 10 + "\n[output truncated]"


def test_rework_feedback_lists_failed_checks_only() -> None:
    result = QACheckResult(
        overall="fail",
        summary="typecheck failed, lint passed",
        checks={
            "typecheck": CheckOutcome(passed=False, output="src/app.ts(3,1): error TS2304"),
            "lint": CheckOutcome(passed=True, output="clean"),
        },
    )

    feedback = generate_rework_feedback(result)

    assert feedback.startswith("Previous QA phase failed automated checks.")
    assert "## Typecheck Errors\n```\nsrc/app.ts(3,1): error TS2304\n```" in feedback
    assert "Lint Errors" not in feedback
    assert feedback.endswith("The task will be re-verified after your fixes.")
