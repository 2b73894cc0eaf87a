from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import shlex
import subprocess
import sys
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from automata.config import ChecksConfig

logger = logging.getLogger(__name__)

SHELL_REQUIRED_PATTERN = re.compile(r"(?:\|\||&&|[|;<>`]|[$]\()")
MAX_OUTPUT_CHARS = 10 * 1024 * 1024
FORCE_FAIL_ENV = "AUTOMATA_QA_FORCE_FAIL"
CHECK_NAMES = ("typecheck", "build", "lint")
CHECK_TITLES = {"typecheck": "Typecheck", "build": "Build", "lint": "Lint"}


@dataclass(slots=True)
class CheckOutcome:
    passed: bool
    output: str
    command: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"passed": self.passed, "output": self.output, "command": self.command}


@dataclass(slots=True)
class QACheckResult:
    overall: Literal["pass", "fail"] = "pass"
    summary: str = ""
    details: str = ""
    checks: dict[str, CheckOutcome] = field(default_factory=dict)

    @property
    def passed(self) -> bool:
        return self.overall == "pass"

    def to_dict(self) -> dict[str, Any]:
        return {
            "overall": self.overall,
            "summary": self.summary,
            "details": self.details,
            "checks": {name: outcome.to_dict() for name, outcome in self.checks.items()},
        }


def detect_package_manager(working_dir: Path) -> str:
    if (working_dir / "yarn.lock").exists():
        return "yarn"
    if (working_dir / "pnpm-lock.yaml").exists():
        return "pnpm"
    return "npm"


def _package_scripts(working_dir: Path) -> dict[str, Any] | None:
    try:
        payload = json.loads((working_dir / "package.json").read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Ignoring unreadable package.json in %s: %s", working_dir, exc)
        return {}
    scripts = payload.get("scripts") if isinstance(payload, dict) else None
    return scripts if isinstance(scripts, dict) else {}


def _ruff_configured(working_dir: Path) -> bool:
    if (working_dir / "ruff.toml").exists() or (working_dir / ".ruff.toml").exists():
        return True
    try:
        with (working_dir / "pyproject.toml").open("rb") as handle:
            payload = tomllib.load(handle)
    except (OSError, tomllib.TOMLDecodeError):
        return False
    return "ruff" in payload.get("tool", {})


def detect_commands(working_dir: Path, config: ChecksConfig | None = None) -> dict[str, str]:
    """Return the check commands to run, keyed by check name.

    Typecheck is always present; build and lint only when the project defines
    them. Explicitly configured commands take precedence over detection.
    """
    commands: dict[str, str] = {}
    scripts = _package_scripts(working_dir)
    if scripts is not None:
        manager = detect_package_manager(working_dir)
        commands["typecheck"] = (
            f"{manager} run typecheck" if scripts.get("typecheck") else "npx tsc --noEmit"
        )
        for name in ("build", "lint"):
            if scripts.get(name):
                commands[name] = f"{manager} run {name}"
    elif any((working_dir / name).exists() for name in ("pyproject.toml", "setup.py", "setup.cfg")):
        commands["typecheck"] = (
            f"{shlex.quote(sys.executable)} -m compileall -q "
            "-x '(^|/)(\\.venv|\\.git|node_modules)/' ."
        )
        if _ruff_configured(working_dir):
            commands["lint"] = "ruff check ."
    else:
        commands["typecheck"] = "npx tsc --noEmit"

    if config is not None:
        for name in CHECK_NAMES:
            configured = getattr(config, name)
            if configured:
                commands[name] = configured
    return commands


def run_command(command: str, working_dir: Path, *, timeout_seconds: float) -> CheckOutcome:
    command_text = command.strip()
    if not command_text:
        return CheckOutcome(passed=False, output="Command is empty.", command=command)

    used_shell = bool(SHELL_REQUIRED_PATTERN.search(command_text))
    command_payload: str | list[str] = command_text
    if not used_shell:
        try:
            command_payload = shlex.split(command_text)
        except ValueError:
            used_shell = True
            command_payload = command_text

    try:
        proc = subprocess.run(
            command_payload,
            cwd=working_dir,
            shell=used_shell,
            text=True,
            capture_output=True,
            timeout=timeout_seconds,
        )
    except subprocess.TimeoutExpired:
        return CheckOutcome(
            passed=False,
            output=f"Command timed out after {timeout_seconds:.0f}s: {command_text}",
            command=command_text,
        )
    except OSError as exc:
        return CheckOutcome(passed=False, output=str(exc), command=command_text)

    output = f"{proc.stdout}\n{proc.stderr}".strip()
    if len(output) > MAX_OUTPUT_CHARS:
        output = output[:MAX_OUTPUT_CHARS] + "\n[output truncated]"
    return CheckOutcome(passed=proc.returncode == 0, output=output, command=command_text)


class AutomatedChecksRunner:
    """Runs typecheck, build and lint in a working directory.

    Commands run sequentially in that order; any failure makes the overall
    result fail but the remaining checks still run.
    """

    def __init__(self, config: ChecksConfig | None = None) -> None:
        self.config = config or ChecksConfig()

    async def run(self, working_dir: Path) -> QACheckResult:
        return await asyncio.to_thread(self.run_sync, working_dir)

    def run_sync(self, working_dir: Path) -> QACheckResult:
        if os.environ.get(FORCE_FAIL_ENV) == "1":
            return QACheckResult(
                overall="fail",
                summary=f"[SIMULATED FAILURE] {FORCE_FAIL_ENV}=1",
                details=f"Simulated failure. Unset {FORCE_FAIL_ENV} to run real checks.",
            )

        result = QACheckResult()
        summary: list[str] = []
        details: list[str] = []
        for name, command in detect_commands(working_dir, self.config).items():
            title = CHECK_TITLES[name]
            logger.info("Running %s check in %s: %s", name, working_dir, command)
            outcome = run_command(
                command, working_dir, timeout_seconds=self.config.timeout_seconds
            )
            result.checks[name] = outcome
            details.append(f"=== {title} ===")
            if outcome.passed:
                summary.append(f"{name} passed")
                details.append(f"{title} passed\n{outcome.output or '(no output)'}")
            else:
                result.overall = "fail"
                summary.append(f"{name} failed")
                details.append(f"{title} failed\n{outcome.output}")
        result.summary = ", ".join(summary)
        result.details = "\n".join(details)
        return result


def generate_rework_feedback(result: QACheckResult) -> str:
    lines = [
        "Previous QA phase failed automated checks. Please address the following issues:",
        "",
    ]
    for name in CHECK_NAMES:
        outcome = result.checks.get(name)
        if outcome is None or outcome.passed:
            continue
        lines.extend([f"## {CHECK_TITLES[name]} Errors", "```", outcome.output, "```", ""])
    if not result.checks:
        lines.extend([result.summary, ""])
    lines.append("Please fix these issues. The task will be re-verified after your fixes.")
    return "\n".join(lines)
