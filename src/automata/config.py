from __future__ import annotations

import json
import logging
import os
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Literal

logger = logging.getLogger(__name__)

BackendName = Literal["claude", "codex"]

CONFIG_FILE_NAME = "automata.toml"
SUBTASK_WAIT_ENV = "AUTOMATA_SUBTASK_WAIT_MS"


class ConfigError(ValueError):
    """Raised when automata.toml cannot be parsed."""


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"


@dataclass(slots=True)
class BackendConfig:
    name: BackendName = "claude"
    binary: str | None = None
    timeout_seconds: float | None = None


@dataclass(slots=True)
class AgentsConfig:
    planner_model: str | None = None
    developer_model: str | None = None
    reviewer_model: str | None = None

    def models(self) -> dict[str, str | None]:
        return {
            "planner": self.planner_model,
            "developer": self.developer_model,
            "reviewer": self.reviewer_model,
        }


@dataclass(slots=True)
class OrchestratorConfig:
    subtask_wait_seconds: float = 30 * 60.0
    poll_interval_seconds: float = 1.0


@dataclass(slots=True)
class ChecksConfig:
    typecheck: str | None = None
    build: str | None = None
    lint: str | None = None
    timeout_seconds: float = 5 * 60.0


def _section(section_cls: type, data: Any, name: str) -> Any:
    if data is None:
        return section_cls()
    if not isinstance(data, dict):
        raise ConfigError(f"[{name}] must be a table")
    known = {item.name for item in fields(section_cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigError(f"Unknown key(s) in [{name}]: {', '.join(unknown)}")
    return section_cls(**data)


@dataclass(slots=True)
class AutomataConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    agents: AgentsConfig = field(default_factory=AgentsConfig)
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    checks: ChecksConfig = field(default_factory=ChecksConfig)

    @classmethod
    def default(cls) -> AutomataConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> AutomataConfig:
        config = cls(
            project=_section(ProjectConfig, data.get("project"), "project"),
            backend=_section(BackendConfig, data.get("backend"), "backend"),
            agents=_section(AgentsConfig, data.get("agents"), "agents"),
            orchestrator=_section(OrchestratorConfig, data.get("orchestrator"), "orchestrator"),
            checks=_section(ChecksConfig, data.get("checks"), "checks"),
        )
        if config.backend.name not in ("claude", "codex"):
            raise ConfigError(f"Unsupported backend: {config.backend.name}")
        return config

    def to_dict(self) -> dict:
        return {
            "project": {"name": self.project.name},
            "backend": {
                "name": self.backend.name,
                "binary": self.backend.binary,
                "timeout_seconds": self.backend.timeout_seconds,
            },
            "agents": {
                "planner_model": self.agents.planner_model,
                "developer_model": self.agents.developer_model,
                "reviewer_model": self.agents.reviewer_model,
            },
            "orchestrator": {
                "subtask_wait_seconds": self.orchestrator.subtask_wait_seconds,
                "poll_interval_seconds": self.orchestrator.poll_interval_seconds,
            },
            "checks": {
                "typecheck": self.checks.typecheck,
                "build": self.checks.build,
                "lint": self.checks.lint,
                "timeout_seconds": self.checks.timeout_seconds,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return f"{rendered}.0" if rendered and "." not in rendered else rendered or "0.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: AutomataConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ("project", "backend", "agents", "orchestrator", "checks"):
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            # TOML has no null; unset optional keys are omitted.
            if value is None:
                continue
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def apply_env_overrides(config: AutomataConfig) -> AutomataConfig:
    raw = os.environ.get(SUBTASK_WAIT_ENV)
    if raw:
        try:
            config.orchestrator.subtask_wait_seconds = int(raw) / 1000.0
        except ValueError:
            logger.warning("Ignoring invalid %s=%r", SUBTASK_WAIT_ENV, raw)
    return config


def load_config(path: Path) -> AutomataConfig:
    if not path.exists():
        return apply_env_overrides(AutomataConfig.default())
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc
    return apply_env_overrides(AutomataConfig.from_dict(data))


def save_config(path: Path, config: AutomataConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
