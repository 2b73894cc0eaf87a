from __future__ import annotations

from pathlib import Path

from automata.backends.base import (
    AgentBackend,
    BackendExecutionError,
    BackendProcessError,
    BackendTimeoutError,
    CliBackend,
)
from automata.backends.claude import ClaudeCodeBackend
from automata.backends.codex import CodexBackend

BACKENDS: dict[str, type[CliBackend]] = {
    "claude": ClaudeCodeBackend,
    "codex": CodexBackend,
}


def create_backend(
    name: str,
    *,
    binary: str | None = None,
    working_directory: Path | None = None,
    model: str | None = None,
    timeout_seconds: float | None = None,
) -> CliBackend:
    try:
        backend_cls = BACKENDS[name]
    except KeyError as exc:
        raise ValueError(
            f"Unknown backend {name!r}; expected one of: {', '.join(sorted(BACKENDS))}"
        ) from exc
    return backend_cls(
        binary or name,
        working_directory,
        model=model,
        timeout_seconds=timeout_seconds,
    )


__all__ = [
    "AgentBackend",
    "BACKENDS",
    "BackendExecutionError",
    "BackendProcessError",
    "BackendTimeoutError",
    "ClaudeCodeBackend",
    "CliBackend",
    "CodexBackend",
    "create_backend",
]
