from __future__ import annotations

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class BackendExecutionError(RuntimeError):
    """Raised when a backend process execution fails."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class BackendTimeoutError(BackendExecutionError):
    """Raised when backend execution exceeds configured timeout."""


class BackendProcessError(BackendExecutionError):
    """Raised when backend process lifecycle fails."""


class AgentBackend(ABC):
    name: str = "backend"

    @abstractmethod
    def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        """Execute an agent and stream textual chunks."""

    async def collect(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> str:
        chunks: list[str] = []
        async for chunk in self.execute(system_prompt, user_prompt, context):
            chunks.append(chunk)
        return "".join(chunks).strip()


class CliBackend(AgentBackend):
    """Runs a coding-agent CLI that prints one JSON event per stdout line.

    ``context["_working_directory"]`` overrides the configured working
    directory so one backend can serve several task worktrees.
    """

    def __init__(
        self,
        binary: str,
        working_directory: Path | None = None,
        *,
        model: str | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self.binary = binary
        self.working_directory = working_directory
        self.model = model
        self.timeout_seconds = timeout_seconds

    @abstractmethod
    def build_command(self, system_prompt: str, user_prompt: str, context: dict[str, Any]) -> list[str]:
        """Return the argv for one agent run."""

    @abstractmethod
    def _extract_content(self, event: dict[str, Any]) -> str:
        """Return the assistant text carried by one stream event, if any."""

    @staticmethod
    def _appears_partial_json(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    def _resolve_cwd(self, context: dict[str, Any]) -> str | None:
        cwd_override = context.get("_working_directory")
        if isinstance(cwd_override, str) and cwd_override.strip():
            return cwd_override
        return str(self.working_directory) if self.working_directory else None

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        command = self.build_command(system_prompt, user_prompt, context)
        cwd = self._resolve_cwd(context)
        logger.debug("Starting %s agent in %s", self.name, cwd or ".")
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=cwd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"{self.name} binary not found: {self.binary}",
                backend=self.name,
                retriable=False,
            ) from exc

        if process.stdout is None:
            raise BackendProcessError(
                f"{self.name} backend did not expose stdout.", backend=self.name, retriable=False
            )

        deadline = time.monotonic() + self.timeout_seconds if self.timeout_seconds else None
        parse_buffer = ""
        try:
            while True:
                if deadline is None:
                    raw_line = await process.stdout.readline()
                else:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        raise asyncio.TimeoutError
                    raw_line = await asyncio.wait_for(process.stdout.readline(), remaining)
                if not raw_line:
                    break
                line = raw_line.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                candidate = f"{parse_buffer}{line}" if parse_buffer else line
                try:
                    event = json.loads(candidate)
                    parse_buffer = ""
                except json.JSONDecodeError:
                    if self._appears_partial_json(candidate):
                        parse_buffer = candidate
                        continue
                    parse_buffer = ""
                    yield line + "\n"
                    continue

                if not isinstance(event, dict):
                    continue
                content = self._extract_content(event)
                if content:
                    yield content
        except asyncio.TimeoutError as exc:
            process.kill()
            await process.wait()
            raise BackendTimeoutError(
                f"{self.name} backend timed out after {self.timeout_seconds:.0f}s",
                backend=self.name,
                retriable=True,
            ) from exc
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise

        if parse_buffer:
            yield parse_buffer

        return_code = await process.wait()
        stderr_output = ""
        if process.stderr is not None:
            stderr_output = (await process.stderr.read()).decode("utf-8", errors="replace").strip()
        if return_code != 0:
            raise BackendExecutionError(
                f"{self.name} backend failed with exit code {return_code}: {stderr_output}",
                backend=self.name,
                exit_code=return_code,
                retriable=True,
            )
