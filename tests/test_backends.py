import asyncio
from pathlib import Path
from typing import Any

import pytest

from automata.backends import BackendExecutionError, create_backend
from automata.backends.base import BackendProcessError
from automata.backends.claude import ClaudeCodeBackend
from automata.backends.codex import CodexBackend


class FakeStdout:
    def __init__(self, lines: list[bytes]) -> None:
        self._lines = lines
        self._index = 0

    async def readline(self) -> bytes:
        if self._index >= len(self._lines):
            return b""
        line = self._lines[self._index]
        self._index += 1
        return line


class FakeStderr:
    def __init__(self, payload: bytes = b"") -> None:
        self._payload = payload

    async def read(self) -> bytes:
        return self._payload


class FakeProcess:
    def __init__(self, lines: list[bytes], *, return_code: int = 0, stderr: bytes = b"") -> None:
        self.stdout = FakeStdout(lines)
        self.stderr = FakeStderr(stderr)
        self.returncode: int | None = None
        self._return_code = return_code

    async def wait(self) -> int:
        self.returncode = self._return_code
        return self._return_code

    def kill(self) -> None:
        self.returncode = -9


def _patch_process(monkeypatch: pytest.MonkeyPatch, process: FakeProcess) -> dict[str, Any]:
    seen: dict[str, Any] = {}

    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        seen["args"] = list(args)
        seen["cwd"] = kwargs.get("cwd")
        return process

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)
    return seen


def test_claude_build_command_shape() -> None:
    backend = ClaudeCodeBackend(binary="claude", working_directory=Path("."))
    command = backend.build_command("system", "implement feature", {"model": "sonnet"})

    assert command[0:3] == ["claude", "-p", "implement feature"]
    assert "stream-json" in command
    assert command[command.index("--permission-mode") + 1] == "acceptEdits"
    assert command[command.index("--append-system-prompt") + 1] == "system"
    assert command[-2:] == ["--model", "sonnet"]


def test_codex_build_command_shape() -> None:
    backend = CodexBackend(binary="codex", model="gpt-5-codex")
    command = backend.build_command("system", "implement feature", {})

    assert command[0:2] == ["codex", "exec"]
    assert "--json" in command
    assert "--full-auto" in command
    assert any(part.startswith("instructions=") for part in command)
    assert command[command.index("-m") + 1] == "gpt-5-codex"
    assert command[-1] == "implement feature"


def test_create_backend_rejects_unknown_name() -> None:
    with pytest.raises(ValueError, match="Unknown backend"):
        create_backend("gemini")


def test_claude_backend_streams_assistant_text_only(monkeypatch: pytest.MonkeyPatch) -> None:
    process = FakeProcess(
        [
            b'{"type":"system","subtype":"init"}\n',
            b'{"type":"assistant","message":{"content":[{"type":"text","text":"{\\"plan\\": "}]}}\n',
            b'{"type":"assistant","message":{"content":[{"type":"text","text":"\\"x\\"}"}]}}\n',
            b'{"type":"result","result":"{\\"plan\\": \\"x\\"}"}\n',
        ]
    )
    seen = _patch_process(monkeypatch, process)
    backend = ClaudeCodeBackend(working_directory=Path("/project"))

    output = asyncio.run(
        backend.collect("system", "user", {"_working_directory": "/project/worktree"})
    )

    assert output == '{"plan": "x"}'
    assert seen["cwd"] == "/project/worktree"


def test_codex_backend_keeps_plain_text_lines(monkeypatch: pytest.MonkeyPatch) -> None:
    process = FakeProcess(
        [
            b'{"type":"item.completed","item":{"type":"agent_message","text":"hello"}}\n',
            b"noise-before-json\n",
            b'{"type":"turn.completed"}\n',
        ]
    )
    _patch_process(monkeypatch, process)

    output = asyncio.run(CodexBackend().collect("system", "user", {}))

    assert output == "hello\nnoise-before-json"


def test_backend_raises_on_nonzero_exit(monkeypatch: pytest.MonkeyPatch) -> None:
    _patch_process(monkeypatch, FakeProcess([], return_code=2, stderr=b"bad flag"))

    with pytest.raises(BackendExecutionError, match="exit code 2: bad flag") as excinfo:
        asyncio.run(ClaudeCodeBackend().collect("system", "user", {}))

    assert excinfo.value.exit_code == 2
    assert excinfo.value.backend == "claude"


def test_backend_reports_missing_binary(monkeypatch: pytest.MonkeyPatch) -> None:
    async def missing(*args: Any, **kwargs: Any) -> None:
        raise FileNotFoundError(args[0])

    monkeypatch.setattr(asyncio, "create_subprocess_exec", missing)

    with pytest.raises(BackendProcessError, match="binary not found"):
        asyncio.run(CodexBackend(binary="no-such-codex").collect("system", "user", {}))
