from __future__ import annotations

from typing import Any

from automata.backends.base import CliBackend


class ClaudeCodeBackend(CliBackend):
    name = "claude"

    def __init__(self, binary: str = "claude", *args: Any, **kwargs: Any) -> None:
        super().__init__(binary, *args, **kwargs)

    def build_command(self, system_prompt: str, user_prompt: str, context: dict[str, Any]) -> list[str]:
        command = [
            self.binary,
            "-p",
            user_prompt,
            "--output-format",
            "stream-json",
            "--verbose",
            "--permission-mode",
            "acceptEdits",
        ]
        if system_prompt:
            command.extend(["--append-system-prompt", system_prompt])
        model = context.get("model") or self.model
        if isinstance(model, str) and model.strip():
            command.extend(["--model", model.strip()])
        return command

    def _extract_content(self, event: dict[str, Any]) -> str:
        # The final "result" event repeats the assistant text; skip it.
        if event.get("type") != "assistant":
            return ""
        message = event.get("message")
        if not isinstance(message, dict):
            return ""
        content = message.get("content")
        if isinstance(content, str):
            return content
        parts: list[str] = []
        if isinstance(content, list):
            for item in content:
                if isinstance(item, dict) and item.get("type") == "text":
                    text = item.get("text")
                    if isinstance(text, str):
                        parts.append(text)
        return "".join(parts)
