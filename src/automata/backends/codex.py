from __future__ import annotations

import json
from typing import Any

from automata.backends.base import CliBackend


class CodexBackend(CliBackend):
    name = "codex"

    def __init__(self, binary: str = "codex", *args: Any, **kwargs: Any) -> None:
        super().__init__(binary, *args, **kwargs)

    def build_command(self, system_prompt: str, user_prompt: str, context: dict[str, Any]) -> list[str]:
        command = [
            self.binary,
            "exec",
            "--json",
            "--full-auto",
            "-c",
            f"instructions={json.dumps(system_prompt, ensure_ascii=False)}",
        ]
        model = context.get("model") or self.model
        if isinstance(model, str) and model.strip():
            command.extend(["-m", model.strip()])
        command.append(user_prompt)
        return command

    def _extract_content(self, event: dict[str, Any]) -> str:
        item = event.get("item")
        if isinstance(item, dict) and item.get("type") == "agent_message":
            text = item.get("text")
            return f"{text}\n" if isinstance(text, str) else ""

        message = event.get("message")
        if isinstance(message, str):
            return message
        if isinstance(message, dict):
            msg_content = message.get("content")
            if isinstance(msg_content, str):
                return msg_content
        return ""
