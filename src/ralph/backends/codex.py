from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from ralph.backends.process import StreamingCliBackend, content_text

logger = logging.getLogger(__name__)


class CodexBackend(StreamingCliBackend):
    name = "codex"

    def __init__(
        self,
        binary: str = "codex",
        working_directory: Path | None = None,
        *,
        skip_permissions: bool = True,
    ) -> None:
        super().__init__(binary, working_directory, skip_permissions=skip_permissions)

    def build_command(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> list[str]:
        command = [self.binary, "exec", "--json"]
        if self.skip_permissions:
            command.append("--dangerously-bypass-approvals-and-sandbox")
        if system_prompt:
            command.extend(
                ["-c", f"instructions={json.dumps(system_prompt, ensure_ascii=False)}"]
            )
        model = context.get("model")
        if isinstance(model, str) and model.strip():
            command.extend(["-m", model.strip()])
        command.append(user_prompt)
        return command

    command_for = build_command

    def extract_text(self, event: dict[str, Any]) -> str:
        item = event.get("item")
        if isinstance(item, dict) and isinstance(item.get("text"), str):
            return item["text"]
        text = content_text(event.get("content"))
        if text:
            return text
        for key in ("delta", "message"):
            value = event.get(key)
            if isinstance(value, str):
                return value
        message = event.get("message")
        if isinstance(message, dict):
            return content_text(message.get("content"))
        return ""

    def plain_text(self, line: str) -> str:
        # codex interleaves progress chatter with its JSON events.
        logger.debug("Ignoring non-JSON codex output: %s", line[:200])
        return ""
