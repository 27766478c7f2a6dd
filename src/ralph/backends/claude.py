from __future__ import annotations

from pathlib import Path
from typing import Any

from ralph.backends.process import StreamingCliBackend, content_text


class ClaudeCodeBackend(StreamingCliBackend):
    name = "claude"

    def __init__(
        self,
        binary: str = "claude",
        working_directory: Path | None = None,
        *,
        skip_permissions: bool = True,
    ) -> None:
        super().__init__(binary, working_directory, skip_permissions=skip_permissions)

    def build_command(
        self,
        user_prompt: str,
        system_prompt: str = "",
        model: str | None = None,
    ) -> list[str]:
        command = [self.binary, "-p", user_prompt, "--output-format", "stream-json", "--verbose"]
        if self.skip_permissions:
            command.append("--dangerously-skip-permissions")
        if system_prompt:
            command.extend(["--append-system-prompt", system_prompt])
        if model:
            command.extend(["--model", model])
        return command

    def command_for(
        self, system_prompt: str, user_prompt: str, context: dict[str, Any]
    ) -> list[str]:
        model = context.get("model")
        return self.build_command(
            user_prompt,
            system_prompt=system_prompt,
            model=model.strip() if isinstance(model, str) and model.strip() else None,
        )

    def extract_text(self, event: dict[str, Any]) -> str:
        # The closing "result" event repeats the assistant text.
        if event.get("type") == "result":
            return ""
        message = event.get("message")
        if isinstance(message, dict):
            event = message
        text = content_text(event.get("content"))
        if text:
            return text
        delta = event.get("delta")
        return delta if isinstance(delta, str) else ""
