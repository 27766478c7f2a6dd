from __future__ import annotations

import asyncio
import json
import logging
from abc import abstractmethod
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from ralph.backends.base import AgentBackend, AgentInvocationError, AgentProcessError

logger = logging.getLogger(__name__)

# Agent CLIs emit whole tool results as one JSON line.
STREAM_LIMIT_BYTES = 16 * 1024 * 1024
STDERR_CHUNK_BYTES = 64 * 1024
STDERR_TAIL_BYTES = 4000


def content_text(content: Any) -> str:
    """Flatten a string or a list of ``{"text": ...}`` blocks."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            block["text"]
            for block in content
            if isinstance(block, dict) and isinstance(block.get("text"), str)
        )
    return ""


class JsonLineDecoder:
    """Decodes one JSON event per line, rejoining objects split across lines."""

    def __init__(self) -> None:
        self._pending = ""

    @staticmethod
    def _unbalanced(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    def feed(self, line: str) -> tuple[Any, str]:
        """Return ``(event, "")`` for JSON, ``(None, line)`` for plain text.

        ``(None, "")`` means the line was buffered as part of a larger object.
        """
        candidate = self._pending + line
        try:
            event = json.loads(candidate)
        except json.JSONDecodeError:
            if self._unbalanced(candidate):
                self._pending = candidate
                return None, ""
            self._pending = ""
            return None, line
        self._pending = ""
        return event, ""

    def flush(self) -> str:
        leftover, self._pending = self._pending, ""
        return leftover


class StreamingCliBackend(AgentBackend):
    """Runs an agent CLI that prints JSON events on stdout, one per line."""

    name = "agent"
    stream_limit = STREAM_LIMIT_BYTES

    def __init__(
        self,
        binary: str,
        working_directory: Path | None = None,
        *,
        skip_permissions: bool = True,
    ) -> None:
        self.binary = binary
        self.working_directory = working_directory
        self.skip_permissions = skip_permissions

    @abstractmethod
    def command_for(
        self, system_prompt: str, user_prompt: str, context: dict[str, Any]
    ) -> list[str]:
        raise NotImplementedError

    @abstractmethod
    def extract_text(self, event: dict[str, Any]) -> str:
        raise NotImplementedError

    def plain_text(self, line: str) -> str:
        return line

    async def _spawn(self, command: list[str]) -> asyncio.subprocess.Process:
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.working_directory) if self.working_directory else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=self.stream_limit,
            )
        except FileNotFoundError as exc:
            raise AgentProcessError(
                f"{self.name} binary not found: {self.binary}",
                backend=self.name,
                retriable=False,
            ) from exc
        if process.stdout is None:
            raise AgentProcessError(
                f"{self.name} process did not expose stdout.", backend=self.name, retriable=False
            )
        return process

    @staticmethod
    async def _drain_stderr(stream: Any) -> str:
        """Read stderr to EOF so a chatty agent never blocks on a full pipe."""
        if stream is None:
            return ""
        tail = b""
        while True:
            chunk = await stream.read(STDERR_CHUNK_BYTES)
            if not chunk:
                break
            tail = (tail + chunk)[-STDERR_TAIL_BYTES:]
        return tail.decode("utf-8", errors="replace").strip()

    async def _lines(self, stdout: Any) -> AsyncIterator[bytes]:
        lines = aiter(stdout)
        while True:
            try:
                raw_line = await anext(lines)
            except StopAsyncIteration:
                return
            except (ValueError, asyncio.LimitOverrunError) as exc:
                raise AgentInvocationError(
                    f"{self.name} printed a line over {self.stream_limit} bytes: {exc}",
                    backend=self.name,
                    retriable=True,
                ) from exc
            yield raw_line

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        command = self.command_for(system_prompt, user_prompt, context)
        logger.debug("Starting %s CLI (model=%s)", self.name, context.get("model") or "default")
        process = await self._spawn(command)
        stderr_task = asyncio.ensure_future(self._drain_stderr(process.stderr))
        decoder = JsonLineDecoder()
        try:
            async for raw_line in self._lines(process.stdout):
                line = raw_line.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                event, plain = decoder.feed(line)
                if isinstance(event, dict):
                    text = self.extract_text(event)
                elif plain:
                    text = self.plain_text(plain)
                else:
                    continue
                if text:
                    yield text

            leftover = decoder.flush()
            if leftover:
                text = self.plain_text(leftover)
                if text:
                    yield text

            return_code = await process.wait()
            stderr_output = await stderr_task
            if return_code != 0:
                raise AgentInvocationError(
                    f"{self.name} exited with code {return_code}: {stderr_output}",
                    backend=self.name,
                    exit_code=return_code,
                    retriable=True,
                )
        finally:
            # Cancelled or timed-out runs must not leave the agent behind.
            if process.returncode is None:
                process.kill()
                await process.wait()
            if not stderr_task.done():
                stderr_task.cancel()
