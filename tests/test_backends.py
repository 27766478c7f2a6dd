import asyncio
import json
import sys
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest

from ralph.backends import RetryPolicy
from ralph.backends.base import AgentBackend, AgentInvocationError, AgentTimeoutError
from ralph.backends.claude import ClaudeCodeBackend
from ralph.backends.codex import CodexBackend
from ralph.backends.process import STREAM_LIMIT_BYTES
from ralph.backends.resilient import ResilientBackend


class AlwaysFailBackend(AgentBackend):
    def __init__(self, retriable: bool = True) -> None:
        self.retriable = retriable
        self.calls = 0

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context
        self.calls += 1
        raise AgentInvocationError("boom", backend="fake", retriable=self.retriable)
        yield ""  # pragma: no cover


class SuccessBackend(AgentBackend):
    def __init__(self, text: str = "ok") -> None:
        self.text = text
        self.calls = 0

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context
        self.calls += 1
        yield self.text


class SlowBackend(AgentBackend):
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context
        await asyncio.sleep(5)
        yield "late"


class FakeStdout:
    def __init__(self, lines: list[bytes]) -> None:
        self._lines = lines
        self._index = 0

    def __aiter__(self) -> "FakeStdout":
        return self

    async def __anext__(self) -> bytes:
        if self._index >= len(self._lines):
            raise StopAsyncIteration
        line = self._lines[self._index]
        self._index += 1
        return line


class FakeStderr:
    def __init__(self, text: bytes = b"") -> None:
        self._text = text

    async def read(self, n: int = -1) -> bytes:
        _ = n
        text, self._text = self._text, b""
        return text


class FakeProcess:
    def __init__(self, lines: list[bytes], exit_code: int = 0, stderr: bytes = b"") -> None:
        self.stdout = FakeStdout(lines)
        self.stderr = FakeStderr(stderr)
        self.returncode: int | None = None
        self._exit_code = exit_code

    async def wait(self) -> int:
        self.returncode = self._exit_code
        return self._exit_code

    def kill(self) -> None:
        self.returncode = -9


def _collect(backend: AgentBackend, context: dict[str, Any] | None = None) -> str:
    async def _run() -> str:
        parts: list[str] = []
        async for part in backend.execute("system", "user", context or {}):
            parts.append(part)
        return "".join(parts)

    return asyncio.run(_run())


def _patch_subprocess(
    monkeypatch: pytest.MonkeyPatch, process: FakeProcess, captured: list[tuple[Any, ...]]
) -> None:
    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        _ = kwargs
        captured.append(args)
        return process

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)


def test_codex_build_command_shape() -> None:
    backend = CodexBackend(binary="codex", working_directory=Path("."))
    command = backend.build_command(
        system_prompt="system",
        user_prompt="implement feature",
        context={"work_item": "US-001", "model": "gpt-5-codex"},
    )

    assert command[0:2] == ["codex", "exec"]
    assert "--json" in command
    assert "--dangerously-bypass-approvals-and-sandbox" in command
    assert "-m" in command
    assert "gpt-5-codex" in command
    assert any(part.startswith("instructions=") for part in command)
    assert command[-1] == "implement feature"


def test_claude_build_command_shape() -> None:
    backend = ClaudeCodeBackend(binary="claude", working_directory=Path("."), skip_permissions=False)
    command = backend.build_command("implement feature", system_prompt="be careful")

    assert command[0:3] == ["claude", "-p", "implement feature"]
    assert "stream-json" in command
    assert "--dangerously-skip-permissions" not in command
    assert command[command.index("--append-system-prompt") + 1] == "be careful"
    assert "--model" not in command


def test_resilient_backend_retries_then_falls_back() -> None:
    events: list[dict[str, Any]] = []
    delays: list[float] = []

    async def fake_sleep(delay: float) -> None:
        delays.append(delay)

    primary = AlwaysFailBackend()
    fallback = SuccessBackend()
    backend = ResilientBackend(
        primary_name="claude",
        primary_backend=primary,
        fallback_name="codex",
        fallback_backend=fallback,
        retry_policy=RetryPolicy(max_retries=2, backoff_seconds=1.0, timeout_seconds=5.0),
        event_hook=events.append,
        sleep=fake_sleep,
    )

    output = _collect(backend)

    assert output == "ok"
    assert primary.calls == 3
    assert fallback.calls == 1
    assert delays == [1.0, 2.0]
    event_names = [event["event"] for event in events]
    assert event_names.count("backend_attempt_failed") == 3
    assert "backend_retry" in event_names
    assert event_names[-1] == "backend_fallback_success"


def test_resilient_backend_skips_retries_for_non_retriable_errors() -> None:
    primary = AlwaysFailBackend(retriable=False)
    fallback = AlwaysFailBackend(retriable=False)
    backend = ResilientBackend(
        primary_name="claude",
        primary_backend=primary,
        fallback_name="codex",
        fallback_backend=fallback,
        retry_policy=RetryPolicy(max_retries=3, backoff_seconds=0.0, timeout_seconds=None),
        event_hook=None,
    )

    with pytest.raises(AgentInvocationError) as excinfo:
        _collect(backend)

    assert excinfo.value.retriable is False
    assert "All agent attempts failed" in str(excinfo.value)
    assert primary.calls == 1
    assert fallback.calls == 1


def test_resilient_backend_treats_empty_output_as_failure() -> None:
    backend = ResilientBackend(
        primary_name="claude",
        primary_backend=SuccessBackend(text="   "),
        fallback_name="claude",
        fallback_backend=SuccessBackend(text="   "),
        retry_policy=RetryPolicy(max_retries=0, backoff_seconds=0.0, timeout_seconds=None),
        event_hook=None,
    )

    with pytest.raises(AgentInvocationError) as excinfo:
        _collect(backend)
    assert "empty response" in str(excinfo.value)


def test_resilient_backend_times_out_slow_agents() -> None:
    events: list[dict[str, Any]] = []
    backend = ResilientBackend(
        primary_name="claude",
        primary_backend=SlowBackend(),
        fallback_name="codex",
        fallback_backend=SuccessBackend(),
        retry_policy=RetryPolicy(max_retries=0, backoff_seconds=0.0, timeout_seconds=0.05),
        event_hook=events.append,
    )

    assert _collect(backend) == "ok"
    failed = [event for event in events if event["event"] == "backend_attempt_failed"]
    assert failed and "timed out" in failed[0]["error"]


def test_collect_chunks_raises_timeout_error() -> None:
    backend = ResilientBackend(
        primary_name="claude",
        primary_backend=SlowBackend(),
        fallback_name="claude",
        fallback_backend=SlowBackend(),
        retry_policy=RetryPolicy(max_retries=0, backoff_seconds=0.0, timeout_seconds=0.05),
        event_hook=None,
    )

    with pytest.raises(AgentTimeoutError):
        asyncio.run(
            backend._collect_chunks(
                "claude", SlowBackend(), system_prompt="s", user_prompt="u", context={}
            )
        )


def test_claude_backend_streams_assistant_text(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: list[tuple[Any, ...]] = []
    lines = [
        json.dumps(
            {"type": "assistant", "message": {"content": [{"type": "text", "text": "hello "}]}}
        ).encode()
        + b"\n",
        b"plain text line\n",
        json.dumps({"type": "result", "result": "hello plain text line"}).encode() + b"\n",
    ]
    _patch_subprocess(monkeypatch, FakeProcess(lines), captured)

    output = _collect(ClaudeCodeBackend(), context={"model": "sonnet"})

    assert output == "hello plain text line"
    assert "--model" in captured[0]
    assert "sonnet" in captured[0]


def test_codex_backend_ignores_noise_lines(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: list[tuple[Any, ...]] = []
    lines = [
        b'{"type":"response.output_text.delta","content":"hello"}\n',
        b"noise-before-json\n",
        b'{"type":"item.completed","item":{"type":"agent_message","text":" world"}}\n',
        b'{"type":"response.completed"}\n',
    ]
    _patch_subprocess(monkeypatch, FakeProcess(lines), captured)

    output = _collect(CodexBackend())

    assert output == "hello world"
    assert captured[0][0:3] == ("codex", "exec", "--json")


def test_cli_backend_nonzero_exit_is_retriable(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: list[tuple[Any, ...]] = []
    process = FakeProcess([b'{"content":"partial"}\n'], exit_code=2, stderr=b"rate limited")
    _patch_subprocess(monkeypatch, process, captured)

    with pytest.raises(AgentInvocationError) as excinfo:
        _collect(CodexBackend())

    assert excinfo.value.exit_code == 2
    assert excinfo.value.retriable is True
    assert "rate limited" in str(excinfo.value)


def test_missing_binary_is_not_retriable(monkeypatch: pytest.MonkeyPatch) -> None:
    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        _ = args, kwargs
        raise FileNotFoundError("claude")

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)

    with pytest.raises(AgentInvocationError) as excinfo:
        _collect(ClaudeCodeBackend(binary="claude-missing"))
    assert excinfo.value.retriable is False


LONG_LINE_SCRIPT = """
import json, sys
sys.stderr.write("w" * 200000)
sys.stderr.flush()
text = "x" * 100000
print(json.dumps({"type": "assistant", "message": {"content": [{"type": "text", "text": text}]}}))
"""


class InlinePythonBackend(ClaudeCodeBackend):
    def command_for(
        self, system_prompt: str, user_prompt: str, context: dict[str, Any]
    ) -> list[str]:
        _ = system_prompt, user_prompt, context
        return [sys.executable, "-c", LONG_LINE_SCRIPT]


class TinyLimitBackend(InlinePythonBackend):
    stream_limit = 1024


def _collect_bounded(backend: AgentBackend, seconds: float = 30.0) -> str:
    async def _run() -> str:
        parts = [part async for part in backend.execute("system", "user", {})]
        return "".join(parts)

    return asyncio.run(asyncio.wait_for(_run(), timeout=seconds))


def test_cli_backend_reads_long_json_lines_alongside_noisy_stderr() -> None:
    output = _collect_bounded(InlinePythonBackend())

    assert output == "x" * 100000


def test_cli_backend_line_over_limit_is_retriable() -> None:
    with pytest.raises(AgentInvocationError) as excinfo:
        _collect_bounded(TinyLimitBackend())

    assert excinfo.value.retriable is True
    assert "1024 bytes" in str(excinfo.value)


def test_cli_backend_passes_stream_limit(monkeypatch: pytest.MonkeyPatch) -> None:
    seen: dict[str, Any] = {}

    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        _ = args
        seen.update(kwargs)
        return FakeProcess([b'{"content":"done"}\n'])

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)

    assert _collect(CodexBackend()) == "done"
    assert seen["limit"] == STREAM_LIMIT_BYTES


def test_resilient_backend_retries_after_overlong_line() -> None:
    fallback = SuccessBackend("recovered")
    backend = ResilientBackend(
        primary_name="claude",
        primary_backend=TinyLimitBackend(),
        fallback_name="codex",
        fallback_backend=fallback,
        retry_policy=RetryPolicy(max_retries=1, backoff_seconds=0.0, timeout_seconds=30.0),
        event_hook=None,
    )

    assert _collect(backend) == "recovered"
    assert fallback.calls == 1
