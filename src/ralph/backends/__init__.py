from ralph.backends.base import (
    AgentBackend,
    AgentInvocationError,
    AgentProcessError,
    AgentTimeoutError,
)
from ralph.backends.claude import ClaudeCodeBackend
from ralph.backends.codex import CodexBackend
from ralph.backends.process import StreamingCliBackend
from ralph.backends.resilient import ResilientBackend, RetryPolicy

__all__ = [
    "AgentBackend",
    "AgentInvocationError",
    "AgentProcessError",
    "AgentTimeoutError",
    "ClaudeCodeBackend",
    "CodexBackend",
    "ResilientBackend",
    "RetryPolicy",
    "StreamingCliBackend",
]
