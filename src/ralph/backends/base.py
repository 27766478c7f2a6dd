from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any

from ralph.errors import RalphError


class AgentInvocationError(RalphError):
    """The execution agent could not be run or produced nothing usable.

    ``retriable`` tells the resilient wrapper whether another attempt against
    the same backend can help (a crash or timeout) or not (missing binary).
    """

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


class AgentTimeoutError(AgentInvocationError):
    """The agent run exceeded the configured timeout."""


class AgentProcessError(AgentInvocationError):
    """The agent process could not be started or observed."""


class AgentBackend(ABC):
    @abstractmethod
    def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        """Run the agent once on a self-contained prompt and stream its text."""
