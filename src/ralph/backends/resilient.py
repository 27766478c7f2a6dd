from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Iterator
from dataclasses import dataclass
from typing import Any

from ralph.backends.base import AgentBackend, AgentInvocationError, AgentTimeoutError

logger = logging.getLogger(__name__)

BackendEventHook = Callable[[dict[str, Any]], None]
MAX_REPORTED_FAILURES = 6


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 2
    backoff_seconds: float = 5.0
    timeout_seconds: float | None = 1800.0

    def delay_before(self, attempt: int) -> float:
        """Exponential backoff; the first attempt never waits."""
        if attempt <= 0:
            return 0.0
        return self.backoff_seconds * (2 ** (attempt - 1))


@dataclass(slots=True)
class AttemptFailure:
    backend: str
    attempt: int
    error: str
    retriable: bool

    def describe(self) -> str:
        return f"{self.backend}[{self.attempt}]: {self.error}"


def log_backend_event(event: dict[str, Any]) -> None:
    name = event.get("event")
    backend = event.get("backend")
    if name == "backend_attempt_failed":
        logger.warning(
            "Agent %s attempt %s failed: %s", backend, event.get("attempt"), event.get("error")
        )
    elif name == "backend_retry":
        logger.info(
            "Retrying agent %s in %.1fs (attempt %s)",
            backend,
            event.get("delay_seconds", 0.0),
            event.get("attempt"),
        )
    elif name == "backend_fallback_success":
        logger.info("Fallback agent %s succeeded", backend)
    else:
        logger.debug("Agent event %s: %s", name, backend)


class ResilientBackend(AgentBackend):
    """Runs a primary agent with retries, then falls back to a second one.

    Each attempt is bounded by the policy timeout and must produce non-blank
    output. Failures are reported through ``event_hook``; when every attempt
    is spent a non-retriable ``AgentInvocationError`` is raised.
    """

    def __init__(
        self,
        primary_name: str,
        primary_backend: AgentBackend,
        fallback_name: str,
        fallback_backend: AgentBackend,
        retry_policy: RetryPolicy,
        event_hook: BackendEventHook | None = log_backend_event,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.primary_name = primary_name
        self.primary_backend = primary_backend
        self.fallback_name = fallback_name
        self.fallback_backend = fallback_backend
        self.retry_policy = retry_policy
        self.event_hook = event_hook
        self._sleep = sleep

    def _emit(self, event_name: str, backend_name: str, attempt: int, **fields: Any) -> None:
        if self.event_hook is None:
            return
        self.event_hook(
            {"event": event_name, "backend": backend_name, "attempt": attempt, **fields}
        )

    def _candidates(self) -> Iterator[tuple[str, AgentBackend]]:
        yield self.primary_name, self.primary_backend
        if self.fallback_name != self.primary_name:
            yield self.fallback_name, self.fallback_backend

    async def _collect_chunks(
        self,
        backend_name: str,
        backend: AgentBackend,
        *,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> list[str]:
        async def _drain() -> list[str]:
            return [chunk async for chunk in backend.execute(system_prompt, user_prompt, context)]

        timeout = self.retry_policy.timeout_seconds
        bounded = timeout is not None and timeout > 0
        try:
            chunks = await (asyncio.wait_for(_drain(), timeout=timeout) if bounded else _drain())
        except TimeoutError as exc:
            raise AgentTimeoutError(
                f"Agent run timed out after {timeout or 0:.1f}s", backend=backend_name
            ) from exc

        if not "".join(chunks).strip():
            raise AgentInvocationError("Agent returned an empty response.", backend=backend_name)
        return chunks

    async def _run_backend(
        self,
        backend_name: str,
        backend: AgentBackend,
        failures: list[AttemptFailure],
        **request: Any,
    ) -> list[str] | None:
        for attempt in range(self.retry_policy.max_retries + 1):
            delay = self.retry_policy.delay_before(attempt)
            if attempt:
                self._emit("backend_retry", backend_name, attempt, delay_seconds=delay)
                await self._sleep(delay)
            try:
                chunks = await self._collect_chunks(backend_name, backend, **request)
            except AgentInvocationError as exc:
                failure = AttemptFailure(backend_name, attempt, str(exc), exc.retriable)
            except OSError as exc:
                failure = AttemptFailure(backend_name, attempt, str(exc), True)
            else:
                if backend_name != self.primary_name:
                    self._emit("backend_fallback_success", backend_name, attempt)
                return chunks
            failures.append(failure)
            self._emit(
                "backend_attempt_failed",
                backend_name,
                attempt,
                error=failure.error,
                retriable=failure.retriable,
            )
            if not failure.retriable:
                break
        return None

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        failures: list[AttemptFailure] = []
        chunks: list[str] | None = None
        for backend_name, backend in self._candidates():
            chunks = await self._run_backend(
                backend_name,
                backend,
                failures,
                system_prompt=system_prompt,
                user_prompt=user_prompt,
                context=context,
            )
            if chunks is not None:
                break

        if chunks is None:
            detail = "; ".join(f.describe() for f in failures[-MAX_REPORTED_FAILURES:])
            raise AgentInvocationError(f"All agent attempts failed. {detail}", retriable=False)
        for chunk in chunks:
            yield chunk
