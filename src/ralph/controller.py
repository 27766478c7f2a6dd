from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from ralph.archive import ArchivalManager, load_archive_state, save_archive_state
from ralph.backends.base import AgentBackend, AgentInvocationError
from ralph.completion import CompletionDetector
from ralph.config import RalphConfig
from ralph.errors import (
    FatalError,
    GateFailure,
    MalformedLedger,
    PersistenceError,
    UnknownWorkItem,
    VersionControlError,
)
from ralph.gates import GateVerdict, QualityGateRunner
from ralph.journal import ProgressEntry, ProgressJournal
from ralph.ledger import TaskLedger, TaskLedgerStore, WorkItem
from ralph.prompt import PromptPayload, build_prompt
from ralph.vcs import GitRepository

logger = logging.getLogger(__name__)

LoopState = Literal[
    "idle", "selecting", "invoking", "gating", "recording", "deciding", "terminated"
]
Disposition = Literal["committed", "skipped", "failed", "completed-all"]
TerminationReason = Literal[
    "all_complete", "iteration_budget_exhausted", "fatal_error", "interrupted"
]

EXIT_CODES: dict[str, int] = {
    "all_complete": 0,
    "iteration_budget_exhausted": 0,
    "fatal_error": 1,
    "interrupted": 130,
}
AD_HOC_ITEM_ID = "TASK"
NARRATIVE_TAIL_CHARS = 2000


@dataclass(slots=True)
class IterationResult:
    iteration: int
    item: WorkItem
    output: str = ""
    verdict: GateVerdict | None = None
    disposition: Disposition = "failed"
    sentinel_seen: bool = False
    commit_hash: str | None = None


@dataclass(slots=True)
class LoopSummary:
    reason: TerminationReason
    iterations: int
    total: int
    completed: int
    remaining: int
    results: list[IterationResult] = field(default_factory=list)
    error: str | None = None

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self.reason]

    @property
    def recorded_this_run(self) -> int:
        return sum(1 for result in self.results if result.disposition != "failed")


def _narrative(output: str, sentinel: str) -> str:
    text = output.replace(sentinel, "").strip()
    if len(text) > NARRATIVE_TAIL_CHARS:
        text = "..." + text[-NARRATIVE_TAIL_CHARS:]
    return text


def ad_hoc_item(description: str) -> WorkItem:
    text = description.strip()
    first_line = text.splitlines()[0] if text else "Ad hoc task"
    return WorkItem(
        id=AD_HOC_ITEM_ID,
        title=first_line[:72],
        acceptance_criteria=[text or first_line, "All quality checks pass"],
        priority=1,
        description=text,
    )


class IterationController:
    """Runs the select / invoke / gate / record / decide loop over a ledger."""

    def __init__(
        self,
        *,
        config: RalphConfig,
        repo_root: Path,
        backend: AgentBackend,
        gate_runner: QualityGateRunner | None = None,
        ledger_store: TaskLedgerStore | None = None,
        journal: ProgressJournal | None = None,
        archival: ArchivalManager | None = None,
        vcs: GitRepository | None = None,
        detector: CompletionDetector | None = None,
        dry_run: bool = False,
        context_override: str | None = None,
    ) -> None:
        self.config = config
        self.repo_root = repo_root
        self.backend = backend
        self.gate_runner = gate_runner or QualityGateRunner(
            repo_root, fail_fast=config.loop.fail_fast
        )
        self.ledger_store = ledger_store or TaskLedgerStore(repo_root / config.paths.ledger)
        self.journal = journal or ProgressJournal(repo_root / config.paths.journal)
        self.archival = archival or ArchivalManager(
            self.ledger_store.path,
            self.journal,
            repo_root / config.paths.archive_dir,
        )
        self.vcs = vcs or GitRepository(repo_root)
        self.detector = detector or CompletionDetector()
        self.dry_run = dry_run
        self.context_override = context_override
        self.state_path = repo_root / config.paths.last_context_file
        self.state: LoopState = "idle"
        self._archive_checked = False

    def _transition(self, state: LoopState) -> None:
        logger.debug("Loop state %s -> %s", self.state, state)
        self.state = state

    def _check_archive(self, ledger: TaskLedger) -> None:
        if self._archive_checked:
            return
        self._archive_checked = True
        context_id = self.context_override or ledger.branch_name or self.vcs.current_branch()
        if not context_id:
            raise FatalError("archive", "No context id: ledger branchName is empty")
        try:
            previous = load_archive_state(self.state_path)
            outcome = self.archival.check_and_archive(previous, context_id)
            if outcome.archive_path is not None:
                logger.info("Archived previous run to %s", outcome.archive_path)
            if outcome.state != previous:
                save_archive_state(self.state_path, outcome.state)
        except (PersistenceError, OSError, UnicodeDecodeError) as exc:
            raise FatalError("archive", str(exc)) from exc

    def _load_ledger(self) -> TaskLedger:
        try:
            return self.ledger_store.load()
        except (MalformedLedger, PersistenceError) as exc:
            raise FatalError("ledger", str(exc)) from exc

    def _read_journal(self) -> tuple[str, str]:
        try:
            return (
                self.journal.extract_patterns(),
                self.journal.tail(self.config.loop.journal_tail_lines),
            )
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("Progress journal unreadable, continuing without it: %s", exc)
            return "", ""

    def _build_payload(self, ledger: TaskLedger | None, item: WorkItem) -> PromptPayload:
        patterns, tail = self._read_journal()
        return build_prompt(
            item,
            ledger=ledger,
            journal_patterns=patterns,
            journal_tail=tail,
            history=self.vcs.recent_history(self.config.loop.history_commits),
            gates=self.config.gates,
            sentinel=self.detector.sentinel,
            model=self.config.agent.model,
        )

    async def _invoke(self, payload: PromptPayload) -> str:
        chunks: list[str] = []
        async for chunk in self.backend.execute(
            payload.system_prompt, payload.user_prompt, payload.context
        ):
            chunks.append(chunk)
        return "".join(chunks)

    def _commit_message(self, item: WorkItem) -> str:
        return f"{self.config.project.commit_prefix}: [{item.id}] - {item.title}"

    def _record(
        self, iteration: int, ledger: TaskLedger | None, item: WorkItem, result: IterationResult
    ) -> None:
        files_changed = self.vcs.changed_files()
        if self.dry_run:
            logger.info("Dry run: commit for %s suppressed", item.id)
        else:
            result.commit_hash = self.vcs.commit_all(self._commit_message(item))
        result.disposition = "committed" if result.commit_hash else "skipped"

        if ledger is not None:
            ledger.mark_complete(item.id)
            self.ledger_store.save(ledger)

        entry = ProgressEntry(
            iteration=iteration,
            item_id=item.id,
            title=item.title,
            narrative=_narrative(result.output, self.detector.sentinel),
            files_changed=files_changed,
        )
        context_id = self.context_override or (ledger.branch_name if ledger else "ad-hoc")
        try:
            self.journal.append(entry, context_id=context_id)
        except PersistenceError as exc:
            logger.warning("Journal entry for %s not written: %s", item.id, exc)

    async def _run_iteration(
        self, iteration: int, ledger: TaskLedger | None, item: WorkItem
    ) -> IterationResult:
        result = IterationResult(iteration=iteration, item=item)
        logger.info("Iteration %d: %s - %s", iteration, item.id, item.title)

        self._transition("invoking")
        payload = self._build_payload(ledger, item)
        try:
            result.output = await self._invoke(payload)
        except AgentInvocationError as exc:
            raise FatalError("agent", str(exc), item_id=item.id) from exc
        result.sentinel_seen = self.detector.scan(result.output)

        self._transition("gating")
        result.verdict = self.gate_runner.run(self.config.gates)
        try:
            result.verdict.raise_for_failure()
        except GateFailure as exc:
            logger.warning("%s; %s stays pending", exc, item.id)
            result.disposition = "failed"
            return result
        # Cancellation checkpoint: nothing has been persisted yet.
        await asyncio.sleep(0)

        self._transition("recording")
        try:
            self._record(iteration, ledger, item, result)
        except VersionControlError as exc:
            raise FatalError("vcs", str(exc), item_id=item.id) from exc
        except UnknownWorkItem as exc:
            raise FatalError("ledger", str(exc), item_id=exc.item_id) from exc
        except PersistenceError as exc:
            raise FatalError("ledger", str(exc), item_id=item.id) from exc
        return result

    def _finish(
        self,
        reason: TerminationReason,
        ledger: TaskLedger | None,
        iterations: int,
        results: list[IterationResult],
        error: str | None = None,
    ) -> LoopSummary:
        self._transition("terminated")
        stats = ledger.stats() if ledger is not None else None
        summary = LoopSummary(
            reason=reason,
            iterations=iterations,
            total=stats.total if stats else 0,
            completed=stats.complete if stats else 0,
            remaining=stats.remaining if stats else 0,
            results=results,
            error=error,
        )
        if reason == "fatal_error":
            logger.error("Loop stopped after %d iteration(s): %s", iterations, error)
        else:
            logger.info("Loop finished (%s) after %d iteration(s)", reason, iterations)
        return summary

    async def run(self, max_iterations: int) -> LoopSummary:
        self._transition("idle")
        results: list[IterationResult] = []
        iteration = 0
        ledger: TaskLedger | None = None
        try:
            ledger = self._load_ledger()
            self._check_archive(ledger)

            while True:
                self._transition("selecting")
                ledger = self._load_ledger()
                item = ledger.next_pending()
                if item is None:
                    return self._finish("all_complete", ledger, iteration, results)
                if iteration >= max_iterations:
                    return self._finish("iteration_budget_exhausted", ledger, iteration, results)

                iteration += 1
                result = await self._run_iteration(iteration, ledger, item)
                results.append(result)

                self._transition("deciding")
                remaining = ledger.remaining_count()
                if result.sentinel_seen and remaining:
                    logger.warning(
                        "Agent reported completion but %d item(s) remain; continuing", remaining
                    )
                if remaining == 0:
                    result.disposition = "completed-all"
                    return self._finish("all_complete", ledger, iteration, results)
                if iteration >= max_iterations:
                    return self._finish("iteration_budget_exhausted", ledger, iteration, results)
                if self.config.loop.pause_seconds > 0:
                    await asyncio.sleep(self.config.loop.pause_seconds)
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.warning("Interrupted during %s; ledger left unchanged", self.state)
            return self._finish("interrupted", ledger, iteration, results)
        except FatalError as exc:
            return self._finish("fatal_error", ledger, iteration, results, str(exc))
        except OSError as exc:
            error = str(FatalError(self.state, str(exc)))
            return self._finish("fatal_error", ledger, iteration, results, error)

    async def run_single_task(self, description: str) -> LoopSummary:
        """Run one ad hoc item; the ledger file is neither read nor written."""
        self._transition("idle")
        item = ad_hoc_item(description)
        results: list[IterationResult] = []
        try:
            result = await self._run_iteration(1, None, item)
            results.append(result)
            self._transition("deciding")
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.warning("Interrupted during %s", self.state)
            return self._single_task_summary("interrupted", results)
        except FatalError as exc:
            return self._single_task_summary("fatal_error", results, str(exc))
        except OSError as exc:
            error = str(FatalError(self.state, str(exc)))
            return self._single_task_summary("fatal_error", results, error)

        if result.disposition == "failed":
            return self._single_task_summary("iteration_budget_exhausted", results)
        result.disposition = "completed-all"
        return self._single_task_summary("all_complete", results)

    def _single_task_summary(
        self,
        reason: TerminationReason,
        results: list[IterationResult],
        error: str | None = None,
    ) -> LoopSummary:
        self._transition("terminated")
        completed = 1 if reason == "all_complete" else 0
        return LoopSummary(
            reason=reason,
            iterations=len(results),
            total=1,
            completed=completed,
            remaining=1 - completed,
            results=results,
            error=error,
        )
