from __future__ import annotations

import logging
import re
import shutil
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Literal

from ralph.errors import PersistenceError
from ralph.journal import ProgressJournal
from ralph.ledger import CONTEXT_PREFIX

logger = logging.getLogger(__name__)

ArchiveAction = Literal["unchanged", "recorded", "archived"]

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass(slots=True, frozen=True)
class ArchiveState:
    previous_context_id: str | None = None


@dataclass(slots=True)
class ArchiveOutcome:
    state: ArchiveState
    action: ArchiveAction
    archive_path: Path | None = None


def load_archive_state(path: Path) -> ArchiveState:
    if not path.is_file():
        return ArchiveState()
    value = path.read_text(encoding="utf-8", errors="replace").strip()
    return ArchiveState(previous_context_id=value or None)


def save_archive_state(path: Path, state: ArchiveState) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(f"{state.previous_context_id or ''}\n", encoding="utf-8")
    except OSError as exc:
        raise PersistenceError(f"Failed to record context id in {path}: {exc}") from exc


def archive_folder_label(context_id: str) -> str:
    label = context_id.removeprefix(CONTEXT_PREFIX)
    label = _UNSAFE_NAME_CHARS.sub("-", label).strip("-.")
    return label or "context"


class ArchivalManager:
    """Snapshots ledger and journal when the work context changes."""

    def __init__(
        self,
        ledger_path: Path,
        journal: ProgressJournal,
        archive_root: Path,
        *,
        today: Callable[[], str] | None = None,
    ) -> None:
        self.ledger_path = ledger_path
        self.journal = journal
        self.archive_root = archive_root
        self._today = today or (lambda: datetime.now().strftime("%Y-%m-%d"))

    def _new_archive_dir(self, label: str) -> Path:
        base = f"{self._today()}-{archive_folder_label(label)}"
        candidate = self.archive_root / base
        suffix = 2
        while candidate.exists():
            candidate = self.archive_root / f"{base}-{suffix}"
            suffix += 1
        candidate.mkdir(parents=True)
        return candidate

    def _snapshot(self, label: str, *, include_ledger: bool) -> Path:
        try:
            destination = self._new_archive_dir(label)
            if include_ledger and self.ledger_path.is_file():
                shutil.copy2(self.ledger_path, destination / self.ledger_path.name)
            if self.journal.exists():
                shutil.copy2(self.journal.path, destination / self.journal.path.name)
        except OSError as exc:
            raise PersistenceError(f"Failed to archive {label}: {exc}") from exc
        logger.info("Archived %s to %s", label, destination)
        return destination

    def snapshot_journal(self, label: str) -> Path | None:
        if not self.journal.exists():
            return None
        return self._snapshot(label, include_ledger=False)

    def reset_journal(self, context_id: str) -> Path | None:
        archive_path = self.snapshot_journal(context_id)
        self.journal.reset(context_id, preserving=self.journal.extract_patterns())
        return archive_path

    def check_and_archive(self, state: ArchiveState, current_context_id: str) -> ArchiveOutcome:
        previous = state.previous_context_id
        if previous == current_context_id:
            return ArchiveOutcome(state=state, action="unchanged")

        new_state = ArchiveState(previous_context_id=current_context_id)
        if previous is None:
            logger.info("Recording initial context %s", current_context_id)
            return ArchiveOutcome(state=new_state, action="recorded")

        if not self.ledger_path.is_file() and not self.journal.exists():
            return ArchiveOutcome(state=new_state, action="recorded")

        logger.info("Context changed from %s to %s", previous, current_context_id)
        archive_path = self._snapshot(previous, include_ledger=True)
        self.journal.reset(current_context_id, preserving=self.journal.extract_patterns())
        return ArchiveOutcome(state=new_state, action="archived", archive_path=archive_path)
