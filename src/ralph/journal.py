from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from ralph.errors import PersistenceError

logger = logging.getLogger(__name__)

PATTERNS_HEADING = "## Codebase Patterns"
PATTERNS_PLACEHOLDER = "(Patterns will be added as they are discovered during iterations)\n\n"
SECTION_RULE = "---"
ITERATION_HEADING = re.compile(r"^## Iteration \d+", re.MULTILINE)


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(slots=True)
class ProgressEntry:
    iteration: int
    item_id: str
    title: str
    narrative: str
    files_changed: list[str] = field(default_factory=list)
    timestamp: str = field(default_factory=_utcnow_iso)

    def render(self) -> str:
        lines = [f"## Iteration {self.iteration} - {self.item_id}: {self.title}"]
        lines.append(f"Completed: {self.timestamp}")
        lines.append("")
        narrative = self.narrative.strip()
        lines.append(narrative or "(no summary reported)")
        if self.files_changed:
            lines.append("")
            lines.append("Files changed:")
            lines.extend(f"- {path}" for path in self.files_changed)
        lines.append("")
        lines.append(SECTION_RULE)
        lines.append("")
        return "\n".join(lines) + "\n"


def render_header(context_id: str, patterns: str = "", *, started: str | None = None) -> str:
    started_on = started or datetime.now(UTC).strftime("%Y-%m-%d")
    body = patterns or PATTERNS_PLACEHOLDER
    if not body.endswith("\n"):
        body += "\n"
    return (
        f"# Progress Log - {context_id}\n"
        "\n"
        f"Started: {started_on}\n"
        "\n"
        f"{PATTERNS_HEADING}\n"
        f"{body}"
        f"{SECTION_RULE}\n"
        "\n"
    )


class ProgressJournal:
    """Append-only narrative log shared between iterations."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def exists(self) -> bool:
        return self.path.is_file()

    def read(self) -> str:
        if not self.path.is_file():
            return ""
        return self.path.read_text(encoding="utf-8")

    def tail(self, max_lines: int) -> str:
        if max_lines <= 0:
            return ""
        lines = self.read().splitlines()
        return "\n".join(lines[-max_lines:])

    def iteration_count(self) -> int:
        return len(ITERATION_HEADING.findall(self.read()))

    def extract_patterns(self) -> str:
        """Return the patterns section body exactly as written."""
        lines = self.read().splitlines(keepends=True)
        start: int | None = None
        for index, line in enumerate(lines):
            if line.rstrip("\r\n") == PATTERNS_HEADING:
                start = index + 1
                break
        if start is None:
            return ""

        collected: list[str] = []
        for line in lines[start:]:
            stripped = line.rstrip("\r\n")
            if stripped == SECTION_RULE or stripped.startswith("## "):
                break
            collected.append(line)
        return "".join(collected)

    def append(self, entry: ProgressEntry, *, context_id: str = "") -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            if not self.path.is_file():
                self.path.write_text(render_header(context_id or "unknown"), encoding="utf-8")
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(entry.render())
        except OSError as exc:
            raise PersistenceError(f"Failed to append to journal {self.path}: {exc}") from exc

    def reset(self, context_id: str, *, preserving: str = "") -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(render_header(context_id, preserving), encoding="utf-8")
        except OSError as exc:
            raise PersistenceError(f"Failed to reset journal {self.path}: {exc}") from exc
        logger.info("Reset journal %s for %s", self.path.name, context_id)
