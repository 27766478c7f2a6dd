from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ralph.errors import MalformedLedger, PersistenceError, UnknownWorkItem

logger = logging.getLogger(__name__)

LEDGER_REQUIRED_FIELDS = ("project", "branchName", "userStories")
ITEM_REQUIRED_FIELDS = ("id", "title", "acceptanceCriteria", "priority")
ITEM_ID_PATTERN = re.compile(r"^US-\d+$")
CONTEXT_PREFIX = "ralph/"

_LEDGER_KEYS = {"project", "branchName", "description", "createdAt", "userStories"}
_ITEM_KEYS = {"id", "title", "description", "acceptanceCriteria", "priority", "passes", "notes"}


@dataclass(slots=True)
class WorkItem:
    id: str
    title: str
    acceptance_criteria: list[str]
    priority: int
    description: str = ""
    passes: bool = False
    notes: str = ""
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> WorkItem:
        return cls(
            id=str(payload["id"]),
            title=str(payload["title"]),
            acceptance_criteria=[str(item) for item in payload["acceptanceCriteria"]],
            priority=int(payload["priority"]),
            description=str(payload.get("description") or ""),
            passes=payload.get("passes") is True,
            notes=str(payload.get("notes") or ""),
            extra={key: value for key, value in payload.items() if key not in _ITEM_KEYS},
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "acceptanceCriteria": list(self.acceptance_criteria),
            "priority": self.priority,
            "passes": self.passes,
            "notes": self.notes,
        }
        payload.update(self.extra)
        return payload


@dataclass(slots=True)
class LedgerStats:
    total: int
    complete: int
    remaining: int
    percent_complete: int
    next_item: WorkItem | None


@dataclass(slots=True)
class TaskLedger:
    project: str
    branch_name: str
    items: list[WorkItem]
    description: str = ""
    created_at: str = ""
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> TaskLedger:
        return cls(
            project=str(payload["project"]),
            branch_name=str(payload["branchName"]),
            items=[WorkItem.from_dict(item) for item in payload["userStories"]],
            description=str(payload.get("description") or ""),
            created_at=str(payload.get("createdAt") or ""),
            extra={key: value for key, value in payload.items() if key not in _LEDGER_KEYS},
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "project": self.project,
            "branchName": self.branch_name,
            "description": self.description,
            "createdAt": self.created_at,
        }
        payload.update(self.extra)
        payload["userStories"] = [item.to_dict() for item in self.items]
        return payload

    def get(self, item_id: str) -> WorkItem:
        for item in self.items:
            if item.id == item_id:
                return item
        raise UnknownWorkItem(item_id)

    def next_pending(self) -> WorkItem | None:
        """Pending item with the lowest priority; the first listed wins ties."""
        pending = [item for item in self.items if not item.passes]
        if not pending:
            return None
        return min(pending, key=lambda item: item.priority)

    def mark_complete(self, item_id: str) -> WorkItem:
        item = self.get(item_id)
        item.passes = True
        return item

    def remaining_count(self) -> int:
        return sum(1 for item in self.items if not item.passes)

    def stats(self) -> LedgerStats:
        total = len(self.items)
        remaining = self.remaining_count()
        complete = total - remaining
        percent = round(complete / total * 100) if total else 0
        return LedgerStats(
            total=total,
            complete=complete,
            remaining=remaining,
            percent_complete=percent,
            next_item=self.next_pending(),
        )


@dataclass(slots=True)
class LedgerValidation:
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors


def _validate_item(item: Any, index: int, result: LedgerValidation) -> None:
    prefix = f"Story [{index}]"
    if not isinstance(item, dict):
        result.errors.append(f"{prefix}: must be an object")
        return

    for key in ITEM_REQUIRED_FIELDS:
        if item.get(key) is None:
            result.errors.append(f"{prefix}: missing required field '{key}'")

    item_id = item.get("id")
    if item_id is not None:
        if not isinstance(item_id, str) or not item_id.strip():
            result.errors.append(f"{prefix}: id must be a non-empty string")
        elif not ITEM_ID_PATTERN.match(item_id):
            result.warnings.append(f"{prefix}: ID '{item_id}' should follow format 'US-NNN'")

    title = item.get("title")
    if title is not None and not isinstance(title, str):
        result.errors.append(f"{prefix}: title must be a string")

    criteria = item.get("acceptanceCriteria")
    if criteria is not None:
        if not isinstance(criteria, list):
            result.errors.append(f"{prefix}: acceptanceCriteria must be an array")
        elif not criteria:
            result.errors.append(f"{prefix}: acceptanceCriteria cannot be empty")
        elif not any(isinstance(entry, str) and "typecheck" in entry.lower() for entry in criteria):
            result.warnings.append(
                f"{prefix}: Consider adding 'Typecheck passes' to acceptance criteria"
            )

    priority = item.get("priority")
    if priority is not None:
        if isinstance(priority, bool) or not isinstance(priority, int) or priority < 1:
            result.errors.append(f"{prefix}: priority must be a positive integer")

    passes = item.get("passes")
    if passes is not None and not isinstance(passes, bool):
        result.warnings.append(f"{prefix}: passes should be a boolean (true/false)")


def validate_ledger(payload: Any) -> LedgerValidation:
    result = LedgerValidation()
    if not isinstance(payload, dict):
        result.errors.append("Ledger must be a JSON object")
        return result

    for key in LEDGER_REQUIRED_FIELDS:
        if payload.get(key) is None:
            result.errors.append(f"Missing required field: {key}")

    project = payload.get("project")
    if project is not None and not isinstance(project, str):
        result.errors.append("project must be a string")

    branch_name = payload.get("branchName")
    if branch_name is not None:
        if not isinstance(branch_name, str):
            result.errors.append("branchName must be a string")
        elif not branch_name.startswith(CONTEXT_PREFIX):
            result.warnings.append(
                f'branchName should start with "{CONTEXT_PREFIX}" for consistency'
            )

    items = payload.get("userStories")
    if items is not None:
        if not isinstance(items, list):
            result.errors.append("userStories must be an array")
        elif not items:
            result.errors.append("userStories cannot be empty")
        else:
            for index, item in enumerate(items):
                _validate_item(item, index, result)
            ids = [
                item["id"]
                for item in items
                if isinstance(item, dict) and isinstance(item.get("id"), str)
            ]
            seen: set[str] = set()
            duplicates: list[str] = []
            for item_id in ids:
                if item_id in seen and str(item_id) not in duplicates:
                    duplicates.append(str(item_id))
                seen.add(item_id)
            if duplicates:
                result.errors.append(f"Duplicate story IDs found: {', '.join(duplicates)}")

    return result


class TaskLedgerStore:
    """Reads and atomically rewrites the ledger file."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def exists(self) -> bool:
        return self.path.is_file()

    def read_payload(self) -> Any:
        if not self.path.is_file():
            raise MalformedLedger([f"Ledger file not found: {self.path.name}"], path=str(self.path))
        try:
            text = self.path.read_text(encoding="utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedLedger([f"Not valid UTF-8: {exc}"], path=str(self.path)) from exc
        except OSError as exc:
            raise PersistenceError(f"Failed to read ledger {self.path}: {exc}") from exc
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise MalformedLedger([f"Invalid JSON: {exc}"], path=str(self.path)) from exc

    def load(self) -> TaskLedger:
        payload = self.read_payload()
        validation = validate_ledger(payload)
        if not validation.valid:
            raise MalformedLedger(validation.errors, path=str(self.path))
        for warning in validation.warnings:
            logger.debug("Ledger warning: %s", warning)
        return TaskLedger.from_dict(payload)

    def save(self, ledger: TaskLedger) -> None:
        serialized = json.dumps(ledger.to_dict(), ensure_ascii=False, indent=2) + "\n"
        temp_path: str | None = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                mode="w",
                encoding="utf-8",
                dir=self.path.parent,
                prefix=f".{self.path.name}.",
                suffix=".tmp",
                delete=False,
            ) as handle:
                temp_path = handle.name
                handle.write(serialized)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(temp_path, self.path)
            temp_path = None
        except OSError as exc:
            raise PersistenceError(f"Failed to write ledger {self.path}: {exc}") from exc
        finally:
            if temp_path is not None:
                try:
                    os.unlink(temp_path)
                except OSError:
                    pass
