from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from importlib import resources
from typing import Any

from ralph.config import GateConfig
from ralph.ledger import TaskLedger, WorkItem

INSTRUCTIONS_FILE = "agent.md"
FALLBACK_INSTRUCTIONS = """
You are an autonomous coding agent. Implement exactly one work item,
keep the change focused, and summarize what you changed and learned.
""".strip()


def load_instructions() -> str:
    try:
        prompt_path = resources.files("ralph.prompts").joinpath(INSTRUCTIONS_FILE)
        return prompt_path.read_text(encoding="utf-8").strip()
    except (FileNotFoundError, ModuleNotFoundError):
        return FALLBACK_INSTRUCTIONS


@dataclass(slots=True)
class PromptPayload:
    system_prompt: str
    user_prompt: str
    context: dict[str, Any] = field(default_factory=dict)


def _render_item(item: WorkItem) -> list[str]:
    lines = [f"## Work item {item.id}: {item.title}", f"Priority: {item.priority}"]
    if item.description:
        lines.extend(["", item.description])
    lines.extend(["", "Acceptance criteria:"])
    lines.extend(f"- {criterion}" for criterion in item.acceptance_criteria)
    if item.notes:
        lines.extend(["", f"Notes: {item.notes}"])
    return lines


def _render_ledger(ledger: TaskLedger, current: WorkItem) -> list[str]:
    stats = ledger.stats()
    lines = [
        f"## Ledger: {ledger.project} (context {ledger.branch_name})",
        f"{stats.complete}/{stats.total} items complete, {stats.remaining} remaining.",
    ]
    if ledger.description:
        lines.append(ledger.description)
    lines.append("")
    for item in ledger.items:
        marker = "x" if item.passes else " "
        focus = "  <- current" if item.id == current.id else ""
        lines.append(f"- [{marker}] {item.id} (P{item.priority}): {item.title}{focus}")
    return lines


def build_prompt(
    item: WorkItem,
    *,
    ledger: TaskLedger | None,
    journal_patterns: str,
    journal_tail: str,
    history: str,
    gates: Sequence[GateConfig],
    sentinel: str,
    model: str = "",
) -> PromptPayload:
    """Assemble one self-contained agent request.

    The payload depends only on its arguments; nothing is carried over from
    earlier agent runs.
    """
    sections: list[str] = []
    sections.append("\n".join(_render_item(item)))
    if ledger is not None:
        sections.append("\n".join(_render_ledger(ledger, item)))

    if gates:
        gate_lines = ["## Quality checks (run in this order)"]
        gate_lines.extend(f"- {gate.name}: `{gate.command}`" for gate in gates)
        sections.append("\n".join(gate_lines))

    if journal_patterns.strip():
        sections.append("## Codebase Patterns\n" + journal_patterns.strip())
    if journal_tail.strip():
        sections.append("## Recent progress journal\n" + journal_tail.strip())
    if history.strip():
        sections.append("## Recent commits\n" + history.strip())

    sections.append(
        "## Completion marker\n"
        f"Reply with {sentinel} only when every ledger item is complete."
    )

    context: dict[str, Any] = {"work_item": item.id}
    if ledger is not None:
        context["context_id"] = ledger.branch_name
    if model:
        context["model"] = model
    return PromptPayload(
        system_prompt=load_instructions(),
        user_prompt="\n\n".join(sections),
        context=context,
    )
