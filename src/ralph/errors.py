from __future__ import annotations


class RalphError(RuntimeError):
    """Base class for loop controller failures."""


class MalformedLedger(RalphError):
    """Raised when the ledger file fails schema validation."""

    def __init__(self, errors: list[str], *, path: str | None = None) -> None:
        self.errors = list(errors)
        self.path = path
        location = f" ({path})" if path else ""
        super().__init__(f"Malformed ledger{location}: " + "; ".join(self.errors))


class UnknownWorkItem(RalphError):
    """Raised when a work item id is not present in the ledger."""

    def __init__(self, item_id: str) -> None:
        self.item_id = item_id
        super().__init__(f"Unknown work item: {item_id}")


class GateFailure(RalphError):
    """Raised when a required quality gate did not pass."""

    def __init__(self, gate_name: str, exit_code: int | None, output: str = "") -> None:
        self.gate_name = gate_name
        self.exit_code = exit_code
        self.output = output
        super().__init__(f"Quality gate failed: {gate_name} (exit code {exit_code})")


class PersistenceError(RalphError):
    """Raised when ledger or journal state cannot be written."""


class VersionControlError(RalphError):
    """Raised when a git operation fails."""


class FatalError(RalphError):
    """Unrecoverable controller failure, reported with its component."""

    def __init__(self, component: str, message: str, *, item_id: str | None = None) -> None:
        self.component = component
        self.item_id = item_id
        suffix = f" [work item {item_id}]" if item_id else ""
        super().__init__(f"{component}: {message}{suffix}")
