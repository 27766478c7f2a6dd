from __future__ import annotations

COMPLETION_SENTINEL = "<promise>COMPLETE</promise>"


class CompletionDetector:
    """Recognizes the agent's own claim that every work item is done.

    The match is an exact, case-sensitive substring test. A positive scan is
    advisory: callers confirm it against ledger state before stopping.
    """

    def __init__(self, sentinel: str = COMPLETION_SENTINEL) -> None:
        if not sentinel:
            raise ValueError("Completion sentinel must be non-empty.")
        self.sentinel = sentinel

    def scan(self, agent_output: str) -> bool:
        return self.sentinel in (agent_output or "")
