from __future__ import annotations

import logging
import re
import shlex
import subprocess
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from ralph.config import GateConfig
from ralph.errors import GateFailure

logger = logging.getLogger(__name__)

GateStatus = Literal["pass", "fail", "skipped"]

SHELL_REQUIRED_PATTERN = re.compile(r"(?:\|\||&&|[|;<>`]|[$]\()")
OUTPUT_TAIL_CHARS = 2000


@dataclass(slots=True)
class GateOutcome:
    name: str
    command: str
    status: GateStatus
    exit_code: int | None = None
    output: str = ""
    duration_seconds: float = 0.0

    @property
    def passed(self) -> bool:
        return self.status == "pass"


@dataclass(slots=True)
class GateVerdict:
    outcomes: list[GateOutcome] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return all(outcome.status != "fail" for outcome in self.outcomes)

    @property
    def first_failure(self) -> GateOutcome | None:
        for outcome in self.outcomes:
            if outcome.status == "fail":
                return outcome
        return None

    def raise_for_failure(self) -> None:
        failure = self.first_failure
        if failure is not None:
            raise GateFailure(failure.name, failure.exit_code, failure.output)

    def summary(self) -> str:
        if not self.outcomes:
            return "no gates configured"
        return ", ".join(f"{outcome.name}:{outcome.status}" for outcome in self.outcomes)


class QualityGateRunner:
    """Runs verification commands in order and reduces them to one verdict."""

    def __init__(
        self,
        working_directory: Path,
        *,
        skip_tests: bool = False,
        skip_lint: bool = False,
        fail_fast: bool = True,
    ) -> None:
        self.working_directory = working_directory
        self.skip_tests = skip_tests
        self.skip_lint = skip_lint
        self.fail_fast = fail_fast

    def is_skipped(self, gate: GateConfig) -> bool:
        if gate.skip_flag == "tests":
            return self.skip_tests
        if gate.skip_flag == "lint":
            return self.skip_lint
        return False

    def _execute(self, command: str) -> tuple[int, str]:
        command_text = command.strip()
        if not command_text:
            return 1, "Command is empty."

        used_shell = bool(SHELL_REQUIRED_PATTERN.search(command_text))
        command_payload: str | list[str] = command_text
        if not used_shell:
            try:
                command_payload = shlex.split(command_text)
            except ValueError:
                used_shell = True
                command_payload = command_text

        try:
            proc = subprocess.run(
                command_payload,
                cwd=self.working_directory,
                shell=used_shell,
                text=True,
                capture_output=True,
            )
        except OSError as exc:
            return 127, f"Unable to start gate command: {exc}"
        output = "\n".join(part for part in (proc.stdout.strip(), proc.stderr.strip()) if part)
        return proc.returncode, output[-OUTPUT_TAIL_CHARS:]

    def run_gate(self, gate: GateConfig) -> GateOutcome:
        if self.is_skipped(gate):
            logger.info("Gate %s skipped (--skip-%s)", gate.name, gate.skip_flag)
            return GateOutcome(name=gate.name, command=gate.command, status="skipped")

        logger.info("Running gate %s: %s", gate.name, gate.command)
        started = time.monotonic()
        exit_code, output = self._execute(gate.command)
        duration = time.monotonic() - started
        status: GateStatus = "pass" if exit_code == 0 else "fail"
        if status == "fail":
            logger.warning("Gate %s failed with exit code %s", gate.name, exit_code)
        return GateOutcome(
            name=gate.name,
            command=gate.command,
            status=status,
            exit_code=exit_code,
            output=output if status == "fail" else "",
            duration_seconds=round(duration, 3),
        )

    def run(self, gates: Sequence[GateConfig]) -> GateVerdict:
        verdict = GateVerdict()
        for gate in gates:
            outcome = self.run_gate(gate)
            verdict.outcomes.append(outcome)
            if outcome.status == "fail" and self.fail_fast:
                break
        return verdict
