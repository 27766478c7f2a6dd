from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

BackendName = Literal["claude", "codex"]
SkipFlag = Literal["", "tests", "lint"]

DEFAULT_CONFIG_FILE = "ralph.toml"


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    commit_prefix: str = "feat"


@dataclass(slots=True)
class AgentConfig:
    primary: BackendName = "claude"
    fallback: BackendName = "codex"
    model: str = ""
    max_retries: int = 2
    retry_backoff_seconds: float = 5.0
    timeout_seconds: float = 1800.0
    skip_permissions: bool = True


@dataclass(slots=True)
class LoopConfig:
    max_iterations: int = 10
    pause_seconds: float = 2.0
    fail_fast: bool = True
    history_commits: int = 10
    journal_tail_lines: int = 120


@dataclass(slots=True)
class PathsConfig:
    ledger: str = "prd.json"
    journal: str = "progress.txt"
    archive_dir: str = "archive"
    last_context_file: str = ".last-branch"


@dataclass(slots=True)
class GateConfig:
    name: str
    command: str
    skip_flag: SkipFlag = ""


def _default_gates() -> list[GateConfig]:
    return [
        GateConfig(name="typecheck", command="python -m compileall -q src tests"),
        GateConfig(
            name="lint",
            command="uv run --extra dev ruff check src tests",
            skip_flag="lint",
        ),
        GateConfig(name="test", command="uv run --extra dev pytest -q", skip_flag="tests"),
    ]


@dataclass(slots=True)
class RalphConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    loop: LoopConfig = field(default_factory=LoopConfig)
    paths: PathsConfig = field(default_factory=PathsConfig)
    gates: list[GateConfig] = field(default_factory=_default_gates)

    @classmethod
    def default(cls) -> RalphConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> RalphConfig:
        gates_data = data.get("gates")
        gates = (
            [GateConfig(**gate) for gate in gates_data]
            if isinstance(gates_data, list)
            else _default_gates()
        )
        return cls(
            project=ProjectConfig(**data.get("project", {})),
            agent=AgentConfig(**data.get("agent", {})),
            loop=LoopConfig(**data.get("loop", {})),
            paths=PathsConfig(**data.get("paths", {})),
            gates=gates,
        )

    def to_dict(self) -> dict:
        return {
            "project": {
                "name": self.project.name,
                "commit_prefix": self.project.commit_prefix,
            },
            "agent": {
                "primary": self.agent.primary,
                "fallback": self.agent.fallback,
                "model": self.agent.model,
                "max_retries": self.agent.max_retries,
                "retry_backoff_seconds": self.agent.retry_backoff_seconds,
                "timeout_seconds": self.agent.timeout_seconds,
                "skip_permissions": self.agent.skip_permissions,
            },
            "loop": {
                "max_iterations": self.loop.max_iterations,
                "pause_seconds": self.loop.pause_seconds,
                "fail_fast": self.loop.fail_fast,
                "history_commits": self.loop.history_commits,
                "journal_tail_lines": self.loop.journal_tail_lines,
            },
            "paths": {
                "ledger": self.paths.ledger,
                "journal": self.paths.journal,
                "archive_dir": self.paths.archive_dir,
                "last_context_file": self.paths.last_context_file,
            },
            "gates": [
                {"name": gate.name, "command": gate.command, "skip_flag": gate.skip_flag}
                for gate in self.gates
            ],
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if not rendered:
            return "0.0"
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: RalphConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["project", "agent", "loop", "paths"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    # Gate order is the execution order.
    for gate in data["gates"]:
        lines.append("[[gates]]")
        for key, value in gate.items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> RalphConfig:
    if not path.exists():
        return RalphConfig.default()
    return RalphConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: RalphConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
