from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import click

from ralph.archive import ArchivalManager
from ralph.backends import ClaudeCodeBackend, CodexBackend, ResilientBackend, RetryPolicy
from ralph.completion import COMPLETION_SENTINEL
from ralph.config import (
    DEFAULT_CONFIG_FILE,
    BackendName,
    RalphConfig,
    load_config,
    save_config,
)
from ralph.controller import IterationController, LoopSummary
from ralph.errors import MalformedLedger, PersistenceError
from ralph.gates import QualityGateRunner
from ralph.journal import ProgressJournal
from ralph.ledger import TaskLedgerStore, validate_ledger

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _build_single_backend(
    backend_name: BackendName, repo_root: Path, config: RalphConfig
) -> CodexBackend | ClaudeCodeBackend:
    if backend_name == "codex":
        return CodexBackend(
            working_directory=repo_root, skip_permissions=config.agent.skip_permissions
        )
    return ClaudeCodeBackend(
        working_directory=repo_root, skip_permissions=config.agent.skip_permissions
    )


def _build_backend(config: RalphConfig, repo_root: Path) -> ResilientBackend:
    primary_name = config.agent.primary
    fallback_name = config.agent.fallback
    timeout = float(config.agent.timeout_seconds)
    policy = RetryPolicy(
        max_retries=max(0, int(config.agent.max_retries)),
        backoff_seconds=max(0.0, float(config.agent.retry_backoff_seconds)),
        timeout_seconds=timeout if timeout > 0 else None,
    )
    return ResilientBackend(
        primary_name=primary_name,
        primary_backend=_build_single_backend(primary_name, repo_root, config),
        fallback_name=fallback_name,
        fallback_backend=_build_single_backend(fallback_name, repo_root, config),
        retry_policy=policy,
    )


def _echo_summary(summary: LoopSummary) -> None:
    click.echo("")
    click.echo(f"Stopped: {summary.reason}")
    click.echo(f"Iterations: {summary.iterations}")
    click.echo(
        f"Items: {summary.completed}/{summary.total} complete, {summary.remaining} remaining"
    )
    if summary.results:
        click.echo(f"Recorded this run: {summary.recorded_this_run}")
    if summary.error:
        click.echo(f"Error: {summary.error}", err=True)


@click.group()
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="INFO",
    show_default=True,
)
def cli(log_level: str) -> None:
    """Autonomous iteration loop over a prd.json task ledger."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@click.option("--backend", type=click.Choice(["claude", "codex"]), default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def init_command(backend: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    if backend:
        config.agent.primary = backend  # type: ignore[assignment]
    save_config(config_path, config)

    click.echo(f"Config: {config_path}")
    click.echo(f"Agent: {config.agent.primary} (fallback {config.agent.fallback})")
    click.echo("Gates: " + ", ".join(gate.name for gate in config.gates))
    if not (repo_root / config.paths.ledger).exists():
        click.echo(f"No {config.paths.ledger} yet. Create a ledger before running the loop.")


@cli.command("run")
@click.argument(
    "max_iterations",
    type=click.IntRange(min=0),
    required=False,
    envvar="RALPH_MAX_ITERATIONS",
)
@click.option("--task", "task_description", default=None, help="Run one ad hoc task.")
@click.option("--skip-tests", is_flag=True, default=False)
@click.option("--skip-lint", is_flag=True, default=False)
@click.option("--branch", "branch_override", default=None, help="Override the context id.")
@click.option("--dry-run", is_flag=True, default=False, help="Do not commit.")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def run_command(
    max_iterations: int | None,
    task_description: str | None,
    skip_tests: bool,
    skip_lint: bool,
    branch_override: str | None,
    dry_run: bool,
    config_value: str,
) -> None:
    repo_root = Path.cwd().resolve()
    config = load_config(_resolve_config_path(repo_root, config_value))
    limit = max_iterations if max_iterations is not None else config.loop.max_iterations

    controller = IterationController(
        config=config,
        repo_root=repo_root,
        backend=_build_backend(config, repo_root),
        gate_runner=QualityGateRunner(
            repo_root,
            skip_tests=skip_tests,
            skip_lint=skip_lint,
            fail_fast=config.loop.fail_fast,
        ),
        dry_run=dry_run,
        context_override=branch_override,
    )

    if task_description is not None:
        if not task_description.strip():
            raise click.BadParameter("must not be empty", param_hint="--task")
        click.echo(f"Single task: {task_description.strip()}")
        summary = asyncio.run(controller.run_single_task(task_description))
    else:
        click.echo(f"Max iterations: {limit}")
        summary = asyncio.run(controller.run(limit))

    _echo_summary(summary)
    if summary.reason == "all_complete" and task_description is None:
        click.echo(COMPLETION_SENTINEL)
    if summary.exit_code:
        raise SystemExit(summary.exit_code)


@cli.command("status")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def status_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config = load_config(_resolve_config_path(repo_root, config_value))
    store = TaskLedgerStore(repo_root / config.paths.ledger)
    if not store.exists():
        click.echo(f"No {config.paths.ledger} found in project.")
        return
    try:
        ledger = store.load()
    except MalformedLedger as exc:
        raise click.ClickException(str(exc)) from exc

    stats = ledger.stats()
    click.echo(f"Project: {ledger.project}")
    click.echo(f"Branch: {ledger.branch_name}")
    click.echo(
        f"Items: {stats.complete}/{stats.total} complete, {stats.remaining} remaining "
        f"({stats.percent_complete}%)"
    )
    for item in ledger.items:
        marker = "✓" if item.passes else "○"
        click.echo(f"  {marker} {item.id}: {item.title} [P{item.priority}]")
    if stats.next_item is not None:
        click.echo(f"Next: {stats.next_item.id}: {stats.next_item.title}")

    journal = ProgressJournal(repo_root / config.paths.journal)
    if journal.exists():
        click.echo(f"Iterations logged: {journal.iteration_count()}")


@cli.command("validate")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def validate_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config = load_config(_resolve_config_path(repo_root, config_value))
    store = TaskLedgerStore(repo_root / config.paths.ledger)
    try:
        payload = store.read_payload()
    except MalformedLedger as exc:
        raise click.ClickException(str(exc)) from exc

    result = validate_ledger(payload)
    click.echo("Ledger validation passed" if result.valid else "Ledger validation failed")
    for error in result.errors:
        click.echo(f"  error: {error}")
    for warning in result.warnings:
        click.echo(f"  warning: {warning}")
    if not result.valid:
        raise SystemExit(1)


@cli.command("reset")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def reset_command(config_value: str) -> None:
    """Archive the progress journal and start a fresh one, keeping its patterns."""
    repo_root = Path.cwd().resolve()
    config = load_config(_resolve_config_path(repo_root, config_value))
    store = TaskLedgerStore(repo_root / config.paths.ledger)
    context_id = "main"
    if store.exists():
        try:
            context_id = store.load().branch_name
        except MalformedLedger as exc:
            raise click.ClickException(str(exc)) from exc

    journal = ProgressJournal(repo_root / config.paths.journal)
    archival = ArchivalManager(store.path, journal, repo_root / config.paths.archive_dir)
    try:
        archive_path = archival.reset_journal(context_id)
    except PersistenceError as exc:
        raise click.ClickException(str(exc)) from exc
    if archive_path is not None:
        click.echo(f"Archived old {journal.path.name} to {archive_path}")
    click.echo(f"Reset {journal.path.name}")
