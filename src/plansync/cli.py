from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path

import click

from plansync.backends import ClaudeCodeBackend, CodexBackend, ResilientBackend, RetryPolicy
from plansync.config import BackendName, PlansyncConfig, load_config, save_config
from plansync.models import ProgressIndex
from plansync.orchestrator import OrchestrationReport, Orchestrator
from plansync.plans import PlanFormatError, PlanNotFoundError, PlanReader, register_plan
from plansync.review import ReviewCycleController
from plansync.scheduling import DependencyResolver, ParallelGrouper
from plansync.state import ProgressStore, ProgressStoreError
from plansync.workers import (
    CommandVerifier,
    ExecutionWorker,
    ImplementerWorker,
    ReviewerWorker,
    VerifierWorker,
)


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: PlansyncConfig
    store: ProgressStore
    reader: PlanReader


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _configure_logging(level_override: str | None, config: PlansyncConfig) -> None:
    level_name = (level_override or config.logging.level or "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _build_single_backend(
    backend_name: BackendName, repo_root: Path
) -> CodexBackend | ClaudeCodeBackend:
    if backend_name == "codex":
        return CodexBackend(working_directory=repo_root)
    return ClaudeCodeBackend(working_directory=repo_root)


def _build_backend(config: PlansyncConfig, repo_root: Path) -> ResilientBackend:
    policy = RetryPolicy(
        max_retries=max(0, int(config.backend.max_retries)),
        backoff_seconds=max(0.0, float(config.backend.retry_backoff_seconds)),
        timeout_seconds=max(5.0, float(config.backend.timeout_seconds)),
    )
    return ResilientBackend(
        primary_name=config.backend.primary,
        primary_backend=_build_single_backend(config.backend.primary, repo_root),
        fallback_name=config.backend.fallback,
        fallback_backend=_build_single_backend(config.backend.fallback, repo_root),
        retry_policy=policy,
    )


def _build_workers(
    config: PlansyncConfig, repo_root: Path
) -> tuple[ExecutionWorker, ExecutionWorker, ExecutionWorker]:
    backend = _build_backend(config, repo_root)
    implementer = ImplementerWorker(backend, model=config.agents.implementer_model or None)
    verifier: ExecutionWorker
    if config.project.verify_command.strip():
        verifier = CommandVerifier(
            config.project.verify_command,
            working_directory=repo_root,
            timeout_seconds=config.backend.timeout_seconds,
        )
    else:
        verifier = VerifierWorker(backend, model=config.agents.verifier_model or None)
    reviewer = ReviewerWorker(backend, model=config.agents.reviewer_model or None)
    return implementer, verifier, reviewer


def _load_runtime(repo_root: Path, config_path: Path, level_override: str | None) -> Runtime:
    config = load_config(config_path)
    _configure_logging(level_override, config)
    store = ProgressStore(
        config.resolve_path(repo_root, config.project.index_path),
        lock_retries=config.lock.retries,
        lock_backoff_seconds=config.lock.backoff_seconds,
        issues_count_as_done=config.orchestrator.issues_satisfy_phase,
    )
    reader = PlanReader(config.resolve_path(repo_root, config.project.plans_dir))
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        store=store,
        reader=reader,
    )


def _runtime(ctx: click.Context, config_value: str) -> Runtime:
    repo_root = Path.cwd().resolve()
    try:
        return _load_runtime(
            repo_root, _resolve_config_path(repo_root, config_value), ctx.obj.get("log_level")
        )
    except (TypeError, ValueError) as exc:
        raise click.ClickException(f"Invalid configuration: {exc}") from exc


def _echo_report(report: OrchestrationReport) -> None:
    click.echo(f"Steps: {report.steps}")
    for label, keys in (
        ("Completed", report.completed),
        ("CompletedWithIssues", report.completed_with_issues),
        ("Failed", report.failed),
    ):
        click.echo(f"{label}: {len(keys)}")
        for key in keys:
            click.echo(f"  {key}")
    click.echo(f"Blocked: {len(report.blocked)}")
    for key, reason in report.blocked.items():
        click.echo(f"  {key} ({reason})")
    for warning in report.warnings:
        click.echo(f"Warning: {warning}")


config_option = click.option(
    "--config", "config_value", default="plansync.toml", show_default=True
)


@click.group()
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Overrides [logging] level from the config file.",
)
@click.pass_context
def cli(ctx: click.Context, log_level: str | None) -> None:
    """Plansync CLI."""
    ctx.ensure_object(dict)
    ctx.obj["log_level"] = log_level


@cli.command("init")
@click.option("--backend", type=click.Choice(["codex", "claude"]), default=None)
@config_option
@click.pass_context
def init_command(ctx: click.Context, backend: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    if backend:
        config.backend.primary = backend  # type: ignore[assignment]
    save_config(config_path, config)

    runtime = _runtime(ctx, config_value)
    runtime.reader.plans_dir.mkdir(parents=True, exist_ok=True)
    if not runtime.store.index_path.exists():
        try:
            runtime.store.with_lock(lambda index: None)
        except ProgressStoreError as exc:
            raise click.ClickException(str(exc)) from exc

    click.echo(f"Initialized plansync in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Plans: {runtime.reader.plans_dir}")
    click.echo(f"Index: {runtime.store.index_path}")


@cli.command("register")
@click.argument("plan_ids", nargs=-1)
@click.option("--all", "register_all", is_flag=True, default=False)
@config_option
@click.pass_context
def register_command(
    ctx: click.Context, plan_ids: tuple[str, ...], register_all: bool, config_value: str
) -> None:
    runtime = _runtime(ctx, config_value)
    selected = runtime.reader.available_plans() if register_all else list(plan_ids)
    if not selected:
        raise click.ClickException("No plans given. Pass plan ids or --all.")

    definitions = []
    for plan_id in selected:
        try:
            definitions.append(runtime.reader.read_plan(plan_id))
        except (PlanNotFoundError, PlanFormatError) as exc:
            raise click.ClickException(str(exc)) from exc

    def _register(index: ProgressIndex) -> None:
        for definition in definitions:
            register_plan(index, definition)

    try:
        runtime.store.with_lock(_register)
    except ProgressStoreError as exc:
        raise click.ClickException(str(exc)) from exc

    for definition in definitions:
        click.echo(
            f"Registered {definition.plan_id} (phase {definition.phase}, "
            f"{len(definition.tasks)} task(s))"
        )
        for warning in definition.warnings:
            click.echo(f"Warning: {warning}")


@cli.command("ready")
@click.option("--max-batch-size", type=int, default=None)
@config_option
@click.pass_context
def ready_command(ctx: click.Context, max_batch_size: int | None, config_value: str) -> None:
    runtime = _runtime(ctx, config_value)
    try:
        index = runtime.store.load()
    except ProgressStoreError as exc:
        raise click.ClickException(str(exc)) from exc

    analysis = DependencyResolver().analyze(index)
    if not analysis.eligible:
        click.echo("No eligible tasks.")
    else:
        batches = ParallelGrouper(max_batch_size=max_batch_size).group(analysis.eligible, index)
        for number, batch in enumerate(batches, start=1):
            mode = "parallel" if batch.parallel else "serial"
            click.echo(f"Batch {number} ({mode}): {', '.join(batch.keys())}")
    for warning in analysis.warnings:
        click.echo(f"Warning: {warning}")


@cli.command("run")
@click.option("--max-steps", type=int, default=None)
@click.option("--json", "as_json", is_flag=True, default=False)
@config_option
@click.pass_context
def run_command(
    ctx: click.Context, max_steps: int | None, as_json: bool, config_value: str
) -> None:
    runtime = _runtime(ctx, config_value)
    config = runtime.config
    implementer, verifier, reviewer = _build_workers(config, runtime.repo_root)
    orchestrator = Orchestrator(
        store=runtime.store,
        plan_reader=runtime.reader,
        controller=ReviewCycleController(
            implementer,
            verifier,
            reviewer,
            max_fix_attempts=config.orchestrator.max_fix_attempts,
        ),
        max_parallel_tasks=config.orchestrator.max_parallel_tasks,
        max_steps=max_steps or config.orchestrator.max_steps,
    )
    try:
        report = asyncio.run(orchestrator.run())
    except ProgressStoreError as exc:
        raise click.ClickException(str(exc)) from exc

    if as_json:
        click.echo(json.dumps(report.to_dict(), ensure_ascii=False, indent=2))
    else:
        _echo_report(report)


@cli.command("status")
@config_option
@click.pass_context
def status_command(ctx: click.Context, config_value: str) -> None:
    runtime = _runtime(ctx, config_value)
    try:
        index = runtime.store.load()
    except ProgressStoreError as exc:
        raise click.ClickException(str(exc)) from exc
    payload = index.to_dict()
    holder = runtime.store.lock_holder()
    if holder:
        payload["lock"] = holder
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("unlock")
@click.option("--force", is_flag=True, default=False)
@config_option
@click.pass_context
def unlock_command(ctx: click.Context, force: bool, config_value: str) -> None:
    runtime = _runtime(ctx, config_value)
    holder = runtime.store.lock_holder()
    if holder is None:
        click.echo("No lock held.")
        return
    if not force:
        raise click.ClickException(
            f"Lock {runtime.store.lock_path} is held by {holder}. "
            "Re-run with --force once that process is gone."
        )
    runtime.store.break_lock()
    click.echo(f"Removed lock {runtime.store.lock_path} (was held by {holder})")
