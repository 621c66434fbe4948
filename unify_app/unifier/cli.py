"""
Operator commands for the identity unifier.

``flask unifier run`` mirrors the HTTP trigger; ``--inline`` drives every
chunk inside the CLI process instead of queueing them on the worker.
"""

from __future__ import annotations

import json
from typing import Optional

import click
from celery import Celery
from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask.cli import AppGroup, ScriptInfo
from sqlalchemy.exc import NoResultFound

from config.merge_policy import load_profile
from unify_app.models import ConflictStatus, ConflictType
from unify_app.models.base import db
from unify_app.unifier.celery_app import DEFAULT_QUEUE_NAME, get_celery_app
from unify_app.unifier.pipeline import (
    ConflictAlreadyReviewed,
    ConflictReviewService,
    InvalidRunTransition,
    RunAlreadyActive,
    SyncRunService,
    UnknownSourceError,
    serialize_conflict,
)
from unify_app.unifier.pipeline.orchestrator import (
    STATUS_STARTED,
    pending_work,
    resume_run,
    trigger_unification,
)
from unify_app.unifier.pipeline.scheduler import run_until_idle
from unify_app.utils.unifier import get_unifier_sources, is_unifier_enabled


@click.group(name="unifier", cls=AppGroup, invoke_without_command=True)
@click.pass_context
def unifier_cli(ctx):
    """
    Identity unifier commands.

    Displays configured sources when invoked without a subcommand.
    """
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    if not is_unifier_enabled(app):
        raise click.ClickException("Unifier is disabled via UNIFIER_ENABLED=false. Enable it to run unifier commands.")
    if ctx.invoked_subcommand is None:
        click.echo("Configured unifier sources:")
        for source in get_unifier_sources(app):
            click.echo(f"  - {source}")


def get_disabled_unifier_group() -> click.Group:
    """
    Return a minimal command group that informs the operator the unifier is disabled.
    """

    @click.group(name="unifier", invoke_without_command=True)
    def disabled_group():
        raise click.ClickException("Unifier commands are unavailable because UNIFIER_ENABLED=false.")

    return disabled_group


def _resolve_celery(app) -> Optional[Celery]:
    celery_app = get_celery_app(app)
    if celery_app is None:
        raise click.ClickException(
            "Unifier Celery app is unavailable. Ensure UNIFIER_ENABLED=true and the "
            "unifier package initialises before running worker commands."
        )
    return celery_app


def _split_sources(values: tuple[str, ...]) -> tuple[str, ...]:
    sources: list[str] = []
    for value in values:
        sources.extend(token.strip().lower() for token in value.split(",") if token.strip())
    return tuple(sources)


def _echo_json(payload) -> None:
    click.echo(json.dumps(payload, indent=2, sort_keys=True, default=str))


# ---------------------------------------------------------------------------
# Run lifecycle
# ---------------------------------------------------------------------------


@unifier_cli.command("pending")
@click.option("--source", "sources", multiple=True, help="Restrict to these sources (repeatable or comma-separated).")
@click.pass_context
def unifier_pending(ctx, sources: tuple[str, ...]):
    """Show unprocessed raw records per source."""
    info = ctx.ensure_object(ScriptInfo)
    info.load_app()
    try:
        pending = pending_work(_split_sources(sources))
    except UnknownSourceError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_json(pending.as_dict())


@unifier_cli.command("run")
@click.option("--source", "sources", multiple=True, help="Restrict to these sources (repeatable or comma-separated).")
@click.option("--batch-size", type=int, help="Rows fetched per source per iteration.")
@click.option(
    "--inline/--no-inline",
    default=False,
    help="Run every chunk inside the CLI process instead of queueing via Celery.",
)
@click.pass_context
def unifier_run(ctx, sources: tuple[str, ...], batch_size: Optional[int], inline: bool):
    """Start a unification run."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    try:
        result = trigger_unification(sources=_split_sources(sources) or None, batch_size=batch_size, dispatch=not inline)
    except UnknownSourceError as exc:
        raise click.ClickException(str(exc)) from exc

    payload = {
        "status": result.status,
        "run_id": result.run_id,
        "pending": dict(result.pending),
        "estimated_seconds": result.estimated_seconds,
        "task_id": result.task_id,
    }
    if result.status != STATUS_STARTED or not inline:
        app.logger.info(
            "Unification run requested via CLI",
            extra={"unifier_run_id": result.run_id, "unifier_status": result.status},
        )
        _echo_json(payload)
        return

    outcome = run_until_idle(result.run_id, start_chunk=1)
    service = SyncRunService()
    run = service.get_run(result.run_id)
    db.session.refresh(run)
    summary = service.summarize(run)
    payload.update(
        {
            "status": summary.status,
            "chunks": summary.chunk_number,
            "iterations": summary.iterations,
            "processed": summary.total_processed,
            "inserted": summary.total_inserted,
            "updated": summary.total_updated,
            "skipped": summary.total_skipped,
            "conflicts": summary.total_conflicts,
            "errors": summary.total_errors,
            "message": outcome.message,
        }
    )
    _echo_json(payload)


@unifier_cli.command("status")
@click.option("--run-id", type=int, help="Show this run instead of the latest one.")
@click.pass_context
def unifier_status(ctx, run_id: Optional[int]):
    """Show the latest (or a specific) run."""
    info = ctx.ensure_object(ScriptInfo)
    info.load_app()
    service = SyncRunService()
    if run_id is None:
        run = service.latest_run()
        if run is None:
            click.echo("No unification runs recorded.")
            return
    else:
        try:
            run = service.get_run(run_id)
        except NoResultFound as exc:
            raise click.ClickException(str(exc)) from exc
    summary = service.summarize(run)
    _echo_json(
        {
            "run_id": summary.id,
            "status": summary.status,
            "sources": list(summary.sources),
            "chunk_number": summary.chunk_number,
            "iterations": summary.iterations,
            "processed": summary.total_processed,
            "errors": summary.total_errors,
            "cursor": dict(summary.cursor),
            "heartbeat_at": summary.heartbeat_at,
            "error_message": summary.error_message,
        }
    )


@unifier_cli.command("cancel")
@click.option("--run-id", required=True, type=int, help="ID of the run to cancel.")
@click.pass_context
def unifier_cancel(ctx, run_id: int):
    """Cancel an active run."""
    info = ctx.ensure_object(ScriptInfo)
    info.load_app()
    try:
        run = SyncRunService().cancel(run_id)
    except NoResultFound as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Run {run.id} cancelled.")


@unifier_cli.command("force-cancel")
@click.pass_context
def unifier_force_cancel(ctx):
    """Cancel every non-terminal run."""
    info = ctx.ensure_object(ScriptInfo)
    info.load_app()
    cancelled = SyncRunService().force_cancel_all()
    if not cancelled:
        click.echo("No active runs to cancel.")
        return
    click.echo(f"Cancelled runs: {', '.join(str(run_id) for run_id in cancelled)}")


@unifier_cli.command("resume")
@click.option("--run-id", required=True, type=int, help="ID of the paused run.")
@click.option("--retry-errors", is_flag=True, help="Rewind cursors and requeue errored records.")
@click.option("--inline/--no-inline", default=False, help="Finish the run inside the CLI process.")
@click.pass_context
def unifier_resume(ctx, run_id: int, retry_errors: bool, inline: bool):
    """Resume a paused run."""
    info = ctx.ensure_object(ScriptInfo)
    info.load_app()
    try:
        run = resume_run(run_id, retry_errors=retry_errors, dispatch=not inline)
    except NoResultFound as exc:
        raise click.ClickException(str(exc)) from exc
    except (InvalidRunTransition, RunAlreadyActive) as exc:
        raise click.ClickException(str(exc)) from exc

    if inline:
        outcome = run_until_idle(run.id)
        click.echo(f"Run {run.id} finished chunk {outcome.chunk_number} with status '{outcome.status}'.")
        return
    click.echo(f"Run {run.id} resumed.")


# ---------------------------------------------------------------------------
# Conflict review
# ---------------------------------------------------------------------------


@unifier_cli.group(name="conflicts")
def conflicts_group():
    """Review identity conflicts."""


@conflicts_group.command("list")
@click.option(
    "--status",
    type=click.Choice([status.value for status in ConflictStatus]),
    default=ConflictStatus.PENDING.value,
    show_default=True,
)
@click.option("--source", help="Only conflicts raised by this source.")
@click.option("--type", "conflict_type", type=click.Choice([kind.value for kind in ConflictType]))
@click.option("--limit", default=50, show_default=True, type=click.IntRange(1, 500))
@click.pass_context
def conflicts_list(ctx, status: str, source: Optional[str], conflict_type: Optional[str], limit: int):
    info = ctx.ensure_object(ScriptInfo)
    info.load_app()
    page = ConflictReviewService().list_conflicts(
        status=ConflictStatus(status),
        source=source,
        conflict_type=ConflictType(conflict_type) if conflict_type else None,
        limit=limit,
    )
    _echo_json({"total": page.total, "conflicts": [serialize_conflict(item) for item in page.items]})


@conflicts_group.command("resolve")
@click.argument("conflict_id", type=int)
@click.option("--client-id", required=True, type=int, help="Client the record belongs to.")
@click.option("--note", help="Reviewer note stored with the resolution.")
@click.pass_context
def conflicts_resolve(ctx, conflict_id: int, client_id: int, note: Optional[str]):
    """Merge a queued record into the chosen client."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    try:
        conflict = ConflictReviewService().resolve(
            conflict_id, client_id=client_id, note=note, profile=load_profile(app.config)
        )
    except (NoResultFound, ConflictAlreadyReviewed) as exc:
        db.session.rollback()
        raise click.ClickException(str(exc)) from exc
    db.session.commit()
    click.echo(f"Conflict {conflict.id} resolved into client {conflict.resolved_client_id}.")


@conflicts_group.command("ignore")
@click.argument("conflict_id", type=int)
@click.option("--note", help="Reviewer note stored with the decision.")
@click.pass_context
def conflicts_ignore(ctx, conflict_id: int, note: Optional[str]):
    info = ctx.ensure_object(ScriptInfo)
    info.load_app()
    try:
        conflict = ConflictReviewService().ignore(conflict_id, note=note)
    except (NoResultFound, ConflictAlreadyReviewed) as exc:
        db.session.rollback()
        raise click.ClickException(str(exc)) from exc
    db.session.commit()
    click.echo(f"Conflict {conflict.id} ignored.")


# ---------------------------------------------------------------------------
# Worker
# ---------------------------------------------------------------------------


@unifier_cli.group(name="worker")
@click.pass_context
def worker_group(ctx):
    """Manage the unifier background worker."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    state = app.extensions.get("unifier", {})
    if not state.get("worker_enabled") and not app.config.get("UNIFIER_WORKER_ENABLED"):
        click.echo(
            "Warning: UNIFIER_WORKER_ENABLED is false. Commands will still run, "
            "but enable the flag to surface accurate health status.",
            err=True,
        )


@worker_group.command("run")
@click.option("--loglevel", default="info", show_default=True)
@click.option("--concurrency", type=int, help="Number of worker processes/threads.")
@click.option("--pool", type=str, help="Celery pool implementation (e.g., 'prefork', 'solo', 'threads').")
@click.option("--queues", default=DEFAULT_QUEUE_NAME, show_default=True, help="Comma-separated queue list to consume.")
@click.pass_context
def worker_run(ctx, loglevel: str, concurrency: Optional[int], pool: Optional[str], queues: str):
    """
    Start the Celery worker in the current process.
    """
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    celery_app = _resolve_celery(app)

    state = app.extensions.get("unifier")
    if state is not None:
        state["worker_enabled"] = True

    argv = ["worker", "--loglevel", loglevel, "-Q", queues]
    if concurrency:
        argv.extend(["--concurrency", str(concurrency)])
    if pool:
        argv.extend(["--pool", pool])

    pool_msg = f", pool: {pool}" if pool else ""
    click.echo(f"Starting unifier worker (queues: {queues}, loglevel: {loglevel}{pool_msg})")
    try:
        celery_app.worker_main(argv=argv)
    except KeyboardInterrupt:
        click.echo("Worker shutdown requested. Exiting...")


@worker_group.command("ping")
@click.option("--timeout", default=10.0, show_default=True, help="Seconds to wait for a response.")
@click.pass_context
def worker_ping(ctx, timeout: float):
    """
    Validate worker connectivity by executing the heartbeat task.
    """
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    celery_app = _resolve_celery(app)
    task = celery_app.tasks.get("unifier.healthcheck")
    if task is None:
        raise click.ClickException("Heartbeat task 'unifier.healthcheck' is not registered.")

    result = task.apply_async()
    try:
        payload = result.get(timeout=timeout)
    except CeleryTimeoutError as exc:
        raise click.ClickException(f"Worker did not respond within {timeout}s") from exc
    except Exception as exc:  # pragma: no cover - surfacing unexpected errors
        raise click.ClickException(f"Worker ping failed: {exc}") from exc

    click.echo(json.dumps(payload, indent=2))


__all__ = ["get_disabled_unifier_group", "unifier_cli"]
