"""
CLI commands for the sync pipeline (``flask sync ...``).
"""

from __future__ import annotations

import json
from datetime import timedelta
from typing import Optional

import click
from celery import Celery
from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask.cli import ScriptInfo
from sqlalchemy.exc import NoResultFound

from chatsync.models.sync.schema import SyncRunStatus
from chatsync.sync.celery_app import DEFAULT_QUEUE_NAME, enqueue_sync_run, get_celery_app
from chatsync.sync.errors import RunNotCancellable
from chatsync.sync.pipeline.alerts import AlertFilters, AlertService
from chatsync.sync.pipeline.extract import TIME_RANGE_PRESETS
from chatsync.sync.pipeline.orchestrator import SyncOrchestrator
from chatsync.sync.pipeline.reconcile import DEFAULT_STALE_DAYS, reconcile_contacts
from chatsync.sync.pipeline.run_service import SyncRunService
from chatsync.sync.pipeline.staging import reset_failed_records
from chatsync.sync.pipeline.validation import ValidationEngine
from chatsync.sync.registry import get_entity_registry, resolve_entities
from chatsync.sync.settings import resolve_settings
from chatsync.utils.sync import get_sync_entities, is_sync_enabled

ENTITY_CHOICES = ("all", *get_entity_registry().keys())


@click.group(name="sync", invoke_without_command=True)
@click.pass_context
def sync_cli(ctx):
    """
    Sync pipeline commands.

    Lists the enabled entity types when invoked without a subcommand.
    """
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    if not is_sync_enabled(app):
        raise click.ClickException("Sync is disabled via SYNC_ENABLED=false. Enable it to run sync CLI commands.")
    if ctx.invoked_subcommand is None:
        click.echo("Enabled sync entities:")
        for entity in get_sync_entities(app):
            click.echo(f"  - {entity}")


def get_disabled_sync_group() -> click.Group:
    """
    Return a minimal command group that informs the operator sync is disabled.
    """

    @click.group(name="sync", invoke_without_command=True)
    def disabled_group():
        raise click.ClickException("Sync commands are unavailable because SYNC_ENABLED=false.")

    return disabled_group


def _resolve_celery(app) -> Optional[Celery]:
    """
    Retrieve the registered Celery instance, raising a helpful error if missing.
    """
    celery_app = get_celery_app(app)
    if celery_app is None:
        raise click.ClickException(
            "Sync Celery app is unavailable. Ensure SYNC_ENABLED=true and the "
            "sync package initialises before running worker commands."
        )
    return celery_app


def _build_orchestrator(app) -> SyncOrchestrator:
    return SyncOrchestrator(config=app.config, logger=app.logger)


def _resolve_entity_names(app, entity: str) -> list[str]:
    try:
        return [descriptor.name for descriptor in resolve_entities(entity, allowed=get_sync_entities(app))]
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc


def _format_run(payload: dict) -> str:
    counts = payload.get("counts") or {}
    extract = counts.get("extract") or {}
    transform = counts.get("transform") or {}
    validation = counts.get("validation") or {}
    lines = [
        f"Run {payload['id']} ({payload['entity_type']}) finished with status {payload['status']}.",
        f"  records_fetched : {extract.get('records_fetched', 0)}",
        f"  records_staged  : {extract.get('records_staged', 0)}",
        f"  processed       : {transform.get('processed', 0)}",
        f"  created         : {transform.get('created', 0)}",
        f"  updated         : {transform.get('updated', 0)}",
        f"  skipped         : {transform.get('skipped', 0)}",
        f"  failed          : {transform.get('failed', 0)}",
        f"  status_changes  : {transform.get('status_changes', 0)}",
        f"  validation      : errors={validation.get('errors', 0)} warnings={validation.get('warnings', 0)}"
        f" infos={validation.get('infos', 0)}",
    ]
    if payload.get("error_summary"):
        lines.append(f"  error           : {payload['error_summary']}")
    return "\n".join(lines)


@sync_cli.group(name="worker")
@click.pass_context
def worker_group(ctx):
    """Manage the sync background worker."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    state = app.extensions.get("sync", {})
    if not state.get("worker_enabled") and not app.config.get("SYNC_WORKER_ENABLED"):
        click.echo(
            "Warning: SYNC_WORKER_ENABLED is false. Commands will still run, "
            "but enable the flag to surface accurate health status.",
            err=True,
        )


@worker_group.command("run")
@click.option("--loglevel", default="info", show_default=True)
@click.option("--concurrency", type=int, help="Number of worker processes/threads.")
@click.option(
    "--pool",
    type=str,
    help="Celery pool implementation (e.g., 'prefork', 'solo', 'threads').",
)
@click.option(
    "--queues",
    default=DEFAULT_QUEUE_NAME,
    show_default=True,
    help="Comma-separated queue list to consume.",
)
@click.option("--beat/--no-beat", default=False, help="Embed the beat scheduler in the worker process.")
@click.pass_context
def worker_run(ctx, loglevel: str, concurrency: Optional[int], pool: Optional[str], queues: str, beat: bool):
    """
    Start the Celery worker in the current process.
    """
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    celery_app = _resolve_celery(app)

    state = app.extensions.get("sync", {})
    if state is not None:
        state["worker_enabled"] = True

    argv = [
        "worker",
        "--loglevel",
        loglevel,
        "-Q",
        queues,
    ]
    if concurrency:
        argv.extend(["--concurrency", str(concurrency)])
    if pool:
        argv.extend(["--pool", pool])
    if beat:
        argv.append("--beat")

    pool_msg = f", pool: {pool}" if pool else ""
    click.echo(f"Starting sync worker (queues: {queues}, loglevel: {loglevel}{pool_msg})")
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
    task = celery_app.tasks.get("sync.healthcheck")
    if task is None:
        raise click.ClickException("Heartbeat task 'sync.healthcheck' is not registered.")

    result = task.apply_async()
    try:
        payload = result.get(timeout=timeout)
    except CeleryTimeoutError as exc:
        raise click.ClickException(f"Worker did not respond within {timeout}s") from exc
    except Exception as exc:  # pragma: no cover - surfacing unexpected errors
        raise click.ClickException(f"Worker ping failed: {exc}") from exc

    click.echo(json.dumps(payload, indent=2))


@sync_cli.command("run")
@click.option("--entity", type=click.Choice(ENTITY_CHOICES), default="all", show_default=True)
@click.option("--full-sync/--incremental", "full_sync", default=None, help="Override the configured sync mode.")
@click.option("--time-range", type=click.Choice(tuple(TIME_RANGE_PRESETS)), help="Fixed lookback window.")
@click.option("--batch-size", type=int, help="Transform batch size for this run.")
@click.option(
    "--inline/--no-inline",
    default=False,
    help="Run inline within the CLI process instead of queueing via Celery.",
)
@click.pass_context
def sync_run(
    ctx,
    entity: str,
    full_sync: Optional[bool],
    time_range: Optional[str],
    batch_size: Optional[int],
    inline: bool,
):
    """Extract, transform and validate one or all entity types."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    entities = _resolve_entity_names(app, entity)
    orchestrator = _build_orchestrator(app)
    try:
        options = orchestrator.resolve_options(
            full_sync=full_sync,
            time_range_preset=time_range,
            batch_size=batch_size,
        )
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc

    if not inline:
        celery_app = _resolve_celery(app)
        queued = []
        for name in entities:
            run = orchestrator.create_run(name, options, triggered_by="cli")
            try:
                task_id = enqueue_sync_run(celery_app, run.id)
            except Exception as exc:
                raise click.ClickException(f"Failed to enqueue sync run {run.id}: {exc}") from exc
            queued.append({"run_id": run.id, "entity": name, "task_id": task_id})
            app.logger.info(
                "Sync run queued via CLI",
                extra={"sync_run_id": run.id, "sync_entity": name, "sync_task_id": task_id},
            )
        click.echo(json.dumps({"status": "queued", "runs": queued}))
        return

    failed: list[int] = []
    for name in entities:
        run = orchestrator.run_sync(name, options, triggered_by="cli")
        click.echo(_format_run(SyncRunService().serialize(run)))
        if run.status == SyncRunStatus.FAILED:
            failed.append(run.id)
    if failed:
        raise click.ClickException(f"Sync run(s) failed: {', '.join(str(run_id) for run_id in failed)}")


@sync_cli.command("transform")
@click.option("--entity", type=click.Choice(ENTITY_CHOICES), default="all", show_default=True)
@click.option("--batch-size", type=int, help="Transform batch size for this run.")
@click.pass_context
def sync_transform(ctx, entity: str, batch_size: Optional[int]):
    """Transform and validate already staged records without calling the API."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    entities = _resolve_entity_names(app, entity)
    orchestrator = _build_orchestrator(app)
    options = orchestrator.resolve_options(batch_size=batch_size)
    failed: list[int] = []
    for name in entities:
        run = orchestrator.run_transform_only(name, options, triggered_by="cli")
        click.echo(_format_run(SyncRunService().serialize(run)))
        if run.status == SyncRunStatus.FAILED:
            failed.append(run.id)
    if failed:
        raise click.ClickException(f"Transform run(s) failed: {', '.join(str(run_id) for run_id in failed)}")


@sync_cli.command("validate")
@click.option("--entity", type=click.Choice(tuple(get_entity_registry().keys())), required=True)
@click.option("--transform-id", help="Transform id to attach the findings to.")
@click.pass_context
def sync_validate(ctx, entity: str, transform_id: Optional[str]):
    """Run the validation rules for an entity type and print the report."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    engine = ValidationEngine.from_config(app.config, logger=app.logger)
    report = engine.validate_transform(transform_id, entity)
    click.echo(json.dumps(report.to_dict(), indent=2, sort_keys=True))


@sync_cli.command("status")
@click.pass_context
def sync_status(ctx):
    """Show staging counts per entity and the latest run of each."""
    info = ctx.ensure_object(ScriptInfo)
    info.load_app()
    click.echo(json.dumps(SyncRunService().status_snapshot(), indent=2, sort_keys=True))


@sync_cli.command("reset-failed")
@click.option("--entity", type=click.Choice(tuple(get_entity_registry().keys())), required=True)
@click.option("--id", "ids", type=int, multiple=True, help="Restrict the reset to specific staging ids.")
@click.option("--force", is_flag=True, help="Also reset records that exhausted their processing attempts.")
@click.pass_context
def sync_reset_failed(ctx, entity: str, ids: tuple[int, ...], force: bool):
    """Move failed staging records back to pending."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    summary = reset_failed_records(
        entity,
        ids=ids or None,
        force=force,
        max_attempts=int(app.config.get("SYNC_MAX_PROCESSING_ATTEMPTS", 3)),
        stale_after=timedelta(seconds=int(app.config.get("SYNC_PROCESSING_STALE_SECONDS", 600))),
    )
    click.echo(json.dumps(summary.to_dict()))


@sync_cli.command("cancel")
@click.option("--id", "run_id", type=int, required=True, help="Sync run id to cancel.")
@click.pass_context
def sync_cancel(ctx, run_id: int):
    """Ask a pending or running sync run to stop."""
    info = ctx.ensure_object(ScriptInfo)
    info.load_app()
    service = SyncRunService()
    try:
        run = service.request_cancel(run_id)
    except (NoResultFound, RunNotCancellable) as exc:
        raise click.ClickException(str(exc)) from exc
    if run.status == SyncRunStatus.CANCELLED:
        click.echo(f"Run {run.id} cancelled.")
    else:
        click.echo(f"Cancellation requested for run {run.id}; it stops at the next page or record.")


@sync_cli.command("reconcile-contacts")
@click.option("--stale-days", type=click.IntRange(min=0), default=DEFAULT_STALE_DAYS, show_default=True)
@click.pass_context
def sync_reconcile_contacts(ctx, stale_days: int):
    """Report contact stubs still waiting for a full contacts sync."""
    info = ctx.ensure_object(ScriptInfo)
    info.load_app()
    click.echo(json.dumps(reconcile_contacts(stale_days=stale_days), indent=2, sort_keys=True))


@sync_cli.command("alerts")
@click.option("--status", "statuses", multiple=True, help="Filter by status (active, acknowledged, resolved).")
@click.option("--severity", "severities", multiple=True, help="Filter by severity.")
@click.option("--ack", "acknowledge_id", type=int, help="Acknowledge the alert with this id.")
@click.option("--resolve", "resolve_id", type=int, help="Resolve the alert with this id.")
@click.pass_context
def sync_alerts(
    ctx,
    statuses: tuple[str, ...],
    severities: tuple[str, ...],
    acknowledge_id: Optional[int],
    resolve_id: Optional[int],
):
    """List sync alerts, optionally acknowledging or resolving one."""
    info = ctx.ensure_object(ScriptInfo)
    info.load_app()
    service = AlertService()
    try:
        if acknowledge_id is not None:
            service.acknowledge(acknowledge_id)
        if resolve_id is not None:
            service.resolve(resolve_id)
        filters = AlertFilters.coerce(statuses=statuses, severities=severities)
    except (ValueError, NoResultFound) as exc:
        raise click.ClickException(str(exc)) from exc

    alerts = service.list_alerts(filters)
    if not alerts:
        click.echo("No alerts found.")
        return
    for alert in alerts:
        click.echo(
            f"[{alert.id}] {alert.severity.value.upper():<6} {alert.status.value:<12} "
            f"{alert.alert_key} x{alert.occurrences}: {alert.title}"
        )


@sync_cli.command("config")
@click.pass_context
def sync_config(ctx):
    """Print the effective sync settings."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    click.echo(json.dumps(resolve_settings(app.config).to_dict(), indent=2, sort_keys=True))
