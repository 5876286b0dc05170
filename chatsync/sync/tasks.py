"""
Sync Celery tasks.

``sync.pipeline.run_sync`` executes a previously created ``SyncRun``. Delivery
is at-least-once (``task_acks_late``), so the handler exits early for runs that
already finished or that another task is executing.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from celery import shared_task
from flask import current_app

from chatsync.models.base import db
from chatsync.models.sync.schema import SyncRun, SyncRunStatus
from chatsync.sync.errors import SyncRunNotFound
from chatsync.sync.pipeline.orchestrator import SyncOptions, SyncOrchestrator
from chatsync.sync.pipeline.run_service import TERMINAL_STATUSES, SyncRunService
from chatsync.sync.settings import resolve_settings
from chatsync.utils.sync import get_sync_entities, is_sync_enabled

ACTIVE_STATUSES = (SyncRunStatus.PENDING, SyncRunStatus.RUNNING)


@shared_task(name="sync.healthcheck", bind=True)
def sync_healthcheck(self) -> dict[str, Any]:
    """
    Simple heartbeat task used by worker health checks.
    """
    now = datetime.now(timezone.utc)
    return {
        "status": "ok",
        "timestamp": now.isoformat(),
        "worker_hostname": self.request.hostname,
        "app_version": getattr(self.app, "user_options", {}).get("version"),
    }


def _should_skip(run: SyncRun, task_id: str | None) -> str | None:
    if run.status in TERMINAL_STATUSES:
        return f"run already {run.status.value}"
    if run.status == SyncRunStatus.RUNNING and run.task_id and task_id and run.task_id != task_id:
        return f"run is executing under task {run.task_id}"
    return None


@shared_task(name="sync.pipeline.run_sync", bind=True)
def run_sync(self, *, run_id: int, transform_only: bool = False) -> dict[str, Any]:
    """
    Execute the sync pipeline for a pending run via the sync worker.
    """

    run = db.session.get(SyncRun, run_id)
    if run is None:
        raise SyncRunNotFound(f"Sync run {run_id} not found.")

    task_id = self.request.id
    skip_reason = _should_skip(run, task_id)
    if skip_reason:
        current_app.logger.info(
            "Sync run skipped",
            extra={"sync_run_id": run_id, "sync_entity": run.entity_type, "sync_skip_reason": skip_reason},
        )
        return {"run_id": run_id, "status": run.status.value, "skipped": True, "reason": skip_reason}

    orchestrator = SyncOrchestrator(config=current_app.config, logger=current_app.logger)
    options = SyncOptions.from_dict(run.options_json)
    try:
        if transform_only:
            run = orchestrator.run_transform_only(run.entity_type, options, run, task_id=task_id)
        else:
            run = orchestrator.run_sync(run.entity_type, options, run, task_id=task_id)
    except Exception as exc:
        db.session.rollback()
        recovery_run = db.session.get(SyncRun, run_id)
        if recovery_run is not None:
            recovery_run.status = SyncRunStatus.FAILED
            recovery_run.error_summary = str(exc)
            recovery_run.finished_at = datetime.now(timezone.utc)
            db.session.commit()
        current_app.logger.exception(
            "Sync run failed",
            extra={"sync_run_id": run_id, "sync_error": str(exc)},
        )
        raise

    current_app.logger.info(
        "Sync run finished",
        extra={
            "sync_run_id": run_id,
            "sync_entity": run.entity_type,
            "sync_status": run.status.value,
            "sync_counts": run.counts_json,
        },
    )
    return SyncRunService().serialize(run)


@shared_task(name="sync.pipeline.scheduled_sync", bind=True)
def scheduled_sync(self) -> dict[str, Any]:
    """
    Beat entry point: create one run per configured entity and dispatch it.

    Entities that already have a recent pending or running run are skipped.
    """

    config = current_app.config
    if not is_sync_enabled():
        return {"status": "disabled", "runs": []}
    settings = resolve_settings(config)
    if not settings.auto_sync:
        return {"status": "auto_sync_disabled", "runs": []}

    orchestrator = SyncOrchestrator(config=config, logger=current_app.logger)
    cutoff = datetime.now(timezone.utc) - timedelta(seconds=int(config.get("SYNC_TASK_TIME_LIMIT", 60 * 60)))
    queued: list[dict[str, Any]] = []
    skipped: list[str] = []
    for entity in get_sync_entities():
        active = (
            db.session.query(SyncRun.id)
            .filter(
                SyncRun.entity_type == entity,
                SyncRun.status.in_(ACTIVE_STATUSES),
                SyncRun.created_at >= cutoff,
            )
            .first()
        )
        if active is not None:
            skipped.append(entity)
            continue
        options = orchestrator.resolve_options()
        run = orchestrator.create_run(entity, options, triggered_by="schedule")
        async_result = run_sync.apply_async(kwargs={"run_id": run.id})
        queued.append({"run_id": run.id, "entity": entity, "task_id": async_result.id})

    current_app.logger.info(
        "Scheduled sync dispatched",
        extra={"sync_queued": queued, "sync_skipped_entities": skipped},
    )
    return {"status": "ok", "runs": queued, "skipped": skipped}
