"""
Sync blueprint endpoints: trigger runs, inspect runs and staging, manage
settings and alerts, and report blueprint/worker health.
"""

from __future__ import annotations

import time
from datetime import timedelta
from functools import wraps
from http import HTTPStatus

from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask import Blueprint, current_app, jsonify, request
from sqlalchemy.exc import NoResultFound

from config.monitoring import SyncMonitoring
from chatsync.models.sync.schema import SyncRunStatus
from chatsync.sync.errors import RunNotCancellable, SyncConfigError
from chatsync.sync.pipeline.alerts import AlertFilters, AlertService
from chatsync.sync.pipeline.orchestrator import SyncOrchestrator
from chatsync.sync.pipeline.reconcile import DEFAULT_STALE_DAYS, reconcile_contacts
from chatsync.sync.pipeline.run_service import RunFilters, SyncRunService
from chatsync.sync.pipeline.staging import reset_failed_records
from chatsync.sync.registry import get_entity, resolve_entities
from chatsync.sync.settings import SyncSettings, load_overrides, resolve_settings, update_settings
from chatsync.utils.sync import get_sync_entities, is_sync_enabled

from .celery_app import DEFAULT_QUEUE_NAME, enqueue_sync_run, get_celery_app

sync_blueprint = Blueprint("sync", __name__, url_prefix="/sync")

# Request payloads may use the camelCase names of the settings surface.
_SETTING_ALIASES = {
    "batchSize": "batch_size",
    "autoSync": "auto_sync",
    "fullSync": "full_sync",
    "retryAttempts": "retry_attempts",
    "retryDelay": "retry_delay",
}


def _json_error(message: str, status: HTTPStatus):
    return jsonify({"error": message}), status


def _ensure_sync_enabled_api():
    if not is_sync_enabled(current_app):
        return _json_error("Sync is disabled.", HTTPStatus.NOT_FOUND)
    return None


def _tracked(endpoint: str):
    """Gate on the sync flag and record request latency under ``endpoint``."""

    def decorator(view):
        @wraps(view)
        def wrapper(*args, **kwargs):
            start_time = time.perf_counter()
            response = _ensure_sync_enabled_api() or view(*args, **kwargs)
            status_code = response[1] if isinstance(response, tuple) else HTTPStatus.OK
            status = "success" if int(status_code) < 400 else ("error" if int(status_code) >= 500 else "invalid_request")
            SyncMonitoring.record_request(
                endpoint=endpoint, duration_seconds=time.perf_counter() - start_time, status=status
            )
            return response

        return wrapper

    return decorator


def _split_csv(value: str | None):
    if value in (None, ""):
        return ()
    return tuple(token.strip() for token in value.split(",") if token.strip())


def _parse_bool_arg(value, *, name: str) -> bool | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return value
    normalized = str(value).strip().lower()
    if normalized in ("1", "true", "yes", "y", "on"):
        return True
    if normalized in ("0", "false", "no", "n", "off"):
        return False
    raise ValueError(f"'{name}' must be a boolean.")


def _request_json() -> dict:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValueError("Request body must be a JSON object.")
    return payload


@sync_blueprint.get("/health")
def sync_healthcheck():
    """
    Lightweight health endpoint proving the sync blueprint mounted correctly.
    """
    state = current_app.extensions.get("sync", {})
    return (
        jsonify(
            {
                "status": "ok",
                "enabled": state.get("enabled", False),
                "entities": list(get_sync_entities(current_app)),
                "adapter": state.get("adapter_readiness", {}),
                "worker_enabled": state.get("worker_enabled", False),
            }
        ),
        HTTPStatus.OK,
    )


@sync_blueprint.get("/worker_health")
def sync_worker_health():
    """
    Validate sync worker availability via the heartbeat task.
    """
    state = current_app.extensions.get("sync", {})
    enabled = state.get("enabled", False)
    worker_enabled = state.get("worker_enabled", False)
    timeout_seconds = float(request.args.get("timeout", 5))

    payload = {
        "sync_enabled": enabled,
        "worker_enabled": worker_enabled,
        "queue": DEFAULT_QUEUE_NAME,
        "timeout_seconds": timeout_seconds,
    }

    if not enabled:
        payload["status"] = "disabled"
        return jsonify(payload), 200

    if not worker_enabled:
        payload["status"] = "disabled"
        payload["message"] = "Worker flag disabled; start the worker or set SYNC_WORKER_ENABLED=true."
        return jsonify(payload), 200

    celery_app = get_celery_app(current_app)
    if celery_app is None:
        payload["status"] = "error"
        payload["error"] = "celery_app_unavailable"
        return jsonify(payload), 500

    task = celery_app.tasks.get("sync.healthcheck")
    if task is None:
        payload["status"] = "error"
        payload["error"] = "heartbeat_task_missing"
        return jsonify(payload), 500

    result = task.apply_async()
    try:
        payload["status"] = "ok"
        payload["heartbeat"] = result.get(timeout=timeout_seconds)
        return jsonify(payload), 200
    except CeleryTimeoutError:
        payload["status"] = "timeout"
        return jsonify(payload), 504
    except Exception as exc:  # pragma: no cover - defensive logging
        current_app.logger.exception("Sync worker health check failed.", exc_info=exc)
        payload["status"] = "error"
        payload["error"] = str(exc)
        return jsonify(payload), 500


@sync_blueprint.post("")
@_tracked("trigger")
def sync_trigger():
    """Create one run per requested entity and queue it on the worker."""
    try:
        descriptors = resolve_entities(request.args.get("entity", "all"), allowed=get_sync_entities(current_app))
        full_sync = _parse_bool_arg(request.args.get("fullSync"), name="fullSync")
    except ValueError as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)

    orchestrator = SyncOrchestrator(config=current_app.config, logger=current_app.logger)
    try:
        options = orchestrator.resolve_options(
            full_sync=full_sync,
            time_range_preset=request.args.get("timeRange") or None,
        )
    except ValueError as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)

    celery_app = get_celery_app(current_app)
    if celery_app is None:
        return _json_error("Sync worker is not configured.", HTTPStatus.SERVICE_UNAVAILABLE)

    runs = []
    for descriptor in descriptors:
        run = orchestrator.create_run(descriptor.name, options, triggered_by="api")
        try:
            task_id = enqueue_sync_run(celery_app, run.id)
        except Exception as exc:
            current_app.logger.exception(
                "Failed to enqueue sync run",
                extra={"sync_run_id": run.id, "sync_entity": descriptor.name},
            )
            return _json_error(f"Failed to enqueue sync run {run.id}: {exc}", HTTPStatus.SERVICE_UNAVAILABLE)
        SyncMonitoring.record_run_triggered(descriptor.name)
        runs.append({"run_id": run.id, "entity": descriptor.name, "task_id": task_id})
        current_app.logger.info(
            "Sync run queued via API",
            extra={"sync_run_id": run.id, "sync_entity": descriptor.name, "sync_task_id": task_id},
        )

    return (
        jsonify(
            {
                "status": "accepted",
                "run_id": runs[0]["run_id"] if runs else None,
                "run_ids": [item["run_id"] for item in runs],
                "runs": runs,
                "options": options.to_dict(),
            }
        ),
        HTTPStatus.ACCEPTED,
    )


@sync_blueprint.get("/status")
@_tracked("status")
def sync_status():
    return jsonify(SyncRunService().status_snapshot()), HTTPStatus.OK


@sync_blueprint.get("/runs")
@_tracked("runs_list")
def sync_runs_list():
    raw = request.args
    try:
        filters = RunFilters.coerce(
            page=raw.get("page"),
            page_size=raw.get("page_size") or raw.get("per_page"),
            sort=raw.get("sort"),
            statuses=_split_csv(raw.get("status")),
            entities=_split_csv(raw.get("entity")),
        )
    except ValueError as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)

    result = SyncRunService().list_runs(filters)
    SyncMonitoring.record_runs_list(status="success", result_count=len(result.items))
    payload = result.to_dict()
    payload["filters"] = {
        "page": filters.page,
        "page_size": filters.page_size,
        "sort": filters.sort,
        "statuses": [status.value for status in filters.statuses],
        "entities": list(filters.entities),
    }
    return jsonify(payload), HTTPStatus.OK


@sync_blueprint.get("/runs/<int:run_id>")
@_tracked("runs_detail")
def sync_run_detail(run_id: int):
    try:
        payload = SyncRunService().get_run_detail(run_id)
    except NoResultFound:
        return _json_error(f"Sync run {run_id} not found.", HTTPStatus.NOT_FOUND)
    return jsonify(payload), HTTPStatus.OK


@sync_blueprint.get("/runs/<int:run_id>/validation")
@_tracked("runs_validation")
def sync_run_validation(run_id: int):
    try:
        payload = SyncRunService().get_validation(run_id)
    except NoResultFound:
        return _json_error(f"Sync run {run_id} not found.", HTTPStatus.NOT_FOUND)
    return jsonify(payload), HTTPStatus.OK


@sync_blueprint.post("/runs/<int:run_id>/cancel")
@_tracked("runs_cancel")
def sync_run_cancel(run_id: int):
    service = SyncRunService()
    try:
        run = service.request_cancel(run_id)
    except NoResultFound:
        return _json_error(f"Sync run {run_id} not found.", HTTPStatus.NOT_FOUND)
    except RunNotCancellable as exc:
        return _json_error(str(exc), HTTPStatus.CONFLICT)
    current_app.logger.info(
        "Sync run cancellation requested",
        extra={"sync_run_id": run.id, "sync_entity": run.entity_type, "sync_status": run.status.value},
    )
    # Running runs stop at their next page or record boundary.
    status = HTTPStatus.OK if run.status == SyncRunStatus.CANCELLED else HTTPStatus.ACCEPTED
    return jsonify(service.serialize(run)), status


@sync_blueprint.post("/staging/reset")
@_tracked("staging_reset")
def sync_staging_reset():
    try:
        body = _request_json()
        descriptor = get_entity(body.get("entity") or "")
        force = bool(_parse_bool_arg(body.get("force"), name="force"))
        raw_ids = body.get("ids")
        if raw_ids is not None and not isinstance(raw_ids, list):
            raise ValueError("'ids' must be a list of staging record ids.")
        ids = [int(value) for value in raw_ids] if raw_ids is not None else None
    except (TypeError, ValueError) as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)

    summary = reset_failed_records(
        descriptor.name,
        ids=ids,
        force=force,
        max_attempts=int(current_app.config.get("SYNC_MAX_PROCESSING_ATTEMPTS", 3)),
        stale_after=timedelta(seconds=int(current_app.config.get("SYNC_PROCESSING_STALE_SECONDS", 600))),
    )
    current_app.logger.info(
        "Failed staging records reset",
        extra={"sync_entity": descriptor.name, "sync_reset": summary.to_dict()},
    )
    return jsonify(summary.to_dict()), HTTPStatus.OK


@sync_blueprint.post("/reconcile-contacts")
@_tracked("reconcile_contacts")
def sync_reconcile_contacts():
    try:
        body = _request_json()
        stale_days = int(body.get("stale_days", DEFAULT_STALE_DAYS))
        if stale_days < 0:
            raise ValueError("'stale_days' must be zero or greater.")
    except (TypeError, ValueError) as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)
    return jsonify(reconcile_contacts(stale_days=stale_days)), HTTPStatus.OK


def _config_payload():
    return {
        "settings": resolve_settings(current_app.config).to_dict(),
        "defaults": SyncSettings.from_config(current_app.config).to_dict(),
        "overrides": load_overrides(),
    }


@sync_blueprint.get("/config")
@_tracked("config_get")
def sync_config_get():
    return jsonify(_config_payload()), HTTPStatus.OK


@sync_blueprint.put("/config")
@_tracked("config_put")
def sync_config_put():
    try:
        body = _request_json()
        values = {_SETTING_ALIASES.get(key, key): value for key, value in body.items()}
        update_settings(values, current_app.config)
    except (SyncConfigError, ValueError) as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)
    current_app.logger.info("Sync settings updated", extra={"sync_settings": sorted(values)})
    return jsonify(_config_payload()), HTTPStatus.OK


@sync_blueprint.get("/alerts")
@_tracked("alerts_list")
def sync_alerts_list():
    try:
        filters = AlertFilters.coerce(
            statuses=_split_csv(request.args.get("status")),
            severities=_split_csv(request.args.get("severity")),
        )
    except ValueError as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)
    service = AlertService()
    return (
        jsonify(
            {
                "alerts": [service.serialize(alert) for alert in service.list_alerts(filters)],
                "summary": service.summary(),
            }
        ),
        HTTPStatus.OK,
    )


@sync_blueprint.post("/alerts/<int:alert_id>/acknowledge")
@_tracked("alerts_acknowledge")
def sync_alert_acknowledge(alert_id: int):
    service = AlertService()
    try:
        alert = service.acknowledge(alert_id)
    except NoResultFound:
        return _json_error(f"Alert {alert_id} not found.", HTTPStatus.NOT_FOUND)
    except ValueError as exc:
        return _json_error(str(exc), HTTPStatus.CONFLICT)
    return jsonify(service.serialize(alert)), HTTPStatus.OK


@sync_blueprint.post("/alerts/<int:alert_id>/resolve")
@_tracked("alerts_resolve")
def sync_alert_resolve(alert_id: int):
    service = AlertService()
    try:
        alert = service.resolve(alert_id)
    except NoResultFound:
        return _json_error(f"Alert {alert_id} not found.", HTTPStatus.NOT_FOUND)
    return jsonify(service.serialize(alert)), HTTPStatus.OK
