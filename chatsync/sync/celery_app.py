"""
Celery configuration helpers for the sync worker.

Celery stays dormant until sync is enabled. The SQLite transport is the
default so local development and tests do not need Redis.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Mapping

from celery import Celery
from flask import Flask
from kombu import Queue

from chatsync.models.base import db
from chatsync.models.sync.schema import SyncRun, SyncRunStatus

DEFAULT_QUEUE_NAME = "sync"
DEFAULT_SQLITE_FILENAME = "celery.sqlite"
SCHEDULED_SYNC_TASK = "sync.pipeline.scheduled_sync"
RUN_SYNC_TASK = "sync.pipeline.run_sync"


def _configure_quiet_loggers(app: Flask) -> None:
    """
    Keep SQLAlchemy and Celery worker-state logging at WARNING during task runs.
    """
    if not app.config.get("SQLALCHEMY_ECHO", False):
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    logging.getLogger("celery.worker.strategy").setLevel(logging.WARNING)
    logging.getLogger("urllib3.connectionpool").setLevel(logging.WARNING)


def _normalize_sqlite_path(app: Flask) -> Path:
    """
    Determine the path backing the SQLite transport/result backend.

    ``CELERY_SQLITE_PATH`` overrides the default location inside the Flask
    instance folder. The parent directory is created eagerly.
    """
    configured = app.config.get("CELERY_SQLITE_PATH")
    if configured:
        sqlite_path = Path(configured)
        if not sqlite_path.is_absolute():
            sqlite_path = Path(app.instance_path) / sqlite_path
    else:
        sqlite_path = Path(app.instance_path) / DEFAULT_SQLITE_FILENAME

    sqlite_path.parent.mkdir(parents=True, exist_ok=True)
    return sqlite_path


def _determine_connection_urls(app: Flask) -> tuple[str, str]:
    """
    Resolve broker/result backend URLs, defaulting to SQLite transports.

    Returns:
        tuple[str, str]: (broker_url, result_backend)
    """
    broker_url = app.config.get("CELERY_BROKER_URL")
    result_backend = app.config.get("CELERY_RESULT_BACKEND")

    if broker_url and result_backend:
        return broker_url, result_backend

    # Celery expects forward slashes even on Windows.
    normalized = _normalize_sqlite_path(app).as_posix()
    return broker_url or f"sqla+sqlite:///{normalized}", result_backend or f"db+sqlite:///{normalized}"


def build_beat_schedule(config: Mapping[str, Any]) -> dict[str, Any]:
    """Return the periodic schedule; empty when automatic sync is off."""

    if not config.get("SYNC_AUTO_SYNC", True):
        return {}
    minutes = max(int(config.get("SYNC_INTERVAL_MINUTES", 15) or 15), 1)
    return {
        "sync-all-entities": {
            "task": SCHEDULED_SYNC_TASK,
            "schedule": timedelta(minutes=minutes),
        }
    }


def create_celery_app(app: Flask) -> Celery:
    """
    Create and configure a Celery instance bound to the given Flask app.

    Point ``CELERY_BROKER_URL``/``CELERY_RESULT_BACKEND`` at Redis or Postgres
    to move off the SQLite transport.
    """
    broker_url, result_backend = _determine_connection_urls(app)
    celery_app = Celery(
        app.import_name,
        broker=broker_url,
        backend=result_backend,
        include=("chatsync.sync.tasks",),
    )

    celery_app.conf.update(
        task_default_queue=DEFAULT_QUEUE_NAME,
        task_queues=[Queue(DEFAULT_QUEUE_NAME)],
        task_default_exchange=DEFAULT_QUEUE_NAME,
        task_default_routing_key=DEFAULT_QUEUE_NAME,
        task_acks_late=True,
        worker_prefetch_multiplier=1,
        task_track_started=True,
        result_extended=True,
        broker_connection_retry_on_startup=True,
        task_time_limit=app.config.get("SYNC_TASK_TIME_LIMIT", 60 * 60),
        task_soft_time_limit=app.config.get("SYNC_TASK_SOFT_TIME_LIMIT", 55 * 60),
        beat_schedule=build_beat_schedule(app.config),
        worker_log_format="[%(asctime)s: %(levelname)s/%(processName)s] %(message)s",
        worker_task_log_format="[%(asctime)s: %(levelname)s/%(processName)s][%(task_name)s(%(task_id)s)] %(message)s",
        worker_hijack_root_logger=False,
    )

    extra_conf: Mapping[str, Any] | str | None = app.config.get("CELERY_CONFIG")
    if isinstance(extra_conf, str):
        try:
            extra_conf = json.loads(extra_conf)
        except json.JSONDecodeError:
            app.logger.warning(
                "CELERY_CONFIG is not valid JSON; ignoring value.",
                exc_info=True,
            )
            extra_conf = None

    app.logger.info(
        "Sync Celery configuration resolved",
        extra={
            "sync_celery_extra_conf": extra_conf,
            "sync_celery_broker_url": broker_url,
            "sync_celery_result_backend": result_backend,
            "sync_worker_enabled": app.config.get("SYNC_WORKER_ENABLED"),
        },
    )

    if extra_conf:
        celery_app.conf.update(extra_conf)

    _configure_quiet_loggers(app)

    class FlaskContextTask(celery_app.Task):  # type: ignore[misc]
        """
        Run Celery tasks inside a Flask application context automatically.
        """

        def __call__(self, *args, **kwargs):
            with app.app_context():
                return super().__call__(*args, **kwargs)

    celery_app.Task = FlaskContextTask  # type: ignore[assignment]
    celery_app.loader.import_default_modules()
    return celery_app


def ensure_celery_app(app: Flask, state: dict[str, Any]) -> Celery:
    """
    Return (and cache) the Celery instance inside the sync extension state.
    """
    celery_app: Celery | None = state.get("celery_app")
    if celery_app is None:
        celery_app = create_celery_app(app)
        state["celery_app"] = celery_app
    return celery_app


def get_celery_app(app: Flask) -> Celery | None:
    """
    Fetch the Celery instance from the sync extension, initialising it if sync
    is enabled but the worker has not yet been configured.
    """
    state: dict[str, Any] | None = app.extensions.get("sync")  # type: ignore[arg-type]
    if not state:
        return None
    celery_app: Celery | None = state.get("celery_app")
    if celery_app is None and state.get("enabled"):
        celery_app = ensure_celery_app(app, state)
    return celery_app


def enqueue_sync_run(celery_app: Celery, run_id: int, *, transform_only: bool = False) -> str:
    """
    Queue ``sync.pipeline.run_sync`` for an existing run and return the task id.

    A run that cannot be queued is marked failed before the error propagates.
    """

    try:
        async_result = celery_app.send_task(
            RUN_SYNC_TASK,
            kwargs={"run_id": run_id, "transform_only": transform_only},
        )
    except Exception as exc:
        db.session.rollback()
        run = db.session.get(SyncRun, run_id)
        if run is not None:
            run.status = SyncRunStatus.FAILED
            run.error_summary = f"Failed to enqueue: {exc}"
            run.finished_at = datetime.now(timezone.utc)
            db.session.commit()
        raise

    run = db.session.get(SyncRun, run_id)
    if run is not None and run.task_id is None:
        run.task_id = async_result.id
        db.session.commit()
    return async_result.id
