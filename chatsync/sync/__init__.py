"""
Sync feature package.

Provides conditional blueprint and CLI registration along with B2Chat adapter
readiness checks while remaining lightweight when sync is disabled.
"""

from __future__ import annotations

from typing import Any, Dict, Mapping, Tuple

from flask import Flask

from chatsync.utils.sync import get_sync_entities, is_sync_enabled

from .celery_app import ensure_celery_app, get_celery_app
from .cli import get_disabled_sync_group, sync_cli
from .metrics import record_b2chat_adapter_status, record_b2chat_auth_attempt
from .pipeline.run_service import RunFilters, SyncRunService
from .registry import resolve_entities
from .views import sync_blueprint

SYNC_EXTENSION_KEY = "sync"

__all__ = [
    "init_sync",
    "SYNC_EXTENSION_KEY",
    "get_celery_app",
    "SyncRunService",
    "RunFilters",
    "get_adapter_readiness",
    "refresh_adapter_readiness",
]


def _ensure_extension_state(app: Flask) -> dict:
    state = app.extensions.setdefault(
        SYNC_EXTENSION_KEY,
        {
            "enabled": False,
            "entities": (),
            "worker_enabled": False,
            "celery_app": None,
            "adapter_readiness": {},
        },
    )
    return state


def _compute_adapter_readiness(app: Flask, *, require_auth_ping: bool = False) -> Dict[str, Any]:
    from chatsync.sync.adapters.b2chat import check_b2chat_adapter_readiness

    readiness = check_b2chat_adapter_readiness(require_auth_ping=require_auth_ping)
    if require_auth_ping and readiness.auth_status in ("ok", "failed"):
        record_b2chat_auth_attempt("success" if readiness.auth_status == "ok" else "failure")
    record_b2chat_adapter_status(readiness.status == "ready")
    payload: Dict[str, Any] = {"name": "b2chat", "title": "B2Chat"}
    payload.update(readiness.as_dict())
    return payload


def _set_cli(app: Flask, enabled: bool) -> None:
    """Register the appropriate CLI group based on flag state."""
    # Avoid duplicate registrations when running tests
    command_name = sync_cli.name
    if command_name in app.cli.commands:
        app.cli.commands.pop(command_name)

    if enabled:
        app.cli.add_command(sync_cli)
    else:
        app.cli.add_command(get_disabled_sync_group())


def init_sync(app: Flask) -> None:
    """
    Conditionally mount the sync blueprint and CLI based on configuration.

    Records sync state inside ``app.extensions['sync']`` for reuse by the CLI,
    views and worker helpers.
    """
    enabled = is_sync_enabled(app)
    configured_entities: Tuple[str, ...] = get_sync_entities(app)

    state = _ensure_extension_state(app)
    state.update(
        {
            "enabled": enabled,
            "worker_enabled": bool(app.config.get("SYNC_WORKER_ENABLED", False)),
        }
    )

    if not enabled:
        record_b2chat_adapter_status(False)
        state["entities"] = ()
        _set_cli(app, enabled=False)
        app.logger.info("Sync disabled via SYNC_ENABLED flag; skipping registration.")
        return

    state["entities"] = tuple(descriptor.name for descriptor in resolve_entities("all", allowed=configured_entities))
    ensure_celery_app(app, state)

    readiness = _compute_adapter_readiness(app)
    state["adapter_readiness"] = readiness
    if readiness.get("status") != "ready":
        messages = list(readiness.get("messages") or ())
        app.logger.warning(
            "B2Chat adapter not ready (status=%s). %s",
            readiness.get("status"),
            "; ".join(messages) if messages else "No additional context provided.",
            extra={
                "sync_adapter_status": readiness.get("status"),
                "sync_adapter_messages": messages,
                "sync_adapter_missing_env": readiness.get("missing_env_vars"),
            },
        )

    if sync_blueprint.name not in app.blueprints and not getattr(app, "_got_first_request", False):
        app.register_blueprint(sync_blueprint)
    elif sync_blueprint.name not in app.blueprints:
        app.logger.warning("Sync blueprint registration skipped because the app has already handled its first request.")
    _set_cli(app, enabled=True)

    app.logger.info("Sync enabled for entities: %s", ", ".join(state["entities"]) or "none")


def get_adapter_readiness(app: Flask) -> Mapping[str, Any]:
    """
    Return cached B2Chat adapter readiness information for the sync extension.
    """
    state = _ensure_extension_state(app)
    return dict(state.get("adapter_readiness", {}))


def refresh_adapter_readiness(app: Flask, *, require_auth_ping: bool = False) -> Mapping[str, Any]:
    """
    Recompute adapter readiness and persist the result on the sync extension state.
    """
    state = _ensure_extension_state(app)
    readiness = _compute_adapter_readiness(app, require_auth_ping=require_auth_ping)
    state["adapter_readiness"] = readiness
    return dict(readiness)
