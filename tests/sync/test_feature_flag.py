import json

from flask import Flask

from chatsync.sync import SYNC_EXTENSION_KEY, get_adapter_readiness, init_sync


def build_app(enabled=False, entities=("contacts", "chats"), **overrides):
    app = Flask(__name__)
    app.config.update(
        SECRET_KEY="test-secret",
        TESTING=True,
        SYNC_ENABLED=enabled,
        SYNC_ENTITIES=tuple(entities),
    )
    app.config.update(overrides)

    init_sync(app)
    return app


def test_sync_disabled_registers_stub_cli(monkeypatch, tmp_path):
    called = {"flag": False}

    def record_call(*args, **kwargs):
        called["flag"] = True
        return ()

    monkeypatch.setattr("chatsync.sync.resolve_entities", record_call)

    app = build_app(enabled=False)

    assert called["flag"] is False, "resolve_entities should not run when sync disabled"
    assert "sync" not in app.blueprints
    assert app.extensions[SYNC_EXTENSION_KEY]["entities"] == ()
    assert app.extensions[SYNC_EXTENSION_KEY]["celery_app"] is None

    runner = app.test_cli_runner()
    result = runner.invoke(args=["sync"])
    assert result.exit_code != 0
    assert "Sync commands are unavailable" in result.output


def test_sync_enabled_registers_blueprint_and_cli(monkeypatch, tmp_path):
    monkeypatch.setenv("B2CHAT_USERNAME", "sync-user")
    monkeypatch.setenv("B2CHAT_PASSWORD", "sync-pass")
    app = build_app(enabled=True, CELERY_SQLITE_PATH=str(tmp_path / "celery.sqlite"))

    assert "sync" in app.blueprints
    assert "sync.sync_healthcheck" in app.view_functions
    assert app.extensions[SYNC_EXTENSION_KEY]["celery_app"] is not None

    response = app.test_client().get("/sync/health")
    assert response.status_code == 200
    payload = json.loads(response.data)
    assert payload["enabled"] is True
    assert payload["entities"] == ["contacts", "chats"]
    assert payload["adapter"]["status"] == "ready"

    result = app.test_cli_runner().invoke(args=["sync"])
    assert result.exit_code == 0, result.output
    assert "Enabled sync entities:" in result.output


def test_missing_credentials_are_reported_not_fatal(monkeypatch, tmp_path):
    monkeypatch.delenv("B2CHAT_USERNAME", raising=False)
    monkeypatch.setenv("B2CHAT_PASSWORD", "sync-pass")

    app = build_app(enabled=True, CELERY_SQLITE_PATH=str(tmp_path / "celery.sqlite"))

    readiness = get_adapter_readiness(app)
    assert readiness["status"] == "missing-env"
    assert readiness["missing_env_vars"] == ["B2CHAT_USERNAME"]
    assert "sync" in app.blueprints


def test_entity_subset_is_recorded(tmp_path):
    app = build_app(enabled=True, entities=("chats",), CELERY_SQLITE_PATH=str(tmp_path / "celery.sqlite"))

    assert app.extensions[SYNC_EXTENSION_KEY]["entities"] == ("chats",)
