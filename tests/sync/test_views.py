from __future__ import annotations

from datetime import timedelta
from unittest.mock import Mock

import pytest

from chatsync.models import db
from chatsync.models.base import utcnow
from chatsync.models.chat import Contact, ContactSyncSource
from chatsync.models.sync.schema import AlertSeverity, RawContact, StagingProcessingStatus, SyncRun, SyncRunStatus
from chatsync.sync.pipeline.alerts import AlertService
from chatsync.sync.pipeline.staging import mark_failed, mark_processing


@pytest.fixture
def fake_celery(monkeypatch):
    celery_app = Mock()
    celery_app.send_task.side_effect = lambda *args, **kwargs: Mock(id=f"celery-task-{kwargs['kwargs']['run_id']}")
    monkeypatch.setattr("chatsync.sync.views.get_celery_app", lambda app: celery_app)
    return celery_app


def _add_run(entity="chats", status=SyncRunStatus.COMPLETED, **fields):
    run = SyncRun(entity_type=entity, status=status, **fields)
    db.session.add(run)
    db.session.commit()
    return run


def test_sync_health_reports_state(sync_app, client):
    response = client.get("/sync/health")

    assert response.status_code == 200
    payload = response.get_json()
    assert payload["status"] == "ok"
    assert payload["enabled"] is True
    assert set(payload["entities"]) == {"contacts", "chats"}
    assert payload["adapter"]["name"] == "b2chat"


def test_worker_health_reports_disabled_worker(sync_app, client):
    response = client.get("/sync/worker_health")

    assert response.status_code == 200
    payload = response.get_json()
    assert payload["status"] == "disabled"
    assert "SYNC_WORKER_ENABLED" in payload["message"]


def test_trigger_queues_one_run_per_entity(sync_app, client, fake_celery):
    response = client.post("/sync?entity=all&fullSync=true")

    assert response.status_code == 202
    payload = response.get_json()
    assert payload["status"] == "accepted"
    assert len(payload["run_ids"]) == 2
    assert {item["entity"] for item in payload["runs"]} == {"contacts", "chats"}
    assert payload["options"]["full_sync"] is True
    assert fake_celery.send_task.call_count == 2

    db.session.expire_all()
    runs = SyncRun.query.order_by(SyncRun.id).all()
    assert [run.status for run in runs] == [SyncRunStatus.PENDING, SyncRunStatus.PENDING]
    assert [run.task_id for run in runs] == [f"celery-task-{run.id}" for run in runs]
    assert {run.triggered_by for run in runs} == {"api"}


def test_trigger_single_entity_with_time_range(sync_app, client, fake_celery):
    response = client.post("/sync?entity=chats&timeRange=7d")

    assert response.status_code == 202
    payload = response.get_json()
    assert [item["entity"] for item in payload["runs"]] == ["chats"]
    assert payload["options"]["time_range_preset"] == "7d"
    _, kwargs = fake_celery.send_task.call_args
    assert kwargs["kwargs"] == {"run_id": payload["run_id"], "transform_only": False}


@pytest.mark.parametrize(
    "query, message",
    [
        ("entity=agents", "Unknown entity type"),
        ("entity=chats&fullSync=maybe", "fullSync"),
        ("entity=chats&timeRange=5y", "Unknown time range preset"),
    ],
)
def test_trigger_rejects_bad_arguments(sync_app, client, fake_celery, query, message):
    response = client.post(f"/sync?{query}")

    assert response.status_code == 400
    assert message in response.get_json()["error"]
    assert SyncRun.query.count() == 0
    fake_celery.send_task.assert_not_called()


def test_trigger_rejects_entity_outside_configuration(sync_app, client, fake_celery, monkeypatch):
    monkeypatch.setitem(sync_app.config, "SYNC_ENTITIES", ("contacts",))

    response = client.post("/sync?entity=chats")

    assert response.status_code == 400
    assert "not enabled" in response.get_json()["error"]


def test_trigger_without_worker_returns_503(sync_app, client, monkeypatch):
    monkeypatch.setattr("chatsync.sync.views.get_celery_app", lambda app: None)

    response = client.post("/sync?entity=chats")

    assert response.status_code == 503
    assert SyncRun.query.count() == 0


def test_enqueue_failure_marks_run_failed(sync_app, client, fake_celery):
    fake_celery.send_task.side_effect = RuntimeError("broker down")

    response = client.post("/sync?entity=contacts")

    assert response.status_code == 503
    assert "broker down" in response.get_json()["error"]
    db.session.expire_all()
    run = SyncRun.query.one()
    assert run.status == SyncRunStatus.FAILED
    assert run.error_summary == "Failed to enqueue: broker down"


def test_runs_list_filters_and_paginates(sync_app, client):
    for _ in range(3):
        _add_run("chats", SyncRunStatus.COMPLETED)
    _add_run("contacts", SyncRunStatus.FAILED, error_summary="boom")

    response = client.get("/sync/runs?entity=chats&page_size=2")
    payload = response.get_json()

    assert response.status_code == 200
    assert payload["total"] == 3
    assert payload["total_pages"] == 2
    assert len(payload["items"]) == 2
    assert payload["items"][0]["id"] > payload["items"][1]["id"]
    assert payload["filters"]["entities"] == ["chats"]

    failed = client.get("/sync/runs?status=failed").get_json()
    assert [item["entity_type"] for item in failed["items"]] == ["contacts"]
    assert failed["items"][0]["error_summary"] == "boom"


@pytest.mark.parametrize("query", ["sort=bogus", "status=exploded", "entity=agents", "page=abc"])
def test_runs_list_rejects_bad_filters(sync_app, client, query):
    response = client.get(f"/sync/runs?{query}")

    assert response.status_code == 400
    assert "error" in response.get_json()


def test_run_detail_includes_stage_logs(orchestrator_factory, api_session, client, make_contact):
    api_session.queue_export("contacts", [make_contact("c-1")])
    run = orchestrator_factory().run_sync("contacts")

    response = client.get(f"/sync/runs/{run.id}")

    assert response.status_code == 200
    payload = response.get_json()
    assert payload["status"] == "completed"
    assert payload["counts"]["transform"]["created"] == 1
    assert len(payload["extract_logs"]) == 1
    assert payload["extract_logs"][0]["records_fetched"] == 1
    assert len(payload["transform_logs"]) == 1
    assert payload["duration_seconds"] is not None


def test_run_detail_and_validation_return_404_for_unknown_run(sync_app, client):
    assert client.get("/sync/runs/999").status_code == 404
    assert client.get("/sync/runs/999/validation").status_code == 404


def test_run_validation_lists_issues(orchestrator_factory, stage_records, make_chat, client):
    stage_records("chats", [make_chat(closed_at=None)])
    run = orchestrator_factory().run_transform_only("chats")

    response = client.get(f"/sync/runs/{run.id}/validation")

    assert response.status_code == 200
    payload = response.get_json()
    assert payload["has_errors"] is True
    assert payload["counts"]["error"] >= 1
    names = {issue["validation_name"] for issue in payload["issues"]}
    assert "chat_status_closed_without_timestamp" in names


def test_status_snapshot(sync_app, client, stage_records, make_contact):
    stage_records("contacts", [make_contact("c-1")])
    _add_run("contacts")

    payload = client.get("/sync/status").get_json()

    assert payload["entities"]["contacts"]["pending"] == 1
    assert payload["latest_runs"]["contacts"]["entity_type"] == "contacts"
    assert payload["latest_runs"]["chats"] is None


def test_staging_reset_endpoint(sync_app, client, stage_records, make_contact):
    stage_records("contacts", [make_contact("c-1")])
    record = RawContact.query.one()
    mark_processing(record)
    mark_failed(record, "boom")
    db.session.commit()

    response = client.post("/sync/staging/reset", json={"entity": "contacts"})

    assert response.status_code == 200
    assert response.get_json() == {"entity_type": "contacts", "reset": 1, "abandoned": 0, "reclaimed": 0}
    db.session.expire_all()
    assert RawContact.query.one().processing_status == StagingProcessingStatus.PENDING


@pytest.mark.parametrize(
    "body",
    [
        {"entity": "agents"},
        {},
        {"entity": "contacts", "ids": "1,2"},
        {"entity": "contacts", "force": "perhaps"},
    ],
)
def test_staging_reset_rejects_bad_payloads(sync_app, client, body):
    response = client.post("/sync/staging/reset", json=body)

    assert response.status_code == 400


def test_cancel_endpoint_handles_each_run_state(sync_app, client):
    pending = _add_run("contacts", SyncRunStatus.PENDING)
    running = _add_run("chats", SyncRunStatus.RUNNING)
    finished = _add_run("chats", SyncRunStatus.COMPLETED)

    response = client.post(f"/sync/runs/{pending.id}/cancel")
    assert response.status_code == 200
    assert response.get_json()["status"] == "cancelled"

    response = client.post(f"/sync/runs/{running.id}/cancel")
    assert response.status_code == 202
    payload = response.get_json()
    assert payload["status"] == "running"
    assert payload["cancel_requested_at"] is not None

    response = client.post(f"/sync/runs/{finished.id}/cancel")
    assert response.status_code == 409
    assert "already finished" in response.get_json()["error"]

    assert client.post("/sync/runs/999/cancel").status_code == 404


def test_reconcile_contacts_lists_stale_stubs(sync_app, client):
    now = utcnow()
    db.session.add_all(
        [
            Contact(
                b2chat_id="c-old",
                full_name="Old Stub",
                sync_source=ContactSyncSource.CHAT_EMBEDDED,
                needs_full_sync=True,
                last_sync_at=now - timedelta(days=10),
            ),
            Contact(
                b2chat_id="c-new",
                sync_source=ContactSyncSource.CHAT_EMBEDDED,
                needs_full_sync=True,
                last_sync_at=now - timedelta(days=1),
            ),
            Contact(
                b2chat_id="c-full",
                sync_source=ContactSyncSource.CONTACTS_API,
                needs_full_sync=False,
                last_sync_at=now - timedelta(days=30),
            ),
        ]
    )
    db.session.commit()
    counts_before = Contact.query.count()

    response = client.post("/sync/reconcile-contacts")

    assert response.status_code == 200
    payload = response.get_json()
    assert payload["summary"] == {
        "total_contacts": 3,
        "stubs": 2,
        "full_contacts": 1,
        "upgraded": 0,
        "needs_full_sync": 2,
        "stale_stubs": 1,
    }
    assert [stub["b2chat_id"] for stub in payload["stale_stubs"]] == ["c-old"]
    assert payload["stale_stubs"][0]["days_since_last_sync"] == 10
    assert len(payload["recommendations"]) == 2
    assert Contact.query.count() == counts_before

    assert client.post("/sync/reconcile-contacts", json={"stale_days": 0}).get_json()["summary"]["stale_stubs"] == 2
    assert client.post("/sync/reconcile-contacts", json={"stale_days": "soon"}).status_code == 400


def test_reconcile_contacts_with_nothing_stale(sync_app, client):
    payload = client.post("/sync/reconcile-contacts").get_json()

    assert payload["summary"]["total_contacts"] == 0
    assert payload["stale_stubs"] == []
    assert payload["recommendations"] == ["No action needed; all contacts are up to date."]


def test_config_round_trip(sync_app, client):
    defaults = client.get("/sync/config").get_json()
    assert defaults["overrides"] == {}

    response = client.put("/sync/config", json={"batchSize": 500, "autoSync": False, "retry_delay": 2.5})

    assert response.status_code == 200
    payload = response.get_json()
    assert payload["settings"]["batch_size"] == 500
    assert payload["settings"]["auto_sync"] is False
    assert payload["settings"]["retry_delay"] == 2.5
    assert payload["overrides"] == {"batch_size": 500, "auto_sync": False, "retry_delay": 2.5}
    assert payload["defaults"] == defaults["defaults"]


@pytest.mark.parametrize(
    "body, message",
    [
        ({"batchSize": 5}, "at least"),
        ({"interval": 5000}, "at most"),
        ({"retryAttempts": "lots"}, "must be a number"),
        ({"autoSync": "sometimes"}, "must be a boolean"),
        ({"colour": "blue"}, "Unknown sync settings"),
        (["batchSize"], "JSON object"),
    ],
)
def test_config_rejects_invalid_values(sync_app, client, body, message):
    response = client.put("/sync/config", json=body)

    assert response.status_code == 400
    assert message in response.get_json()["error"]
    assert client.get("/sync/config").get_json()["overrides"] == {}


def test_alert_lifecycle_endpoints(sync_app, client):
    service = AlertService()
    alert = service.raise_alert("sync_failed:chats", title="Sync failed for chats", severity=AlertSeverity.HIGH)
    service.raise_alert("validation_errors:chats", title="Validation errors", severity=AlertSeverity.MEDIUM)

    listing = client.get("/sync/alerts?severity=high").get_json()
    assert [item["alert_key"] for item in listing["alerts"]] == ["sync_failed:chats"]
    assert listing["summary"]["open_total"] == 2

    acknowledged = client.post(f"/sync/alerts/{alert.id}/acknowledge")
    assert acknowledged.status_code == 200
    assert acknowledged.get_json()["status"] == "acknowledged"

    resolved = client.post(f"/sync/alerts/{alert.id}/resolve")
    assert resolved.status_code == 200
    assert resolved.get_json()["status"] == "resolved"

    conflict = client.post(f"/sync/alerts/{alert.id}/acknowledge")
    assert conflict.status_code == 409

    active = client.get("/sync/alerts?status=active").get_json()
    assert [item["alert_key"] for item in active["alerts"]] == ["validation_errors:chats"]


def test_alert_endpoints_handle_missing_and_bad_filters(sync_app, client):
    assert client.post("/sync/alerts/404/acknowledge").status_code == 404
    assert client.post("/sync/alerts/404/resolve").status_code == 404
    assert client.get("/sync/alerts?severity=apocalyptic").status_code == 400


def test_endpoints_return_404_when_sync_disabled(sync_app, client, monkeypatch):
    monkeypatch.setitem(sync_app.config, "SYNC_ENABLED", False)

    for path in ("/sync/status", "/sync/runs", "/sync/config", "/sync/alerts"):
        response = client.get(path)
        assert response.status_code == 404, path
        assert response.get_json()["error"] == "Sync is disabled."
    assert client.post("/sync?entity=chats").status_code == 404
