import json
from datetime import timedelta
from unittest.mock import Mock, patch

from chatsync.models import db
from chatsync.models.base import utcnow
from chatsync.models.chat import Contact, ContactSyncSource
from chatsync.models.sync.schema import AlertSeverity, RawContact, StagingProcessingStatus, SyncRun, SyncRunStatus
from chatsync.sync.pipeline.alerts import AlertService
from chatsync.sync.pipeline.staging import mark_failed, mark_processing


def _fake_celery(task_id="celery-task-123"):
    async_result = Mock()
    async_result.id = task_id
    celery_app = Mock()
    celery_app.send_task.return_value = async_result
    return celery_app


def test_sync_group_lists_enabled_entities(sync_app, runner):
    result = runner.invoke(args=["sync"])

    assert result.exit_code == 0, result.output
    assert "Enabled sync entities:" in result.output
    assert "  - contacts" in result.output
    assert "  - chats" in result.output


def test_sync_run_cli_queues_by_default(sync_app, runner):
    celery_app = _fake_celery()

    with patch("chatsync.sync.cli._resolve_celery", return_value=celery_app):
        result = runner.invoke(args=["sync", "run", "--entity", "chats", "--full-sync"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output.strip())
    assert payload["status"] == "queued"
    assert [item["entity"] for item in payload["runs"]] == ["chats"]
    assert payload["runs"][0]["task_id"] == "celery-task-123"

    celery_app.send_task.assert_called_once()
    args, kwargs = celery_app.send_task.call_args
    assert args == ("sync.pipeline.run_sync",)
    assert kwargs["kwargs"]["run_id"] == payload["runs"][0]["run_id"]

    run = db.session.get(SyncRun, payload["runs"][0]["run_id"])
    assert run.status == SyncRunStatus.PENDING
    assert run.triggered_by == "cli"
    assert run.full_sync is True
    assert run.task_id == "celery-task-123"


def test_sync_run_cli_reports_enqueue_failure(sync_app, runner):
    celery_app = _fake_celery()
    celery_app.send_task.side_effect = RuntimeError("broker unavailable")

    with patch("chatsync.sync.cli._resolve_celery", return_value=celery_app):
        result = runner.invoke(args=["sync", "run", "--entity", "contacts"])

    assert result.exit_code != 0
    assert "Failed to enqueue sync run" in result.output
    db.session.expire_all()
    run = SyncRun.query.one()
    assert run.status == SyncRunStatus.FAILED
    assert "broker unavailable" in run.error_summary


def test_sync_run_cli_inline(sync_app, runner, orchestrator_factory, api_session, make_contact):
    api_session.queue_export("contacts", [make_contact("c-1")])

    with patch("chatsync.sync.cli._build_orchestrator", return_value=orchestrator_factory()):
        result = runner.invoke(args=["sync", "run", "--entity", "contacts", "--inline", "--full-sync"])

    assert result.exit_code == 0, result.output
    assert "(contacts) finished with status completed." in result.output
    assert "records_fetched : 1" in result.output
    assert "created         : 1" in result.output
    assert Contact.query.count() == 1


def test_sync_run_cli_inline_failure_exits_non_zero(sync_app, runner, orchestrator_factory, api_session):
    api_session.queue(status_code=400, text="bad request")

    with patch("chatsync.sync.cli._build_orchestrator", return_value=orchestrator_factory()):
        result = runner.invoke(args=["sync", "run", "--entity", "contacts", "--inline"])

    assert result.exit_code == 1
    assert "finished with status failed." in result.output
    assert "Sync run(s) failed" in result.output


def test_sync_run_cli_rejects_unknown_time_range(sync_app, runner):
    result = runner.invoke(args=["sync", "run", "--entity", "chats", "--time-range", "5y"])

    assert result.exit_code == 2
    assert SyncRun.query.count() == 0


def test_sync_transform_cli_processes_staged_records(sync_app, runner, orchestrator_factory, stage_records, make_contact):
    stage_records("contacts", [make_contact("c-1"), make_contact("c-2")])

    with patch("chatsync.sync.cli._build_orchestrator", return_value=orchestrator_factory()):
        result = runner.invoke(args=["sync", "transform", "--entity", "contacts"])

    assert result.exit_code == 0, result.output
    assert "processed       : 2" in result.output
    assert Contact.query.count() == 2
    assert SyncRun.query.one().triggered_by == "cli"


def test_sync_validate_cli_prints_report(sync_app, runner):
    db.session.add(Contact(b2chat_id="c-1", full_name="No Info"))
    db.session.commit()

    result = runner.invoke(args=["sync", "validate", "--entity", "contacts", "--transform-id", "transform_cli"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["transform_id"] == "transform_cli"
    assert payload["counts"]["warnings"] == 1
    assert [issue["validation_name"] for issue in payload["issues"]] == ["contact_missing_info"]


def test_sync_status_cli(sync_app, runner, stage_records, make_contact):
    stage_records("contacts", [make_contact("c-1")])

    result = runner.invoke(args=["sync", "status"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["entities"]["contacts"]["pending"] == 1
    assert payload["latest_runs"] == {"contacts": None, "chats": None}


def test_sync_reset_failed_cli(sync_app, runner, stage_records, make_contact):
    stage_records("contacts", [make_contact("c-1"), make_contact("c-2")])
    for record in RawContact.query.all():
        mark_processing(record)
        mark_failed(record, "boom")
    db.session.commit()
    target = RawContact.query.order_by(RawContact.id).first()

    result = runner.invoke(args=["sync", "reset-failed", "--entity", "contacts", "--id", str(target.id)])

    assert result.exit_code == 0, result.output
    assert json.loads(result.output) == {"entity_type": "contacts", "reset": 1, "abandoned": 0, "reclaimed": 0}
    db.session.expire_all()
    statuses = [record.processing_status for record in RawContact.query.order_by(RawContact.id)]
    assert statuses == [StagingProcessingStatus.PENDING, StagingProcessingStatus.FAILED]


def test_sync_cancel_cli(sync_app, runner):
    pending = SyncRun(entity_type="chats", status=SyncRunStatus.PENDING)
    running = SyncRun(entity_type="contacts", status=SyncRunStatus.RUNNING)
    db.session.add_all([pending, running])
    db.session.commit()

    result = runner.invoke(args=["sync", "cancel", "--id", str(pending.id)])
    assert result.exit_code == 0, result.output
    assert f"Run {pending.id} cancelled." in result.output

    result = runner.invoke(args=["sync", "cancel", "--id", str(running.id)])
    assert result.exit_code == 0, result.output
    assert "Cancellation requested" in result.output

    db.session.expire_all()
    assert db.session.get(SyncRun, pending.id).status == SyncRunStatus.CANCELLED
    assert db.session.get(SyncRun, running.id).cancel_requested_at is not None

    again = runner.invoke(args=["sync", "cancel", "--id", str(pending.id)])
    assert again.exit_code != 0
    assert "already finished" in again.output

    missing = runner.invoke(args=["sync", "cancel", "--id", "999"])
    assert missing.exit_code != 0
    assert "not found" in missing.output


def test_sync_reconcile_contacts_cli(sync_app, runner):
    db.session.add(
        Contact(
            b2chat_id="c-old",
            sync_source=ContactSyncSource.CHAT_EMBEDDED,
            needs_full_sync=True,
            last_sync_at=utcnow() - timedelta(days=3),
        )
    )
    db.session.commit()

    default = runner.invoke(args=["sync", "reconcile-contacts"])
    assert default.exit_code == 0, default.output
    assert json.loads(default.output)["summary"]["stale_stubs"] == 0

    result = runner.invoke(args=["sync", "reconcile-contacts", "--stale-days", "2"])
    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["summary"]["stubs"] == 1
    assert [stub["b2chat_id"] for stub in payload["stale_stubs"]] == ["c-old"]


def test_sync_alerts_cli(sync_app, runner):
    empty = runner.invoke(args=["sync", "alerts"])
    assert empty.exit_code == 0, empty.output
    assert "No alerts found." in empty.output

    alert = AlertService().raise_alert("sync_failed:chats", title="Sync failed for chats", severity=AlertSeverity.HIGH)

    result = runner.invoke(args=["sync", "alerts", "--ack", str(alert.id)])

    assert result.exit_code == 0, result.output
    assert f"[{alert.id}] HIGH" in result.output
    assert "acknowledged" in result.output
    assert "sync_failed:chats x1: Sync failed for chats" in result.output

    filtered = runner.invoke(args=["sync", "alerts", "--status", "resolved"])
    assert "No alerts found." in filtered.output


def test_sync_alerts_cli_rejects_bad_input(sync_app, runner):
    assert runner.invoke(args=["sync", "alerts", "--status", "exploded"]).exit_code == 1
    missing = runner.invoke(args=["sync", "alerts", "--resolve", "999"])
    assert missing.exit_code == 1
    assert "999" in missing.output


def test_sync_config_cli(sync_app, runner):
    result = runner.invoke(args=["sync", "config"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert set(payload) == {"interval", "batch_size", "auto_sync", "full_sync", "retry_attempts", "retry_delay"}
    assert payload["auto_sync"] is False
