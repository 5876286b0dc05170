from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import NoResultFound

from chatsync.models import db
from chatsync.models.sync.schema import SyncRun, SyncRunStatus
from chatsync.sync.errors import RunNotCancellable
from chatsync.sync.pipeline.run_service import MAX_PAGE_SIZE, RunFilters, SyncRunService


def _run(entity="chats", status=SyncRunStatus.COMPLETED, **fields):
    run = SyncRun(entity_type=entity, status=status, **fields)
    db.session.add(run)
    db.session.commit()
    return run


def test_filters_coerce_user_input():
    filters = RunFilters.coerce(page="2", page_size="500", sort="started_at", statuses=["FAILED", ""], entities=["Chats"])

    assert filters.page == 2
    assert filters.page_size == MAX_PAGE_SIZE
    assert filters.sort == "started_at"
    assert filters.statuses == (SyncRunStatus.FAILED,)
    assert filters.entities == ("chats",)


@pytest.mark.parametrize(
    "kwargs, message",
    [
        ({"sort": "-colour"}, "Unsupported sort field"),
        ({"statuses": ["exploded"]}, "Unsupported status filter"),
        ({"entities": ["agents"]}, "Unsupported entity filter"),
        ({"page": "-1"}, "positive integer"),
    ],
)
def test_filters_reject_invalid_input(kwargs, message):
    with pytest.raises(ValueError, match=message):
        RunFilters.coerce(**kwargs)


def test_list_runs_sorts_and_paginates(app):
    runs = [_run("chats") for _ in range(3)]

    result = SyncRunService().list_runs(RunFilters(page=2, page_size=2, sort="id"))

    assert result.total == 3
    assert result.total_pages == 2
    assert [item["id"] for item in result.items] == [runs[2].id]


def test_list_runs_empty(app):
    result = SyncRunService().list_runs(RunFilters.coerce(statuses=["running"]))

    assert result.to_dict() == {"items": [], "total": 0, "page": 1, "page_size": 25, "total_pages": 0}


def test_serialize_reports_duration(app):
    started = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
    run = _run(
        started_at=started,
        finished_at=started + timedelta(seconds=90),
        counts_json={"transform": {"created": 4}},
    )

    payload = SyncRunService.serialize(run)

    assert payload["status"] == "completed"
    assert payload["duration_seconds"] == 90.0
    assert payload["counts"] == {"transform": {"created": 4}}
    assert payload["started_at"].startswith("2024-06-01T12:00:00")


def test_get_run_raises_for_unknown_id(app):
    with pytest.raises(NoResultFound):
        SyncRunService().get_run(12345)


def test_latest_runs_and_active_count(app):
    _run("contacts", SyncRunStatus.FAILED)
    newest = _run("contacts", SyncRunStatus.RUNNING)
    _run("chats", SyncRunStatus.PENDING)

    service = SyncRunService()
    latest = service.latest_runs()

    assert latest["contacts"]["id"] == newest.id
    assert latest["chats"]["status"] == "pending"
    assert service.active_run_count() == 2


def test_cancelling_a_pending_run_finishes_it(app):
    run = _run(status=SyncRunStatus.PENDING)

    service = SyncRunService()
    cancelled = service.request_cancel(run.id)

    assert cancelled.status == SyncRunStatus.CANCELLED
    assert cancelled.finished_at is not None
    assert cancelled.error_summary == "Cancelled by request."
    assert service.is_cancel_requested(run.id)


def test_cancelling_a_running_run_only_flags_it(app):
    run = _run(status=SyncRunStatus.RUNNING)

    service = SyncRunService()
    assert not service.is_cancel_requested(run.id)
    flagged = service.request_cancel(run.id)

    assert flagged.status == SyncRunStatus.RUNNING
    assert flagged.finished_at is None
    assert service.is_cancel_requested(run.id)
    assert service.serialize(flagged)["cancel_requested_at"] is not None


@pytest.mark.parametrize("status", [SyncRunStatus.COMPLETED, SyncRunStatus.FAILED, SyncRunStatus.CANCELLED])
def test_finished_runs_cannot_be_cancelled(app, status):
    run = _run(status=status)

    with pytest.raises(RunNotCancellable, match="already finished"):
        SyncRunService().request_cancel(run.id)
