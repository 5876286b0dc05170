from __future__ import annotations

from datetime import timedelta

import pytest

from chatsync.models import db
from chatsync.models.base import utcnow
from chatsync.models.sync.schema import RawChat, RawContact, StagingProcessingStatus
from chatsync.sync.errors import StagingTransitionError
from chatsync.sync.pipeline.staging import (
    INTERRUPTED_ERROR,
    apply_failed_record_policy,
    compute_checksum,
    mark_completed,
    mark_failed,
    mark_processing,
    pending_count,
    reclaim_interrupted_records,
    reset_failed_records,
    reset_to_pending,
    resolve_external_id,
    staging_status_counts,
)


def _fail(record, error="boom", times=1):
    for _ in range(times):
        if record.processing_status == StagingProcessingStatus.FAILED:
            reset_to_pending(record)
        mark_processing(record)
        mark_failed(record, error)
    db.session.commit()


def test_stage_page_records_pending_rows(stage_records, make_chat):
    summary = stage_records("chats", [make_chat("chat-1"), make_chat("chat-2")], sync_id="extract_chats_1")

    assert summary.records_received == 2
    assert summary.records_staged == 2
    rows = RawChat.query.order_by(RawChat.id).all()
    assert [row.external_id for row in rows] == ["chat-1", "chat-2"]
    assert rows[0].checksum == compute_checksum(make_chat("chat-1"))
    assert rows[0].processing_attempt == 0
    assert pending_count("chats") == 2
    assert pending_count("chats", sync_ids=["other"]) == 0


def test_same_record_in_two_extractions_is_staged_twice(stage_records, make_chat):
    stage_records("chats", [make_chat("chat-1")], sync_id="extract_a")
    stage_records("chats", [make_chat("chat-1")], sync_id="extract_b")

    assert RawChat.query.count() == 2


def test_records_without_identifier_get_positional_id():
    assert resolve_external_id("contacts", {"fullname": "x"}, 7) == "offset-7"
    assert resolve_external_id("contacts", {"mobile": " +57300 "}, 0) == "+57300"
    assert resolve_external_id("chats", {"chat_id": 42}, 0) == "42"


def test_checksum_ignores_key_order():
    assert compute_checksum({"a": 1, "b": 2}) == compute_checksum({"b": 2, "a": 1})
    assert compute_checksum({"a": 1}) != compute_checksum({"a": 2})


def test_transitions_follow_the_processing_lifecycle(stage_records, make_contact):
    stage_records("contacts", [make_contact("c-1")])
    record = RawContact.query.one()

    with pytest.raises(StagingTransitionError):
        mark_completed(record)

    mark_processing(record)
    mark_completed(record)
    assert record.processing_status == StagingProcessingStatus.COMPLETED
    assert record.processed_at is not None

    with pytest.raises(StagingTransitionError, match="completed"):
        mark_processing(record)
    with pytest.raises(StagingTransitionError):
        reset_to_pending(record)


def test_mark_failed_increments_attempts(stage_records, make_contact):
    stage_records("contacts", [make_contact("c-1")])
    record = RawContact.query.one()

    _fail(record, "PayloadError: bad", times=2)

    assert record.processing_status == StagingProcessingStatus.FAILED
    assert record.processing_attempt == 2
    assert record.processing_error == "PayloadError: bad"


def test_reset_failed_records_respects_attempt_limit(stage_records, make_contact):
    stage_records("contacts", [make_contact("c-1"), make_contact("c-2"), make_contact("c-3")])
    first, second, third = RawContact.query.order_by(RawContact.id).all()
    _fail(first, times=1)
    _fail(second, times=3)

    summary = reset_failed_records("contacts", max_attempts=3)

    assert summary.to_dict() == {"entity_type": "contacts", "reset": 1, "abandoned": 1, "reclaimed": 0}
    assert first.processing_status == StagingProcessingStatus.PENDING
    assert first.processing_error is None
    assert second.processing_status == StagingProcessingStatus.FAILED
    assert third.processing_status == StagingProcessingStatus.PENDING

    forced = reset_failed_records("contacts", max_attempts=3, force=True)
    assert forced.reset == 1
    assert second.processing_status == StagingProcessingStatus.PENDING
    assert second.processing_attempt == 3


def test_reset_failed_records_by_id(stage_records, make_contact):
    stage_records("contacts", [make_contact("c-1"), make_contact("c-2")])
    first, second = RawContact.query.order_by(RawContact.id).all()
    _fail(first)
    _fail(second)

    summary = reset_failed_records("contacts", ids=[second.id])

    assert summary.reset == 1
    assert first.processing_status == StagingProcessingStatus.FAILED
    assert second.processing_status == StagingProcessingStatus.PENDING
    assert reset_failed_records("contacts", ids=[]).reset == 0


def test_failed_record_policy_only_resets_when_enabled(stage_records, make_contact):
    stage_records("contacts", [make_contact("c-1")], sync_id="extract_1")
    record = RawContact.query.one()
    _fail(record)

    assert apply_failed_record_policy("contacts", auto_retry=False, max_attempts=3).reset == 0
    assert record.processing_status == StagingProcessingStatus.FAILED

    assert apply_failed_record_policy("contacts", auto_retry=True, max_attempts=3, sync_ids=["other"]).reset == 0
    assert apply_failed_record_policy("contacts", auto_retry=True, max_attempts=3, sync_ids=["extract_1"]).reset == 1
    assert record.processing_status == StagingProcessingStatus.PENDING


def test_staging_status_counts(stage_records, make_contact, make_chat):
    stage_records("contacts", [make_contact("c-1"), make_contact("c-2")])
    stage_records("chats", [make_chat("chat-1")])
    _fail(RawContact.query.order_by(RawContact.id).first())

    counts = staging_status_counts()

    assert counts["contacts"] == {"pending": 1, "processing": 0, "completed": 0, "failed": 1, "total": 2}
    assert counts["chats"]["pending"] == 1
    assert counts["chats"]["total"] == 1


def _stall(record, minutes=60):
    mark_processing(record)
    db.session.commit()
    record.updated_at = utcnow() - timedelta(minutes=minutes)
    db.session.commit()


def test_interrupted_processing_records_are_reclaimed_as_failed(stage_records, make_contact):
    stage_records("contacts", [make_contact("c-1"), make_contact("c-2")])
    stalled, active = RawContact.query.order_by(RawContact.id).all()
    _stall(stalled)
    mark_processing(active)
    db.session.commit()

    reclaimed = reclaim_interrupted_records("contacts", stale_after=timedelta(minutes=10))

    assert reclaimed == 1
    assert stalled.processing_status == StagingProcessingStatus.FAILED
    assert stalled.processing_attempt == 1
    assert stalled.processing_error == INTERRUPTED_ERROR
    assert active.processing_status == StagingProcessingStatus.PROCESSING


def test_reset_failed_records_picks_up_interrupted_records(stage_records, make_contact):
    stage_records("contacts", [make_contact("c-1")])
    record = RawContact.query.one()
    _stall(record)

    summary = reset_failed_records("contacts", max_attempts=3, stale_after=timedelta(minutes=10))

    assert summary.to_dict() == {"entity_type": "contacts", "reset": 1, "abandoned": 0, "reclaimed": 1}
    assert record.processing_status == StagingProcessingStatus.PENDING
    assert record.processing_attempt == 1


def test_failed_record_policy_reclaims_records_from_earlier_extractions(stage_records, make_contact):
    stage_records("contacts", [make_contact("c-1")], sync_id="extract_old")
    record = RawContact.query.one()
    _stall(record)

    summary = apply_failed_record_policy(
        "contacts",
        auto_retry=False,
        max_attempts=3,
        sync_ids=["extract_new"],
        stale_after=timedelta(minutes=10),
    )

    assert (summary.reclaimed, summary.reset) == (1, 0)
    assert record.processing_status == StagingProcessingStatus.FAILED
