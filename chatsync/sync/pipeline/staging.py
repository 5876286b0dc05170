"""
Helpers for landing export pages in the raw staging tables and moving staged
records through their processing states.

Staged rows are never deleted. ``raw_data`` is written once; afterwards only
the processing columns change, and only along
``pending -> processing -> completed|failed`` plus the explicit
``failed -> pending`` reset.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Iterable, Mapping, Sequence

from flask import current_app, has_app_context
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from chatsync.models.base import db, utcnow
from chatsync.models.sync.schema import StagingProcessingStatus, SyncRun
from chatsync.sync.adapters.b2chat.extractor import B2ChatPage
from chatsync.sync.contracts.payloads import CONTACT_ID_KEYS
from chatsync.sync.errors import StagingTransitionError
from chatsync.sync.metrics import record_page_staged
from chatsync.sync.registry import EntityDescriptor, get_entity, get_entity_registry

ALLOWED_TRANSITIONS: Mapping[StagingProcessingStatus, frozenset[StagingProcessingStatus]] = {
    StagingProcessingStatus.PENDING: frozenset({StagingProcessingStatus.PROCESSING}),
    StagingProcessingStatus.PROCESSING: frozenset(
        {StagingProcessingStatus.COMPLETED, StagingProcessingStatus.FAILED}
    ),
    StagingProcessingStatus.COMPLETED: frozenset(),
    StagingProcessingStatus.FAILED: frozenset({StagingProcessingStatus.PENDING}),
}

_EXTERNAL_ID_KEYS: Mapping[str, Sequence[str]] = {
    "contacts": CONTACT_ID_KEYS,
    "chats": ("chat_id",),
}


def compute_checksum(payload: Mapping[str, Any]) -> str:
    """Return a stable checksum for a payload to support idempotency."""

    serialized = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


def resolve_external_id(entity_type: str, raw: Mapping[str, Any], offset: int) -> str:
    """
    Return the source identifier for ``raw``.

    Records without one are still staged under a positional id so the
    transformer can mark them failed instead of the page being lost.
    """

    for key in _EXTERNAL_ID_KEYS.get(entity_type, ()):
        value = raw.get(key) if isinstance(raw, Mapping) else None
        if value is None:
            continue
        text = str(value).strip()
        if text:
            return text
    return f"offset-{offset}"


@dataclass
class StagePageSummary:
    """Outcome of staging one export page."""

    page: int
    records_received: int
    records_staged: int
    records_skipped_duplicate: int


def stage_page(
    *,
    run: SyncRun | None,
    sync_id: str,
    descriptor: EntityDescriptor,
    page: B2ChatPage,
    session: Session | None = None,
) -> StagePageSummary:
    """
    Persist one page of raw records as pending and commit.

    Records whose ``(sync_id, external_id)`` is already staged, or repeats
    within the page, are skipped.
    """

    session = session or db.session
    model = descriptor.staging_model
    candidates: list[tuple[str, Mapping[str, Any], int]] = []
    for index, raw in enumerate(page.records):
        offset = page.offset + index
        candidates.append((resolve_external_id(descriptor.name, raw, offset), raw, offset))

    existing_ids = set(
        session.scalars(
            select(model.external_id).where(
                model.sync_id == sync_id,
                model.external_id.in_([external_id for external_id, _, _ in candidates]),
            )
        )
    )

    staged = 0
    skipped = 0
    for external_id, raw, _offset in candidates:
        if external_id in existing_ids:
            skipped += 1
            continue
        existing_ids.add(external_id)
        session.add(
            model(
                run_id=run.id if run is not None else None,
                sync_id=sync_id,
                external_id=external_id,
                raw_data=dict(raw) if isinstance(raw, Mapping) else {"value": raw},
                checksum=compute_checksum(raw if isinstance(raw, Mapping) else {"value": raw}),
                api_page=page.page,
                api_offset=page.offset,
                processing_status=StagingProcessingStatus.PENDING,
                processing_attempt=0,
            )
        )
        staged += 1

    session.commit()
    record_page_staged(descriptor.name)
    if skipped and has_app_context():
        current_app.logger.info(
            "Skipped duplicate staged records",
            extra={"sync_entity": descriptor.name, "sync_id": sync_id, "sync_duplicates": skipped},
        )
    return StagePageSummary(
        page=page.page,
        records_received=len(page.records),
        records_staged=staged,
        records_skipped_duplicate=skipped,
    )


# Transitions --------------------------------------------------------------------


def _transition(record, new_status: StagingProcessingStatus) -> None:
    current = record.processing_status
    if new_status not in ALLOWED_TRANSITIONS.get(current, frozenset()):
        raise StagingTransitionError(
            f"{type(record).__name__} {record.id} cannot move from {current.value} to {new_status.value}."
        )
    record.processing_status = new_status


def mark_processing(record) -> None:
    _transition(record, StagingProcessingStatus.PROCESSING)


def mark_completed(record) -> None:
    _transition(record, StagingProcessingStatus.COMPLETED)
    record.processed_at = utcnow()
    record.processing_error = None


def mark_failed(record, error: str) -> None:
    _transition(record, StagingProcessingStatus.FAILED)
    record.processing_attempt = (record.processing_attempt or 0) + 1
    record.processing_error = error[:2000] if error else None
    record.processed_at = utcnow()


def reset_to_pending(record) -> None:
    _transition(record, StagingProcessingStatus.PENDING)
    record.processing_error = None
    record.processed_at = None


# Failed-record policy -----------------------------------------------------------

INTERRUPTED_ERROR = "Interrupted before the transform finished."


@dataclass
class ResetSummary:
    entity_type: str
    reset: int = 0
    abandoned: int = 0
    reclaimed: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "reset": self.reset,
            "abandoned": self.abandoned,
            "reclaimed": self.reclaimed,
        }


def reclaim_interrupted_records(
    entity_type: str,
    *,
    stale_after: timedelta,
    ids: Iterable[int] | None = None,
    session: Session | None = None,
    now: datetime | None = None,
) -> int:
    """
    Fail records left in ``processing`` by a worker that never finished them.

    A record counts as interrupted once it has not been touched for
    ``stale_after``. Reclaimed records go through ``mark_failed`` so the
    attempt counter and the retry policy apply to them like any other failure.
    """

    session = session or db.session
    model = get_entity(entity_type).staging_model
    cutoff = (now or utcnow()) - stale_after
    query = select(model).where(
        model.processing_status == StagingProcessingStatus.PROCESSING,
        model.updated_at <= cutoff,
    )
    if ids is not None:
        id_list = [int(value) for value in ids]
        if not id_list:
            return 0
        query = query.where(model.id.in_(id_list))

    reclaimed = 0
    for record in session.scalars(query.order_by(model.id)):
        mark_failed(record, INTERRUPTED_ERROR)
        reclaimed += 1
    if reclaimed:
        session.commit()
        if has_app_context():
            current_app.logger.warning(
                "Reclaimed staged records stuck in processing",
                extra={"sync_entity": entity_type, "sync_reclaimed": reclaimed},
            )
    return reclaimed


def reset_failed_records(
    entity_type: str,
    *,
    ids: Iterable[int] | None = None,
    force: bool = False,
    max_attempts: int | None = None,
    sync_ids: Iterable[str] | None = None,
    stale_after: timedelta | None = None,
    session: Session | None = None,
) -> ResetSummary:
    """
    Move failed records back to pending.

    Records whose ``processing_attempt`` has reached ``max_attempts`` are
    abandoned and only reset when ``force`` is true. With ``stale_after``,
    records interrupted mid-transform are reclaimed as failed first.
    """

    session = session or db.session
    model = get_entity(entity_type).staging_model
    summary = ResetSummary(entity_type=entity_type)
    id_list = [int(value) for value in ids] if ids is not None else None
    if id_list is not None and not id_list:
        return summary
    if stale_after is not None:
        summary.reclaimed = reclaim_interrupted_records(
            entity_type, stale_after=stale_after, ids=id_list, session=session
        )

    query = select(model).where(model.processing_status == StagingProcessingStatus.FAILED)
    if id_list is not None:
        query = query.where(model.id.in_(id_list))
    if sync_ids is not None:
        query = query.where(model.sync_id.in_(list(sync_ids)))

    for record in session.scalars(query.order_by(model.id)):
        if not force and max_attempts is not None and record.processing_attempt >= max_attempts:
            summary.abandoned += 1
            continue
        reset_to_pending(record)
        summary.reset += 1
    session.commit()
    return summary


def apply_failed_record_policy(
    entity_type: str,
    *,
    auto_retry: bool,
    max_attempts: int,
    sync_ids: Iterable[str] | None = None,
    stale_after: timedelta | None = None,
    session: Session | None = None,
) -> ResetSummary:
    """
    Reclaim interrupted records, then reset retryable failures when
    auto-retry is enabled.

    Reclaiming is not scoped by ``sync_ids``: a record abandoned by an
    earlier crashed run belongs to no current extraction.
    """

    reclaimed = 0
    if stale_after is not None:
        reclaimed = reclaim_interrupted_records(entity_type, stale_after=stale_after, session=session)
    if not auto_retry:
        return ResetSummary(entity_type=entity_type, reclaimed=reclaimed)
    summary = reset_failed_records(
        entity_type,
        max_attempts=max_attempts,
        sync_ids=sync_ids,
        session=session,
    )
    summary.reclaimed = reclaimed
    return summary


def pending_count(entity_type: str, *, sync_ids: Iterable[str] | None = None, session: Session | None = None) -> int:
    session = session or db.session
    model = get_entity(entity_type).staging_model
    query = select(func.count(model.id)).where(model.processing_status == StagingProcessingStatus.PENDING)
    if sync_ids is not None:
        query = query.where(model.sync_id.in_(list(sync_ids)))
    return int(session.scalar(query) or 0)


def staging_status_counts(session: Session | None = None) -> dict[str, dict[str, int]]:
    """Return per-entity counts of staged records by processing status."""

    session = session or db.session
    counts: dict[str, dict[str, int]] = {}
    for name, descriptor in get_entity_registry().items():
        model = descriptor.staging_model
        entity_counts = {status.value: 0 for status in StagingProcessingStatus}
        rows = session.execute(
            select(model.processing_status, func.count(model.id)).group_by(model.processing_status)
        )
        for status, total in rows:
            key = status.value if isinstance(status, StagingProcessingStatus) else str(status)
            entity_counts[key] = int(total)
        entity_counts["total"] = sum(entity_counts[status.value] for status in StagingProcessingStatus)
        counts[name] = entity_counts
    return counts
