"""
Extraction stage: pull export pages for one entity type into staging.

Every page is committed before the next request, so a failure part-way
through leaves earlier pages staged for a later transform-only run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping

from sqlalchemy import select
from sqlalchemy.orm import Session

from chatsync.models.base import db
from chatsync.models.sync.schema import (
    ExtractLog,
    ExtractOperation,
    ExtractStatus,
    SyncRun,
    SyncWatermark,
)
from chatsync.sync.adapters.b2chat.extractor import B2ChatExtractor
from chatsync.sync.errors import ExtractionError, SyncCancelled
from chatsync.sync.registry import EntityDescriptor
from chatsync.sync.utils import ensure_utc, isoformat

from .staging import stage_page

TIME_RANGE_PRESETS: Mapping[str, int | None] = {
    "1d": 1,
    "7d": 7,
    "30d": 30,
    "90d": 90,
    "full": None,
}


@dataclass
class ExtractSummary:
    """Counters describing a single extraction pass."""

    sync_id: str
    entity_type: str
    operation: str
    pages: int = 0
    records_fetched: int = 0
    records_staged: int = 0
    records_skipped_duplicate: int = 0
    api_calls: int = 0
    estimated_total: int | None = None
    truncated: bool = False
    date_range_from: datetime | None = None
    date_range_to: datetime | None = None
    page_numbers: list[int] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "sync_id": self.sync_id,
            "operation": self.operation,
            "pages": self.pages,
            "records_fetched": self.records_fetched,
            "records_staged": self.records_staged,
            "records_skipped_duplicate": self.records_skipped_duplicate,
            "api_calls": self.api_calls,
            "estimated_total": self.estimated_total,
            "truncated": self.truncated,
            "date_range_from": self.date_range_from.isoformat() if self.date_range_from else None,
            "date_range_to": self.date_range_to.isoformat() if self.date_range_to else None,
        }


def build_sync_id(entity_type: str, now: datetime) -> str:
    return f"extract_{entity_type}_{now.strftime('%Y%m%d%H%M%S%f')}"


def get_watermark(entity_type: str, session: Session | None = None) -> SyncWatermark | None:
    session = session or db.session
    return session.scalar(select(SyncWatermark).where(SyncWatermark.entity_type == entity_type))


def resolve_date_window(
    *,
    full_sync: bool,
    time_range_preset: str | None,
    watermark: SyncWatermark | None,
    now: datetime,
) -> tuple[datetime | None, datetime | None]:
    """
    Return the ``(date_from, date_to)`` window for an extraction.

    A preset always wins. Without one, full syncs are unbounded and
    incremental syncs run from the watermark to ``now``.
    """

    if time_range_preset:
        if time_range_preset not in TIME_RANGE_PRESETS:
            raise ValueError(
                f"Unknown time range preset '{time_range_preset}'. "
                f"Expected one of: {', '.join(TIME_RANGE_PRESETS)}."
            )
        days = TIME_RANGE_PRESETS[time_range_preset]
        if days is None:
            return None, None
        return now - timedelta(days=days), now
    if full_sync:
        return None, None
    last_sync = ensure_utc(watermark.last_sync_timestamp) if watermark else None
    return last_sync, now


def advance_watermark(
    entity_type: str,
    *,
    timestamp: datetime,
    run: SyncRun | None,
    sync_id: str,
    session: Session | None = None,
) -> SyncWatermark:
    session = session or db.session
    watermark = get_watermark(entity_type, session)
    if watermark is None:
        watermark = SyncWatermark(entity_type=entity_type)
        session.add(watermark)
    watermark.last_sync_timestamp = timestamp
    watermark.last_run_id = run.id if run is not None else None
    watermark.metadata_json = {"sync_id": sync_id}
    return watermark


def hold_watermark(
    entity_type: str,
    *,
    resume_offset: int,
    date_from: datetime | None,
    date_to: datetime | None,
    run: SyncRun | None,
    sync_id: str,
    session: Session | None = None,
) -> SyncWatermark:
    """
    Keep the watermark where it is and record where a truncated window stopped.

    The next incremental run picks the window up again at ``resume_offset``.
    """

    session = session or db.session
    watermark = get_watermark(entity_type, session)
    if watermark is None:
        watermark = SyncWatermark(entity_type=entity_type)
        session.add(watermark)
    watermark.last_run_id = run.id if run is not None else None
    watermark.metadata_json = {
        "sync_id": sync_id,
        "resume": {
            "offset": resume_offset,
            "date_from": isoformat(date_from),
            "date_to": isoformat(date_to),
        },
    }
    return watermark


def pending_resume(watermark: SyncWatermark | None) -> tuple[datetime | None, datetime | None, int] | None:
    """Return ``(date_from, date_to, offset)`` left behind by a truncated window."""

    resume = (watermark.metadata_json or {}).get("resume") if watermark is not None else None
    if not resume:
        return None
    date_from = datetime.fromisoformat(resume["date_from"]) if resume.get("date_from") else None
    date_to = datetime.fromisoformat(resume["date_to"]) if resume.get("date_to") else None
    return date_from, date_to, int(resume.get("offset") or 0)


def extract_entity(
    run: SyncRun | None,
    descriptor: EntityDescriptor,
    extractor: B2ChatExtractor,
    *,
    full_sync: bool = False,
    time_range_preset: str | None = None,
    max_pages: int | None = None,
    session: Session | None = None,
    now: datetime | None = None,
    logger: logging.Logger | None = None,
    should_cancel: Callable[[], bool] | None = None,
) -> ExtractSummary:
    """
    Stage every export page for ``descriptor`` and advance its watermark.

    Raises ``ExtractionError`` when the API gives up; the ExtractLog is marked
    failed and already staged pages are left in place. ``should_cancel`` is
    polled after each staged page and raises ``SyncCancelled`` when it
    returns true. The watermark stays put when the walk stopped at
    ``max_pages`` with more data still available; the next incremental run
    resumes that window where this one stopped.
    """

    session = session or db.session
    logger = logger or logging.getLogger(__name__)
    now = now or datetime.now(timezone.utc)
    operation = ExtractOperation.FULL if full_sync else ExtractOperation.INCREMENTAL
    watermark = get_watermark(descriptor.name, session)
    date_from, date_to = resolve_date_window(
        full_sync=full_sync,
        time_range_preset=time_range_preset,
        watermark=watermark,
        now=now,
    )
    start_offset = 0
    resume = pending_resume(watermark) if not full_sync and not time_range_preset else None
    if resume is not None:
        date_from, date_to, start_offset = resume

    sync_id = build_sync_id(descriptor.name, now)
    extract_log = ExtractLog(
        sync_id=sync_id,
        run_id=run.id if run is not None else None,
        entity_type=descriptor.name,
        operation=operation,
        status=ExtractStatus.RUNNING,
        started_at=now,
        batch_size=extractor.page_size,
        date_range_from=date_from,
        date_range_to=date_to,
        time_range_preset=time_range_preset,
        metadata_json={"max_pages": max_pages, "start_offset": start_offset},
    )
    session.add(extract_log)
    session.commit()
    log_id = extract_log.id

    summary = ExtractSummary(
        sync_id=sync_id,
        entity_type=descriptor.name,
        operation=operation.value,
        date_range_from=date_from,
        date_range_to=date_to,
    )
    calls_before = extractor.api_call_count
    try:
        for page in extractor.extract_pages(
            descriptor,
            date_from=date_from,
            date_to=date_to,
            max_pages=max_pages,
            start_offset=start_offset,
        ):
            page_summary = stage_page(
                run=run,
                sync_id=sync_id,
                descriptor=descriptor,
                page=page,
                session=session,
            )
            summary.pages += 1
            summary.page_numbers.append(page.page)
            summary.records_fetched += page_summary.records_received
            summary.records_staged += page_summary.records_staged
            summary.records_skipped_duplicate += page_summary.records_skipped_duplicate
            summary.api_calls = extractor.api_call_count - calls_before
            if page.total is not None:
                summary.estimated_total = page.total

            extract_log.api_call_count = summary.api_calls
            extract_log.current_page = page.page
            extract_log.records_fetched = summary.records_fetched
            extract_log.estimated_total = summary.estimated_total
            if summary.estimated_total is not None:
                page_size = max(extractor.page_size, 1)
                extract_log.total_pages = max(-(-summary.estimated_total // page_size), page.page)
            session.commit()
            logger.debug(
                "Staged export page",
                extra={
                    "sync_entity": descriptor.name,
                    "sync_id": sync_id,
                    "sync_page": page.page,
                    "sync_page_records": page_summary.records_received,
                },
            )
            if should_cancel is not None and should_cancel():
                raise SyncCancelled(f"Extraction for {descriptor.name} cancelled after {summary.pages} page(s).")
    except SyncCancelled:
        session.rollback()
        cancelled_log = session.get(ExtractLog, log_id)
        if cancelled_log is not None:
            cancelled_log.status = ExtractStatus.CANCELLED
            cancelled_log.completed_at = datetime.now(timezone.utc)
            cancelled_log.api_call_count = extractor.api_call_count - calls_before
            session.commit()
        logger.info(
            "Extraction cancelled",
            extra={"sync_entity": descriptor.name, "sync_id": sync_id, "sync_pages_staged": summary.pages},
        )
        raise
    except Exception as exc:
        session.rollback()
        failed_log = session.get(ExtractLog, log_id)
        if failed_log is not None:
            failed_log.status = ExtractStatus.FAILED
            failed_log.error_message = str(exc)
            failed_log.completed_at = datetime.now(timezone.utc)
            failed_log.api_call_count = extractor.api_call_count - calls_before
            session.commit()
        logger.error(
            "Extraction failed",
            extra={
                "sync_entity": descriptor.name,
                "sync_id": sync_id,
                "sync_pages_staged": summary.pages,
                "sync_error": str(exc),
            },
        )
        raise ExtractionError(f"Extraction for {descriptor.name} failed after {summary.pages} page(s): {exc}") from exc

    summary.api_calls = extractor.api_call_count - calls_before
    extract_log.api_call_count = summary.api_calls
    extract_log.status = ExtractStatus.COMPLETED
    extract_log.completed_at = datetime.now(timezone.utc)
    if extract_log.total_pages is None:
        extract_log.total_pages = summary.pages
    summary.truncated = extractor.truncated
    extract_log.metadata_json = {**(extract_log.metadata_json or {}), "truncated": summary.truncated}
    if summary.truncated:
        resume_offset = start_offset + summary.pages * extractor.page_size
        hold_watermark(
            descriptor.name,
            resume_offset=resume_offset,
            date_from=date_from,
            date_to=date_to,
            run=run,
            sync_id=sync_id,
            session=session,
        )
        logger.warning(
            "Extraction stopped at the page limit; watermark held for the next run",
            extra={
                "sync_entity": descriptor.name,
                "sync_id": sync_id,
                "sync_pages": summary.pages,
                "sync_resume_offset": resume_offset,
                "sync_estimated_total": summary.estimated_total,
            },
        )
    else:
        advance_watermark(
            descriptor.name,
            timestamp=date_to or now,
            run=run,
            sync_id=sync_id,
            session=session,
        )
    session.commit()
    logger.info(
        "Extraction completed",
        extra={
            "sync_entity": descriptor.name,
            "sync_id": sync_id,
            "sync_pages": summary.pages,
            "sync_records_fetched": summary.records_fetched,
        },
    )
    return summary
