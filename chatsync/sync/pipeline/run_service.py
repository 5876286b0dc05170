"""
Service helpers for sync run querying, filtering, and serialization.

The JSON API and the CLI status command consume these helpers for paginated
listings, run detail payloads and per-entity status snapshots, keeping the
SQLAlchemy logic in one place.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable

from sqlalchemy import and_, func, select
from sqlalchemy.exc import NoResultFound
from sqlalchemy.orm import Session

from chatsync.models.base import db
from chatsync.models.sync.schema import (
    ExtractLog,
    SyncRun,
    SyncRunStatus,
    SyncValidationResult,
    TransformLog,
    ValidationSeverity,
)
from chatsync.sync.errors import RunNotCancellable
from chatsync.sync.registry import get_entity_registry
from chatsync.sync.utils import ensure_utc, isoformat

from .staging import staging_status_counts

DEFAULT_PAGE = 1
DEFAULT_PAGE_SIZE = 25
MAX_PAGE_SIZE = 100
DEFAULT_SORT = "-id"

TERMINAL_STATUSES = (SyncRunStatus.COMPLETED, SyncRunStatus.FAILED, SyncRunStatus.CANCELLED)
CANCELLED_SUMMARY = "Cancelled by request."

VALID_SORT_FIELDS = {
    "id": SyncRun.id,
    "entity_type": SyncRun.entity_type,
    "status": SyncRun.status,
    "started_at": SyncRun.started_at,
    "finished_at": SyncRun.finished_at,
    "created_at": SyncRun.created_at,
}


@dataclass(frozen=True)
class RunFilters:
    """Canonical set of filter options applied to sync run queries."""

    page: int = DEFAULT_PAGE
    page_size: int = DEFAULT_PAGE_SIZE
    sort: str = DEFAULT_SORT
    statuses: tuple[SyncRunStatus, ...] = field(default_factory=tuple)
    entities: tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def coerce(
        cls,
        *,
        page: int | str | None = None,
        page_size: int | str | None = None,
        sort: str | None = None,
        statuses: Iterable[str] | None = None,
        entities: Iterable[str] | None = None,
    ) -> "RunFilters":
        """
        Coerce mixed user input into a validated ``RunFilters`` instance.
        """

        resolved_page = _coerce_positive_int(page, fallback=DEFAULT_PAGE)
        resolved_size = min(_coerce_positive_int(page_size, fallback=DEFAULT_PAGE_SIZE), MAX_PAGE_SIZE)

        resolved_sort = sort or DEFAULT_SORT
        if resolved_sort.lstrip("-") not in VALID_SORT_FIELDS:
            raise ValueError(f"Unsupported sort field '{resolved_sort.lstrip('-')}'.")

        resolved_statuses = tuple(_coerce_status(value) for value in (statuses or ()) if value)

        registry = get_entity_registry()
        resolved_entities: list[str] = []
        for value in entities or ():
            if not value:
                continue
            normalized = value.strip().lower()
            if normalized not in registry:
                raise ValueError(f"Unsupported entity filter '{value}'.")
            resolved_entities.append(normalized)

        return cls(
            page=resolved_page,
            page_size=resolved_size,
            sort=resolved_sort,
            statuses=resolved_statuses,
            entities=tuple(sorted(set(resolved_entities))),
        )


@dataclass(slots=True)
class RunListResult:
    """Paginated result set for sync runs."""

    items: list[dict[str, Any]]
    total: int
    page: int
    page_size: int
    total_pages: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "items": self.items,
            "total": self.total,
            "page": self.page,
            "page_size": self.page_size,
            "total_pages": self.total_pages,
        }


class SyncRunService:
    """Facade for querying sync runs with consistent filtering semantics."""

    def __init__(self, session: Session | None = None) -> None:
        self.session: Session = session or db.session

    # ---------------------------------------------------------------------
    # Public API
    # ---------------------------------------------------------------------

    def list_runs(self, filters: RunFilters | None = None) -> RunListResult:
        filters = filters or RunFilters()
        query = self._apply_filters(self.session.query(SyncRun), filters)

        total = query.count()
        if total == 0:
            return RunListResult(items=[], total=0, page=filters.page, page_size=filters.page_size, total_pages=0)

        runs = (
            query.order_by(_resolve_sort_expression(filters.sort))
            .offset((filters.page - 1) * filters.page_size)
            .limit(filters.page_size)
            .all()
        )
        total_pages = (total + filters.page_size - 1) // filters.page_size
        return RunListResult(
            items=[self.serialize(run) for run in runs],
            total=total,
            page=filters.page,
            page_size=filters.page_size,
            total_pages=total_pages,
        )

    def get_run(self, run_id: int) -> SyncRun:
        run = self.session.get(SyncRun, run_id)
        if run is None:
            raise NoResultFound(f"Sync run {run_id} not found.")
        return run

    def get_run_detail(self, run_id: int) -> dict[str, Any]:
        run = self.get_run(run_id)
        payload = self.serialize(run)
        payload["extract_logs"] = [_serialize_extract_log(log) for log in run.extract_logs]
        payload["transform_logs"] = [_serialize_transform_log(log) for log in run.transform_logs]
        return payload

    def get_validation(self, run_id: int) -> dict[str, Any]:
        """Return the persisted validation issues of a run with severity counts."""

        run = self.get_run(run_id)
        results = (
            self.session.query(SyncValidationResult)
            .filter(SyncValidationResult.run_id == run.id)
            .order_by(SyncValidationResult.id.asc())
            .all()
        )
        counts = {severity.value: 0 for severity in ValidationSeverity}
        for result in results:
            counts[result.severity.value] += 1
        validation_ids = sorted({result.validation_id for result in results})
        return {
            "run_id": run.id,
            "entity_type": run.entity_type,
            "validation_ids": validation_ids,
            "counts": counts,
            "has_errors": counts[ValidationSeverity.ERROR.value] > 0,
            "issues": [
                {
                    "id": result.id,
                    "validation_id": result.validation_id,
                    "transform_id": result.transform_id,
                    "validation_name": result.validation_name,
                    "severity": result.severity.value,
                    "affected_records": result.affected_records,
                    "message": result.message,
                    "details": result.details_json or {},
                    "created_at": isoformat(result.created_at),
                }
                for result in results
            ],
        }

    def latest_runs(self) -> dict[str, dict[str, Any] | None]:
        """Return the most recent run per registered entity type."""

        latest: dict[str, dict[str, Any] | None] = {}
        for name in get_entity_registry():
            run = (
                self.session.query(SyncRun)
                .filter(SyncRun.entity_type == name)
                .order_by(SyncRun.id.desc())
                .first()
            )
            latest[name] = self.serialize(run) if run is not None else None
        return latest

    def status_snapshot(self) -> dict[str, Any]:
        return {"entities": staging_status_counts(self.session), "latest_runs": self.latest_runs()}

    def active_run_count(self) -> int:
        return int(
            self.session.query(func.count(SyncRun.id))
            .filter(SyncRun.status.in_((SyncRunStatus.PENDING, SyncRunStatus.RUNNING)))
            .scalar()
            or 0
        )

    def request_cancel(self, run_id: int) -> SyncRun:
        """
        Ask a run to stop.

        A pending run is cancelled on the spot. A running run is only flagged;
        the pipeline stops it at the next page or record boundary.
        """

        run = self.get_run(run_id)
        if run.status in TERMINAL_STATUSES:
            raise RunNotCancellable(f"Sync run {run.id} already finished with status {run.status.value}.")
        now = datetime.now(timezone.utc)
        if run.cancel_requested_at is None:
            run.cancel_requested_at = now
        if run.status == SyncRunStatus.PENDING:
            run.status = SyncRunStatus.CANCELLED
            run.finished_at = now
            run.error_summary = CANCELLED_SUMMARY
        self.session.commit()
        return run

    def is_cancel_requested(self, run_id: int) -> bool:
        requested = self.session.scalar(select(SyncRun.cancel_requested_at).where(SyncRun.id == run_id))
        return requested is not None

    @staticmethod
    def serialize(run: SyncRun) -> dict[str, Any]:
        duration_seconds: float | None = None
        started_at = ensure_utc(run.started_at)
        if started_at:
            finished = ensure_utc(run.finished_at) or datetime.now(timezone.utc)
            duration_seconds = round(max((finished - started_at).total_seconds(), 0.0), 3)
        return {
            "id": run.id,
            "entity_type": run.entity_type,
            "status": run.status.value if isinstance(run.status, SyncRunStatus) else str(run.status),
            "full_sync": bool(run.full_sync),
            "triggered_by": run.triggered_by,
            "task_id": run.task_id,
            "options": run.options_json or {},
            "counts": run.counts_json or {},
            "metrics": run.metrics_json or {},
            "error_summary": run.error_summary,
            "cancel_requested_at": isoformat(run.cancel_requested_at),
            "started_at": isoformat(run.started_at),
            "finished_at": isoformat(run.finished_at),
            "created_at": isoformat(run.created_at),
            "duration_seconds": duration_seconds,
        }

    # ---------------------------------------------------------------------
    # Internal helpers
    # ---------------------------------------------------------------------

    def _apply_filters(self, query, filters: RunFilters):
        predicates = []
        if filters.statuses:
            predicates.append(SyncRun.status.in_(filters.statuses))
        if filters.entities:
            predicates.append(SyncRun.entity_type.in_(filters.entities))
        if predicates:
            query = query.filter(and_(*predicates))
        return query


# -------------------------------------------------------------------------
# Helper functions
# -------------------------------------------------------------------------


def _coerce_positive_int(candidate: int | str | None, *, fallback: int) -> int:
    if candidate in (None, ""):
        return fallback
    if isinstance(candidate, int):
        return max(1, candidate)
    if isinstance(candidate, str) and candidate.isdigit():
        return max(1, int(candidate))
    raise ValueError(f"Expected positive integer for pagination, received '{candidate}'.")


def _coerce_status(value: str | SyncRunStatus) -> SyncRunStatus:
    if isinstance(value, SyncRunStatus):
        return value
    try:
        return SyncRunStatus(str(value).strip().lower())
    except ValueError:
        raise ValueError(f"Unsupported status filter '{value}'.") from None


def _resolve_sort_expression(sort: str):
    expression = VALID_SORT_FIELDS.get(sort.lstrip("-"))
    if expression is None:
        raise ValueError(f"Unsupported sort field '{sort}'.")
    return expression.desc() if sort.startswith("-") else expression.asc()


def _serialize_extract_log(log: ExtractLog) -> dict[str, Any]:
    return {
        "sync_id": log.sync_id,
        "operation": log.operation.value,
        "status": log.status.value,
        "started_at": isoformat(log.started_at),
        "completed_at": isoformat(log.completed_at),
        "api_call_count": log.api_call_count,
        "records_fetched": log.records_fetched,
        "current_page": log.current_page,
        "total_pages": log.total_pages,
        "estimated_total": log.estimated_total,
        "date_range_from": isoformat(log.date_range_from),
        "date_range_to": isoformat(log.date_range_to),
        "time_range_preset": log.time_range_preset,
        "truncated": bool((log.metadata_json or {}).get("truncated")),
        "error_message": log.error_message,
    }


def _serialize_transform_log(log: TransformLog) -> dict[str, Any]:
    return {
        "transform_id": log.transform_id,
        "extract_sync_id": log.extract_sync_id,
        "status": log.status.value,
        "started_at": isoformat(log.started_at),
        "completed_at": isoformat(log.completed_at),
        "records_processed": log.records_processed,
        "records_created": log.records_created,
        "records_updated": log.records_updated,
        "records_skipped": log.records_skipped,
        "records_failed": log.records_failed,
        "changes_summary": log.changes_summary_json or {},
        "error_message": log.error_message,
    }


