"""
Sync orchestration: extract, apply the failed-record policy, transform until
the run's staged records are drained, validate, then finalize the run.

A run asked to stop is checked between pages and between records and ends
as cancelled; whatever was staged or transformed before that is kept.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, fields
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping

from flask import current_app
from sqlalchemy.orm import Session

from chatsync.models.base import db
from chatsync.models.sync.schema import AlertSeverity, SyncRun, SyncRunStatus, ValidationSeverity
from chatsync.sync.adapters.b2chat.client import create_b2chat_client
from chatsync.sync.adapters.b2chat.extractor import B2ChatExtractor
from chatsync.sync.errors import SyncCancelled
from chatsync.sync.metrics import record_run_outcome
from chatsync.sync.registry import EntityDescriptor, get_entity
from chatsync.sync.settings import resolve_settings

from .alerts import AlertService, sync_failed_key, transform_iteration_limit_key, validation_errors_key
from .extract import TIME_RANGE_PRESETS, extract_entity
from .run_service import CANCELLED_SUMMARY, SyncRunService
from .staging import apply_failed_record_policy, pending_count
from .transform import SyncTransformer
from .validation import ValidationEngine, ValidationReport

DEFAULT_MAX_TRANSFORM_ITERATIONS = 50


@dataclass(frozen=True)
class SyncOptions:
    """Resolved options for one run; persisted on ``SyncRun.options_json``."""

    full_sync: bool = False
    batch_size: int = 1000
    retry_attempts: int = 3
    retry_delay: float = 1.0
    time_range_preset: str | None = None
    page_size: int = 100

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any] | None) -> "SyncOptions":
        payload = payload or {}
        known = {item.name for item in fields(cls)}
        return cls(**{key: value for key, value in payload.items() if key in known})


ExtractorFactory = Callable[[SyncOptions], B2ChatExtractor]


class SyncOrchestrator:
    """Drive one entity type through the full sync pipeline."""

    def __init__(
        self,
        *,
        session: Session | None = None,
        config: Mapping[str, Any] | None = None,
        extractor_factory: ExtractorFactory | None = None,
        transformer: SyncTransformer | None = None,
        validation_engine: ValidationEngine | None = None,
        alert_service: AlertService | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.session = session or db.session
        self.config = config if config is not None else current_app.config
        self.logger = logger or logging.getLogger(__name__)
        self.extractor_factory = extractor_factory or self._default_extractor_factory
        self.transformer = transformer or SyncTransformer(self.session, logger=self.logger)
        self.validation_engine = validation_engine or ValidationEngine.from_config(
            self.config, self.session, logger=self.logger
        )
        self.alerts = alert_service or AlertService(self.session)
        self.runs = SyncRunService(self.session)

    # Options and runs -----------------------------------------------------------

    def resolve_options(self, **overrides: Any) -> SyncOptions:
        """Merge effective settings with explicit per-run overrides."""

        settings = resolve_settings(self.config, self.session)
        values: dict[str, Any] = {
            "full_sync": settings.full_sync,
            "batch_size": settings.batch_size,
            "retry_attempts": settings.retry_attempts,
            "retry_delay": settings.retry_delay,
            "time_range_preset": None,
            "page_size": int(self.config.get("SYNC_PAGE_SIZE", 100)),
        }
        for key, value in overrides.items():
            if value is not None:
                values[key] = value
        preset = values.get("time_range_preset")
        if preset and preset not in TIME_RANGE_PRESETS:
            raise ValueError(
                f"Unknown time range preset '{preset}'. Expected one of: {', '.join(TIME_RANGE_PRESETS)}."
            )
        return SyncOptions(**values)

    def create_run(
        self,
        entity_type: str,
        options: SyncOptions,
        *,
        triggered_by: str = "api",
    ) -> SyncRun:
        descriptor = get_entity(entity_type)
        run = SyncRun(
            entity_type=descriptor.name,
            status=SyncRunStatus.PENDING,
            full_sync=options.full_sync,
            triggered_by=triggered_by,
            options_json=options.to_dict(),
        )
        self.session.add(run)
        self.session.commit()
        return run

    def _start_run(self, run: SyncRun, options: SyncOptions, task_id: str | None) -> None:
        run.status = SyncRunStatus.RUNNING
        run.started_at = datetime.now(timezone.utc)
        run.full_sync = options.full_sync
        run.options_json = options.to_dict()
        if task_id:
            run.task_id = task_id
        self.session.commit()

    # Pipeline -------------------------------------------------------------------

    def _cancel_check(self, run: SyncRun) -> Callable[[], bool]:
        run_id = run.id
        return lambda: self.runs.is_cancel_requested(run_id)

    def run_sync(
        self,
        entity_type: str,
        options: SyncOptions | None = None,
        run: SyncRun | None = None,
        *,
        triggered_by: str = "api",
        task_id: str | None = None,
    ) -> SyncRun:
        """
        Run extraction, transform and validation for ``entity_type``.

        Failures are recorded on the returned run rather than raised. Staged
        pages survive an extraction failure for a later ``run_transform_only``.
        """

        descriptor = get_entity(entity_type)
        options = options or self.resolve_options()
        run = run or self.create_run(descriptor.name, options, triggered_by=triggered_by)
        self._start_run(run, options, task_id)
        started = time.perf_counter()
        stage_seconds: dict[str, float] = {}

        try:
            extract_started = time.perf_counter()
            extractor = self.extractor_factory(options)
            max_pages = None if options.full_sync else self.config.get("SYNC_MAX_PAGES_INCREMENTAL", 100)
            summary = extract_entity(
                run,
                descriptor,
                extractor,
                full_sync=options.full_sync,
                time_range_preset=options.time_range_preset,
                max_pages=max_pages,
                session=self.session,
                logger=self.logger,
                should_cancel=self._cancel_check(run),
            )
            stage_seconds["extract_seconds"] = round(time.perf_counter() - extract_started, 3)
            self._merge_counts(run, extract=summary.to_dict())
            self.session.commit()

            self._transform_and_validate(run, descriptor, options, sync_ids=[summary.sync_id], stage_seconds=stage_seconds)
        except SyncCancelled as exc:
            return self._cancel_run(run, exc, started=started, stage_seconds=stage_seconds)
        except Exception as exc:
            return self._fail_run(run, exc, started=started, stage_seconds=stage_seconds)
        return self._complete_run(run, started=started, stage_seconds=stage_seconds)

    def run_transform_only(
        self,
        entity_type: str,
        options: SyncOptions | None = None,
        run: SyncRun | None = None,
        *,
        triggered_by: str = "cli",
        task_id: str | None = None,
    ) -> SyncRun:
        """Transform and validate whatever is already staged, without API calls."""

        descriptor = get_entity(entity_type)
        options = options or self.resolve_options()
        run = run or self.create_run(descriptor.name, options, triggered_by=triggered_by)
        self._start_run(run, options, task_id)
        started = time.perf_counter()
        stage_seconds: dict[str, float] = {}
        try:
            self._merge_counts(run, extract={"skipped": True})
            self._transform_and_validate(run, descriptor, options, sync_ids=None, stage_seconds=stage_seconds)
        except SyncCancelled as exc:
            return self._cancel_run(run, exc, started=started, stage_seconds=stage_seconds)
        except Exception as exc:
            return self._fail_run(run, exc, started=started, stage_seconds=stage_seconds)
        return self._complete_run(run, started=started, stage_seconds=stage_seconds)

    def _transform_and_validate(
        self,
        run: SyncRun,
        descriptor: EntityDescriptor,
        options: SyncOptions,
        *,
        sync_ids: list[str] | None,
        stage_seconds: dict[str, float],
    ) -> ValidationReport:
        entity = descriptor.name
        policy = apply_failed_record_policy(
            entity,
            auto_retry=bool(self.config.get("SYNC_AUTO_RETRY_FAILED", False)),
            max_attempts=int(self.config.get("SYNC_MAX_PROCESSING_ATTEMPTS", 3)),
            sync_ids=sync_ids,
            stale_after=timedelta(seconds=int(self.config.get("SYNC_PROCESSING_STALE_SECONDS", 600))),
            session=self.session,
        )

        transform_started = time.perf_counter()
        max_iterations = int(self.config.get("SYNC_MAX_TRANSFORM_ITERATIONS", DEFAULT_MAX_TRANSFORM_ITERATIONS))
        extract_sync_id = sync_ids[0] if sync_ids else None
        totals = {"processed": 0, "created": 0, "updated": 0, "skipped": 0, "failed": 0}
        status_changes = 0
        iterations = 0
        last_transform_id: str | None = None
        should_cancel = self._cancel_check(run)
        cancelled = False
        while iterations < max_iterations and pending_count(entity, sync_ids=sync_ids, session=self.session):
            result = self.transformer.transform(
                entity,
                options.batch_size,
                run=run,
                sync_ids=sync_ids,
                extract_sync_id=extract_sync_id,
                should_cancel=should_cancel,
            )
            iterations += 1
            last_transform_id = result.transform_id
            for key, value in result.counts().items():
                totals[key] += value
            status_changes += result.status_changes
            if result.cancelled:
                cancelled = True
                break
            if result.processed == 0:
                break

        policy_counts = {
            "failed_reset": policy.reset,
            "failed_abandoned": policy.abandoned,
            "processing_reclaimed": policy.reclaimed,
        }
        if cancelled:
            stage_seconds["transform_seconds"] = round(time.perf_counter() - transform_started, 3)
            self._merge_counts(
                run, transform={**totals, "status_changes": status_changes, "iterations": iterations, **policy_counts}
            )
            self.session.commit()
            raise SyncCancelled(f"Transform for {entity} cancelled after {totals['processed']} record(s).")

        remaining = pending_count(entity, sync_ids=sync_ids, session=self.session)
        limit_key = transform_iteration_limit_key(entity)
        if remaining and iterations >= max_iterations:
            self.logger.warning(
                "Transform iteration limit reached with records still pending",
                extra={"sync_run_id": run.id, "sync_entity": entity, "sync_pending": remaining},
            )
            self.alerts.raise_alert(
                limit_key,
                title=f"Transform iteration limit reached for {entity}",
                message=f"{remaining} staged {entity} records remain pending after {iterations} batches.",
                severity=AlertSeverity.MEDIUM,
                details={"run_id": run.id, "pending": remaining, "iterations": iterations},
            )
        else:
            self.alerts.resolve_by_key(limit_key)
        stage_seconds["transform_seconds"] = round(time.perf_counter() - transform_started, 3)

        validation_started = time.perf_counter()
        report = self.validation_engine.validate_transform(last_transform_id, entity, run_id=run.id)
        stage_seconds["validation_seconds"] = round(time.perf_counter() - validation_started, 3)

        validation_key = validation_errors_key(entity)
        if report.has_errors:
            self.alerts.raise_alert(
                validation_key,
                title=f"Validation errors detected for {entity}",
                message=f"{report.errors} validation check(s) reported errors.",
                severity=AlertSeverity.MEDIUM,
                details={
                    "run_id": run.id,
                    "validation_id": report.validation_id,
                    "checks": [issue.validation_name for issue in report.issues if issue.severity == ValidationSeverity.ERROR],
                },
            )
        else:
            self.alerts.resolve_by_key(validation_key)

        self._merge_counts(
            run,
            transform={
                **totals,
                "status_changes": status_changes,
                "iterations": iterations,
                "pending_remaining": remaining,
                **policy_counts,
            },
            validation={"validation_id": report.validation_id, **report.counts()},
        )
        metrics = dict(run.metrics_json or {})
        metrics["transform_iterations"] = iterations
        run.metrics_json = metrics
        self.session.commit()
        return report

    # Finalization ---------------------------------------------------------------

    def _merge_counts(self, run: SyncRun, **stages: Mapping[str, Any]) -> None:
        counts = dict(run.counts_json or {})
        for stage, values in stages.items():
            counts[stage] = dict(values)
        run.counts_json = counts

    def _record_timing(self, run: SyncRun, started: float, stage_seconds: Mapping[str, float]) -> None:
        metrics = dict(run.metrics_json or {})
        metrics.update(stage_seconds)
        metrics["total_seconds"] = round(time.perf_counter() - started, 3)
        run.metrics_json = metrics
        run.finished_at = datetime.now(timezone.utc)

    def _complete_run(self, run: SyncRun, *, started: float, stage_seconds: Mapping[str, float]) -> SyncRun:
        run.status = SyncRunStatus.COMPLETED
        run.error_summary = None
        self._record_timing(run, started, stage_seconds)
        self.session.commit()
        self.alerts.resolve_by_key(sync_failed_key(run.entity_type))
        record_run_outcome(entity=run.entity_type, status=run.status.value)
        self.logger.info(
            "Sync run completed",
            extra={"sync_run_id": run.id, "sync_entity": run.entity_type, "sync_counts": run.counts_json},
        )
        return run

    def _cancel_run(
        self,
        run: SyncRun,
        exc: SyncCancelled,
        *,
        started: float,
        stage_seconds: Mapping[str, float],
    ) -> SyncRun:
        self.session.rollback()
        run = self.session.get(SyncRun, run.id)
        run.status = SyncRunStatus.CANCELLED
        run.error_summary = CANCELLED_SUMMARY
        self._record_timing(run, started, stage_seconds)
        self.session.commit()
        record_run_outcome(entity=run.entity_type, status=run.status.value)
        self.logger.warning(
            "Sync run cancelled",
            extra={"sync_run_id": run.id, "sync_entity": run.entity_type, "sync_reason": str(exc)},
        )
        return run

    def _fail_run(
        self,
        run: SyncRun,
        exc: Exception,
        *,
        started: float,
        stage_seconds: Mapping[str, float],
    ) -> SyncRun:
        self.session.rollback()
        run = self.session.get(SyncRun, run.id)
        run.status = SyncRunStatus.FAILED
        run.error_summary = str(exc)
        self._record_timing(run, started, stage_seconds)
        self.session.commit()
        self.alerts.raise_alert(
            sync_failed_key(run.entity_type),
            title=f"Sync failed for {run.entity_type}",
            message=str(exc),
            severity=AlertSeverity.HIGH,
            details={"run_id": run.id, "error_type": type(exc).__name__},
        )
        record_run_outcome(entity=run.entity_type, status=run.status.value)
        self.logger.exception(
            "Sync run failed",
            extra={"sync_run_id": run.id, "sync_entity": run.entity_type},
        )
        return run

    def _default_extractor_factory(self, options: SyncOptions) -> B2ChatExtractor:
        client = create_b2chat_client(
            self.config,
            retry_attempts=options.retry_attempts,
            retry_delay=options.retry_delay,
            logger=self.logger,
        )
        return B2ChatExtractor(client=client, page_size=options.page_size, logger=self.logger)
