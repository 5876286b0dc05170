"""Sync pipeline helpers."""

from __future__ import annotations

from .alerts import AlertFilters, AlertService
from .extract import ExtractSummary, extract_entity, resolve_date_window
from .orchestrator import SyncOptions, SyncOrchestrator
from .reconcile import reconcile_contacts
from .run_service import RunFilters, SyncRunService
from .staging import (
    ResetSummary,
    StagePageSummary,
    apply_failed_record_policy,
    compute_checksum,
    pending_count,
    reclaim_interrupted_records,
    reset_failed_records,
    stage_page,
    staging_status_counts,
)
from .status import derive_status, is_valid_transition
from .transform import SyncTransformer, TransformResult, build_message_key
from .validation import ValidationEngine, ValidationIssue, ValidationReport

__all__ = [
    "AlertFilters",
    "AlertService",
    "ExtractSummary",
    "ResetSummary",
    "RunFilters",
    "StagePageSummary",
    "SyncOptions",
    "SyncOrchestrator",
    "SyncRunService",
    "SyncTransformer",
    "TransformResult",
    "ValidationEngine",
    "ValidationIssue",
    "ValidationReport",
    "apply_failed_record_policy",
    "build_message_key",
    "compute_checksum",
    "derive_status",
    "extract_entity",
    "is_valid_transition",
    "pending_count",
    "reclaim_interrupted_records",
    "reconcile_contacts",
    "reset_failed_records",
    "resolve_date_window",
    "stage_page",
    "staging_status_counts",
]
