"""
Sync pipeline SQLAlchemy models.

These models back the sync schema: runs, extract/transform logs, raw staging,
validation results, alerts, watermarks, and configuration overrides.
"""

from .schema import (
    AlertSeverity,
    AlertStatus,
    ExtractLog,
    ExtractOperation,
    ExtractStatus,
    RawChat,
    RawContact,
    StagingProcessingStatus,
    SyncAlert,
    SyncEntityType,
    SyncRun,
    SyncRunStatus,
    SyncSetting,
    SyncValidationResult,
    SyncWatermark,
    TransformLog,
    TransformStatus,
    ValidationSeverity,
)

__all__ = [
    "AlertSeverity",
    "AlertStatus",
    "ExtractLog",
    "ExtractOperation",
    "ExtractStatus",
    "RawChat",
    "RawContact",
    "StagingProcessingStatus",
    "SyncAlert",
    "SyncEntityType",
    "SyncRun",
    "SyncRunStatus",
    "SyncSetting",
    "SyncValidationResult",
    "SyncWatermark",
    "TransformLog",
    "TransformStatus",
    "ValidationSeverity",
]
