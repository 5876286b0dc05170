"""
SQLAlchemy models for the sync pipeline schema.

Runs, per-stage logs, raw staging tables, validation results, alerts and
persisted configuration overrides all live here so the pipeline stages can
share one bookkeeping vocabulary.
"""

from __future__ import annotations

import enum
import json
from datetime import datetime

from sqlalchemy import Enum, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..base import BaseModel, db, utcnow


class SyncEntityType(str, enum.Enum):
    CONTACTS = "contacts"
    CHATS = "chats"


class SyncRunStatus(str, enum.Enum):
    """Lifecycle states for a sync run."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class SyncRun(BaseModel):
    """One sync execution for a single entity type."""

    __tablename__ = "sync_runs"

    id: Mapped[int] = mapped_column(primary_key=True)
    entity_type: Mapped[str] = mapped_column(db.String(32), nullable=False, index=True)
    status: Mapped[SyncRunStatus] = mapped_column(
        Enum(SyncRunStatus, name="sync_run_status_enum"),
        nullable=False,
        default=SyncRunStatus.PENDING,
        index=True,
    )
    full_sync: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    triggered_by: Mapped[str] = mapped_column(db.String(32), nullable=False, default="api")
    task_id: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    finished_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    options_json: Mapped[dict | None] = mapped_column(
        db.JSON,
        nullable=True,
        comment="Resolved run options (batch_size, retry_attempts, retry_delay, time_range_preset).",
    )
    counts_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    metrics_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    error_summary: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    cancel_requested_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))

    extract_logs = relationship(
        "ExtractLog",
        back_populates="sync_run",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="ExtractLog.id",
    )
    transform_logs = relationship(
        "TransformLog",
        back_populates="sync_run",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="TransformLog.id",
    )
    validation_results = relationship(
        "SyncValidationResult",
        back_populates="sync_run",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (Index("idx_sync_runs_entity_status", "entity_type", "status"),)

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at and self.finished_at:
            return max((self.finished_at - self.started_at).total_seconds(), 0.0)
        return None


class ExtractOperation(str, enum.Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


class ExtractStatus(str, enum.Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ExtractLog(BaseModel):
    """Bookkeeping for a single extraction pass against the external API."""

    __tablename__ = "extract_logs"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    sync_id: Mapped[str] = mapped_column(db.String(128), nullable=False, unique=True)
    run_id: Mapped[int | None] = mapped_column(
        ForeignKey("sync_runs.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    entity_type: Mapped[str] = mapped_column(db.String(32), nullable=False, index=True)
    operation: Mapped[ExtractOperation] = mapped_column(
        Enum(ExtractOperation, name="extract_operation_enum"),
        nullable=False,
        default=ExtractOperation.INCREMENTAL,
    )
    status: Mapped[ExtractStatus] = mapped_column(
        Enum(ExtractStatus, name="extract_status_enum"),
        nullable=False,
        default=ExtractStatus.RUNNING,
        index=True,
    )
    started_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    api_call_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    records_fetched: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    current_page: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    total_pages: Mapped[int | None] = mapped_column(db.Integer, nullable=True)
    estimated_total: Mapped[int | None] = mapped_column(db.Integer, nullable=True)
    batch_size: Mapped[int | None] = mapped_column(db.Integer, nullable=True)
    date_range_from: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    date_range_to: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    time_range_preset: Mapped[str | None] = mapped_column(db.String(16), nullable=True)
    error_message: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    metadata_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)

    sync_run = relationship("SyncRun", back_populates="extract_logs")


class TransformStatus(str, enum.Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TransformLog(BaseModel):
    """Counters for one transform invocation, updated after every record."""

    __tablename__ = "transform_logs"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    transform_id: Mapped[str] = mapped_column(db.String(128), nullable=False, unique=True)
    run_id: Mapped[int | None] = mapped_column(
        ForeignKey("sync_runs.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    extract_sync_id: Mapped[str | None] = mapped_column(db.String(128), nullable=True)
    entity_type: Mapped[str] = mapped_column(db.String(32), nullable=False, index=True)
    status: Mapped[TransformStatus] = mapped_column(
        Enum(TransformStatus, name="transform_status_enum"),
        nullable=False,
        default=TransformStatus.RUNNING,
    )
    started_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    records_processed: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    records_created: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    records_updated: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    records_skipped: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    records_failed: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    changes_summary_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    error_message: Mapped[str | None] = mapped_column(db.Text, nullable=True)

    sync_run = relationship("SyncRun", back_populates="transform_logs")


class StagingProcessingStatus(str, enum.Enum):
    """Processing state for a raw staging record."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class RawContact(BaseModel):
    """
    Raw contact payloads landed by the extractor.

    ``raw_data`` is never modified after insert; only the processing columns
    move as the transformer works through the table.
    """

    __tablename__ = "raw_contacts"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[int | None] = mapped_column(
        ForeignKey("sync_runs.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    sync_id: Mapped[str] = mapped_column(db.String(128), nullable=False, index=True)
    external_id: Mapped[str] = mapped_column(db.String(255), nullable=False, index=True)
    raw_data: Mapped[dict] = mapped_column(db.JSON, nullable=False)
    checksum: Mapped[str | None] = mapped_column(db.String(64), nullable=True, index=True)
    api_page: Mapped[int] = mapped_column(db.Integer, nullable=False, default=1)
    api_offset: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    fetched_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    processed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    processing_status: Mapped[StagingProcessingStatus] = mapped_column(
        Enum(StagingProcessingStatus, name="raw_contact_processing_status_enum"),
        nullable=False,
        default=StagingProcessingStatus.PENDING,
        index=True,
    )
    processing_error: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    processing_attempt: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("sync_id", "external_id", name="uq_raw_contacts_sync_external"),
        Index("idx_raw_contacts_status_fetched", "processing_status", "fetched_at"),
    )


class RawChat(BaseModel):
    """
    Raw chat payloads landed by the extractor.

    Mirrors ``RawContact``; chats carry embedded agent, department, contact
    and message data that the transformer resolves.
    """

    __tablename__ = "raw_chats"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[int | None] = mapped_column(
        ForeignKey("sync_runs.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    sync_id: Mapped[str] = mapped_column(db.String(128), nullable=False, index=True)
    external_id: Mapped[str] = mapped_column(db.String(255), nullable=False, index=True)
    raw_data: Mapped[dict] = mapped_column(db.JSON, nullable=False)
    checksum: Mapped[str | None] = mapped_column(db.String(64), nullable=True, index=True)
    api_page: Mapped[int] = mapped_column(db.Integer, nullable=False, default=1)
    api_offset: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    fetched_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    processed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    processing_status: Mapped[StagingProcessingStatus] = mapped_column(
        Enum(StagingProcessingStatus, name="raw_chat_processing_status_enum"),
        nullable=False,
        default=StagingProcessingStatus.PENDING,
        index=True,
    )
    processing_error: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    processing_attempt: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("sync_id", "external_id", name="uq_raw_chats_sync_external"),
        Index("idx_raw_chats_status_fetched", "processing_status", "fetched_at"),
    )


class SyncWatermark(BaseModel):
    """Track the incremental cursor for each entity type."""

    __tablename__ = "sync_watermarks"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    entity_type: Mapped[str] = mapped_column(db.String(32), nullable=False, unique=True)
    last_sync_timestamp: Mapped[datetime | None] = mapped_column(
        db.DateTime(timezone=True),
        nullable=True,
        comment="Upper bound of the last successful extraction window.",
    )
    last_run_id: Mapped[int | None] = mapped_column(
        ForeignKey("sync_runs.id", ondelete="SET NULL"),
        nullable=True,
    )
    metadata_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)

    last_run = relationship("SyncRun", foreign_keys=[last_run_id])


class ValidationSeverity(str, enum.Enum):
    """Severity tier for validation findings."""

    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class SyncValidationResult(BaseModel):
    """Immutable record of a single validation finding."""

    __tablename__ = "sync_validation_results"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    validation_id: Mapped[str] = mapped_column(db.String(160), nullable=False, index=True)
    transform_id: Mapped[str | None] = mapped_column(db.String(128), nullable=True, index=True)
    run_id: Mapped[int | None] = mapped_column(
        ForeignKey("sync_runs.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    entity_type: Mapped[str] = mapped_column(db.String(32), nullable=False)
    validation_name: Mapped[str] = mapped_column(db.String(100), nullable=False)
    severity: Mapped[ValidationSeverity] = mapped_column(
        Enum(ValidationSeverity, name="validation_severity_enum"),
        nullable=False,
    )
    affected_records: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    message: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    details_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)

    sync_run = relationship("SyncRun", back_populates="validation_results")

    __table_args__ = (Index("idx_sync_validation_transform_name", "transform_id", "validation_name"),)


class AlertSeverity(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AlertStatus(str, enum.Enum):
    ACTIVE = "active"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"


class SyncAlert(BaseModel):
    """Operational alert raised by the pipeline, keyed so repeats collapse into one row."""

    __tablename__ = "sync_alerts"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    alert_key: Mapped[str] = mapped_column(db.String(255), nullable=False, unique=True)
    source: Mapped[str] = mapped_column(db.String(64), nullable=False, default="sync")
    severity: Mapped[AlertSeverity] = mapped_column(
        Enum(AlertSeverity, name="alert_severity_enum"),
        nullable=False,
        default=AlertSeverity.MEDIUM,
    )
    status: Mapped[AlertStatus] = mapped_column(
        Enum(AlertStatus, name="alert_status_enum"),
        nullable=False,
        default=AlertStatus.ACTIVE,
        index=True,
    )
    title: Mapped[str] = mapped_column(db.String(255), nullable=False)
    message: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    details_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    occurrences: Mapped[int] = mapped_column(db.Integer, nullable=False, default=1)
    first_seen_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    last_seen_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    acknowledged_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    resolved_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))


class SyncSetting(BaseModel):
    """Persisted override for one sync configuration key."""

    __tablename__ = "sync_settings"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    key: Mapped[str] = mapped_column(db.String(64), nullable=False, unique=True)
    value: Mapped[str] = mapped_column(db.Text, nullable=False)
    value_type: Mapped[str] = mapped_column(db.String(16), nullable=False, default="string")

    def get_value(self):
        """Return the stored value converted to its declared type."""
        if self.value_type == "boolean":
            return self.value.lower() in ("true", "1", "yes", "on")
        if self.value_type == "integer":
            return int(self.value)
        if self.value_type == "float":
            return float(self.value)
        if self.value_type == "json":
            return json.loads(self.value)
        return self.value

    def set_value(self, value) -> None:
        if self.value_type == "boolean":
            self.value = "true" if bool(value) else "false"
        elif self.value_type == "integer":
            self.value = str(int(value))
        elif self.value_type == "float":
            self.value = str(float(value))
        elif self.value_type == "json":
            self.value = json.dumps(value)
        else:
            self.value = str(value)
