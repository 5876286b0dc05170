"""
Post-transform validation engine.

Rules are read-only over the normalized tables. Each rule reports at most one
issue per run, carrying the affected-record count and up to five sample ids.
Findings are persisted to ``sync_validation_results`` and never raised.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable, Mapping, Sequence

from email_validator import EmailNotValidError, validate_email
from sqlalchemy import and_, exists, or_, select
from sqlalchemy.orm import Session

from chatsync.models.base import db, utcnow
from chatsync.models.chat import Agent, Chat, ChatStatus, Contact, Message
from chatsync.models.sync.schema import SyncValidationResult, ValidationSeverity
from chatsync.sync.metrics import record_validation_issue
from chatsync.sync.utils import ensure_utc

from .status import STATUS_FAMILIES

SAMPLE_LIMIT = 5
OPEN_STATUSES = tuple(sorted(STATUS_FAMILIES["open"], key=lambda status: status.value))


@dataclass(frozen=True)
class ValidationIssue:
    """A single validation finding."""

    validation_name: str
    severity: ValidationSeverity
    affected_records: int
    message: str
    sample_ids: tuple[int, ...] = ()
    metrics: Mapping[str, Any] = field(default_factory=dict)

    def details(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"message": self.message, "sample_ids": list(self.sample_ids)}
        if self.metrics:
            payload["metrics"] = dict(self.metrics)
        return payload

    def to_dict(self) -> dict[str, Any]:
        return {
            "validation_name": self.validation_name,
            "severity": self.severity.value,
            "affected_records": self.affected_records,
            "details": self.details(),
        }


@dataclass
class ValidationReport:
    """Issues produced for one transform plus counts by severity."""

    validation_id: str
    transform_id: str | None
    entity_type: str
    run_id: int | None = None
    issues: list[ValidationIssue] = field(default_factory=list)
    skipped_rules: list[str] = field(default_factory=list)

    def _count(self, severity: ValidationSeverity) -> int:
        return sum(1 for issue in self.issues if issue.severity == severity)

    @property
    def errors(self) -> int:
        return self._count(ValidationSeverity.ERROR)

    @property
    def warnings(self) -> int:
        return self._count(ValidationSeverity.WARNING)

    @property
    def infos(self) -> int:
        return self._count(ValidationSeverity.INFO)

    @property
    def has_errors(self) -> bool:
        return self.errors > 0

    def issue(self, validation_name: str) -> ValidationIssue | None:
        for issue in self.issues:
            if issue.validation_name == validation_name:
                return issue
        return None

    def counts(self) -> dict[str, int]:
        return {"errors": self.errors, "warnings": self.warnings, "infos": self.infos, "total": len(self.issues)}

    def to_dict(self) -> dict[str, Any]:
        return {
            "validation_id": self.validation_id,
            "transform_id": self.transform_id,
            "entity_type": self.entity_type,
            "run_id": self.run_id,
            "counts": self.counts(),
            "issues": [issue.to_dict() for issue in self.issues],
            "skipped_rules": list(self.skipped_rules),
        }


@dataclass(frozen=True)
class ValidationContext:
    """Inputs shared by every rule in one validation pass."""

    session: Session
    entity_type: str
    now: datetime
    stale_open_days: int = 7
    survey_timeout_hours: int = 24
    message_gap_hours: int = 24


@dataclass(frozen=True)
class ValidationRule:
    """Declarative rule definition used by the validation engine."""

    code: str
    description: str
    severity: ValidationSeverity

    def evaluate(self, context: ValidationContext) -> ValidationIssue | None:
        """Return the issue for this rule, or ``None`` when nothing is affected."""
        raise NotImplementedError

    def _issue(
        self,
        ids: Sequence[int],
        *,
        message: str | None = None,
        metrics: Mapping[str, Any] | None = None,
    ) -> ValidationIssue | None:
        if not ids:
            return None
        return ValidationIssue(
            validation_name=self.code,
            severity=self.severity,
            affected_records=len(ids),
            message=message or self.description,
            sample_ids=tuple(ids[:SAMPLE_LIMIT]),
            metrics=metrics or {},
        )


class ChatQueryRule(ValidationRule):
    """Rule whose affected records are the chats matching a SQL condition."""

    def __init__(self, code: str, description: str, severity: ValidationSeverity, condition) -> None:
        super().__init__(code=code, description=description, severity=severity)
        object.__setattr__(self, "_condition", condition)

    def evaluate(self, context: ValidationContext) -> ValidationIssue | None:
        ids = list(context.session.scalars(select(Chat.id).where(self._condition).order_by(Chat.id)))
        return self._issue(ids)


class StaleOpenChatRule(ValidationRule):
    """Open chats older than the stale window with no recent messages."""

    def __init__(self) -> None:
        super().__init__(
            code="chat_status_stale_open",
            description="Open chats with no messages inside the stale window",
            severity=ValidationSeverity.WARNING,
        )

    def evaluate(self, context: ValidationContext) -> ValidationIssue | None:
        cutoff = context.now - timedelta(days=context.stale_open_days)
        recent_message = exists().where(and_(Message.chat_id == Chat.id, Message.timestamp >= cutoff))
        ids = list(
            context.session.scalars(
                select(Chat.id)
                .where(Chat.status.in_(OPEN_STATUSES), Chat.created_at < cutoff, ~recent_message)
                .order_by(Chat.id)
            )
        )
        return self._issue(ids, metrics={"stale_open_days": context.stale_open_days})


class MessageContinuityRule(ValidationRule):
    """Chats whose consecutive messages are further apart than the gap threshold."""

    def __init__(self) -> None:
        super().__init__(
            code="message_continuity_gaps",
            description="Chats with message gaps exceeding the configured threshold",
            severity=ValidationSeverity.INFO,
        )

    def evaluate(self, context: ValidationContext) -> ValidationIssue | None:
        threshold = timedelta(hours=context.message_gap_hours)
        rows = context.session.execute(
            select(Message.chat_id, Message.timestamp).order_by(Message.chat_id, Message.timestamp, Message.ordinal)
        )
        gaps: dict[int, timedelta] = {}
        previous_chat: int | None = None
        previous_ts: datetime | None = None
        for chat_id, timestamp in rows:
            timestamp = ensure_utc(timestamp)
            if chat_id == previous_chat and previous_ts is not None:
                gap = timestamp - previous_ts
                if gap > threshold and gap > gaps.get(chat_id, timedelta(0)):
                    gaps[chat_id] = gap
            previous_chat, previous_ts = chat_id, timestamp

        ids = sorted(gaps)
        max_gap_hours = round(max(gaps.values()).total_seconds() / 3600, 2) if gaps else 0
        return self._issue(
            ids,
            metrics={"max_gap_hours": max_gap_hours, "threshold_hours": context.message_gap_hours},
        )


class InvalidContactRule(ValidationRule):
    def __init__(self) -> None:
        super().__init__(
            code="relationship_invalid_contact",
            description="Chats reference non-existent contacts",
            severity=ValidationSeverity.ERROR,
        )

    def evaluate(self, context: ValidationContext) -> ValidationIssue | None:
        ids = list(
            context.session.scalars(
                select(Chat.id)
                .outerjoin(Contact, Contact.id == Chat.contact_id)
                .where(Chat.contact_id.isnot(None), Contact.id.is_(None))
                .order_by(Chat.id)
            )
        )
        return self._issue(ids)


class InvalidAgentRule(ValidationRule):
    def __init__(self) -> None:
        super().__init__(
            code="relationship_invalid_agent",
            description="Chats reference non-existent agents",
            severity=ValidationSeverity.ERROR,
        )

    def evaluate(self, context: ValidationContext) -> ValidationIssue | None:
        ids = list(
            context.session.scalars(
                select(Chat.id)
                .outerjoin(Agent, Agent.id == Chat.agent_id)
                .where(Chat.agent_id.isnot(None), Agent.id.is_(None))
                .order_by(Chat.id)
            )
        )
        return self._issue(ids)


class OrphanedMessageRule(ValidationRule):
    def __init__(self) -> None:
        super().__init__(
            code="relationship_orphaned_messages",
            description="Messages reference non-existent chats",
            severity=ValidationSeverity.ERROR,
        )

    def evaluate(self, context: ValidationContext) -> ValidationIssue | None:
        ids = list(
            context.session.scalars(
                select(Message.id)
                .outerjoin(Chat, Chat.id == Message.chat_id)
                .where(Chat.id.is_(None))
                .order_by(Message.id)
            )
        )
        return self._issue(ids)


class SurveyTimeoutRule(ValidationRule):
    def __init__(self) -> None:
        super().__init__(
            code="survey_timeout_not_marked_abandoned",
            description="Surveys in progress past the timeout that were never marked abandoned",
            severity=ValidationSeverity.WARNING,
        )

    def evaluate(self, context: ValidationContext) -> ValidationIssue | None:
        cutoff = context.now - timedelta(hours=context.survey_timeout_hours)
        ids = list(
            context.session.scalars(
                select(Chat.id)
                .where(
                    Chat.status == ChatStatus.COMPLETING_POLL,
                    Chat.poll_started_at.isnot(None),
                    Chat.poll_started_at < cutoff,
                )
                .order_by(Chat.id)
            )
        )
        return self._issue(ids, metrics={"survey_timeout_hours": context.survey_timeout_hours})


class ContactMissingInfoRule(ValidationRule):
    def __init__(self) -> None:
        super().__init__(
            code="contact_missing_info",
            description="Contacts with no mobile, email, or identification",
            severity=ValidationSeverity.WARNING,
        )

    def evaluate(self, context: ValidationContext) -> ValidationIssue | None:
        ids = list(
            context.session.scalars(
                select(Contact.id)
                .where(
                    or_(Contact.mobile.is_(None), Contact.mobile == ""),
                    or_(Contact.email.is_(None), Contact.email == ""),
                    or_(Contact.identification.is_(None), Contact.identification == ""),
                )
                .order_by(Contact.id)
            )
        )
        return self._issue(ids)


class ContactEmailFormatRule(ValidationRule):
    def __init__(self) -> None:
        super().__init__(
            code="contact_invalid_email",
            description="Contacts with an email that is not a valid address",
            severity=ValidationSeverity.WARNING,
        )

    def evaluate(self, context: ValidationContext) -> ValidationIssue | None:
        rows = context.session.execute(
            select(Contact.id, Contact.email)
            .where(Contact.email.isnot(None), Contact.email != "")
            .order_by(Contact.id)
        )
        ids = [contact_id for contact_id, email in rows if not _is_valid_email(email)]
        return self._issue(ids)


def default_chat_rules() -> tuple[ValidationRule, ...]:
    """Return the rules evaluated after a chats transform, in reporting order."""

    return (
        ChatQueryRule(
            "chat_timeline_consistency",
            "Chats with inconsistent timeline timestamps",
            ValidationSeverity.ERROR,
            or_(
                and_(Chat.opened_at.isnot(None), Chat.opened_at < Chat.created_at),
                and_(Chat.closed_at.isnot(None), Chat.status.in_(OPEN_STATUSES)),
                and_(
                    Chat.status == ChatStatus.CLOSED,
                    Chat.closed_at.is_(None),
                    Chat.poll_started_at.is_(None),
                ),
            ),
        ),
        ChatQueryRule(
            "chat_status_open_with_closed_timestamp",
            "Chats marked as open but have a closed_at timestamp",
            ValidationSeverity.WARNING,
            and_(Chat.status.in_(OPEN_STATUSES), Chat.closed_at.isnot(None)),
        ),
        ChatQueryRule(
            "chat_status_closed_without_timestamp",
            "Chats marked as closed but missing closed_at",
            ValidationSeverity.ERROR,
            and_(Chat.status == ChatStatus.CLOSED, Chat.closed_at.is_(None)),
        ),
        StaleOpenChatRule(),
        MessageContinuityRule(),
        InvalidContactRule(),
        InvalidAgentRule(),
        OrphanedMessageRule(),
        ChatQueryRule(
            "survey_completing_without_start",
            "Surveys in progress without poll_started_at",
            ValidationSeverity.ERROR,
            and_(Chat.status == ChatStatus.COMPLETING_POLL, Chat.poll_started_at.is_(None)),
        ),
        ChatQueryRule(
            "survey_completed_missing_timestamps",
            "Completed surveys missing start or completion timestamps, or also marked abandoned",
            ValidationSeverity.ERROR,
            and_(
                Chat.status == ChatStatus.COMPLETED_POLL,
                or_(
                    Chat.poll_started_at.is_(None),
                    Chat.poll_completed_at.is_(None),
                    Chat.poll_abandoned_at.isnot(None),
                ),
            ),
        ),
        ChatQueryRule(
            "survey_abandoned_missing_timestamps",
            "Abandoned surveys missing start or abandonment timestamps",
            ValidationSeverity.ERROR,
            and_(
                Chat.status == ChatStatus.ABANDONED_POLL,
                or_(Chat.poll_started_at.is_(None), Chat.poll_abandoned_at.is_(None)),
            ),
        ),
        ChatQueryRule(
            "survey_both_completed_and_abandoned",
            "Surveys with both completion and abandonment timestamps",
            ValidationSeverity.ERROR,
            and_(Chat.poll_completed_at.isnot(None), Chat.poll_abandoned_at.isnot(None)),
        ),
        ChatQueryRule(
            "survey_response_without_completed_status",
            "Survey responses stored on chats that are not COMPLETED_POLL",
            ValidationSeverity.WARNING,
            and_(Chat.poll_response.isnot(None), Chat.status != ChatStatus.COMPLETED_POLL),
        ),
        SurveyTimeoutRule(),
    )


def default_contact_rules() -> tuple[ValidationRule, ...]:
    return (ContactMissingInfoRule(), ContactEmailFormatRule())


class ValidationEngine:
    """Evaluate integrity rules after a transform and persist the findings."""

    def __init__(
        self,
        session: Session | None = None,
        *,
        stale_open_days: int = 7,
        survey_timeout_hours: int = 24,
        message_gap_hours: int = 24,
        rules: Mapping[str, Iterable[ValidationRule]] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.session = session or db.session
        self.stale_open_days = stale_open_days
        self.survey_timeout_hours = survey_timeout_hours
        self.message_gap_hours = message_gap_hours
        self.rules = dict(rules) if rules is not None else {
            "chats": default_chat_rules(),
            "contacts": default_contact_rules(),
        }
        self.logger = logger or logging.getLogger(__name__)

    @classmethod
    def from_config(cls, config: Mapping[str, Any], session: Session | None = None, **kwargs) -> "ValidationEngine":
        return cls(
            session,
            stale_open_days=int(config.get("SYNC_STALE_OPEN_DAYS", 7)),
            survey_timeout_hours=int(config.get("SYNC_SURVEY_TIMEOUT_HOURS", 24)),
            message_gap_hours=int(config.get("SYNC_MESSAGE_GAP_HOURS", 24)),
            **kwargs,
        )

    def validate_transform(
        self,
        transform_id: str | None,
        entity_type: str,
        run_id: int | None = None,
        *,
        now: datetime | None = None,
    ) -> ValidationReport:
        """Run every rule registered for ``entity_type`` and persist the issues."""

        now = now or utcnow()
        validation_id = f"validation_{transform_id or entity_type}_{now.strftime('%Y%m%d%H%M%S%f')}"
        report = ValidationReport(
            validation_id=validation_id,
            transform_id=transform_id,
            entity_type=entity_type,
            run_id=run_id,
        )
        context = ValidationContext(
            session=self.session,
            entity_type=entity_type,
            now=now,
            stale_open_days=self.stale_open_days,
            survey_timeout_hours=self.survey_timeout_hours,
            message_gap_hours=self.message_gap_hours,
        )

        for rule in self.rules.get(entity_type, ()):
            try:
                issue = rule.evaluate(context)
            except Exception:
                self.session.rollback()
                report.skipped_rules.append(rule.code)
                self.logger.exception(
                    "Validation rule failed; skipping",
                    extra={"sync_validation_rule": rule.code, "sync_entity": entity_type},
                )
                continue
            if issue is not None:
                report.issues.append(issue)

        for issue in report.issues:
            self.session.add(
                SyncValidationResult(
                    validation_id=validation_id,
                    transform_id=transform_id,
                    run_id=run_id,
                    entity_type=entity_type,
                    validation_name=issue.validation_name,
                    severity=issue.severity,
                    affected_records=issue.affected_records,
                    message=issue.message,
                    details_json=issue.details(),
                )
            )
            record_validation_issue(issue.severity.value)
        self.session.commit()

        self.logger.info(
            "Validation completed",
            extra={
                "sync_entity": entity_type,
                "sync_validation_id": validation_id,
                "sync_validation_counts": report.counts(),
            },
        )
        return report


def _is_valid_email(value: str) -> bool:
    try:
        validate_email(value.strip(), check_deliverability=False)
    except EmailNotValidError:
        return False
    return True
