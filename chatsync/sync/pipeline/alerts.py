"""
Persisted alert store for sync operations.

Alerts are keyed (``sync_failed:chats`` and so on) so a condition that keeps
recurring collapses into one row whose ``occurrences`` counter grows.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from sqlalchemy import func, select
from sqlalchemy.exc import NoResultFound
from sqlalchemy.orm import Session

from chatsync.models.base import db, utcnow
from chatsync.models.sync.schema import AlertSeverity, AlertStatus, SyncAlert
from chatsync.sync.utils import isoformat, normalize_payload

OPEN_ALERT_STATUSES = (AlertStatus.ACTIVE, AlertStatus.ACKNOWLEDGED)


def sync_failed_key(entity_type: str) -> str:
    return f"sync_failed:{entity_type}"


def validation_errors_key(entity_type: str) -> str:
    return f"validation_errors:{entity_type}"


def transform_iteration_limit_key(entity_type: str) -> str:
    return f"transform_iteration_limit:{entity_type}"


@dataclass(frozen=True)
class AlertFilters:
    statuses: tuple[AlertStatus, ...] = field(default_factory=tuple)
    severities: tuple[AlertSeverity, ...] = field(default_factory=tuple)

    @classmethod
    def coerce(
        cls,
        *,
        statuses: Iterable[str] | None = None,
        severities: Iterable[str] | None = None,
    ) -> "AlertFilters":
        resolved_statuses: list[AlertStatus] = []
        for value in statuses or ():
            if not value:
                continue
            try:
                resolved_statuses.append(AlertStatus(value.strip().lower()))
            except ValueError as exc:
                raise ValueError(f"Unsupported alert status '{value}'.") from exc
        resolved_severities: list[AlertSeverity] = []
        for value in severities or ():
            if not value:
                continue
            try:
                resolved_severities.append(AlertSeverity(value.strip().lower()))
            except ValueError as exc:
                raise ValueError(f"Unsupported alert severity '{value}'.") from exc
        return cls(statuses=tuple(resolved_statuses), severities=tuple(resolved_severities))


class AlertService:
    """Raise, resolve and query sync alerts."""

    def __init__(self, session: Session | None = None) -> None:
        self.session = session or db.session

    def get_by_key(self, alert_key: str) -> SyncAlert | None:
        return self.session.scalar(select(SyncAlert).where(SyncAlert.alert_key == alert_key))

    def get(self, alert_id: int) -> SyncAlert:
        alert = self.session.get(SyncAlert, alert_id)
        if alert is None:
            raise NoResultFound(f"Alert {alert_id} not found.")
        return alert

    def raise_alert(
        self,
        alert_key: str,
        *,
        title: str,
        message: str | None = None,
        severity: AlertSeverity = AlertSeverity.MEDIUM,
        source: str = "sync",
        details: Mapping[str, Any] | None = None,
        commit: bool = True,
    ) -> SyncAlert:
        """
        Create or bump an alert.

        An open alert gains an occurrence; a resolved one is re-activated.
        """

        now = utcnow()
        alert = self.get_by_key(alert_key)
        if alert is None:
            alert = SyncAlert(
                alert_key=alert_key,
                source=source,
                severity=severity,
                status=AlertStatus.ACTIVE,
                title=title,
                occurrences=1,
                first_seen_at=now,
                last_seen_at=now,
            )
            self.session.add(alert)
        elif alert.status == AlertStatus.RESOLVED:
            alert.status = AlertStatus.ACTIVE
            alert.occurrences = 1
            alert.first_seen_at = now
            alert.last_seen_at = now
            alert.acknowledged_at = None
            alert.resolved_at = None
        else:
            alert.occurrences = (alert.occurrences or 0) + 1
            alert.last_seen_at = now
        alert.title = title
        alert.message = message
        alert.severity = severity
        alert.details_json = normalize_payload(details) if details else None
        if commit:
            self.session.commit()
        return alert

    def resolve_by_key(self, alert_key: str, *, commit: bool = True) -> SyncAlert | None:
        """Resolve the open alert for ``alert_key``; no-op when none is open."""

        alert = self.get_by_key(alert_key)
        if alert is None or alert.status == AlertStatus.RESOLVED:
            return None
        alert.status = AlertStatus.RESOLVED
        alert.resolved_at = utcnow()
        if commit:
            self.session.commit()
        return alert

    def acknowledge(self, alert_id: int) -> SyncAlert:
        alert = self.get(alert_id)
        if alert.status == AlertStatus.RESOLVED:
            raise ValueError("Resolved alerts cannot be acknowledged.")
        if alert.status != AlertStatus.ACKNOWLEDGED:
            alert.status = AlertStatus.ACKNOWLEDGED
            alert.acknowledged_at = utcnow()
            self.session.commit()
        return alert

    def resolve(self, alert_id: int) -> SyncAlert:
        alert = self.get(alert_id)
        if alert.status != AlertStatus.RESOLVED:
            alert.status = AlertStatus.RESOLVED
            alert.resolved_at = utcnow()
            self.session.commit()
        return alert

    def list_alerts(self, filters: AlertFilters | None = None) -> list[SyncAlert]:
        filters = filters or AlertFilters()
        query = select(SyncAlert)
        if filters.statuses:
            query = query.where(SyncAlert.status.in_(filters.statuses))
        if filters.severities:
            query = query.where(SyncAlert.severity.in_(filters.severities))
        return list(self.session.scalars(query.order_by(SyncAlert.last_seen_at.desc(), SyncAlert.id.desc())))

    def summary(self) -> dict[str, Any]:
        """Return counts of alerts by status and of open alerts by severity."""

        by_status = {status.value: 0 for status in AlertStatus}
        for status, total in self.session.execute(
            select(SyncAlert.status, func.count(SyncAlert.id)).group_by(SyncAlert.status)
        ):
            by_status[status.value] = int(total)
        open_by_severity = {severity.value: 0 for severity in AlertSeverity}
        for severity, total in self.session.execute(
            select(SyncAlert.severity, func.count(SyncAlert.id))
            .where(SyncAlert.status.in_(OPEN_ALERT_STATUSES))
            .group_by(SyncAlert.severity)
        ):
            open_by_severity[severity.value] = int(total)
        return {
            "by_status": by_status,
            "open_by_severity": open_by_severity,
            "open_total": by_status[AlertStatus.ACTIVE.value] + by_status[AlertStatus.ACKNOWLEDGED.value],
        }

    @staticmethod
    def serialize(alert: SyncAlert) -> dict[str, Any]:
        return {
            "id": alert.id,
            "alert_key": alert.alert_key,
            "source": alert.source,
            "severity": alert.severity.value,
            "status": alert.status.value,
            "title": alert.title,
            "message": alert.message,
            "details": alert.details_json or {},
            "occurrences": alert.occurrences,
            "first_seen_at": isoformat(alert.first_seen_at),
            "last_seen_at": isoformat(alert.last_seen_at),
            "acknowledged_at": isoformat(alert.acknowledged_at),
            "resolved_at": isoformat(alert.resolved_at),
        }
