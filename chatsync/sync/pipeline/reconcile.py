"""
Read-only contact reconciliation report.

Counts contacts by where they came from and lists chat-embedded stubs that
still wait for a full contacts export. Nothing is written.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from chatsync.models.base import db, utcnow
from chatsync.models.chat import Contact, ContactSyncSource
from chatsync.sync.utils import ensure_utc, isoformat

DEFAULT_STALE_DAYS = 7
DEFAULT_STALE_LIMIT = 100


def reconcile_contacts(
    *,
    stale_days: int = DEFAULT_STALE_DAYS,
    limit: int = DEFAULT_STALE_LIMIT,
    session: Session | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Report contact sync coverage.

    A stub is stale when it still needs a full sync and was last synced
    more than ``stale_days`` ago. At most ``limit`` stale stubs are listed,
    oldest first; ``summary["stale_stubs"]`` counts all of them.
    """

    session = session or db.session
    now = ensure_utc(now) or utcnow()
    cutoff = now - timedelta(days=stale_days)

    by_source = {source.value: 0 for source in ContactSyncSource}
    rows = session.execute(select(Contact.sync_source, func.count(Contact.id)).group_by(Contact.sync_source))
    for source, total in rows:
        key = source.value if isinstance(source, ContactSyncSource) else str(source)
        by_source[key] = int(total)

    stale_filter = (Contact.needs_full_sync.is_(True), Contact.last_sync_at < cutoff)
    stale_total = int(session.scalar(select(func.count(Contact.id)).where(*stale_filter)) or 0)
    needs_full_sync = int(session.scalar(select(func.count(Contact.id)).where(Contact.needs_full_sync.is_(True))) or 0)
    stale = session.scalars(
        select(Contact).where(*stale_filter).order_by(Contact.last_sync_at.asc(), Contact.id.asc()).limit(max(0, limit))
    ).all()

    stale_stubs = []
    for contact in stale:
        last_sync_at = ensure_utc(contact.last_sync_at)
        stale_stubs.append(
            {
                "b2chat_id": contact.b2chat_id,
                "full_name": contact.full_name,
                "last_sync_at": isoformat(last_sync_at),
                "days_since_last_sync": (now - last_sync_at).days if last_sync_at else None,
            }
        )

    if stale_total:
        recommendations = [
            "Run a contacts extraction to upgrade stale stubs.",
            "Review stale contacts; they may have been deleted in B2Chat.",
        ]
    else:
        recommendations = ["No action needed; all contacts are up to date."]

    return {
        "checked_at": isoformat(now),
        "stale_after_days": stale_days,
        "summary": {
            "total_contacts": sum(by_source.values()),
            "stubs": by_source[ContactSyncSource.CHAT_EMBEDDED.value],
            "full_contacts": by_source[ContactSyncSource.CONTACTS_API.value],
            "upgraded": by_source[ContactSyncSource.UPGRADED.value],
            "needs_full_sync": needs_full_sync,
            "stale_stubs": stale_total,
        },
        "stale_stubs": stale_stubs,
        "recommendations": recommendations,
    }
