"""
Transform stage: turn pending staged payloads into normalized entities.

Each staged record is handled in its own transaction. A record that fails is
rolled back, its attempt counter is bumped and it is marked failed; the batch
carries on with the next record. Re-running an unchanged payload writes
nothing and counts as skipped.
"""

from __future__ import annotations

import hashlib
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Iterable, Mapping

from sqlalchemy import select
from sqlalchemy.orm import Session

from chatsync.models.base import db, utcnow
from chatsync.models.chat import (
    Agent,
    Chat,
    ChatProvider,
    ChatStatus,
    ChatStatusHistory,
    Contact,
    ContactSyncSource,
    Department,
    Message,
    MessageType,
)
from chatsync.models.sync.schema import StagingProcessingStatus, SyncRun, TransformLog, TransformStatus
from chatsync.sync.contracts.payloads import (
    CHAT_TIMESTAMP_FIELDS,
    AgentPayload,
    ChatPayload,
    ContactPayload,
    DepartmentPayload,
    MessagePayload,
)
from chatsync.sync.metrics import record_transform_batch
from chatsync.sync.registry import get_entity
from chatsync.sync.utils import ensure_utc

from .staging import mark_completed, mark_failed, mark_processing
from .status import derive_status, is_valid_transition

CHAT_TIMESTAMP_NAMES: tuple[str, ...] = tuple(spec.name for spec in CHAT_TIMESTAMP_FIELDS)
STUB_PROTECTED_SOURCES = frozenset({ContactSyncSource.CONTACTS_API, ContactSyncSource.UPGRADED})


def build_message_key(chat_external_id: str, timestamp: datetime, ordinal: int) -> str:
    """
    Derive the stable message identity.

    The ordinal is part of the key so that messages sharing a timestamp never
    collide.
    """

    iso_ts = ensure_utc(timestamp).isoformat()
    digest = hashlib.sha256(f"{chat_external_id}_{iso_ts}_{ordinal}".encode("utf-8")).hexdigest()
    return f"msg_{digest[:32]}"


def _values_equal(current: Any, new: Any) -> bool:
    if isinstance(current, datetime) and isinstance(new, datetime):
        return ensure_utc(current) == ensure_utc(new)
    if isinstance(current, Enum) and not isinstance(new, Enum):
        return current.value == new
    return current == new


def _apply_changes(entity, values: Mapping[str, Any], *, skip_none: bool = False) -> list[str]:
    """Set changed attributes on ``entity`` and return the names that changed."""

    changed: list[str] = []
    for name, value in values.items():
        if skip_none and value is None:
            continue
        if _values_equal(getattr(entity, name), value):
            continue
        setattr(entity, name, value)
        changed.append(name)
    return changed


@dataclass
class TransformResult:
    """Counters for one transform invocation."""

    transform_id: str
    entity_type: str
    processed: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    status_changes: int = 0
    changes: dict[str, dict[str, int]] = field(default_factory=lambda: defaultdict(lambda: defaultdict(int)))
    failed_record_ids: list[int] = field(default_factory=list)
    cancelled: bool = False

    def changes_summary(self) -> dict[str, Any]:
        summary: dict[str, Any] = {name: dict(counts) for name, counts in self.changes.items()}
        summary["status_changes"] = self.status_changes
        return summary

    def counts(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "failed": self.failed,
        }

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"transform_id": self.transform_id, "entity_type": self.entity_type}
        payload.update(self.counts())
        payload["changes_summary"] = self.changes_summary()
        return payload


@dataclass
class _RecordChanges:
    """Per-record change tally, merged into the result only once the record commits."""

    counts: dict[str, dict[str, int]] = field(default_factory=lambda: defaultdict(lambda: defaultdict(int)))
    status_changes: int = 0

    def note(self, entity: str, action: str, amount: int = 1) -> None:
        self.counts[entity][action] += amount


class SyncTransformer:
    """Process pending staged records for one entity type."""

    def __init__(self, session: Session | None = None, *, logger: logging.Logger | None = None) -> None:
        self.session = session or db.session
        self.logger = logger or logging.getLogger(__name__)

    def transform(
        self,
        entity_type: str,
        batch_size: int = 1000,
        *,
        run: SyncRun | None = None,
        sync_ids: Iterable[str] | None = None,
        extract_sync_id: str | None = None,
        should_cancel: Callable[[], bool] | None = None,
    ) -> TransformResult:
        """
        Transform up to ``batch_size`` pending records, oldest first.

        ``sync_ids`` limits the batch to records from specific extractions.
        ``should_cancel`` is checked before each record; once it returns true
        the batch stops, leaving the rest pending, and the result is flagged
        ``cancelled``.
        """

        descriptor = get_entity(entity_type)
        model = descriptor.staging_model
        started = time.perf_counter()
        now = utcnow()
        transform_id = f"transform_{descriptor.name}_{now.strftime('%Y%m%d%H%M%S%f')}"
        transform_log = TransformLog(
            transform_id=transform_id,
            run_id=run.id if run is not None else None,
            extract_sync_id=extract_sync_id,
            entity_type=descriptor.name,
            status=TransformStatus.RUNNING,
            started_at=now,
        )
        self.session.add(transform_log)
        self.session.commit()
        log_id = transform_log.id

        result = TransformResult(transform_id=transform_id, entity_type=descriptor.name)
        query = select(model.id).where(model.processing_status == StagingProcessingStatus.PENDING)
        if sync_ids is not None:
            query = query.where(model.sync_id.in_(list(sync_ids)))
        record_ids = list(self.session.scalars(query.order_by(model.id).limit(max(1, int(batch_size)))))

        try:
            for record_id in record_ids:
                if should_cancel is not None and should_cancel():
                    result.cancelled = True
                    break
                self._transform_record(descriptor.name, model, record_id, transform_id, result)
                self._update_log(log_id, result)
                self.session.commit()
        except Exception as exc:
            self.session.rollback()
            failed_log = self.session.get(TransformLog, log_id)
            if failed_log is not None:
                failed_log.status = TransformStatus.FAILED
                failed_log.error_message = str(exc)
                failed_log.completed_at = utcnow()
                self._update_log(log_id, result)
                self.session.commit()
            raise

        final_log = self.session.get(TransformLog, log_id)
        final_log.status = TransformStatus.CANCELLED if result.cancelled else TransformStatus.COMPLETED
        final_log.completed_at = utcnow()
        self._update_log(log_id, result)
        self.session.commit()

        duration = time.perf_counter() - started
        record_transform_batch(entity=descriptor.name, duration_seconds=duration, counts=result.counts())
        self.logger.info(
            "Transform batch completed",
            extra={
                "sync_entity": descriptor.name,
                "sync_transform_id": transform_id,
                "sync_counts": result.counts(),
                "sync_duration_seconds": round(duration, 3),
                "sync_cancelled": result.cancelled,
            },
        )
        return result

    # Record handling ------------------------------------------------------------

    def _transform_record(
        self,
        entity_type: str,
        model,
        record_id: int,
        transform_id: str,
        result: TransformResult,
    ) -> None:
        record = self.session.get(model, record_id)
        if record is None or record.processing_status != StagingProcessingStatus.PENDING:
            return
        mark_processing(record)
        self.session.commit()

        changes = _RecordChanges()
        try:
            if entity_type == "contacts":
                action = self._process_contact(record, changes)
            else:
                action = self._process_chat(record, transform_id, changes)
            mark_completed(record)
            self.session.commit()
        except Exception as exc:
            self.session.rollback()
            record = self.session.get(model, record_id)
            mark_failed(record, f"{type(exc).__name__}: {exc}")
            self.session.commit()
            result.processed += 1
            result.failed += 1
            result.failed_record_ids.append(record_id)
            self.logger.warning(
                "Staged record failed to transform",
                extra={
                    "sync_entity": entity_type,
                    "sync_record_id": record_id,
                    "sync_external_id": record.external_id,
                    "sync_error": str(exc),
                },
            )
            return

        result.processed += 1
        setattr(result, action, getattr(result, action) + 1)
        result.status_changes += changes.status_changes
        for entity, counts in changes.counts.items():
            for key, amount in counts.items():
                result.changes[entity][key] += amount

    def _update_log(self, log_id: int, result: TransformResult) -> None:
        transform_log = self.session.get(TransformLog, log_id)
        if transform_log is None:
            return
        transform_log.records_processed = result.processed
        transform_log.records_created = result.created
        transform_log.records_updated = result.updated
        transform_log.records_skipped = result.skipped
        transform_log.records_failed = result.failed
        transform_log.changes_summary_json = result.changes_summary()

    # Contacts -------------------------------------------------------------------

    def _process_contact(self, record, changes: _RecordChanges) -> str:
        payload = ContactPayload.from_raw(record.raw_data)
        contact = self.session.scalar(select(Contact).where(Contact.b2chat_id == payload.external_id))
        if contact is None:
            contact = Contact(
                b2chat_id=payload.external_id,
                sync_source=ContactSyncSource.CONTACTS_API,
                needs_full_sync=False,
                last_sync_at=utcnow(),
                **payload.field_values(),
            )
            self.session.add(contact)
            self.session.flush()
            changes.note("contacts", "created")
            return "created"

        changed = _apply_changes(contact, payload.field_values())
        if contact.sync_source == ContactSyncSource.CHAT_EMBEDDED:
            contact.sync_source = ContactSyncSource.UPGRADED
            changed.append("sync_source")
        if contact.needs_full_sync:
            contact.needs_full_sync = False
            changed.append("needs_full_sync")
        if not changed:
            changes.note("contacts", "unchanged")
            return "skipped"
        contact.last_sync_at = utcnow()
        changes.note("contacts", "updated")
        return "updated"

    def _resolve_embedded_contact(self, payload: ContactPayload | None, changes: _RecordChanges) -> Contact | None:
        """
        Link a chat to its contact.

        Contacts already synced from the contacts export are only linked.
        Chat-embedded stubs are refreshed from the embedded data, and unknown
        contacts become new stubs flagged for a full sync.
        """

        if payload is None:
            return None
        contact = self.session.scalar(select(Contact).where(Contact.b2chat_id == payload.external_id))
        values = {name: value for name, value in payload.field_values().items() if value is not None}
        if contact is None:
            contact = Contact(
                b2chat_id=payload.external_id,
                sync_source=ContactSyncSource.CHAT_EMBEDDED,
                needs_full_sync=True,
                last_sync_at=utcnow(),
                **values,
            )
            self.session.add(contact)
            self.session.flush()
            changes.note("contacts", "created")
            return contact
        if contact.sync_source in STUB_PROTECTED_SOURCES:
            changes.note("contacts", "unchanged")
            return contact
        if _apply_changes(contact, values):
            contact.last_sync_at = utcnow()
            changes.note("contacts", "updated")
        else:
            changes.note("contacts", "unchanged")
        return contact

    # Agents and departments -----------------------------------------------------

    def _resolve_agent(self, payload: AgentPayload | None, changes: _RecordChanges) -> Agent | None:
        if payload is None:
            return None
        agent = self.session.scalar(select(Agent).where(Agent.b2chat_id == payload.key))
        values = {"name": payload.name, "email": payload.email, "username": payload.username}
        if agent is None:
            agent = Agent(
                b2chat_id=payload.key,
                needs_full_sync=payload.is_stub,
                last_sync_at=utcnow(),
                **values,
            )
            self.session.add(agent)
            self.session.flush()
            changes.note("agents", "created")
            return agent
        changed = _apply_changes(agent, values, skip_none=True)
        if agent.needs_full_sync and not payload.is_stub:
            agent.needs_full_sync = False
            changed.append("needs_full_sync")
        if changed:
            agent.last_sync_at = utcnow()
            changes.note("agents", "updated")
        else:
            changes.note("agents", "unchanged")
        return agent

    def _resolve_department(self, payload: DepartmentPayload | None, changes: _RecordChanges) -> Department | None:
        if payload is None:
            return None
        department = self.session.scalar(select(Department).where(Department.b2chat_code == payload.code))
        if department is None:
            department = Department(
                b2chat_code=payload.code,
                name=payload.name,
                needs_full_sync=payload.is_stub,
                last_sync_at=utcnow(),
            )
            self.session.add(department)
            self.session.flush()
            changes.note("departments", "created")
            return department
        changed = _apply_changes(department, {"name": payload.name}, skip_none=True)
        if department.needs_full_sync and not payload.is_stub:
            department.needs_full_sync = False
            changed.append("needs_full_sync")
        if changed:
            department.last_sync_at = utcnow()
            changes.note("departments", "updated")
        else:
            changes.note("departments", "unchanged")
        return department

    # Chats ----------------------------------------------------------------------

    def _process_chat(self, record, transform_id: str, changes: _RecordChanges) -> str:
        payload = ChatPayload.from_raw(record.raw_data)
        agent = self._resolve_agent(payload.agent, changes)
        department = self._resolve_department(payload.department, changes)
        contact = self._resolve_embedded_contact(payload.contact, changes)
        if payload.contact is None and record.raw_data.get("contact"):
            changes.note("contacts", "missing_id")
            self.logger.debug(
                "Embedded contact has no B2Chat id; chat stored without a contact",
                extra={"sync_chat_id": payload.external_id},
            )

        values: dict[str, Any] = {
            "contact_id": contact.id if contact is not None else None,
            "agent_id": agent.id if agent is not None else None,
            "department_id": department.id if department is not None else None,
            "provider": ChatProvider(payload.provider),
            "alias": payload.alias,
            "tags": payload.tags,
            "is_agent_available": payload.is_agent_available,
            "duration": payload.duration,
            "poll_response": payload.poll_response,
            "unknown_fields": payload.unknown_fields or None,
        }
        timestamps = {name: payload.timestamps.get(name) for name in CHAT_TIMESTAMP_NAMES}

        chat = self.session.scalar(select(Chat).where(Chat.b2chat_id == payload.external_id))
        if chat is None:
            chat = Chat(
                b2chat_id=payload.external_id,
                last_sync_at=utcnow(),
                **values,
                **{name: value for name, value in timestamps.items() if value is not None},
            )
            chat.status = self._derive_chat_status(payload)
            if chat.created_at is None:
                chat.created_at = utcnow()
            self.session.add(chat)
            self.session.flush()
            self._record_status_change(chat, None, chat.status, record.sync_id, transform_id)
            messages_added = self._insert_missing_messages(chat, payload.external_id, payload.messages, changes)
            changes.note("chats", "created")
            changes.note("messages", "created", messages_added)
            return "created"

        changed = _apply_changes(chat, values)
        changed.extend(_apply_changes(chat, timestamps, skip_none=True))
        new_status = self._derive_chat_status(payload)
        previous_status = chat.status
        if new_status != previous_status:
            if not is_valid_transition(previous_status, new_status):
                self.logger.warning(
                    "Chat status moved against the lifecycle order",
                    extra={
                        "sync_chat_id": payload.external_id,
                        "sync_previous_status": previous_status.value if previous_status else None,
                        "sync_new_status": new_status.value,
                    },
                )
            chat.status = new_status
            changed.append("status")
            self._record_status_change(chat, previous_status, new_status, record.sync_id, transform_id)
            changes.status_changes += 1

        messages_added = self._insert_missing_messages(chat, payload.external_id, payload.messages, changes)
        if messages_added:
            changes.note("messages", "created", messages_added)
            changed.append("messages")

        if not changed:
            changes.note("chats", "unchanged")
            return "skipped"
        chat.last_sync_at = utcnow()
        changes.note("chats", "updated")
        return "updated"

    @staticmethod
    def _derive_chat_status(payload: ChatPayload) -> ChatStatus:
        return derive_status(payload.timestamps, closed_flag=payload.closed_flag)

    def _record_status_change(
        self,
        chat: Chat,
        previous: ChatStatus | None,
        new: ChatStatus,
        sync_id: str,
        transform_id: str,
    ) -> None:
        self.session.add(
            ChatStatusHistory(
                chat_id=chat.id,
                previous_status=previous,
                new_status=new,
                changed_at=utcnow(),
                sync_id=sync_id,
                transform_id=transform_id,
            )
        )

    def _insert_missing_messages(
        self,
        chat: Chat,
        chat_external_id: str,
        messages: Iterable[MessagePayload],
        changes: _RecordChanges,
    ) -> int:
        """Insert messages whose key is not yet stored; return how many were added."""

        messages = list(messages)
        if not messages:
            return 0
        existing = {
            ordinal: key
            for ordinal, key in self.session.execute(
                select(Message.ordinal, Message.message_key).where(Message.chat_id == chat.id)
            )
        }
        existing_keys = set(existing.values())
        added = 0
        for message in messages:
            key = build_message_key(chat_external_id, message.timestamp, message.ordinal)
            if key in existing_keys:
                continue
            if message.ordinal in existing:
                # Ordinal already holds a different message; the stored history wins.
                changes.note("messages", "conflicted")
                self.logger.warning(
                    "Message ordinal already taken by a different message",
                    extra={"sync_chat_id": chat_external_id, "sync_message_ordinal": message.ordinal},
                )
                continue
            self.session.add(
                Message(
                    message_key=key,
                    chat_id=chat.id,
                    ordinal=message.ordinal,
                    timestamp=message.timestamp,
                    incoming=message.incoming,
                    broadcasted=message.broadcasted,
                    type=MessageType(message.type),
                    text=message.text,
                    image_url=message.image_url,
                    file_url=message.file_url,
                    caption=message.caption,
                )
            )
            existing[message.ordinal] = key
            existing_keys.add(key)
            added += 1
        return added
