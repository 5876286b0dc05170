"""Canonical payload contracts for sync entity types."""

from __future__ import annotations

from .payloads import (
    CHAT_TIMESTAMP_FIELDS,
    CONTACT_FIELDS,
    AgentPayload,
    ChatPayload,
    ContactPayload,
    DepartmentPayload,
    FieldSpec,
    MessagePayload,
    normalize_provider,
    normalize_status,
    parse_duration,
    parse_messages,
    parse_payload,
    parse_timestamp,
)

__all__ = [
    "AgentPayload",
    "CHAT_TIMESTAMP_FIELDS",
    "CONTACT_FIELDS",
    "ChatPayload",
    "ContactPayload",
    "DepartmentPayload",
    "FieldSpec",
    "MessagePayload",
    "normalize_provider",
    "normalize_status",
    "parse_duration",
    "parse_messages",
    "parse_payload",
    "parse_timestamp",
]
