"""Canonical payload contracts for B2Chat export records.

Each entity type parses into a frozen dataclass. Every key the contract does
not recognise is preserved in ``unknown_fields`` so nothing from the source is
silently dropped, and the transformer never has to dig through raw dictionaries.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Tuple

from chatsync.sync.errors import PayloadError

Normalizer = Callable[[object | None], object | None]

STATUS_ALIASES: Mapping[str, str] = {
    "BOT_CHATTING": "BOT_CHATTING",
    "OPENED": "OPENED",
    "PICKED_UP": "PICKED_UP",
    "RESPONDED_BY_AGENT": "RESPONDED_BY_AGENT",
    "CLOSED": "CLOSED",
    "COMPLETING_POLL": "COMPLETING_POLL",
    "COMPLETED_POLL": "COMPLETED_POLL",
    "ABANDONED_POLL": "ABANDONED_POLL",
    # Legacy values still emitted by older exports
    "OPEN": "PICKED_UP",
    "FINISHED": "CLOSED",
    "PENDING": "OPENED",
}

_DURATION_REGEX = re.compile(r"^(\d+):([0-5]?\d):([0-5]?\d)$")


def _strip_string(value: object | None) -> object | None:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return value


def _as_string(value: object | None) -> str | None:
    value = _strip_string(value)
    if value is None:
        return None
    return str(value)


def parse_timestamp(value: object | None) -> datetime | None:
    """
    Parse ISO-8601 strings, ``YYYY-MM-DD HH:MM:SS`` strings, or epoch seconds.

    Naive values are treated as UTC; unparseable values return ``None``.
    """

    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return datetime.fromtimestamp(float(value), timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        candidate = value.strip()
        if candidate.endswith("Z"):
            candidate = candidate[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(candidate)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_duration(value: object | None) -> int | None:
    """Return a duration in seconds from ``HH:MM:SS`` text or a number."""

    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        match = _DURATION_REGEX.match(text)
        if match:
            hours, minutes, seconds = (int(part) for part in match.groups())
            return hours * 3600 + minutes * 60 + seconds
        try:
            return int(float(text))
        except ValueError:
            return None
    return None


def normalize_status(value: object | None) -> str | None:
    """Uppercase, collapse whitespace to underscores, and resolve legacy aliases."""

    if value is None:
        return None
    normalized = re.sub(r"\s+", "_", str(value).strip().upper())
    if not normalized:
        return None
    return STATUS_ALIASES.get(normalized)


def normalize_provider(value: object | None) -> str:
    if not value:
        return "livechat"
    normalized = str(value).strip().lower()
    if normalized.endswith("b2chat"):
        normalized = normalized[: -len("b2chat")]
    if "whatsapp" in normalized:
        return "whatsapp"
    if "facebook" in normalized:
        return "facebook"
    if "telegram" in normalized:
        return "telegram"
    if "bot" in normalized or "api" in normalized:
        return "b2cbotapi"
    return "livechat"


def _as_bool(value: object | None) -> bool | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in {"1", "true", "yes", "on"}:
        return True
    if text in {"0", "false", "no", "off"}:
        return False
    return None


@dataclass(frozen=True)
class FieldSpec:
    """Metadata describing a canonical payload field."""

    name: str
    aliases: Tuple[str, ...] = ()
    normalizer: Normalizer | None = _strip_string

    def headers(self) -> Tuple[str, ...]:
        return (self.name, *self.aliases)

    def extract(self, raw: Mapping[str, Any]) -> object | None:
        for key in self.headers():
            if key in raw:
                value = raw[key]
                if self.normalizer is not None:
                    value = self.normalizer(value)
                if value is not None:
                    return value
        return None


def _known_keys(specs: Tuple[FieldSpec, ...], *extra: str) -> frozenset[str]:
    keys: set[str] = set(extra)
    for spec in specs:
        keys.update(spec.headers())
    return frozenset(keys)


def _unknown(raw: Mapping[str, Any], known: frozenset[str]) -> dict[str, Any]:
    return {str(key): value for key, value in raw.items() if key not in known}


CONTACT_FIELDS: Tuple[FieldSpec, ...] = (
    FieldSpec("full_name", aliases=("fullname", "name")),
    FieldSpec("mobile", aliases=("mobile_number",), normalizer=_as_string),
    FieldSpec("phone_number", aliases=("landline",), normalizer=_as_string),
    FieldSpec("email"),
    FieldSpec("identification", normalizer=_as_string),
    FieldSpec("address"),
    FieldSpec("city"),
    FieldSpec("country"),
    FieldSpec("company"),
    FieldSpec("merchant_id", normalizer=_as_string),
    FieldSpec("custom_attributes", normalizer=None),
    FieldSpec("tags", normalizer=None),
    FieldSpec("b2chat_created_at", aliases=("created",), normalizer=parse_timestamp),
    FieldSpec("b2chat_updated_at", aliases=("updated",), normalizer=parse_timestamp),
)
CONTACT_ID_KEYS: Tuple[str, ...] = ("contact_id", "id", "mobile", "mobile_number", "identification")
# Chat exports embed contacts that must only ever match on the B2Chat id.
EMBEDDED_CONTACT_ID_KEYS: Tuple[str, ...] = ("id", "contact_id")
_CONTACT_KNOWN = _known_keys(CONTACT_FIELDS, *CONTACT_ID_KEYS, "row_index")


@dataclass(frozen=True)
class ContactPayload:
    """Contact as exported by ``/contacts/export`` or embedded in a chat."""

    external_id: str
    full_name: str | None = None
    mobile: str | None = None
    phone_number: str | None = None
    email: str | None = None
    identification: str | None = None
    address: str | None = None
    city: str | None = None
    country: str | None = None
    company: str | None = None
    merchant_id: str | None = None
    custom_attributes: Any = None
    tags: Any = None
    b2chat_created_at: datetime | None = None
    b2chat_updated_at: datetime | None = None
    unknown_fields: dict[str, Any] = field(default_factory=dict)

    entity_type = "contacts"

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any]) -> "ContactPayload":
        if not isinstance(raw, Mapping):
            raise PayloadError("Contact payload must be an object.")
        external_id = None
        for key in CONTACT_ID_KEYS:
            external_id = _as_string(raw.get(key))
            if external_id:
                break
        if not external_id:
            raise PayloadError("No valid contact identifier found")
        return cls._build(external_id, raw)

    @classmethod
    def from_embedded(cls, raw: object | None) -> "ContactPayload | None":
        """
        Parse a contact embedded in a chat payload.

        Only the B2Chat contact id identifies an embedded contact. Returns
        ``None`` when the payload has none, so the chat is stored without a
        contact link instead of being keyed on a phone number.
        """

        if not isinstance(raw, Mapping) or not raw:
            return None
        for key in EMBEDDED_CONTACT_ID_KEYS:
            external_id = _as_string(raw.get(key))
            if external_id:
                return cls._build(external_id, raw)
        return None

    @classmethod
    def _build(cls, external_id: str, raw: Mapping[str, Any]) -> "ContactPayload":
        values = {spec.name: spec.extract(raw) for spec in CONTACT_FIELDS}
        return cls(external_id=external_id, unknown_fields=_unknown(raw, _CONTACT_KNOWN), **values)

    def field_values(self) -> dict[str, Any]:
        """Return the column values the transformer writes to ``Contact``."""
        return {spec.name: getattr(self, spec.name) for spec in CONTACT_FIELDS}


@dataclass(frozen=True)
class AgentPayload:
    key: str
    name: str | None = None
    email: str | None = None
    username: str | None = None

    @property
    def is_stub(self) -> bool:
        """Agents known only by name still need a full profile sync."""
        return not self.username and not self.email

    @classmethod
    def from_raw(cls, raw: object | None) -> "AgentPayload | None":
        if raw is None or raw == "":
            return None
        if isinstance(raw, str):
            name = raw.strip()
            return cls(key=name, name=name) if name else None
        if not isinstance(raw, Mapping):
            raise PayloadError("Agent payload must be a string or an object.")
        name = _as_string(raw.get("name"))
        email = _as_string(raw.get("email"))
        username = _as_string(raw.get("username"))
        key = username or email or name
        if not key:
            return None
        return cls(key=key, name=name, email=email, username=username)


@dataclass(frozen=True)
class DepartmentPayload:
    code: str
    name: str | None = None

    @property
    def is_stub(self) -> bool:
        return self.code == self.name

    @classmethod
    def from_raw(cls, raw: object | None) -> "DepartmentPayload | None":
        if raw is None or raw == "":
            return None
        if isinstance(raw, str):
            name = raw.strip()
            return cls(code=name, name=name) if name else None
        if not isinstance(raw, Mapping):
            raise PayloadError("Department payload must be a string or an object.")
        name = _as_string(raw.get("name") or raw.get("department_name"))
        code = _as_string(raw.get("code") or raw.get("department_code") or raw.get("id")) or name
        if not code:
            return None
        return cls(code=code, name=name)


@dataclass(frozen=True)
class MessagePayload:
    """One message. ``ordinal`` is its position in the chat's timestamp-ordered list."""

    ordinal: int
    timestamp: datetime
    incoming: bool
    type: str
    text: str | None = None
    image_url: str | None = None
    file_url: str | None = None
    caption: str | None = None
    broadcasted: bool = False


def _normalize_message_type(value: object | None) -> str:
    normalized = str(value or "text").strip().lower()
    if normalized in {"text", "image"}:
        return normalized
    return "file"


def parse_messages(raw_messages: object | None) -> tuple[MessagePayload, ...]:
    """
    Parse and order chat messages.

    Messages are sorted by timestamp with a stable sort, so messages that share
    a timestamp keep their payload order; each then receives its ordinal.
    Entries without a parseable timestamp are skipped.
    """

    if not raw_messages:
        return ()
    if not isinstance(raw_messages, (list, tuple)):
        raise PayloadError("Chat messages must be a list.")
    timed: list[tuple[datetime, Mapping[str, Any]]] = []
    for raw in raw_messages:
        if not isinstance(raw, Mapping):
            continue
        timestamp = parse_timestamp(raw.get("created_at") or raw.get("timestamp"))
        if timestamp is None:
            continue
        timed.append((timestamp, raw))
    timed.sort(key=lambda item: item[0])

    messages: list[MessagePayload] = []
    for ordinal, (timestamp, raw) in enumerate(timed):
        message_type = _normalize_message_type(raw.get("type"))
        body = raw.get("body")
        body_text = body if isinstance(body, str) else None
        messages.append(
            MessagePayload(
                ordinal=ordinal,
                timestamp=timestamp,
                incoming=bool(_as_bool(raw.get("incoming"))),
                type=message_type,
                text=body_text if message_type == "text" else None,
                image_url=body_text if message_type == "image" else None,
                file_url=body_text if message_type == "file" else None,
                caption=_as_string(raw.get("caption")),
                broadcasted=bool(_as_bool(raw.get("broadcasted"))),
            )
        )
    return tuple(messages)


CHAT_TIMESTAMP_FIELDS: Tuple[FieldSpec, ...] = (
    FieldSpec("created_at", normalizer=parse_timestamp),
    FieldSpec("opened_at", normalizer=parse_timestamp),
    FieldSpec("picked_up_at", normalizer=parse_timestamp),
    FieldSpec("response_at", aliases=("responded_at",), normalizer=parse_timestamp),
    FieldSpec("closed_at", normalizer=parse_timestamp),
    FieldSpec("poll_started_at", normalizer=parse_timestamp),
    FieldSpec("poll_completed_at", normalizer=parse_timestamp),
    FieldSpec("poll_abandoned_at", normalizer=parse_timestamp),
)
_CHAT_KNOWN = _known_keys(
    CHAT_TIMESTAMP_FIELDS,
    "chat_id",
    "alias",
    "agent",
    "contact",
    "department",
    "provider",
    "status",
    "is_agent_available",
    "duration",
    "poll_response",
    "messages",
    "tags",
)


@dataclass(frozen=True)
class ChatPayload:
    """Chat as exported by ``/chats/export`` with its embedded references."""

    external_id: str
    provider: str = "livechat"
    status: str | None = None
    alias: str | None = None
    tags: Any = None
    is_agent_available: bool | None = None
    duration: int | None = None
    poll_response: Any = None
    timestamps: dict[str, datetime | None] = field(default_factory=dict)
    agent: AgentPayload | None = None
    department: DepartmentPayload | None = None
    contact: ContactPayload | None = None
    messages: tuple[MessagePayload, ...] = ()
    unknown_fields: dict[str, Any] = field(default_factory=dict)

    entity_type = "chats"

    @property
    def closed_flag(self) -> bool:
        """Whether the source explicitly reported the chat as closed."""
        return self.status == "CLOSED"

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any]) -> "ChatPayload":
        if not isinstance(raw, Mapping):
            raise PayloadError("Chat payload must be an object.")
        external_id = _as_string(raw.get("chat_id"))
        if not external_id:
            raise PayloadError("Chat payload is missing chat_id")

        return cls(
            external_id=external_id,
            provider=normalize_provider(raw.get("provider")),
            status=normalize_status(raw.get("status")),
            alias=_as_string(raw.get("alias")),
            tags=raw.get("tags"),
            is_agent_available=_as_bool(raw.get("is_agent_available")),
            duration=parse_duration(raw.get("duration")),
            poll_response=raw.get("poll_response"),
            timestamps={spec.name: spec.extract(raw) for spec in CHAT_TIMESTAMP_FIELDS},
            agent=AgentPayload.from_raw(raw.get("agent")),
            department=DepartmentPayload.from_raw(raw.get("department")),
            contact=ContactPayload.from_embedded(raw.get("contact")),
            messages=parse_messages(raw.get("messages")),
            unknown_fields=_unknown(raw, _CHAT_KNOWN),
        )


_PAYLOAD_MODELS: Mapping[str, Callable[[Mapping[str, Any]], Any]] = {
    "contacts": ContactPayload.from_raw,
    "chats": ChatPayload.from_raw,
}


def parse_payload(entity_type: str, raw: Mapping[str, Any]) -> ContactPayload | ChatPayload:
    """Dispatch on the entity-type tag and parse ``raw`` into its payload model."""

    parser = _PAYLOAD_MODELS.get(entity_type)
    if parser is None:
        raise PayloadError(f"Unsupported entity type '{entity_type}'.")
    return parser(raw)
