"""
Registry of syncable entity types.

Each descriptor ties an entity type to its export endpoint and the raw staging
table that holds its payloads, so the extractor, transformer and status views
can share one lookup.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from typing import Iterable, Mapping, Sequence, Tuple, Type

from chatsync.models.sync.schema import RawChat, RawContact


@dataclass(frozen=True)
class EntityDescriptor:
    """Metadata describing a syncable entity type."""

    name: str
    title: str
    export_path: str
    items_key: str
    range_params: Tuple[str, str]
    staging_model: Type
    summary: str | None = None


def get_entity_registry() -> Mapping[str, EntityDescriptor]:
    """Return the registry of supported entity types in processing order."""

    return OrderedDict(
        (
            (
                "contacts",
                EntityDescriptor(
                    name="contacts",
                    title="Contacts",
                    export_path="/contacts/export",
                    items_key="contacts",
                    range_params=("updated_from", "updated_to"),
                    staging_model=RawContact,
                    summary="Customer contact profiles.",
                ),
            ),
            (
                "chats",
                EntityDescriptor(
                    name="chats",
                    title="Chats",
                    export_path="/chats/export",
                    items_key="chats",
                    range_params=("date_range_from", "date_range_to"),
                    staging_model=RawChat,
                    summary="Conversations with embedded agents, departments, contacts and messages.",
                ),
            ),
        )
    )


def get_entity(entity_type: str) -> EntityDescriptor:
    """Return the descriptor for ``entity_type`` or raise ``ValueError``."""

    registry = get_entity_registry()
    key = (entity_type or "").strip().lower()
    if key not in registry:
        raise ValueError(
            f"Unknown entity type '{entity_type}'. Expected one of: {', '.join(registry)}."
        )
    return registry[key]


def resolve_entities(
    requested: Sequence[str] | str,
    allowed: Iterable[str] | None = None,
) -> Tuple[EntityDescriptor, ...]:
    """
    Expand an entity request (``contacts``, ``chats`` or ``all``) into descriptors.

    ``allowed`` limits the result to the configured entity list: ``all``
    expands to the allowed entities, while naming a disallowed entity raises
    ``ValueError``.
    """

    registry = get_entity_registry()
    allowed_set = set(allowed) if allowed is not None else set(registry)
    if isinstance(requested, str):
        requested = (requested,)
    names: list[str] = []
    for item in requested:
        key = (item or "").strip().lower()
        if key == "all":
            names.extend(name for name in registry if name in allowed_set)
        else:
            names.append(get_entity(key).name)

    resolved: list[EntityDescriptor] = []
    for name in dict.fromkeys(names):
        if name not in allowed_set:
            raise ValueError(f"Entity type '{name}' is not enabled for sync.")
        resolved.append(registry[name])
    return tuple(resolved)
