"""
Normalized chat-platform entities populated by the sync transformer.
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import Enum, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import BaseModel, db, utcnow


class ChatStatus(str, enum.Enum):
    """Lifecycle states for a chat conversation."""

    BOT_CHATTING = "BOT_CHATTING"
    OPENED = "OPENED"
    PICKED_UP = "PICKED_UP"
    RESPONDED_BY_AGENT = "RESPONDED_BY_AGENT"
    CLOSED = "CLOSED"
    COMPLETING_POLL = "COMPLETING_POLL"
    COMPLETED_POLL = "COMPLETED_POLL"
    ABANDONED_POLL = "ABANDONED_POLL"


class ChatProvider(str, enum.Enum):
    WHATSAPP = "whatsapp"
    FACEBOOK = "facebook"
    TELEGRAM = "telegram"
    LIVECHAT = "livechat"
    B2CBOTAPI = "b2cbotapi"


class ContactSyncSource(str, enum.Enum):
    """Where the contact row came from."""

    CONTACTS_API = "contacts_api"
    CHAT_EMBEDDED = "chat_embedded"
    UPGRADED = "upgraded"


class MessageType(str, enum.Enum):
    TEXT = "text"
    IMAGE = "image"
    FILE = "file"


class Contact(BaseModel):
    """Customer contact. Rows created from chat payloads are stubs until the contacts export fills them in."""

    __tablename__ = "contacts"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    b2chat_id: Mapped[str] = mapped_column(db.String(255), nullable=False, unique=True)
    full_name: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    mobile: Mapped[str | None] = mapped_column(db.String(64), nullable=True, index=True)
    phone_number: Mapped[str | None] = mapped_column(db.String(64), nullable=True)
    email: Mapped[str | None] = mapped_column(db.String(255), nullable=True, index=True)
    identification: Mapped[str | None] = mapped_column(db.String(128), nullable=True)
    address: Mapped[str | None] = mapped_column(db.String(500), nullable=True)
    city: Mapped[str | None] = mapped_column(db.String(128), nullable=True)
    country: Mapped[str | None] = mapped_column(db.String(128), nullable=True)
    company: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    merchant_id: Mapped[str | None] = mapped_column(db.String(128), nullable=True)
    custom_attributes: Mapped[dict | None] = mapped_column(db.JSON(none_as_null=True), nullable=True)
    tags: Mapped[list | None] = mapped_column(db.JSON(none_as_null=True), nullable=True)
    b2chat_created_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    b2chat_updated_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    sync_source: Mapped[ContactSyncSource] = mapped_column(
        Enum(ContactSyncSource, name="contact_sync_source_enum"),
        nullable=False,
        default=ContactSyncSource.CONTACTS_API,
    )
    needs_full_sync: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    last_sync_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))

    chats = relationship(
        "Chat",
        back_populates="contact",
        primaryjoin="Contact.id == foreign(Chat.contact_id)",
    )


class Agent(BaseModel):
    __tablename__ = "agents"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    b2chat_id: Mapped[str] = mapped_column(db.String(255), nullable=False, unique=True)
    name: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    email: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    username: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=True)
    needs_full_sync: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    last_sync_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))

    chats = relationship(
        "Chat",
        back_populates="agent",
        primaryjoin="Agent.id == foreign(Chat.agent_id)",
    )


class Department(BaseModel):
    __tablename__ = "departments"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    b2chat_code: Mapped[str] = mapped_column(db.String(255), nullable=False, unique=True)
    name: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=True)
    needs_full_sync: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    last_sync_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))

    chats = relationship("Chat", back_populates="department")


class Chat(BaseModel):
    """
    A single conversation.

    ``created_at`` holds the source creation time reported by the platform, so
    the stale-chat and timeline checks can compare it against the other
    lifecycle timestamps.
    """

    __tablename__ = "chats"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    b2chat_id: Mapped[str] = mapped_column(db.String(255), nullable=False, unique=True)
    contact_id: Mapped[int | None] = mapped_column(db.Integer, nullable=True, index=True)
    agent_id: Mapped[int | None] = mapped_column(db.Integer, nullable=True, index=True)
    department_id: Mapped[int | None] = mapped_column(
        ForeignKey("departments.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    provider: Mapped[ChatProvider] = mapped_column(
        Enum(ChatProvider, name="chat_provider_enum"),
        nullable=False,
        default=ChatProvider.LIVECHAT,
    )
    status: Mapped[ChatStatus] = mapped_column(
        Enum(ChatStatus, name="chat_status_enum"),
        nullable=False,
        default=ChatStatus.OPENED,
        index=True,
    )
    alias: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    tags: Mapped[list | None] = mapped_column(db.JSON(none_as_null=True), nullable=True)
    is_agent_available: Mapped[bool | None] = mapped_column(db.Boolean, nullable=True)
    created_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    opened_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    picked_up_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    response_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    closed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    poll_started_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    poll_completed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    poll_abandoned_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    poll_response: Mapped[dict | None] = mapped_column(db.JSON(none_as_null=True), nullable=True)
    duration: Mapped[int | None] = mapped_column(db.Integer, nullable=True, comment="Duration in seconds.")
    unknown_fields: Mapped[dict | None] = mapped_column(
        db.JSON(none_as_null=True),
        nullable=True,
        comment="Payload fields the transformer did not recognise.",
    )
    last_sync_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))

    contact = relationship(
        "Contact",
        back_populates="chats",
        primaryjoin="foreign(Chat.contact_id) == Contact.id",
    )
    agent = relationship(
        "Agent",
        back_populates="chats",
        primaryjoin="foreign(Chat.agent_id) == Agent.id",
    )
    department = relationship("Department", back_populates="chats")
    messages = relationship(
        "Message",
        back_populates="chat",
        primaryjoin="Chat.id == foreign(Message.chat_id)",
        order_by="Message.ordinal",
    )
    status_history = relationship(
        "ChatStatusHistory",
        back_populates="chat",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="ChatStatusHistory.id",
    )

    __table_args__ = (Index("idx_chats_status_created", "status", "created_at"),)


class Message(BaseModel):
    """
    A single chat message.

    ``message_key`` is derived from the chat external id, the message
    timestamp and the ordinal so messages sharing a timestamp stay distinct.
    """

    __tablename__ = "messages"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    message_key: Mapped[str] = mapped_column(db.String(64), nullable=False, unique=True)
    chat_id: Mapped[int] = mapped_column(db.Integer, nullable=False, index=True)
    ordinal: Mapped[int] = mapped_column(db.Integer, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False)
    incoming: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    broadcasted: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    type: Mapped[MessageType] = mapped_column(
        Enum(MessageType, name="message_type_enum"),
        nullable=False,
        default=MessageType.TEXT,
    )
    text: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    image_url: Mapped[str | None] = mapped_column(db.String(1024), nullable=True)
    file_url: Mapped[str | None] = mapped_column(db.String(1024), nullable=True)
    caption: Mapped[str | None] = mapped_column(db.Text, nullable=True)

    chat = relationship(
        "Chat",
        back_populates="messages",
        primaryjoin="foreign(Message.chat_id) == Chat.id",
    )

    __table_args__ = (
        UniqueConstraint("chat_id", "ordinal", name="uq_messages_chat_ordinal"),
        Index("idx_messages_chat_timestamp", "chat_id", "timestamp"),
    )


class ChatStatusHistory(BaseModel):
    """Append-only log of observed chat status changes."""

    __tablename__ = "chat_status_history"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    chat_id: Mapped[int] = mapped_column(
        ForeignKey("chats.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    previous_status: Mapped[ChatStatus | None] = mapped_column(
        Enum(ChatStatus, name="chat_status_enum"),
        nullable=True,
    )
    new_status: Mapped[ChatStatus] = mapped_column(
        Enum(ChatStatus, name="chat_status_enum"),
        nullable=False,
    )
    changed_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    sync_id: Mapped[str | None] = mapped_column(db.String(128), nullable=True)
    transform_id: Mapped[str | None] = mapped_column(db.String(128), nullable=True)

    chat = relationship("Chat", back_populates="status_history")
