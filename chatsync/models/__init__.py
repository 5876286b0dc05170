"""
Database models package
"""

from .base import BaseModel, db
from .chat import (
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
from .sync import (
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
    "db",
    "BaseModel",
    # Chat models
    "Agent",
    "Chat",
    "ChatProvider",
    "ChatStatus",
    "ChatStatusHistory",
    "Contact",
    "ContactSyncSource",
    "Department",
    "Message",
    "MessageType",
    # Sync models
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
