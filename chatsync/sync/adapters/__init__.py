"""Source system adapters used by the sync pipeline."""

from __future__ import annotations

from .b2chat import (
    B2ChatAdapterConfigError,
    B2ChatAdapterError,
    B2ChatAdapterReadiness,
    check_b2chat_adapter_readiness,
    ensure_b2chat_adapter_ready,
)

__all__ = [
    "B2ChatAdapterConfigError",
    "B2ChatAdapterError",
    "B2ChatAdapterReadiness",
    "check_b2chat_adapter_readiness",
    "ensure_b2chat_adapter_ready",
]
