"""
Chat status state machine.

``derive_status`` is pure: it looks only at the lifecycle timestamps and the
explicit closed flag, so the transformer and the validator agree on the same
precedence rules.
"""

from __future__ import annotations

from datetime import datetime
from typing import Mapping

from chatsync.models.chat import ChatStatus

MAIN_PATH: tuple[ChatStatus, ...] = (
    ChatStatus.BOT_CHATTING,
    ChatStatus.OPENED,
    ChatStatus.PICKED_UP,
    ChatStatus.RESPONDED_BY_AGENT,
    ChatStatus.CLOSED,
)
SURVEY_PATH: tuple[ChatStatus, ...] = (
    ChatStatus.CLOSED,
    ChatStatus.COMPLETING_POLL,
)
SURVEY_OUTCOMES = frozenset({ChatStatus.COMPLETED_POLL, ChatStatus.ABANDONED_POLL})

STATUS_FAMILIES: Mapping[str, frozenset[ChatStatus]] = {
    "open": frozenset(
        {
            ChatStatus.BOT_CHATTING,
            ChatStatus.OPENED,
            ChatStatus.PICKED_UP,
            ChatStatus.RESPONDED_BY_AGENT,
        }
    ),
    "closed": frozenset({ChatStatus.CLOSED, ChatStatus.COMPLETED_POLL, ChatStatus.ABANDONED_POLL}),
    "survey": frozenset({ChatStatus.COMPLETING_POLL, ChatStatus.COMPLETED_POLL, ChatStatus.ABANDONED_POLL}),
}

# Ordered furthest-along first so ties resolve toward later states.
_ORDINARY_STEPS: tuple[tuple[str, ChatStatus], ...] = (
    ("response_at", ChatStatus.RESPONDED_BY_AGENT),
    ("picked_up_at", ChatStatus.PICKED_UP),
    ("opened_at", ChatStatus.OPENED),
    ("created_at", ChatStatus.BOT_CHATTING),
)

_RANK: Mapping[ChatStatus, int] = {
    ChatStatus.BOT_CHATTING: 0,
    ChatStatus.OPENED: 1,
    ChatStatus.PICKED_UP: 2,
    ChatStatus.RESPONDED_BY_AGENT: 3,
    ChatStatus.CLOSED: 4,
    ChatStatus.COMPLETING_POLL: 5,
    ChatStatus.COMPLETED_POLL: 6,
    ChatStatus.ABANDONED_POLL: 6,
}


def derive_status(
    timestamps: Mapping[str, datetime | None],
    *,
    closed_flag: bool = False,
) -> ChatStatus:
    """
    Derive the chat status from its lifecycle timestamps.

    Precedence:
      1. Survey timestamps win over everything. Completion only gives
         COMPLETED_POLL, abandonment only gives ABANDONED_POLL, both resolve to
         the later of the two (completion on a tie), and a start alone gives
         COMPLETING_POLL.
      2. ``closed_at`` or ``closed_flag`` gives CLOSED.
      3. Otherwise the chronologically latest of response, pickup, open and
         creation decides; ties go to the state further along the path.
      4. No timestamps at all gives OPENED.
    """

    poll_started = timestamps.get("poll_started_at")
    poll_completed = timestamps.get("poll_completed_at")
    poll_abandoned = timestamps.get("poll_abandoned_at")

    if poll_completed and poll_abandoned:
        if poll_abandoned > poll_completed:
            return ChatStatus.ABANDONED_POLL
        return ChatStatus.COMPLETED_POLL
    if poll_completed:
        return ChatStatus.COMPLETED_POLL
    if poll_abandoned:
        return ChatStatus.ABANDONED_POLL
    if poll_started:
        return ChatStatus.COMPLETING_POLL

    if timestamps.get("closed_at") or closed_flag:
        return ChatStatus.CLOSED

    latest_status: ChatStatus | None = None
    latest_value: datetime | None = None
    for field_name, status in _ORDINARY_STEPS:
        value = timestamps.get(field_name)
        if value is None:
            continue
        if latest_value is None or value > latest_value:
            latest_value = value
            latest_status = status

    return latest_status or ChatStatus.OPENED


def status_family(status: ChatStatus) -> str:
    """Return ``open``, ``survey`` or ``closed`` for ``status``."""

    if status in STATUS_FAMILIES["open"]:
        return "open"
    if status == ChatStatus.COMPLETING_POLL:
        return "survey"
    return "closed"


def is_valid_transition(previous: ChatStatus | None, new: ChatStatus) -> bool:
    """
    Return True when moving from ``previous`` to ``new`` follows the lifecycle order.

    Staying in place is valid, as is any first observation. Survey outcomes are
    terminal.
    """

    if previous is None or previous == new:
        return True
    if previous in SURVEY_OUTCOMES:
        return False
    return _RANK[new] > _RANK[previous]


__all__ = [
    "MAIN_PATH",
    "STATUS_FAMILIES",
    "SURVEY_PATH",
    "derive_status",
    "is_valid_transition",
    "status_family",
]
