from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from chatsync.models.chat import ChatStatus
from chatsync.sync.pipeline.status import derive_status, is_valid_transition, status_family

T0 = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)


def _at(minutes: int) -> datetime:
    return T0 + timedelta(minutes=minutes)


@pytest.mark.parametrize(
    "timestamps, closed_flag, expected",
    [
        ({}, False, ChatStatus.OPENED),
        ({"created_at": _at(0)}, False, ChatStatus.BOT_CHATTING),
        ({"created_at": _at(0), "opened_at": _at(1)}, False, ChatStatus.OPENED),
        ({"created_at": _at(0), "opened_at": _at(1), "picked_up_at": _at(2)}, False, ChatStatus.PICKED_UP),
        (
            {"created_at": _at(0), "opened_at": _at(1), "picked_up_at": _at(2), "response_at": _at(3)},
            False,
            ChatStatus.RESPONDED_BY_AGENT,
        ),
        ({"created_at": _at(0), "response_at": _at(3), "closed_at": _at(9)}, False, ChatStatus.CLOSED),
        ({"created_at": _at(0), "picked_up_at": _at(2)}, True, ChatStatus.CLOSED),
        ({"closed_at": _at(9), "poll_started_at": _at(10)}, False, ChatStatus.COMPLETING_POLL),
        ({"closed_at": _at(9), "poll_started_at": _at(10), "poll_completed_at": _at(12)}, False, ChatStatus.COMPLETED_POLL),
        ({"closed_at": _at(9), "poll_started_at": _at(10), "poll_abandoned_at": _at(40)}, False, ChatStatus.ABANDONED_POLL),
    ],
)
def test_derive_status_follows_lifecycle(timestamps, closed_flag, expected):
    assert derive_status(timestamps, closed_flag=closed_flag) == expected


def test_survey_timestamps_win_over_closed_flag():
    timestamps = {"closed_at": None, "poll_completed_at": _at(5)}
    assert derive_status(timestamps, closed_flag=True) == ChatStatus.COMPLETED_POLL


def test_both_survey_outcomes_resolve_to_the_later_one():
    later_abandon = {"poll_started_at": _at(0), "poll_completed_at": _at(5), "poll_abandoned_at": _at(10)}
    later_complete = {"poll_started_at": _at(0), "poll_completed_at": _at(10), "poll_abandoned_at": _at(5)}
    tie = {"poll_started_at": _at(0), "poll_completed_at": _at(5), "poll_abandoned_at": _at(5)}

    assert derive_status(later_abandon) == ChatStatus.ABANDONED_POLL
    assert derive_status(later_complete) == ChatStatus.COMPLETED_POLL
    assert derive_status(tie) == ChatStatus.COMPLETED_POLL


def test_ordinary_timestamps_use_the_latest_value():
    # A pickup recorded after the response still wins because it is later.
    timestamps = {"created_at": _at(0), "response_at": _at(3), "picked_up_at": _at(4)}
    assert derive_status(timestamps) == ChatStatus.PICKED_UP


def test_equal_ordinary_timestamps_prefer_the_later_state():
    timestamps = {"created_at": _at(0), "opened_at": _at(0)}
    assert derive_status(timestamps) == ChatStatus.OPENED


def test_transition_rules():
    assert is_valid_transition(None, ChatStatus.CLOSED)
    assert is_valid_transition(ChatStatus.OPENED, ChatStatus.OPENED)
    assert is_valid_transition(ChatStatus.OPENED, ChatStatus.CLOSED)
    assert is_valid_transition(ChatStatus.CLOSED, ChatStatus.COMPLETING_POLL)
    assert is_valid_transition(ChatStatus.COMPLETING_POLL, ChatStatus.ABANDONED_POLL)
    assert not is_valid_transition(ChatStatus.CLOSED, ChatStatus.PICKED_UP)
    assert not is_valid_transition(ChatStatus.COMPLETED_POLL, ChatStatus.ABANDONED_POLL)


def test_status_family():
    assert status_family(ChatStatus.BOT_CHATTING) == "open"
    assert status_family(ChatStatus.RESPONDED_BY_AGENT) == "open"
    assert status_family(ChatStatus.COMPLETING_POLL) == "survey"
    assert status_family(ChatStatus.CLOSED) == "closed"
    assert status_family(ChatStatus.ABANDONED_POLL) == "closed"
