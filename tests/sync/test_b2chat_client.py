from __future__ import annotations

from datetime import datetime, timezone

import pytest
import requests

from chatsync.sync.adapters.b2chat import (
    B2ChatAdapterConfigError,
    B2ChatAPIError,
    B2ChatAuthError,
    check_b2chat_adapter_readiness,
)
from chatsync.sync.adapters.b2chat.client import B2ChatClient, create_b2chat_client


def test_token_is_cached_between_requests(api_session, b2chat_client):
    api_session.queue(json_data={"ok": 1}).queue(json_data={"ok": 2})
    client = b2chat_client()

    assert client.request_json("GET", "/contacts/export") == {"ok": 1}
    assert client.request_json("GET", "/contacts/export") == {"ok": 2}

    assert len(api_session.post_calls) == 1
    assert api_session.post_calls[0]["url"].endswith("/oauth/token")
    assert api_session.post_calls[0]["data"] == {"grant_type": "client_credentials"}
    assert api_session.request_calls[1]["headers"]["Authorization"] == "Bearer token-1"
    assert client.api_call_count == 2


def test_rate_limit_honours_retry_after(api_session, b2chat_client, sleeps):
    api_session.queue(status_code=429, headers={"Retry-After": "7"}).queue(json_data={"chats": []})
    client = b2chat_client()

    payload = client.request_json("GET", "/chats/export")

    assert payload == {"chats": []}
    assert sleeps == [7.0]
    assert len(api_session.request_calls) == 2


def test_server_errors_retry_with_backoff_then_give_up(api_session, b2chat_client, sleeps):
    for _ in range(3):
        api_session.queue(status_code=503, json_data={"message": "maintenance"})
    client = b2chat_client(retry_attempts=2, retry_delay=0.5)

    with pytest.raises(B2ChatAPIError) as excinfo:
        client.request_json("GET", "/chats/export")

    assert excinfo.value.status_code == 503
    assert "maintenance" in str(excinfo.value)
    assert len(api_session.request_calls) == 3
    assert sleeps == [0.5, 1.0]


def test_backoff_is_capped(api_session, b2chat_client, sleeps):
    for _ in range(4):
        api_session.queue(status_code=500)
    client = b2chat_client(retry_attempts=3, retry_delay=2.0, max_retry_delay=3.0)

    with pytest.raises(B2ChatAPIError):
        client.request_json("GET", "/chats/export")

    assert sleeps == [2.0, 3.0, 3.0]


def test_connection_errors_are_retried(api_session, b2chat_client, sleeps):
    api_session.queue_exception(requests.ConnectionError("reset by peer"))
    api_session.queue(json_data={"contacts": []})
    client = b2chat_client()

    assert client.request_json("GET", "/contacts/export") == {"contacts": []}
    assert len(sleeps) == 1


def test_unauthorized_refreshes_token_once(api_session, b2chat_client, sleeps):
    api_session.queue(status_code=401).queue(json_data={"contacts": []})
    client = b2chat_client(retry_attempts=0)

    assert client.request_json("GET", "/contacts/export") == {"contacts": []}

    assert len(api_session.post_calls) == 2
    assert api_session.request_calls[1]["headers"]["Authorization"] == "Bearer token-2"
    assert sleeps == []


def test_repeated_unauthorized_raises_auth_error(api_session, b2chat_client):
    api_session.queue(status_code=401).queue(status_code=401)
    client = b2chat_client()

    with pytest.raises(B2ChatAuthError):
        client.request_json("GET", "/contacts/export")

    assert len(api_session.request_calls) == 2


def test_client_errors_are_not_retried(api_session, b2chat_client, sleeps):
    api_session.queue(status_code=400, json_data={"error": "bad range"})
    client = b2chat_client()

    with pytest.raises(B2ChatAPIError, match="bad range"):
        client.request_json("GET", "/chats/export")

    assert len(api_session.request_calls) == 1
    assert sleeps == []


def test_rejected_credentials_raise_auth_error(api_session, b2chat_client):
    api_session.queue_token(status_code=401)
    client = b2chat_client()

    with pytest.raises(B2ChatAuthError):
        client.authenticate()
    assert api_session.request_calls == []


def test_export_page_builds_params_and_detects_next_page(api_session, b2chat_client):
    api_session.queue(json_data={"chats": [{"chat_id": "a"}, {"chat_id": "b"}], "exported": 2, "total": 5})
    client = b2chat_client()

    page = client.export_page(
        "/chats/export",
        "chats",
        offset=4,
        limit=2,
        range_params=("date_range_from", "date_range_to"),
        date_from=datetime(2024, 5, 1, 23, 30, tzinfo=timezone.utc),
        date_to=datetime(2024, 5, 8, tzinfo=timezone.utc),
    )

    assert page.has_next
    assert page.total == 5
    assert [item["chat_id"] for item in page.items] == ["a", "b"]
    assert api_session.request_calls[0]["params"] == {
        "offset": 4,
        "limit": 2,
        "date_range_from": "2024-05-01",
        "date_range_to": "2024-05-08",
    }


def test_export_page_without_items_list(api_session, b2chat_client):
    api_session.queue(json_data={"message": "no data"})
    page = b2chat_client().export_page(
        "/contacts/export", "contacts", offset=0, limit=100, range_params=("updated_from", "updated_to")
    )
    assert page.items == []
    assert not page.has_next


def test_client_requires_credentials():
    with pytest.raises(B2ChatAdapterConfigError):
        B2ChatClient(base_url="https://api.b2chat.test", username="", password="")


def test_readiness_reports_missing_env():
    readiness = check_b2chat_adapter_readiness(env={})
    assert readiness.status == "missing-env"
    assert readiness.missing_env_vars == ("B2CHAT_PASSWORD", "B2CHAT_USERNAME")
    assert readiness.as_dict()["messages"]


def test_readiness_auth_ping_uses_client_factory(api_session):
    env = {"B2CHAT_USERNAME": "u", "B2CHAT_PASSWORD": "p", "B2CHAT_API_URL": "https://api.b2chat.test"}

    def factory(env):
        return B2ChatClient.from_env(env, session=api_session)

    readiness = check_b2chat_adapter_readiness(env=env, require_auth_ping=True, client_factory=factory)
    assert readiness.status == "ready"
    assert readiness.auth_status == "ok"

    api_session.queue_token(status_code=403)
    readiness = check_b2chat_adapter_readiness(env=env, require_auth_ping=True, client_factory=factory)
    assert readiness.status == "auth-error"
    assert "authentication failed" in readiness.auth_error


def test_create_client_requires_env(monkeypatch):
    monkeypatch.delenv("B2CHAT_USERNAME", raising=False)
    monkeypatch.delenv("B2CHAT_PASSWORD", raising=False)
    with pytest.raises(B2ChatAdapterConfigError, match="B2CHAT_USERNAME"):
        create_b2chat_client({})


def test_create_client_applies_config(b2chat_env):
    client = create_b2chat_client({"SYNC_RETRY_ATTEMPTS": 5, "SYNC_RETRY_DELAY": 0.2, "SYNC_REQUEST_TIMEOUT": 12})
    assert client.base_url == "https://api.b2chat.test"
    assert client.retry_attempts == 5
    assert client.retry_delay == 0.2
    assert client.timeout == 12
