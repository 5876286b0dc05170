from __future__ import annotations

import copy
from typing import Any

import pytest
import requests

from chatsync.models import db
from chatsync.sync import init_sync
from chatsync.sync.adapters.b2chat.client import B2ChatClient
from chatsync.sync.adapters.b2chat.extractor import B2ChatExtractor, B2ChatPage
from chatsync.sync.pipeline.orchestrator import SyncOrchestrator
from chatsync.sync.pipeline.staging import stage_page
from chatsync.sync.registry import get_entity

API_URL = "https://api.b2chat.test"


class FakeResponse:
    def __init__(self, *, status_code=200, json_data=None, text: str = "", headers=None):
        self.status_code = status_code
        self._json_data = json_data or {}
        self.text = text
        self.headers = headers or {}
        self.ok = status_code < 400

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"status={self.status_code}")

    def json(self):
        return self._json_data


class FakeSession:
    """Scripted stand-in for ``requests.Session``; responses are served in order."""

    def __init__(self):
        self.responses: list[Any] = []
        self.token_responses: list[FakeResponse] = []
        self.request_calls: list[dict[str, Any]] = []
        self.post_calls: list[dict[str, Any]] = []
        self.tokens_issued = 0

    def queue(self, *, status_code=200, json_data=None, text="", headers=None):
        self.responses.append(FakeResponse(status_code=status_code, json_data=json_data, text=text, headers=headers))
        return self

    def queue_export(self, items_key: str, items: list[dict], *, total=None):
        return self.queue(json_data={items_key: items, "exported": len(items), "total": total})

    def queue_exception(self, exc: Exception):
        self.responses.append(exc)
        return self

    def queue_token(self, *, status_code=200, json_data=None):
        self.token_responses.append(FakeResponse(status_code=status_code, json_data=json_data))
        return self

    def post(self, url, **kwargs):
        self.post_calls.append({"url": url, **kwargs})
        if self.token_responses:
            return self.token_responses.pop(0)
        self.tokens_issued += 1
        return FakeResponse(json_data={"access_token": f"token-{self.tokens_issued}", "expires_in": 3600})

    def request(self, method, url, params=None, headers=None, timeout=None):
        self.request_calls.append({"method": method, "url": url, "params": params, "headers": headers})
        if not self.responses:
            raise AssertionError(f"Unexpected request: {method} {url} {params}")
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


@pytest.fixture
def sync_app(app):
    app.config.update(
        {
            "SYNC_ENABLED": True,
            "SYNC_ENTITIES": ("contacts", "chats"),
            "SYNC_PAGE_SIZE": 2,
            "SYNC_MAX_PAGES_INCREMENTAL": 100,
            "SYNC_MAX_TRANSFORM_ITERATIONS": 50,
            "SYNC_MAX_PROCESSING_ATTEMPTS": 3,
        }
    )
    init_sync(app)
    yield app


@pytest.fixture
def b2chat_env(monkeypatch):
    monkeypatch.setenv("B2CHAT_USERNAME", "sync-user")
    monkeypatch.setenv("B2CHAT_PASSWORD", "sync-pass")
    monkeypatch.setenv("B2CHAT_API_URL", API_URL)


@pytest.fixture
def api_session():
    return FakeSession()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def b2chat_client(api_session, sleeps):
    def _build(**overrides) -> B2ChatClient:
        options = {
            "base_url": API_URL,
            "username": "sync-user",
            "password": "sync-pass",
            "session": api_session,
            "retry_attempts": 2,
            "retry_delay": 0.5,
            "sleep_fn": sleeps.append,
        }
        options.update(overrides)
        return B2ChatClient(**options)

    return _build


@pytest.fixture
def orchestrator_factory(sync_app, api_session, sleeps):
    """Orchestrator wired to the scripted session instead of the real API."""

    def _build(**overrides) -> SyncOrchestrator:
        def _extractor_factory(options):
            client = B2ChatClient(
                base_url=API_URL,
                username="sync-user",
                password="sync-pass",
                session=api_session,
                retry_attempts=options.retry_attempts,
                retry_delay=options.retry_delay,
                sleep_fn=sleeps.append,
            )
            return B2ChatExtractor(client=client, page_size=options.page_size)

        kwargs = {"config": sync_app.config, "extractor_factory": _extractor_factory}
        kwargs.update(overrides)
        return SyncOrchestrator(**kwargs)

    return _build


_BASE_CHAT = {
    "chat_id": "chat-1",
    "provider": "whatsapp",
    "status": "CLOSED",
    "agent": {"name": "Ana Ruiz", "username": "ana", "email": "ana@acme.co"},
    "department": {"name": "Support", "code": "support"},
    "contact": {
        "contact_id": "c-1",
        "fullname": "Juan Perez",
        "mobile": "+573001112233",
        "email": "juan@acme.co",
    },
    "created_at": "2024-05-01T10:00:00Z",
    "opened_at": "2024-05-01T10:01:00Z",
    "picked_up_at": "2024-05-01T10:02:00Z",
    "responded_at": "2024-05-01T10:03:00Z",
    "closed_at": "2024-05-01T10:30:00Z",
    "duration": "00:29:00",
    "messages": [
        {"created_at": "2024-05-01T10:00:30Z", "incoming": True, "type": "text", "body": "Hola"},
        {"created_at": "2024-05-01T10:03:00Z", "incoming": False, "type": "text", "body": "Buenos dias"},
    ],
}

_BASE_CONTACT = {
    "contact_id": "c-1",
    "fullname": "Juan Perez",
    "mobile": "+573001112233",
    "email": "juan@acme.co",
    "identification": "1020304050",
    "city": "Bogota",
}


@pytest.fixture
def make_chat():
    def _make(chat_id: str = "chat-1", **overrides) -> dict:
        record = copy.deepcopy(_BASE_CHAT)
        record["chat_id"] = chat_id
        for key, value in overrides.items():
            if value is None:
                record.pop(key, None)
            else:
                record[key] = value
        return record

    return _make


@pytest.fixture
def make_contact():
    def _make(contact_id: str = "c-1", **overrides) -> dict:
        record = copy.deepcopy(_BASE_CONTACT)
        record["contact_id"] = contact_id
        for key, value in overrides.items():
            if value is None:
                record.pop(key, None)
            else:
                record[key] = value
        return record

    return _make


@pytest.fixture
def stage_records(app):
    """Stage raw records as one export page without touching the API."""

    def _stage(entity: str, records: list[dict], *, sync_id: str = "extract_test_1", run=None, page: int = 1):
        descriptor = get_entity(entity)
        return stage_page(
            run=run,
            sync_id=sync_id,
            descriptor=descriptor,
            page=B2ChatPage(
                entity_type=entity,
                page=page,
                offset=(page - 1) * len(records),
                records=records,
                exported=len(records),
                total=None,
                has_next=False,
            ),
            session=db.session,
        )

    return _stage
