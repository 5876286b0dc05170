"""
HTTP client for the B2Chat export API.

Handles client-credential token caching, bounded exponential backoff for
transient failures, ``Retry-After`` on 429 responses, and a single token
refresh when a request comes back 401.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Mapping

import requests

from chatsync.sync.metrics import record_b2chat_auth_attempt, record_b2chat_request, record_b2chat_retry

from . import DEFAULT_API_URL, B2ChatAdapterConfigError, B2ChatAPIError, B2ChatAuthError

TOKEN_EXPIRY_BUFFER_SECONDS = 60


@dataclass(frozen=True)
class ExportPage:
    """One page of an export endpoint response."""

    items: list[Mapping[str, Any]]
    exported: int
    total: int | None
    has_next: bool


class B2ChatClient:
    """Thin wrapper over ``requests`` for the B2Chat REST API."""

    def __init__(
        self,
        *,
        base_url: str,
        username: str,
        password: str,
        session: requests.Session | None = None,
        retry_attempts: int = 3,
        retry_delay: float = 1.0,
        max_retry_delay: float = 30.0,
        timeout: float = 30.0,
        sleep_fn: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        logger: logging.Logger | None = None,
    ) -> None:
        if not username or not password:
            raise B2ChatAdapterConfigError("B2Chat credentials are required (B2CHAT_USERNAME/B2CHAT_PASSWORD).")
        self.base_url = base_url.rstrip("/")
        self.username = username
        self.password = password
        self.session = session or requests.Session()
        self.retry_attempts = max(0, int(retry_attempts))
        self.retry_delay = max(0.0, float(retry_delay))
        self.max_retry_delay = max(0.0, float(max_retry_delay))
        self.timeout = timeout
        self.sleep = sleep_fn
        self.clock = clock
        self.logger = logger or logging.getLogger(__name__)
        self.api_call_count = 0
        self._access_token: str | None = None
        self._token_expires_at: float | None = None

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None, **kwargs) -> "B2ChatClient":
        """Build a client from ``B2CHAT_*`` environment variables."""

        env = env if env is not None else os.environ
        return cls(
            base_url=env.get("B2CHAT_API_URL") or DEFAULT_API_URL,
            username=env.get("B2CHAT_USERNAME", ""),
            password=env.get("B2CHAT_PASSWORD", ""),
            **kwargs,
        )

    # Authentication -------------------------------------------------------------

    def authenticate(self, *, force: bool = False) -> str:
        """Return a valid access token, requesting a new one when expired or forced."""

        if (
            not force
            and self._access_token
            and self._token_expires_at is not None
            and self._token_expires_at > self.clock()
        ):
            return self._access_token

        try:
            response = self.session.post(
                f"{self.base_url}/oauth/token",
                auth=(self.username, self.password),
                data={"grant_type": "client_credentials"},
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            record_b2chat_auth_attempt("failure")
            raise B2ChatAuthError(f"Authentication request failed: {exc}") from exc

        if not response.ok:
            record_b2chat_auth_attempt("failure")
            raise B2ChatAuthError(
                f"Authentication failed with status {response.status_code}",
                status_code=response.status_code,
                endpoint="/oauth/token",
            )

        payload = response.json() or {}
        token = payload.get("access_token")
        if not token:
            record_b2chat_auth_attempt("failure")
            raise B2ChatAuthError("Authentication response did not include an access token.")
        expires_in = float(payload.get("expires_in") or 0)
        self._access_token = token
        self._token_expires_at = self.clock() + max(expires_in - TOKEN_EXPIRY_BUFFER_SECONDS, 0)
        record_b2chat_auth_attempt("success")
        self.logger.debug("B2Chat token refreshed", extra={"b2chat_token_expires_in": expires_in})
        return token

    def invalidate_token(self) -> None:
        self._access_token = None
        self._token_expires_at = None

    # Requests -------------------------------------------------------------------

    def request_json(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, Any] | None = None,
    ) -> Mapping[str, Any]:
        """
        Issue a request and return the decoded JSON body.

        Transient failures (connection errors, timeouts, 429 and 5xx) are
        retried up to ``retry_attempts`` times. A 401 triggers one token
        refresh that does not count against the retry budget. Other 4xx
        responses raise immediately.
        """

        url = f"{self.base_url}{path}"
        retries = 0
        refreshed = False
        while True:
            token = self.authenticate()
            response: requests.Response | None = None
            try:
                self.api_call_count += 1
                response = self.session.request(
                    method,
                    url,
                    params=dict(params or {}),
                    headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
                    timeout=self.timeout,
                )
            except (requests.ConnectionError, requests.Timeout) as exc:
                error = B2ChatAPIError(f"Request to {path} failed: {exc}", endpoint=path)
                reason = "timeout" if isinstance(exc, requests.Timeout) else "connection"
            else:
                if response.ok:
                    record_b2chat_request(endpoint=path, outcome="success")
                    return response.json() or {}
                if response.status_code == 401 and not refreshed:
                    refreshed = True
                    record_b2chat_retry("token_refresh")
                    self.logger.info("B2Chat token rejected; refreshing", extra={"b2chat_endpoint": path})
                    self.invalidate_token()
                    continue
                error_class = B2ChatAuthError if response.status_code in (401, 403) else B2ChatAPIError
                error = error_class(
                    f"B2Chat API request to {path} failed with status {response.status_code}: "
                    f"{_error_message(response)}",
                    status_code=response.status_code,
                    endpoint=path,
                )
                reason = str(response.status_code)

            record_b2chat_request(endpoint=path, outcome="retryable" if error.retryable else "error")
            if not error.retryable or retries >= self.retry_attempts:
                raise error

            retries += 1
            delay = self._backoff_delay(retries)
            if response is not None and response.status_code == 429:
                retry_after = _parse_retry_after(response.headers.get("Retry-After"))
                if retry_after is not None:
                    delay = retry_after
            record_b2chat_retry(reason)
            self.logger.warning(
                "B2Chat request failed; retrying in %.2fs (%s/%s)",
                delay,
                retries,
                self.retry_attempts,
                extra={"b2chat_endpoint": path, "b2chat_retry_reason": reason},
            )
            self.sleep(delay)

    def _backoff_delay(self, retry_number: int) -> float:
        return min(self.retry_delay * (2 ** (retry_number - 1)), self.max_retry_delay)

    def export_page(
        self,
        path: str,
        items_key: str,
        *,
        offset: int,
        limit: int,
        range_params: tuple[str, str],
        date_from: datetime | None = None,
        date_to: datetime | None = None,
    ) -> ExportPage:
        """Fetch one page from an ``/export`` endpoint."""

        params: dict[str, Any] = {"offset": offset, "limit": limit}
        from_key, to_key = range_params
        if date_from is not None:
            params[from_key] = _format_date(date_from)
        if date_to is not None:
            params[to_key] = _format_date(date_to)

        payload = self.request_json("GET", path, params=params)
        items = payload.get(items_key)
        if not isinstance(items, list):
            self.logger.warning(
                "B2Chat export returned no '%s' list",
                items_key,
                extra={"b2chat_endpoint": path, "b2chat_payload_keys": sorted(payload.keys())},
            )
            items = []
        exported = payload.get("exported")
        exported_count = int(exported) if isinstance(exported, (int, float)) else len(items)
        total = payload.get("total")
        return ExportPage(
            items=items,
            exported=exported_count,
            total=int(total) if isinstance(total, (int, float)) else None,
            has_next=(exported_count or len(items)) >= limit,
        )


def _format_date(value: datetime) -> str:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%d")


def _parse_retry_after(value: str | None) -> float | None:
    """Parse a ``Retry-After`` header given as seconds or as an HTTP date."""

    if not value:
        return None
    value = value.strip()
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        retry_at = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=timezone.utc)
    return max((retry_at - datetime.now(timezone.utc)).total_seconds(), 0.0)


def _error_message(response: requests.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text or "Unknown error"
    if isinstance(data, Mapping):
        return str(data.get("message") or data.get("error") or data)
    return str(data)


def create_b2chat_client(config: Mapping[str, Any] | None = None, **kwargs) -> B2ChatClient:
    """Instantiate a client from the environment, applying retry settings from ``config``."""

    from . import ensure_b2chat_adapter_ready

    ensure_b2chat_adapter_ready()
    config = config or {}
    options: dict[str, Any] = {
        "retry_attempts": config.get("SYNC_RETRY_ATTEMPTS", 3),
        "retry_delay": config.get("SYNC_RETRY_DELAY", 1.0),
        "max_retry_delay": config.get("SYNC_RETRY_MAX_DELAY", 30.0),
        "timeout": config.get("SYNC_REQUEST_TIMEOUT", 30.0),
    }
    options.update(kwargs)
    return B2ChatClient.from_env(**options)
