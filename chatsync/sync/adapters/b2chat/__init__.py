"""B2Chat adapter readiness checks and error types."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Callable, Literal, Mapping, Tuple

from chatsync.sync.metrics import record_b2chat_auth_attempt

REQUIRED_ENV_VARS: Tuple[str, ...] = ("B2CHAT_USERNAME", "B2CHAT_PASSWORD")
OPTIONAL_ENV_VARS: Tuple[str, ...] = ("B2CHAT_API_URL",)
DEFAULT_API_URL = "https://api.b2chat.io"

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})
AUTH_STATUS_CODES = frozenset({401, 403})


class B2ChatAdapterError(RuntimeError):
    """Base error for B2Chat adapter failures."""


class B2ChatAdapterConfigError(B2ChatAdapterError):
    """Raised when required configuration or environment variables are missing."""


class B2ChatAPIError(B2ChatAdapterError):
    """Raised when the B2Chat API returns an error response."""

    def __init__(self, message: str, *, status_code: int | None = None, endpoint: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.endpoint = endpoint

    @property
    def retryable(self) -> bool:
        return self.status_code is None or self.status_code in RETRYABLE_STATUS_CODES

    @property
    def is_auth_error(self) -> bool:
        return self.status_code in AUTH_STATUS_CODES


class B2ChatAuthError(B2ChatAPIError):
    """Raised when credentials are rejected."""


@dataclass(frozen=True)
class B2ChatAdapterReadiness:
    missing_env_vars: Tuple[str, ...]
    auth_status: Literal["skipped", "ok", "failed"]
    auth_error: str | None = None
    notes: Tuple[str, ...] = ()

    @property
    def status(self) -> str:
        if self.missing_env_vars:
            return "missing-env"
        if self.auth_status == "failed":
            return "auth-error"
        return "ready"

    def messages(self) -> Tuple[str, ...]:
        messages: list[str] = []
        if self.missing_env_vars:
            messages.append(f"Missing required B2Chat env vars: {', '.join(self.missing_env_vars)}")
        if self.auth_status == "failed" and self.auth_error:
            messages.append(self.auth_error)
        if self.notes:
            messages.extend(self.notes)
        return tuple(messages)

    def as_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "status": self.status,
            "missing_env_vars": list(self.missing_env_vars),
            "auth_status": self.auth_status,
            "messages": list(self.messages()),
        }
        if self.auth_error:
            payload["auth_error"] = self.auth_error
        if self.notes:
            payload["notes"] = list(self.notes)
        return payload


def check_b2chat_adapter_readiness(
    env: Mapping[str, str] | None = None,
    *,
    require_auth_ping: bool = False,
    client_factory: Callable[..., object] | None = None,
) -> B2ChatAdapterReadiness:
    """
    Perform a non-raising readiness check for the B2Chat adapter.

    Args:
        env: Optional mapping of environment variables to inspect. Defaults to os.environ.
        require_auth_ping: Whether to request a token to validate credentials.
        client_factory: Builds the client used for the auth ping; defaults to ``B2ChatClient.from_env``.
    """

    env = env if env is not None else os.environ
    missing_env = tuple(sorted(var for var in REQUIRED_ENV_VARS if not env.get(var)))

    auth_status: Literal["skipped", "ok", "failed"] = "skipped"
    auth_error: str | None = None
    if require_auth_ping and not missing_env:
        if client_factory is None:
            from .client import B2ChatClient

            client_factory = B2ChatClient.from_env
        try:
            client = client_factory(env=env)
            client.authenticate(force=True)
            auth_status = "ok"
        except B2ChatAdapterError as exc:
            auth_status = "failed"
            auth_error = f"B2Chat authentication failed: {exc}"

    optional_missing = tuple(sorted(var for var in OPTIONAL_ENV_VARS if not env.get(var)))
    notes: Tuple[str, ...] = ()
    if optional_missing:
        notes = (f"Optional env vars not set: {', '.join(optional_missing)}. Defaults will be used.",)

    return B2ChatAdapterReadiness(
        missing_env_vars=missing_env,
        auth_status=auth_status,
        auth_error=auth_error,
        notes=notes,
    )


def ensure_b2chat_adapter_ready(
    env: Mapping[str, str] | None = None,
    *,
    require_auth_ping: bool = False,
) -> B2ChatAdapterReadiness:
    """
    Validate B2Chat adapter readiness, raising actionable errors when not ready.
    """

    readiness = check_b2chat_adapter_readiness(env=env, require_auth_ping=require_auth_ping)
    if require_auth_ping:
        if readiness.auth_status == "ok":
            record_b2chat_auth_attempt("success")
        elif readiness.auth_status == "failed":
            record_b2chat_auth_attempt("failure")
    if readiness.missing_env_vars:
        raise B2ChatAdapterConfigError(
            "B2Chat sync configured but missing required env vars: "
            + ", ".join(readiness.missing_env_vars)
            + ". Set these or disable sync."
        )
    if readiness.auth_status == "failed":
        raise B2ChatAuthError(readiness.auth_error or "B2Chat authentication failed.", status_code=401)
    return readiness


__all__ = [
    "AUTH_STATUS_CODES",
    "DEFAULT_API_URL",
    "OPTIONAL_ENV_VARS",
    "REQUIRED_ENV_VARS",
    "RETRYABLE_STATUS_CODES",
    "B2ChatAPIError",
    "B2ChatAdapterConfigError",
    "B2ChatAdapterError",
    "B2ChatAdapterReadiness",
    "B2ChatAuthError",
    "check_b2chat_adapter_readiness",
    "ensure_b2chat_adapter_ready",
]
