"""Prometheus metrics helpers for the sync pipeline."""

from __future__ import annotations

from typing import Literal

from prometheus_client import Counter, Gauge, Histogram

_b2chat_enabled_gauge = Gauge(
    "chatsync_b2chat_adapter_enabled_total",
    "Whether the B2Chat adapter is ready (1) or not (0).",
)
_b2chat_auth_attempts = Counter(
    "chatsync_b2chat_auth_attempts_total",
    "B2Chat token requests by outcome.",
    ["outcome"],
)
_b2chat_requests = Counter(
    "chatsync_b2chat_requests_total",
    "B2Chat API requests by endpoint and outcome.",
    ["endpoint", "outcome"],
)
_b2chat_retries = Counter(
    "chatsync_b2chat_retries_total",
    "B2Chat API retries by reason.",
    ["reason"],
)
_pages_staged = Counter(
    "chatsync_pages_staged_total",
    "Export pages written to staging.",
    ["entity"],
)
_records_transformed = Counter(
    "chatsync_records_transformed_total",
    "Staged records handled by the transformer by action.",
    ["entity", "action"],
)
_transform_duration = Histogram(
    "chatsync_transform_batch_duration_seconds",
    "Duration of a transform batch in seconds.",
    ["entity"],
    buckets=(0.1, 0.5, 1, 2, 5, 10, 30, 60, 120, 300),
)
_validation_issues = Counter(
    "chatsync_validation_issues_total",
    "Validation issues recorded by severity.",
    ["severity"],
)
_run_outcomes = Counter(
    "chatsync_runs_total",
    "Finished sync runs by entity and status.",
    ["entity", "status"],
)


def record_b2chat_adapter_status(enabled: bool) -> None:
    """Set the B2Chat adapter readiness gauge."""

    _b2chat_enabled_gauge.set(1 if enabled else 0)


def record_b2chat_auth_attempt(outcome: Literal["success", "failure"]) -> None:
    _b2chat_auth_attempts.labels(outcome=outcome).inc()


def record_b2chat_request(*, endpoint: str, outcome: str) -> None:
    _b2chat_requests.labels(endpoint=endpoint, outcome=outcome).inc()


def record_b2chat_retry(reason: str) -> None:
    _b2chat_retries.labels(reason=reason).inc()


def record_page_staged(entity: str) -> None:
    _pages_staged.labels(entity=entity).inc()


def record_transform_batch(*, entity: str, duration_seconds: float, counts: dict[str, int]) -> None:
    """Capture metrics for one transform batch."""

    _transform_duration.labels(entity=entity).observe(max(duration_seconds, 0.0))
    for action, count in counts.items():
        if count:
            _records_transformed.labels(entity=entity, action=action).inc(count)


def record_validation_issue(severity: str, count: int = 1) -> None:
    _validation_issues.labels(severity=severity).inc(count)


def record_run_outcome(*, entity: str, status: str) -> None:
    _run_outcomes.labels(entity=entity, status=status).inc()
