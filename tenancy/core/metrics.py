"""Prometheus metrics helpers."""

from __future__ import annotations

from prometheus_client import Counter, Histogram

HTTP_REQUESTS_TOTAL = Counter(
    "tenancy_http_requests_total",
    "Total number of HTTP requests.",
    ["method", "route", "status"],
)

HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "tenancy_http_request_duration_seconds",
    "HTTP request duration in seconds.",
    ["method", "route", "status"],
    buckets=(
        0.005,
        0.01,
        0.025,
        0.05,
        0.1,
        0.25,
        0.5,
        1.0,
        2.5,
        5.0,
        10.0,
    ),
)

INVITATION_TRANSITIONS_TOTAL = Counter(
    "tenancy_invitation_transitions_total",
    "Invitation status transitions.",
    ["to_status", "source"],
)

SUBSCRIPTION_TRANSITIONS_TOTAL = Counter(
    "tenancy_subscription_transitions_total",
    "Subscription status transitions and plan changes.",
    ["transition"],
)

SCHEDULER_JOB_RUNS_TOTAL = Counter(
    "tenancy_scheduler_job_runs_total",
    "Scheduler job executions.",
    ["job", "outcome"],
)

SCHEDULER_JOB_RECORD_ERRORS_TOTAL = Counter(
    "tenancy_scheduler_job_record_errors_total",
    "Per-record failures isolated by scheduler jobs.",
    ["job"],
)

NOTIFICATION_DELIVERIES_TOTAL = Counter(
    "tenancy_notification_deliveries_total",
    "Outbox delivery attempts.",
    ["kind", "outcome"],
)


def observe_http_request(
    *,
    method: str,
    route: str,
    status_code: int,
    duration_ms: float,
) -> None:
    status = str(status_code)
    HTTP_REQUESTS_TOTAL.labels(method=method, route=route, status=status).inc()
    HTTP_REQUEST_DURATION_SECONDS.labels(
        method=method, route=route, status=status
    ).observe(duration_ms / 1000.0)


def observe_invitation_transition(to_status: str, source: str, count: int = 1) -> None:
    if count:
        INVITATION_TRANSITIONS_TOTAL.labels(to_status=to_status, source=source).inc(count)


def observe_subscription_transition(transition: str, count: int = 1) -> None:
    if count:
        SUBSCRIPTION_TRANSITIONS_TOTAL.labels(transition=transition).inc(count)


def observe_job_run(job: str, *, ok: bool, record_errors: int = 0) -> None:
    SCHEDULER_JOB_RUNS_TOTAL.labels(job=job, outcome="ok" if ok else "error").inc()
    if record_errors:
        SCHEDULER_JOB_RECORD_ERRORS_TOTAL.labels(job=job).inc(record_errors)
