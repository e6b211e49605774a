from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

quote_mutations_total = Counter(
    "project_quote_mutations_total",
    "Total quote ledger mutations by operation",
    ["operation"],
)

stage_transitions_total = Counter(
    "project_stage_transitions_total",
    "Total project stage transitions",
    ["from_stage", "to_stage", "rule"],
)

stage_evaluations_total = Counter(
    "project_stage_evaluations_total",
    "Total stage engine evaluations by outcome",
    ["outcome"],
)

client_lock_wait_seconds = Histogram(
    "project_client_lock_wait_seconds",
    "Time spent waiting for the per-client stage lock",
)

client_lock_timeouts_total = Counter(
    "project_client_lock_timeouts_total",
    "Total per-client lock acquisitions that timed out",
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return path_format
        route_path = getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return route_path
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_quote_mutation(operation: str) -> None:
    quote_mutations_total.labels(operation=operation).inc()


def observe_stage_transition(from_stage: str | None, to_stage: str, rule: str) -> None:
    stage_transitions_total.labels(from_stage=from_stage or "none", to_stage=to_stage, rule=rule).inc()


def observe_stage_evaluation(progressed: bool) -> None:
    stage_evaluations_total.labels(outcome="changed" if progressed else "unchanged").inc()


def observe_client_lock_wait(duration: float, *, timed_out: bool = False) -> None:
    client_lock_wait_seconds.observe(duration)
    if timed_out:
        client_lock_timeouts_total.inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
