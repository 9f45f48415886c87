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

quotation_transitions_total = Counter(
    "quotation_transitions_total",
    "Quotation status transitions",
    ["from_status", "to_status"],
)

quotation_thread_transitions_total = Counter(
    "quotation_thread_transitions_total",
    "Quotation thread closure protocol transitions",
    ["from_status", "to_status"],
)

quotation_revisions_total = Counter(
    "quotation_revisions_total",
    "Quotation revisions created",
)

quotation_expired_total = Counter(
    "quotation_expired_total",
    "Quotations expired by the periodic sweep",
)

quotation_concurrency_conflicts_total = Counter(
    "quotation_concurrency_conflicts_total",
    "Compare-and-set conflicts on quotation writes",
    ["operation"],
)

notifications_emitted_total = Counter(
    "notifications_emitted_total",
    "Notifications emitted by type and outcome",
    ["notification_type", "outcome"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _normalize_route_template(path: str) -> str:
    return _PATH_PARAM_RE.sub("{id}", path)


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return _normalize_route_template(path_format)
        route_path = getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return _normalize_route_template(route_path)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_quotation_transition(from_status: str, to_status: str) -> None:
    quotation_transitions_total.labels(from_status=from_status, to_status=to_status).inc()


def observe_thread_transition(from_status: str, to_status: str) -> None:
    quotation_thread_transitions_total.labels(from_status=from_status, to_status=to_status).inc()


def observe_revision() -> None:
    quotation_revisions_total.inc()


def observe_expired(count: int = 1) -> None:
    if count > 0:
        quotation_expired_total.inc(count)


def observe_concurrency_conflict(operation: str) -> None:
    quotation_concurrency_conflicts_total.labels(operation=operation).inc()


def observe_notification(notification_type: str, outcome: str) -> None:
    notifications_emitted_total.labels(notification_type=notification_type, outcome=outcome).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
