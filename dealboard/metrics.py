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

deal_order_updates_total = Counter(
    "deal_order_updates_total",
    "Deal order entries applied by outcome",
    ["outcome"],
)

deal_order_batch_size = Histogram(
    "deal_order_batch_size",
    "Number of entries per deal order batch",
    buckets=(1, 2, 5, 10, 25, 50, 100, 250, 500),
)

deal_conversion_conflicts_total = Counter(
    "deal_conversion_conflicts_total",
    "Deal creations rejected because the source conversation was already converted",
)

deal_stage_changes_total = Counter(
    "deal_stage_changes_total",
    "Deals moved to a different stage",
)

deal_watch_changes_total = Counter(
    "deal_watch_changes_total",
    "Deal watcher membership changes by action",
    ["action"],
)

integration_aggregations_total = Counter(
    "integration_aggregations_total",
    "Integration count aggregations computed",
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return _PATH_PARAM_RE.sub("{id}", path_format)
        route_path = getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return _PATH_PARAM_RE.sub("{id}", route_path)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_deal_order_batch(applied: int, failed: int) -> None:
    deal_order_batch_size.observe(applied + failed)
    if applied > 0:
        deal_order_updates_total.labels(outcome="applied").inc(applied)
    if failed > 0:
        deal_order_updates_total.labels(outcome="failed").inc(failed)


def observe_deal_conversion_conflict() -> None:
    deal_conversion_conflicts_total.inc()


def observe_deal_stage_change() -> None:
    deal_stage_changes_total.inc()


def observe_deal_watch_change(action: str) -> None:
    deal_watch_changes_total.labels(action=action).inc()


def observe_integration_aggregation() -> None:
    integration_aggregations_total.inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
