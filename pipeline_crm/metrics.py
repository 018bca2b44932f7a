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

crm_deal_moves_total = Counter(
    "crm_deal_moves_total",
    "Deal stage moves by outcome",
    ["outcome"],
)

crm_pipeline_saves_total = Counter(
    "crm_pipeline_saves_total",
    "Pipeline configuration saves by status",
    ["status"],
)

crm_store_errors_total = Counter(
    "crm_store_errors_total",
    "Relational store failures by operation",
    ["operation"],
)

crm_snapshot_load_seconds = Histogram(
    "crm_snapshot_load_seconds",
    "Time spent assembling a pipeline snapshot",
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
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_deal_move(outcome: str) -> None:
    crm_deal_moves_total.labels(outcome=outcome).inc()


def observe_pipeline_save(status: str) -> None:
    crm_pipeline_saves_total.labels(status=status).inc()


def observe_store_error(operation: str) -> None:
    crm_store_errors_total.labels(operation=operation).inc()


def observe_snapshot_load(duration: float) -> None:
    crm_snapshot_load_seconds.observe(duration)


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
