from __future__ import annotations

import json
import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from app.stockflow.core.config import settings
from app.stockflow.core.db_timing import get_db_time_ms, start_db_timer, stop_db_timer
from app.stockflow.core.metrics import metrics
from app.stockflow.services.idempotency import IDEMPOTENCY_HEADER, REPLAY_HEADER

logger = logging.getLogger("stockflow.request")

# Path parameters worth copying into the request log line.
_ENTITY_PARAMS = ("transfer_id", "rule_id", "entry_id")


def _route_template(request: Request) -> str:
    path = request.url.path
    scope_route = request.scope.get("route")
    template = getattr(scope_route, "path_format", None) or getattr(scope_route, "path", None)
    if not template:
        return path
    # Routes included under a router prefix can report their path without it;
    # recover the prefix from the leading segments of the matched URL.
    actual = path.rstrip("/").split("/")
    declared = template.rstrip("/").split("/")
    extra = len(actual) - len(declared)
    if extra > 0:
        template = "/".join(actual[: extra + 1]) + template
    return template


def build_request_log_payload(
    *,
    request: Request,
    response: Response | None,
    latency_ms: float,
    db_time_ms: float | None,
) -> dict:
    status_code = response.status_code if response is not None else 500
    path_params = request.scope.get("path_params") or {}
    payload = {
        "event": "http_request",
        "trace_id": getattr(request.state, "trace_id", ""),
        "tenant_id": getattr(request.state, "tenant_id", None),
        "user_id": getattr(request.state, "user_id", None),
        "route": _route_template(request),
        "method": request.method,
        "status_code": status_code,
        "latency_ms": round(latency_ms, 2),
        "db_time_ms": round(db_time_ms, 2) if db_time_ms is not None else None,
        "error_code": getattr(request.state, "error_code", None),
        "error_class": getattr(request.state, "error_class", None),
        "idempotency_key": request.headers.get(IDEMPOTENCY_HEADER),
        "idempotent_replay": bool(response is not None and response.headers.get(REPLAY_HEADER)),
        "slow": latency_ms >= settings.SLOW_REQUEST_MS,
    }
    for name in _ENTITY_PARAMS:
        if name in path_params:
            payload[name] = str(path_params[name])
    return payload


def _log_level(payload: dict) -> int:
    if payload["status_code"] >= 500:
        return logging.ERROR
    if payload["slow"]:
        return logging.WARNING
    return logging.INFO


class ObservabilityMiddleware(BaseHTTPMiddleware):
    """One structured log line and one metrics sample per request."""

    async def dispatch(self, request: Request, call_next):
        started = time.perf_counter()
        token = start_db_timer()
        response: Response | None = None
        try:
            response = await call_next(request)
            return response
        finally:
            latency_ms = (time.perf_counter() - started) * 1000
            db_time_ms = get_db_time_ms()
            stop_db_timer(token)
            payload = build_request_log_payload(
                request=request,
                response=response,
                latency_ms=latency_ms,
                db_time_ms=db_time_ms,
            )
            logger.log(_log_level(payload), json.dumps(payload, ensure_ascii=False, default=str))
            metrics.record_http_request(
                route=payload["route"],
                method=payload["method"],
                status_code=payload["status_code"],
                latency_ms=latency_ms,
            )
