import logging
from datetime import date, datetime
from uuid import UUID

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from app.stockflow.core.error_catalog import AppError, ErrorCatalog, ErrorDefinition
from app.stockflow.core.metrics import metrics

logger = logging.getLogger("stockflow.errors")

_HTTP_STATUS_CODES = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
}

_LOCK_TIMEOUT_MARKERS = (
    "lock timeout",
    "deadlock detected",
    "database is locked",
    "could not obtain lock",
    "could not serialize access",
)


def _is_lock_timeout(exc: Exception) -> bool:
    if not isinstance(exc, OperationalError):
        return False
    message = str(exc).lower()
    return any(marker in message for marker in _LOCK_TIMEOUT_MARKERS)


def _trace_id(request: Request) -> str:
    return getattr(request.state, "trace_id", "")


def _json_safe(value):
    if isinstance(value, (UUID, Exception)):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {key: _json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(item) for item in value]
    return value


def _validation_error_details(exc: RequestValidationError) -> dict:
    errors = []
    for error in exc.errors():
        loc = list(error.get("loc", []))
        field = ".".join(str(item) for item in loc if item not in {"body", "query", "path", "header"}) or None
        errors.append(
            {
                "field": field,
                "message": error.get("msg", "Invalid value"),
                "type": error.get("type", "validation_error"),
                "loc": loc,
                "input": _json_safe(error.get("input")),
            }
        )
    return {"errors": errors}


def _http_error_body(exc: HTTPException) -> tuple[str, str, object]:
    code = _HTTP_STATUS_CODES.get(exc.status_code, "HTTP_ERROR")
    detail = exc.detail
    if isinstance(detail, dict):
        extra = {key: value for key, value in detail.items() if key != "message"} or None
        return code, str(detail.get("message", "HTTP error")), extra
    if isinstance(detail, list):
        return code, "HTTP error", {"errors": detail}
    return code, str(detail) if detail is not None else "HTTP error", None


def error_response(code: str, message: str, details: object, trace_id: str, status_code: int) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "code": code,
            "message": message,
            "details": details,
            "trace_id": trace_id,
        },
    )


def _respond(
    request: Request,
    exc: Exception,
    *,
    code: str,
    message: str,
    details: object,
    status_code: int,
) -> JSONResponse:
    """Build the error envelope, tag the request for the access log and store it against any idempotency key."""
    request.state.error_code = code
    request.state.error_class = exc.__class__.__name__
    body = {"code": code, "message": message, "details": _json_safe(details), "trace_id": _trace_id(request)}
    idempotency = getattr(request.state, "idempotency", None)
    if idempotency is not None:
        idempotency.record_failure(status_code=status_code, response_body=body)
    return JSONResponse(status_code=status_code, content=body)


def _catalog_response(request: Request, exc: Exception, error: ErrorDefinition, details: object) -> JSONResponse:
    return _respond(
        request,
        exc,
        code=error.code,
        message=error.message,
        details=details,
        status_code=error.status_code,
    )


def setup_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        if exc.error is ErrorCatalog.CONCURRENT_MODIFICATION:
            metrics.increment_concurrent_modification()
        return _catalog_response(request, exc, exc.error, exc.details)

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        code, message, details = _http_error_body(exc)
        return _respond(request, exc, code=code, message=message, details=details, status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return _catalog_response(request, exc, ErrorCatalog.VALIDATION_ERROR, _validation_error_details(exc))

    @app.exception_handler(StaleDataError)
    async def stale_data_handler(request: Request, exc: StaleDataError):
        metrics.increment_concurrent_modification()
        return _catalog_response(request, exc, ErrorCatalog.CONCURRENT_MODIFICATION, None)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        if _is_lock_timeout(exc):
            metrics.increment_lock_wait_timeout()
            return _catalog_response(request, exc, ErrorCatalog.LOCK_TIMEOUT, {"type": exc.__class__.__name__})
        logger.error(
            "unhandled_exception trace_id=%s route=%s",
            _trace_id(request),
            request.url.path,
            exc_info=exc,
        )
        return _catalog_response(request, exc, ErrorCatalog.INTERNAL_ERROR, {"type": exc.__class__.__name__})
