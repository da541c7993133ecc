from fastapi import FastAPI
from fastapi.openapi.utils import get_openapi

from app.stockflow.services.idempotency import IDEMPOTENCY_HEADER

TAG_METADATA = [
    {"name": "Stock", "description": "FIFO lot receipts, consumption, adjustments and the append-only stock ledger."},
    {
        "name": "Stock Transfers",
        "description": "Inter-branch transfers: request, multi-level approval, batched ship/receive, cancel and reversal.",
    },
    {"name": "Transfer Approval Rules", "description": "Rules that decide which approval levels a new transfer needs."},
    {"name": "Auth", "description": "Password login issuing tenant-scoped bearer tokens."},
    {"name": "Ops", "description": "Health, readiness and metrics."},
]

# (path, method) pairs that reject requests without an idempotency key.
_IDEMPOTENCY_REQUIRED = {
    ("/stockflow/stock-transfers", "post"),
    ("/stockflow/transfer-approval-rules", "post"),
}


def _operation_id(method: str, path: str) -> str:
    normalized = path.strip("/").replace("/", "_").replace("-", "_").replace("{", "").replace("}", "")
    return f"{method}_{normalized}"


def _assign_tag(path: str) -> str | None:
    if path.startswith("/stockflow/stock-transfers"):
        return "Stock Transfers"
    if path.startswith("/stockflow/transfer-approval-rules"):
        return "Transfer Approval Rules"
    if path.startswith("/stockflow/stock"):
        return "Stock"
    if path.startswith("/stockflow/auth"):
        return "Auth"
    if path in {"/health", "/ready"} or path.startswith("/stockflow/ops"):
        return "Ops"
    return None


def _document_idempotency_header(path: str, method: str, operation: dict) -> None:
    if method not in {"post", "patch"} or not path.startswith("/stockflow/") or path.startswith("/stockflow/auth"):
        return
    parameters = operation.setdefault("parameters", [])
    if any(parameter.get("name") == IDEMPOTENCY_HEADER for parameter in parameters):
        return
    required = (path, method) in _IDEMPOTENCY_REQUIRED
    parameters.append(
        {
            "name": IDEMPOTENCY_HEADER,
            "in": "header",
            "required": required,
            "schema": {"type": "string"},
            "description": (
                "Replays the stored response when the same key and payload are sent again; "
                "a different payload under the same key is rejected with 409."
            ),
        }
    )


def harden_openapi_schema(app: FastAPI):
    if app.openapi_schema:
        return app.openapi_schema

    schema = get_openapi(title=app.title, version="1.0.0", routes=app.routes)
    schema["tags"] = TAG_METADATA
    for path, path_item in schema.get("paths", {}).items():
        for method, operation in path_item.items():
            if method not in {"get", "post", "put", "patch", "delete"}:
                continue
            tag = _assign_tag(path)
            if tag:
                operation["tags"] = [tag]
            operation["operationId"] = _operation_id(method, path)
            _document_idempotency_header(path, method, operation)

    app.openapi_schema = schema
    return app.openapi_schema
