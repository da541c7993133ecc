import hashlib
import json
from dataclasses import dataclass

from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

from app.stockflow.core.error_catalog import AppError, ErrorCatalog
from app.stockflow.core.metrics import metrics
from app.stockflow.db.models import IdempotencyRecord
from app.stockflow.repos.idempotency import (
    FAILED,
    IN_PROGRESS,
    SUCCEEDED,
    IdempotencyRepository,
    IdempotencyScope,
)


IDEMPOTENCY_HEADER = "Idempotency-Key"
REPLAY_HEADER = "X-Idempotency-Result"


@dataclass
class IdempotencyReplay:
    status_code: int
    response_body: dict

    def to_response(self) -> JSONResponse:
        metrics.increment_idempotency_replay()
        return JSONResponse(
            status_code=self.status_code,
            content=self.response_body,
            headers={REPLAY_HEADER: ErrorCatalog.IDEMPOTENCY_REPLAY.code},
        )


class IdempotencyContext:
    """The claimed key of an in-flight request; stores its outcome for later replays."""

    def __init__(self, record: IdempotencyRecord, repo: IdempotencyRepository):
        self._record = record
        self._repo = repo

    def record_success(self, *, status_code: int, response_body: dict) -> None:
        self._store(SUCCEEDED, status_code, response_body)

    def record_failure(self, *, status_code: int, response_body: dict) -> None:
        # drop whatever the failed operation left in the session before writing the outcome
        self._repo.db.rollback()
        self._store(FAILED, status_code, response_body)

    def _store(self, state: str, status_code: int, response_body: dict) -> None:
        self._repo.finish(
            self._record,
            state=state,
            status_code=status_code,
            response_body=json.dumps(response_body, default=str),
        )


class IdempotencyService:
    def __init__(self, db):
        self.repo = IdempotencyRepository(db)

    @staticmethod
    def fingerprint(payload: object) -> str:
        payload_bytes = json.dumps(payload, sort_keys=True, default=str).encode("utf-8")
        return hashlib.sha256(payload_bytes).hexdigest()

    def start(
        self, scope: IdempotencyScope, request_hash: str
    ) -> tuple[IdempotencyContext | None, IdempotencyReplay | None]:
        existing = self.repo.find(scope)
        if existing is not None:
            return None, self._replay(existing, request_hash)
        try:
            record = self.repo.claim(scope, request_hash)
        except IntegrityError:
            self.repo.db.rollback()
            return None, self._replay(self.repo.find(scope), request_hash)
        return IdempotencyContext(record, self.repo), None

    @staticmethod
    def _replay(existing: IdempotencyRecord | None, request_hash: str) -> IdempotencyReplay:
        if existing is None:
            raise AppError(ErrorCatalog.IDEMPOTENCY_REQUEST_IN_PROGRESS)
        if existing.request_hash != request_hash:
            raise AppError(ErrorCatalog.IDEMPOTENCY_KEY_REUSED_WITH_DIFFERENT_PAYLOAD)
        if existing.state == IN_PROGRESS or existing.response_body is None or existing.status_code is None:
            raise AppError(ErrorCatalog.IDEMPOTENCY_REQUEST_IN_PROGRESS)
        return IdempotencyReplay(status_code=existing.status_code, response_body=json.loads(existing.response_body))


def extract_idempotency_key(headers, *, required: bool) -> str | None:
    key = headers.get(IDEMPOTENCY_HEADER)
    if not key and required:
        raise AppError(ErrorCatalog.IDEMPOTENCY_KEY_REQUIRED)
    return key


def begin_idempotent_request(request, db, *, tenant_id: str, payload: object, required: bool):
    """Start idempotency tracking for a mutating request.

    Returns ``(context, replay)``; both are ``None`` when the request carries no key and
    none is required. The context is parked on ``request.state`` so the exception
    handlers can store failures against the key.
    """
    idempotency_key = extract_idempotency_key(request.headers, required=required)
    if not idempotency_key:
        return None, None
    scope = IdempotencyScope(
        tenant_id=str(tenant_id),
        endpoint=str(request.url.path),
        method=request.method,
        key=idempotency_key,
    )
    context, replay = IdempotencyService(db).start(scope, IdempotencyService.fingerprint(payload))
    if context is not None:
        request.state.idempotency = context
    return context, replay
