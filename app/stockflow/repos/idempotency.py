from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select

from app.stockflow.db.models import IdempotencyRecord

IN_PROGRESS = "in_progress"
SUCCEEDED = "succeeded"
FAILED = "failed"


@dataclass(frozen=True)
class IdempotencyScope:
    """A key is unique per tenant, endpoint path and HTTP method."""

    tenant_id: str
    endpoint: str
    method: str
    key: str


class IdempotencyRepository:
    def __init__(self, db):
        self.db = db

    def find(self, scope: IdempotencyScope) -> IdempotencyRecord | None:
        stmt = select(IdempotencyRecord).where(
            IdempotencyRecord.tenant_id == scope.tenant_id,
            IdempotencyRecord.endpoint == scope.endpoint,
            IdempotencyRecord.method == scope.method,
            IdempotencyRecord.idempotency_key == scope.key,
        )
        return self.db.execute(stmt).scalars().first()

    def claim(self, scope: IdempotencyScope, request_hash: str) -> IdempotencyRecord:
        """Insert an in-progress record; a concurrent claim of the same key raises IntegrityError."""
        record = IdempotencyRecord(
            tenant_id=scope.tenant_id,
            endpoint=scope.endpoint,
            method=scope.method,
            idempotency_key=scope.key,
            request_hash=request_hash,
            state=IN_PROGRESS,
        )
        self.db.add(record)
        self.db.commit()
        return record

    def finish(self, record: IdempotencyRecord, *, state: str, status_code: int, response_body: str) -> None:
        record.state = state
        record.status_code = status_code
        record.response_body = response_body
        record.updated_at = datetime.utcnow()
        self.db.add(record)
        self.db.commit()
