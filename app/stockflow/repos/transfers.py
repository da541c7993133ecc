from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import selectinload

from app.stockflow.db.models import Transfer


@dataclass(frozen=True)
class TransferQueryFilters:
    tenant_id: str
    status: str | None = None
    branch_id: str | None = None
    direction: str | None = None
    priority: str | None = None


class TransferRepository:
    def __init__(self, db):
        self.db = db

    def get_transfer(self, tenant_id: str, transfer_id, *, lock: bool = False) -> Transfer | None:
        stmt = (
            select(Transfer)
            .where(Transfer.id == transfer_id, Transfer.tenant_id == tenant_id)
            .options(selectinload(Transfer.items), selectinload(Transfer.approval_records))
        )
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return self.db.execute(stmt).scalars().first()

    def list_transfers(
        self,
        filters: TransferQueryFilters,
        *,
        limit: int,
        cursor_transfer: Transfer | None = None,
    ) -> list[Transfer]:
        stmt = (
            select(Transfer)
            .where(Transfer.tenant_id == filters.tenant_id)
            .options(selectinload(Transfer.items), selectinload(Transfer.approval_records))
        )
        if filters.status:
            stmt = stmt.where(Transfer.status == filters.status)
        if filters.priority:
            stmt = stmt.where(Transfer.priority == filters.priority)
        if filters.branch_id:
            if filters.direction == "inbound":
                stmt = stmt.where(Transfer.destination_branch_id == filters.branch_id)
            elif filters.direction == "outbound":
                stmt = stmt.where(Transfer.source_branch_id == filters.branch_id)
            else:
                stmt = stmt.where(
                    or_(
                        Transfer.source_branch_id == filters.branch_id,
                        Transfer.destination_branch_id == filters.branch_id,
                    )
                )
        if cursor_transfer is not None:
            stmt = stmt.where(
                or_(
                    Transfer.created_at < cursor_transfer.created_at,
                    and_(Transfer.created_at == cursor_transfer.created_at, Transfer.id < cursor_transfer.id),
                )
            )
        stmt = stmt.order_by(Transfer.created_at.desc(), Transfer.id.desc()).limit(limit + 1)
        return self.db.execute(stmt).scalars().all()

    def list_numbers_with_prefix(self, tenant_id: str, prefix: str) -> list[str]:
        stmt = select(Transfer.transfer_number).where(
            Transfer.tenant_id == tenant_id,
            Transfer.transfer_number.like(f"{prefix}%"),
        )
        return list(self.db.execute(stmt).scalars().all())

    def add(self, transfer: Transfer) -> Transfer:
        self.db.add(transfer)
        self.db.flush()
        return transfer
