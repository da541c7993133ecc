from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import and_, func, or_, select

from app.stockflow.db.models import ProductStock, StockLedgerEntry, StockLot


@dataclass(frozen=True)
class LedgerQueryFilters:
    tenant_id: str
    branch_id: str | None = None
    product_id: str | None = None
    kinds: tuple[str, ...] | None = None
    occurred_from: datetime | None = None
    occurred_to: datetime | None = None


class StockRepository:
    def __init__(self, db):
        self.db = db

    def lock_aggregate(self, tenant_id: str, branch_id: str, product_id: str) -> ProductStock | None:
        stmt = (
            select(ProductStock)
            .where(
                ProductStock.tenant_id == tenant_id,
                ProductStock.branch_id == branch_id,
                ProductStock.product_id == product_id,
            )
            .with_for_update()
        )
        return self.db.execute(stmt).scalars().first()

    def get_aggregate(self, tenant_id: str, branch_id: str, product_id: str) -> ProductStock | None:
        stmt = select(ProductStock).where(
            ProductStock.tenant_id == tenant_id,
            ProductStock.branch_id == branch_id,
            ProductStock.product_id == product_id,
        )
        return self.db.execute(stmt).scalars().first()

    def list_aggregates(self, tenant_id: str, branch_id: str | None = None, product_id: str | None = None):
        stmt = select(ProductStock).where(ProductStock.tenant_id == tenant_id)
        if branch_id:
            stmt = stmt.where(ProductStock.branch_id == branch_id)
        if product_id:
            stmt = stmt.where(ProductStock.product_id == product_id)
        return self.db.execute(stmt).scalars().all()

    def lock_open_lots(self, tenant_id: str, product_id: str, branch_id: str) -> list[StockLot]:
        return self.db.execute(self._open_lots_query(tenant_id, product_id, branch_id).with_for_update()).scalars().all()

    def list_open_lots(self, tenant_id: str, product_id: str, branch_id: str) -> list[StockLot]:
        return self.db.execute(self._open_lots_query(tenant_id, product_id, branch_id)).scalars().all()

    @staticmethod
    def _open_lots_query(tenant_id: str, product_id: str, branch_id: str):
        return (
            select(StockLot)
            .where(
                StockLot.tenant_id == tenant_id,
                StockLot.product_id == product_id,
                StockLot.branch_id == branch_id,
                StockLot.qty_remaining > 0,
            )
            .order_by(StockLot.received_at.asc(), StockLot.created_at.asc(), StockLot.id.asc())
        )

    def lock_lot(self, tenant_id: str, lot_id) -> StockLot | None:
        stmt = select(StockLot).where(StockLot.id == lot_id, StockLot.tenant_id == tenant_id).with_for_update()
        return self.db.execute(stmt).scalars().first()

    def get_entry(self, tenant_id: str, entry_id) -> StockLedgerEntry | None:
        stmt = select(StockLedgerEntry).where(
            StockLedgerEntry.id == entry_id,
            StockLedgerEntry.tenant_id == tenant_id,
        )
        return self.db.execute(stmt).scalars().first()

    def get_reversal_of(self, entry_id) -> StockLedgerEntry | None:
        stmt = select(StockLedgerEntry).where(StockLedgerEntry.reverses_entry_id == entry_id)
        return self.db.execute(stmt).scalars().first()

    def ledger_sum(self, tenant_id: str, product_id: str, branch_id: str) -> int:
        stmt = select(func.coalesce(func.sum(StockLedgerEntry.qty_delta), 0)).where(
            StockLedgerEntry.tenant_id == tenant_id,
            StockLedgerEntry.product_id == product_id,
            StockLedgerEntry.branch_id == branch_id,
        )
        return int(self.db.execute(stmt).scalar_one() or 0)

    def list_entries(self, filters: LedgerQueryFilters, *, limit: int, cursor_entry: StockLedgerEntry | None):
        """Newest first; ``cursor_entry`` is the last row of the previous page."""
        stmt = select(StockLedgerEntry).where(StockLedgerEntry.tenant_id == filters.tenant_id)
        if filters.branch_id:
            stmt = stmt.where(StockLedgerEntry.branch_id == filters.branch_id)
        if filters.product_id:
            stmt = stmt.where(StockLedgerEntry.product_id == filters.product_id)
        if filters.kinds:
            stmt = stmt.where(StockLedgerEntry.kind.in_(filters.kinds))
        if filters.occurred_from:
            stmt = stmt.where(StockLedgerEntry.occurred_at >= filters.occurred_from)
        if filters.occurred_to:
            stmt = stmt.where(StockLedgerEntry.occurred_at <= filters.occurred_to)
        if cursor_entry is not None:
            stmt = stmt.where(
                or_(
                    StockLedgerEntry.occurred_at < cursor_entry.occurred_at,
                    and_(
                        StockLedgerEntry.occurred_at == cursor_entry.occurred_at,
                        StockLedgerEntry.id < cursor_entry.id,
                    ),
                )
            )
        stmt = stmt.order_by(StockLedgerEntry.occurred_at.desc(), StockLedgerEntry.id.desc()).limit(limit + 1)
        return self.db.execute(stmt).scalars().all()

    def add(self, instance):
        self.db.add(instance)
        return instance

    def flush(self) -> None:
        self.db.flush()
