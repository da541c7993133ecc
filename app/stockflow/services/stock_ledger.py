from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from app.stockflow.core.config import settings
from app.stockflow.core.error_catalog import AppError, ErrorCatalog, conflict, not_found, validation_error
from app.stockflow.core.logging import log_event
from app.stockflow.db.models import ProductStock, StockLedgerEntry, StockLot
from app.stockflow.repos.stock import LedgerQueryFilters, StockRepository

logger = logging.getLogger("stockflow.ledger")

RECEIPT = "RECEIPT"
ADJUSTMENT = "ADJUSTMENT"
CONSUMPTION = "CONSUMPTION"
REVERSAL = "REVERSAL"
LEDGER_KINDS = (RECEIPT, ADJUSTMENT, CONSUMPTION, REVERSAL)


@dataclass(frozen=True)
class LotDraw:
    lot_id: str
    qty: int
    unit_cost_pence: int | None
    ledger_entry_id: str
    received_at: datetime

    def to_dict(self) -> dict:
        return {
            "lot_id": self.lot_id,
            "qty": self.qty,
            "unit_cost_pence": self.unit_cost_pence,
            "ledger_entry_id": self.ledger_entry_id,
        }


@dataclass(frozen=True)
class StockLevels:
    branch_id: str
    product_id: str
    qty_on_hand: int
    lots: list[StockLot]


@dataclass(frozen=True)
class LedgerPage:
    entries: list[StockLedgerEntry]
    next_cursor: str | None


class StockLedgerService:
    """FIFO lot accounting over an append-only ledger.

    Writes join the caller's transaction; nothing here commits. Lots and the
    per-branch aggregate carry version columns, so a concurrent writer that read
    the same rows loses at flush time with ``StaleDataError``.
    """

    def __init__(self, db):
        self.db = db
        self.repo = StockRepository(db)

    def record_receipt(
        self,
        *,
        tenant_id: str,
        product_id: str,
        branch_id: str,
        qty: int,
        unit_cost_pence: int | None,
        actor_user_id: str | None,
        reason: str | None = None,
        source_ref: str | None = None,
        occurred_at: datetime | None = None,
        kind: str = RECEIPT,
        transfer_id: str | None = None,
    ) -> StockLot:
        if qty <= 0:
            raise validation_error("qty must be greater than 0", qty=qty)
        if unit_cost_pence is not None and unit_cost_pence < 0:
            raise validation_error("unit_cost_pence must not be negative", unit_cost_pence=unit_cost_pence)
        occurred_at = occurred_at or datetime.utcnow()
        lot = self.repo.add(
            StockLot(
                tenant_id=tenant_id,
                product_id=product_id,
                branch_id=branch_id,
                unit_cost_pence=unit_cost_pence,
                qty_received=qty,
                qty_remaining=qty,
                source_ref=source_ref,
                received_at=occurred_at,
            )
        )
        self.repo.flush()
        self.repo.add(
            StockLedgerEntry(
                tenant_id=tenant_id,
                product_id=product_id,
                branch_id=branch_id,
                kind=kind,
                qty_delta=qty,
                unit_cost_pence=unit_cost_pence,
                lot_id=lot.id,
                actor_user_id=actor_user_id,
                reason=reason,
                transfer_id=transfer_id,
                occurred_at=occurred_at,
            )
        )
        self._apply_aggregate_delta(tenant_id, branch_id, product_id, qty)
        self.repo.flush()
        log_event(
            logger,
            "stock_receipt",
            tenant_id=str(tenant_id),
            branch_id=str(branch_id),
            product_id=str(product_id),
            qty=qty,
            kind=kind,
            lot_id=str(lot.id),
        )
        return lot

    def record_consumption(
        self,
        *,
        tenant_id: str,
        product_id: str,
        branch_id: str,
        qty: int,
        actor_user_id: str | None,
        reason: str | None = None,
        kind: str = CONSUMPTION,
        transfer_id: str | None = None,
        occurred_at: datetime | None = None,
    ) -> list[LotDraw]:
        if qty <= 0:
            raise validation_error("qty must be greater than 0", qty=qty)
        lots = self.repo.lock_open_lots(tenant_id, product_id, branch_id)
        available = sum(lot.qty_remaining for lot in lots)
        if available < qty:
            raise AppError(
                ErrorCatalog.INSUFFICIENT_STOCK,
                details={
                    "message": f"need {qty} units, only {available} on hand",
                    "product_id": str(product_id),
                    "branch_id": str(branch_id),
                    "requested": qty,
                    "available": available,
                },
            )

        occurred_at = occurred_at or datetime.utcnow()
        draws: list[LotDraw] = []
        remaining = qty
        for lot in lots:
            if remaining == 0:
                break
            take = min(remaining, lot.qty_remaining)
            lot.qty_remaining -= take
            entry = self.repo.add(
                StockLedgerEntry(
                    tenant_id=tenant_id,
                    product_id=product_id,
                    branch_id=branch_id,
                    kind=kind,
                    qty_delta=-take,
                    unit_cost_pence=lot.unit_cost_pence,
                    lot_id=lot.id,
                    actor_user_id=actor_user_id,
                    reason=reason,
                    transfer_id=transfer_id,
                    occurred_at=occurred_at,
                )
            )
            self.repo.flush()
            draws.append(
                LotDraw(
                    lot_id=str(lot.id),
                    qty=take,
                    unit_cost_pence=lot.unit_cost_pence,
                    ledger_entry_id=str(entry.id),
                    received_at=lot.received_at,
                )
            )
            remaining -= take

        self._apply_aggregate_delta(tenant_id, branch_id, product_id, -qty)
        self.repo.flush()
        log_event(
            logger,
            "stock_consumption",
            tenant_id=str(tenant_id),
            branch_id=str(branch_id),
            product_id=str(product_id),
            qty=qty,
            kind=kind,
            lots=[draw.lot_id for draw in draws],
        )
        return draws

    def record_adjustment(
        self,
        *,
        tenant_id: str,
        product_id: str,
        branch_id: str,
        qty_delta: int,
        actor_user_id: str | None,
        reason: str | None = None,
        unit_cost_pence: int | None = None,
    ) -> StockLot | list[LotDraw]:
        if qty_delta == 0:
            raise validation_error("qty_delta must be non-zero")
        if qty_delta > 0:
            return self.record_receipt(
                tenant_id=tenant_id,
                product_id=product_id,
                branch_id=branch_id,
                qty=qty_delta,
                unit_cost_pence=unit_cost_pence,
                actor_user_id=actor_user_id,
                reason=reason,
                source_ref="adjustment",
                kind=ADJUSTMENT,
            )
        return self.record_consumption(
            tenant_id=tenant_id,
            product_id=product_id,
            branch_id=branch_id,
            qty=-qty_delta,
            actor_user_id=actor_user_id,
            reason=reason,
            kind=ADJUSTMENT,
        )

    def record_reversal(
        self,
        *,
        tenant_id: str,
        original_entry_id: str,
        actor_user_id: str | None,
        reason: str | None = None,
    ) -> StockLedgerEntry:
        original = self.repo.get_entry(tenant_id, original_entry_id)
        if original is None:
            raise not_found("ledger entry not found", entry_id=str(original_entry_id))
        if original.kind == REVERSAL:
            raise conflict("a reversal entry cannot itself be reversed", entry_id=str(original.id))
        if original.transfer_id is not None:
            raise conflict(
                "entry belongs to a stock transfer, reverse the transfer instead",
                entry_id=str(original.id),
                transfer_id=str(original.transfer_id),
            )
        if self.repo.get_reversal_of(original.id) is not None:
            raise conflict("ledger entry has already been reversed", entry_id=str(original.id))

        delta = -original.qty_delta
        lot = self.repo.lock_lot(tenant_id, original.lot_id) if original.lot_id is not None else None
        if lot is None:
            raise conflict("ledger entry has no lot to restore", entry_id=str(original.id))
        if delta < 0 and lot.qty_remaining < -delta:
            raise AppError(
                ErrorCatalog.INSUFFICIENT_STOCK,
                details={
                    "message": f"lot only holds {lot.qty_remaining} of the {-delta} units to withdraw",
                    "lot_id": str(lot.id),
                    "requested": -delta,
                    "available": lot.qty_remaining,
                },
            )
        if delta > 0 and lot.qty_remaining + delta > lot.qty_received:
            raise conflict("restoring the entry would overfill its lot", lot_id=str(lot.id))
        lot.qty_remaining += delta

        entry = self.repo.add(
            StockLedgerEntry(
                tenant_id=tenant_id,
                product_id=original.product_id,
                branch_id=original.branch_id,
                kind=REVERSAL,
                qty_delta=delta,
                unit_cost_pence=original.unit_cost_pence,
                lot_id=lot.id,
                actor_user_id=actor_user_id,
                reason=reason,
                reverses_entry_id=original.id,
                occurred_at=datetime.utcnow(),
            )
        )
        self._apply_aggregate_delta(tenant_id, original.branch_id, original.product_id, delta)
        self.repo.flush()
        log_event(
            logger,
            "stock_entry_reversed",
            tenant_id=str(tenant_id),
            entry_id=str(original.id),
            reversal_entry_id=str(entry.id),
            qty_delta=delta,
        )
        return entry

    def get_levels(self, *, tenant_id: str, branch_id: str, product_id: str) -> StockLevels:
        aggregate = self.repo.get_aggregate(tenant_id, branch_id, product_id)
        lots = self.repo.list_open_lots(tenant_id, product_id, branch_id)
        return StockLevels(
            branch_id=str(branch_id),
            product_id=str(product_id),
            qty_on_hand=aggregate.qty_on_hand if aggregate else 0,
            lots=lots,
        )

    def list_ledger(self, filters: LedgerQueryFilters, *, limit: int | None = None, cursor: str | None = None):
        page_size = min(max(limit or settings.LIST_DEFAULT_PAGE_SIZE, 1), settings.LIST_MAX_PAGE_SIZE)
        cursor_entry = None
        if cursor:
            cursor_entry = self.repo.get_entry(filters.tenant_id, cursor)
            if cursor_entry is None:
                raise validation_error("cursor does not match a ledger entry", cursor=cursor)
        rows = self.repo.list_entries(filters, limit=page_size, cursor_entry=cursor_entry)
        has_next = len(rows) > page_size
        entries = rows[:page_size]
        next_cursor = str(entries[-1].id) if has_next and entries else None
        return LedgerPage(entries=entries, next_cursor=next_cursor)

    def ledger_sum(self, *, tenant_id: str, product_id: str, branch_id: str) -> int:
        return self.repo.ledger_sum(tenant_id, product_id, branch_id)

    def _apply_aggregate_delta(self, tenant_id: str, branch_id: str, product_id: str, delta: int) -> ProductStock:
        aggregate = self.repo.lock_aggregate(tenant_id, branch_id, product_id)
        if aggregate is None:
            aggregate = self.repo.add(
                ProductStock(tenant_id=tenant_id, branch_id=branch_id, product_id=product_id, qty_on_hand=0)
            )
        if aggregate.qty_on_hand + delta < 0:
            raise AppError(
                ErrorCatalog.INSUFFICIENT_STOCK,
                details={
                    "message": "on-hand quantity would go negative",
                    "requested": -delta,
                    "available": aggregate.qty_on_hand,
                },
            )
        aggregate.qty_on_hand += delta
        aggregate.updated_at = datetime.utcnow()
        return aggregate
