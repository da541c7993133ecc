from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import aliased, selectinload

from app.stockflow.core.metrics import metrics
from app.stockflow.db.models import ProductStock, StockLedgerEntry, StockLot, Tenant, Transfer, TransferItem
from app.stockflow.services.stock_ledger import REVERSAL
from app.stockflow.services.transfer_status import (
    CANCELLED,
    COMPLETED,
    REQUESTED,
    TERMINAL_STATUSES,
    check_counter_order,
    derive_fulfilment_status,
)


SEVERITY_CRITICAL = "CRITICAL"
SEVERITY_WARN = "WARN"


@dataclass(frozen=True)
class IntegrityFinding:
    check_id: str
    severity: str
    tenant_id: str
    message: str
    entity: str
    entity_id: str | None
    details: dict


def resolve_tenants(db, tenant: str) -> list[str]:
    if tenant.lower() != "all":
        return [tenant]
    return [str(row.id) for row in db.execute(select(Tenant.id)).all()]


def _record(findings: list[IntegrityFinding], check_id: str) -> list[IntegrityFinding]:
    if findings:
        metrics.increment_invariant_violation(check_id, len(findings))
    return findings


def _ledger_sums(db, tenant_id: str) -> dict[tuple[str, str], int]:
    rows = db.execute(
        select(
            StockLedgerEntry.branch_id,
            StockLedgerEntry.product_id,
            func.coalesce(func.sum(StockLedgerEntry.qty_delta), 0).label("total"),
        )
        .where(StockLedgerEntry.tenant_id == tenant_id)
        .group_by(StockLedgerEntry.branch_id, StockLedgerEntry.product_id)
    ).all()
    return {(str(row.branch_id), str(row.product_id)): int(row.total) for row in rows}


def _open_lot_sums(db, tenant_id: str) -> dict[tuple[str, str], int]:
    rows = db.execute(
        select(
            StockLot.branch_id,
            StockLot.product_id,
            func.coalesce(func.sum(StockLot.qty_remaining), 0).label("total"),
        )
        .where(StockLot.tenant_id == tenant_id)
        .group_by(StockLot.branch_id, StockLot.product_id)
    ).all()
    return {(str(row.branch_id), str(row.product_id)): int(row.total) for row in rows}


def _aggregates(db, tenant_id: str) -> dict[tuple[str, str], int]:
    rows = db.execute(
        select(ProductStock.branch_id, ProductStock.product_id, ProductStock.qty_on_hand).where(
            ProductStock.tenant_id == tenant_id
        )
    ).all()
    return {(str(row.branch_id), str(row.product_id)): int(row.qty_on_hand) for row in rows}


def _compare_to_aggregate(
    tenant_id: str,
    check_id: str,
    message: str,
    expected: dict[tuple[str, str], int],
    aggregates: dict[tuple[str, str], int],
    label: str,
) -> list[IntegrityFinding]:
    findings = []
    for key in sorted(set(expected) | set(aggregates)):
        on_hand = aggregates.get(key, 0)
        derived = expected.get(key, 0)
        if on_hand == derived:
            continue
        branch_id, product_id = key
        findings.append(
            IntegrityFinding(
                check_id=check_id,
                severity=SEVERITY_CRITICAL,
                tenant_id=tenant_id,
                message=message,
                entity="product_stock",
                entity_id=None,
                details={"branch_id": branch_id, "product_id": product_id, "qty_on_hand": on_hand, label: derived},
            )
        )
    return findings


def check_aggregate_matches_ledger(db, tenant_id: str) -> list[IntegrityFinding]:
    findings = _compare_to_aggregate(
        tenant_id,
        "aggregate_equals_ledger",
        "On-hand quantity differs from the ledger sum.",
        _ledger_sums(db, tenant_id),
        _aggregates(db, tenant_id),
        "ledger_sum",
    )
    return _record(findings, "aggregate_equals_ledger")


def check_lots_match_aggregate(db, tenant_id: str) -> list[IntegrityFinding]:
    findings = _compare_to_aggregate(
        tenant_id,
        "lots_equal_aggregate",
        "On-hand quantity differs from the sum of lot remainders.",
        _open_lot_sums(db, tenant_id),
        _aggregates(db, tenant_id),
        "lot_remaining_sum",
    )
    return _record(findings, "lots_equal_aggregate")


def transfer_item_counter_findings(tenant_id: str, items) -> list[IntegrityFinding]:
    """Counter-order findings for already loaded items.

    The schema CHECK rejects these rows on write, so drift only shows up in data
    restored or imported around the constraint.
    """
    findings = []
    for item in items:
        if check_counter_order(item):
            continue
        findings.append(
            IntegrityFinding(
                check_id="transfer_item_counters",
                severity=SEVERITY_CRITICAL,
                tenant_id=tenant_id,
                message="Transfer item counters out of order.",
                entity="transfer_items",
                entity_id=str(item.id),
                details={
                    "transfer_id": str(item.transfer_id),
                    "qty_requested": item.qty_requested,
                    "qty_approved": item.qty_approved,
                    "qty_shipped": item.qty_shipped,
                    "qty_received": item.qty_received,
                },
            )
        )
    return findings


def check_transfer_item_counters(db, tenant_id: str) -> list[IntegrityFinding]:
    items = db.execute(select(TransferItem).where(TransferItem.tenant_id == tenant_id)).scalars().all()
    return _record(transfer_item_counter_findings(tenant_id, items), "transfer_item_counters")


def check_transfer_status(db, tenant_id: str) -> list[IntegrityFinding]:
    transfers = (
        db.execute(
            select(Transfer).where(Transfer.tenant_id == tenant_id).options(selectinload(Transfer.items))
        )
        .scalars()
        .all()
    )
    findings = []
    for transfer in transfers:
        problem = None
        if transfer.status == COMPLETED and transfer.completed_at is None:
            problem = "COMPLETED transfer has no completed_at."
        elif transfer.status == CANCELLED and transfer.cancelled_at is None:
            problem = "CANCELLED transfer has no cancelled_at."
        elif transfer.status not in TERMINAL_STATUSES and transfer.status != REQUESTED:
            derived = derive_fulfilment_status(transfer.items)
            if derived != transfer.status:
                problem = f"Status {transfer.status} disagrees with item counters ({derived})."
        if problem is None:
            continue
        findings.append(
            IntegrityFinding(
                check_id="transfer_status",
                severity=SEVERITY_WARN,
                tenant_id=tenant_id,
                message=problem,
                entity="transfers",
                entity_id=str(transfer.id),
                details={
                    "transfer_number": transfer.transfer_number,
                    "status": transfer.status,
                    "completed_at": _format_datetime(transfer.completed_at),
                    "cancelled_at": _format_datetime(transfer.cancelled_at),
                },
            )
        )
    return _record(findings, "transfer_status")


def check_reversal_links(db, tenant_id: str) -> list[IntegrityFinding]:
    reversal = aliased(Transfer)
    rows = db.execute(
        select(Transfer.id, Transfer.reversed_by_transfer_id, reversal.reversal_of_transfer_id)
        .outerjoin(reversal, reversal.id == Transfer.reversed_by_transfer_id)
        .where(Transfer.tenant_id == tenant_id, Transfer.reversed_by_transfer_id.is_not(None))
    ).all()
    findings = []
    for row in rows:
        if row.reversal_of_transfer_id is not None and str(row.reversal_of_transfer_id) == str(row.id):
            continue
        findings.append(
            IntegrityFinding(
                check_id="transfer_reversal_links",
                severity=SEVERITY_CRITICAL,
                tenant_id=tenant_id,
                message="Reversal transfer does not point back at the transfer it reverses.",
                entity="transfers",
                entity_id=str(row.id),
                details={
                    "reversed_by_transfer_id": str(row.reversed_by_transfer_id),
                    "reversal_of_transfer_id": _str_or_none(row.reversal_of_transfer_id),
                },
            )
        )
    return _record(findings, "transfer_reversal_links")


def check_ledger_reversals(db, tenant_id: str) -> list[IntegrityFinding]:
    original = aliased(StockLedgerEntry)
    rows = db.execute(
        select(
            StockLedgerEntry.id,
            StockLedgerEntry.qty_delta,
            original.id.label("original_id"),
            original.qty_delta.label("original_delta"),
        )
        .outerjoin(original, original.id == StockLedgerEntry.reverses_entry_id)
        .where(StockLedgerEntry.tenant_id == tenant_id, StockLedgerEntry.kind == REVERSAL)
    ).all()
    findings = []
    for row in rows:
        if row.original_id is not None and row.qty_delta == -row.original_delta:
            continue
        findings.append(
            IntegrityFinding(
                check_id="ledger_reversal_pairs",
                severity=SEVERITY_WARN,
                tenant_id=tenant_id,
                message="Reversal entry does not negate its original entry.",
                entity="stock_ledger_entries",
                entity_id=str(row.id),
                details={
                    "original_entry_id": _str_or_none(row.original_id),
                    "qty_delta": row.qty_delta,
                    "original_qty_delta": row.original_delta,
                },
            )
        )
    return _record(findings, "ledger_reversal_pairs")


def _str_or_none(value) -> str | None:
    return str(value) if value is not None else None


def _format_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


def run_integrity_checks(db, tenant_id: str) -> list[IntegrityFinding]:
    findings: list[IntegrityFinding] = []
    findings.extend(check_aggregate_matches_ledger(db, tenant_id))
    findings.extend(check_lots_match_aggregate(db, tenant_id))
    findings.extend(check_transfer_item_counters(db, tenant_id))
    findings.extend(check_transfer_status(db, tenant_id))
    findings.extend(check_reversal_links(db, tenant_id))
    findings.extend(check_ledger_reversals(db, tenant_id))
    return findings
