from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.exc import IntegrityError

from app.stockflow.core.config import settings
from app.stockflow.core.error_catalog import AppError, ErrorCatalog, conflict, not_found, validation_error
from app.stockflow.core.logging import log_event
from app.stockflow.core.metrics import metrics
from app.stockflow.db.models import Transfer, TransferItem
from app.stockflow.db.session import unit_of_work
from app.stockflow.repos.tenants import TenantDirectoryRepository
from app.stockflow.repos.transfers import TransferQueryFilters, TransferRepository
from app.stockflow.schemas.transfers import ReceiveItem, ShipItem, TransferCreateRequest
from app.stockflow.services.access_control import AccessControlService
from app.stockflow.services.approval_rules import ApprovalRuleEngine
from app.stockflow.services.stock_ledger import CONSUMPTION, RECEIPT, StockLedgerService
from app.stockflow.services.transfer_status import (
    APPROVED,
    CANCELLED,
    COMPLETED,
    PRIORITIES,
    RECEIVABLE_STATUSES,
    REQUESTED,
    SHIPPABLE_STATUSES,
    TERMINAL_STATUSES,
    derive_fulfilment_status,
)

logger = logging.getLogger("stockflow.transfers")


@dataclass(frozen=True)
class TransferPage:
    items: list[Transfer]
    next_cursor: str | None


@dataclass(frozen=True)
class NewTransferLine:
    product_id: str
    qty_requested: int


def weighted_average_cost(lots: list[dict]) -> int | None:
    """Average unit cost over the costed lots drawn, rounded half-up to whole pence."""
    costed = [lot for lot in lots if lot.get("unit_cost_pence") is not None]
    qty = sum(lot["qty"] for lot in costed)
    if qty == 0:
        return None
    total = sum(lot["qty"] * lot["unit_cost_pence"] for lot in costed)
    return (2 * total + qty) // (2 * qty)


def _is_transfer_number_collision(exc: IntegrityError) -> bool:
    message = str(exc.orig)
    return "uq_transfers_tenant_number" in message or "transfers.transfer_number" in message


def record_transition(transfer: Transfer, previous_status: str | None, actor_user_id: str) -> None:
    if previous_status == transfer.status:
        return
    metrics.record_transfer_transition(transfer.status)
    log_event(
        logger,
        "transfer_transition",
        tenant_id=str(transfer.tenant_id),
        transfer_id=str(transfer.id),
        transfer_number=transfer.transfer_number,
        from_status=previous_status,
        to_status=transfer.status,
        actor_user_id=str(actor_user_id),
    )


class TransferService:
    """Request, ship, receive and cancel stock transfers.

    Every public write runs as one unit of work: the batch is validated up
    front, then applied with the matching ledger writes, and either all of it
    commits or none of it does.
    """

    def __init__(self, db):
        self.db = db
        self.repo = TransferRepository(db)
        self.directory = TenantDirectoryRepository(db)
        self.access = AccessControlService(db)
        self.ledger = StockLedgerService(db)
        self.engine = ApprovalRuleEngine(db)

    def get_transfer(self, *, tenant_id: str, transfer_id, lock: bool = False) -> Transfer:
        transfer = self.repo.get_transfer(tenant_id, transfer_id, lock=lock)
        if transfer is None:
            raise not_found("stock transfer not found", transfer_id=str(transfer_id))
        return transfer

    def list_transfers(
        self,
        *,
        tenant_id: str,
        status: str | None = None,
        branch_id: str | None = None,
        direction: str | None = None,
        priority: str | None = None,
        limit: int | None = None,
        cursor: str | None = None,
    ) -> TransferPage:
        if direction is not None and direction not in ("inbound", "outbound"):
            raise validation_error("direction must be inbound or outbound", direction=direction)
        if direction is not None and branch_id is None:
            raise validation_error("direction requires branch_id", field="branch_id")
        page_size = min(max(limit or settings.LIST_DEFAULT_PAGE_SIZE, 1), settings.LIST_MAX_PAGE_SIZE)
        cursor_transfer = None
        if cursor:
            cursor_transfer = self.repo.get_transfer(tenant_id, cursor)
            if cursor_transfer is None:
                raise validation_error("cursor does not match a stock transfer", cursor=cursor)
        filters = TransferQueryFilters(
            tenant_id=tenant_id,
            status=status,
            branch_id=branch_id,
            direction=direction,
            priority=priority,
        )
        rows = self.repo.list_transfers(filters, limit=page_size, cursor_transfer=cursor_transfer)
        items = rows[:page_size]
        next_cursor = str(items[-1].id) if len(rows) > page_size and items else None
        return TransferPage(items=items, next_cursor=next_cursor)

    def create_transfer(self, *, tenant_id: str, actor_user_id: str, payload: TransferCreateRequest) -> Transfer:
        source_branch_id = str(payload.source_branch_id)
        destination_branch_id = str(payload.destination_branch_id)
        self._validate_branches(tenant_id, source_branch_id, destination_branch_id)
        if not self.access.is_branch_member(tenant_id, destination_branch_id, actor_user_id):
            raise AppError(ErrorCatalog.PERMISSION_DENIED)
        if payload.request_notes and len(payload.request_notes) > settings.REQUEST_NOTES_MAX_LENGTH:
            raise validation_error(
                f"request_notes must be at most {settings.REQUEST_NOTES_MAX_LENGTH} characters",
                field="request_notes",
            )
        if payload.order_notes and len(payload.order_notes) > settings.ORDER_NOTES_MAX_LENGTH:
            raise validation_error(
                f"order_notes must be at most {settings.ORDER_NOTES_MAX_LENGTH} characters",
                field="order_notes",
            )
        lines = [NewTransferLine(str(item.product_id), item.qty_requested) for item in payload.items]

        def build() -> Transfer:
            return self.build_transfer(
                tenant_id=tenant_id,
                source_branch_id=source_branch_id,
                destination_branch_id=destination_branch_id,
                lines=lines,
                requested_by_user_id=actor_user_id,
                priority=payload.priority,
                expected_delivery_date=payload.expected_delivery_date,
                request_notes=payload.request_notes,
                order_notes=payload.order_notes,
            )

        return self.commit_with_number_retry(build, tenant_id=tenant_id, actor_user_id=actor_user_id)

    def commit_with_number_retry(self, build, *, tenant_id: str, actor_user_id: str) -> Transfer:
        """Run ``build`` in a unit of work, retrying when the allocated transfer number collides."""
        attempts = max(settings.TRANSFER_NUMBER_MAX_RETRIES, 1)
        attempt = 0
        while True:
            attempt += 1
            try:
                with unit_of_work(self.db):
                    transfer_id = build().id
            except IntegrityError as exc:
                if not _is_transfer_number_collision(exc) or attempt >= attempts:
                    raise
                log_event(logger, "transfer_number_collision", tenant_id=str(tenant_id), attempt=attempt)
                continue
            transfer = self.get_transfer(tenant_id=tenant_id, transfer_id=transfer_id)
            record_transition(transfer, None, actor_user_id)
            return transfer

    def build_transfer(
        self,
        *,
        tenant_id: str,
        source_branch_id: str,
        destination_branch_id: str,
        lines: list[NewTransferLine],
        requested_by_user_id: str,
        priority: str = "NORMAL",
        expected_delivery_date=None,
        request_notes: str | None = None,
        order_notes: str | None = None,
        reversal_of: Transfer | None = None,
        reversal_reason: str | None = None,
        allow_archived_products: bool = False,
    ) -> Transfer:
        """Create a REQUESTED transfer and evaluate approval rules for it; does not commit.

        Reversals may name archived products so completed history can still be undone.
        """
        if not lines:
            raise validation_error("at least one item is required", field="items")
        product_ids = [line.product_id for line in lines]
        if len(set(product_ids)) != len(product_ids):
            raise validation_error("each product may appear only once per transfer", field="items")
        if priority not in PRIORITIES:
            raise validation_error("unknown priority", priority=priority)
        products = self.directory.get_products(tenant_id, product_ids)
        for line in lines:
            if line.qty_requested < 1:
                raise validation_error("qty_requested must be at least 1", product_id=line.product_id)
            product = products.get(line.product_id)
            if product is None or (product.is_archived and not allow_archived_products):
                raise validation_error("unknown product", field="items", product_id=line.product_id)

        now = datetime.utcnow()
        transfer = Transfer(
            id=uuid.uuid4(),
            tenant_id=tenant_id,
            transfer_number=self._next_transfer_number(tenant_id, now),
            source_branch_id=source_branch_id,
            destination_branch_id=destination_branch_id,
            status=REQUESTED,
            priority=priority,
            requested_by_user_id=requested_by_user_id,
            expected_delivery_date=expected_delivery_date,
            request_notes=request_notes,
            order_notes=order_notes,
            requested_at=now,
            reversal_of_transfer_id=reversal_of.id if reversal_of is not None else None,
            reversal_reason=reversal_reason,
        )
        for line_number, line in enumerate(lines, start=1):
            transfer.items.append(
                TransferItem(
                    tenant_id=tenant_id,
                    line_number=line_number,
                    product_id=line.product_id,
                    qty_requested=line.qty_requested,
                    qty_approved=0,
                    qty_shipped=0,
                    qty_received=0,
                    lots_consumed=[],
                    shipment_batches=[],
                )
            )
        self.repo.add(transfer)
        self.engine.evaluate(transfer, products)
        self.db.flush()
        return transfer

    def ship(self, *, tenant_id: str, transfer_id, actor_user_id: str, lines: list[ShipItem]) -> Transfer:
        with unit_of_work(self.db):
            transfer = self.get_transfer(tenant_id=tenant_id, transfer_id=transfer_id, lock=True)
            if transfer.status not in SHIPPABLE_STATUSES:
                raise conflict(f"cannot ship a transfer in status {transfer.status}", status=transfer.status)
            if not self.access.is_branch_member(tenant_id, transfer.source_branch_id, actor_user_id):
                raise AppError(ErrorCatalog.PERMISSION_DENIED)
            items = self._resolve_batch(transfer, [line.item_id for line in lines])
            for line, item in zip(lines, items):
                if line.expected_qty_shipped is not None and line.expected_qty_shipped != item.qty_shipped:
                    raise conflict(
                        "item was shipped by another request, reload and retry",
                        item_id=str(item.id),
                        expected_qty_shipped=line.expected_qty_shipped,
                        qty_shipped=item.qty_shipped,
                    )
                remaining = item.qty_approved - item.qty_shipped
                if line.qty_to_ship > remaining:
                    raise AppError(
                        ErrorCatalog.EXCEEDS_APPROVED_QUANTITY,
                        details={
                            "message": (
                                f"cannot ship {line.qty_to_ship} units, only {remaining} of "
                                f"{item.qty_approved} approved remain"
                            ),
                            "item_id": str(item.id),
                            "requested": line.qty_to_ship,
                            "remaining": remaining,
                        },
                    )

            previous_status = transfer.status
            now = datetime.utcnow()
            for line, item in zip(lines, items):
                draws = self.ledger.record_consumption(
                    tenant_id=tenant_id,
                    product_id=item.product_id,
                    branch_id=transfer.source_branch_id,
                    qty=line.qty_to_ship,
                    actor_user_id=actor_user_id,
                    reason=f"Shipped on {transfer.transfer_number}",
                    kind=CONSUMPTION,
                    transfer_id=transfer.id,
                    occurred_at=now,
                )
                lots = [draw.to_dict() for draw in draws]
                batch = {
                    "batch_number": len(item.shipment_batches or []) + 1,
                    "qty": line.qty_to_ship,
                    "shipped_at": now.isoformat(),
                    "shipped_by_user_id": str(actor_user_id),
                    "lots": lots,
                }
                item.qty_shipped += line.qty_to_ship
                item.shipment_batches = [*(item.shipment_batches or []), batch]
                item.lots_consumed = [*(item.lots_consumed or []), *lots]
                item.avg_unit_cost_pence = weighted_average_cost(item.lots_consumed)

            transfer.shipped_by_user_id = actor_user_id
            transfer.shipped_at = now
            transfer.status = derive_fulfilment_status(transfer.items)
            self.db.flush()
        record_transition(transfer, previous_status, actor_user_id)
        return transfer

    def receive(self, *, tenant_id: str, transfer_id, actor_user_id: str, lines: list[ReceiveItem]) -> Transfer:
        with unit_of_work(self.db):
            transfer = self.get_transfer(tenant_id=tenant_id, transfer_id=transfer_id, lock=True)
            if transfer.status not in RECEIVABLE_STATUSES:
                raise conflict(f"cannot receive a transfer in status {transfer.status}", status=transfer.status)
            if not self.access.is_branch_member(tenant_id, transfer.destination_branch_id, actor_user_id):
                raise AppError(ErrorCatalog.PERMISSION_DENIED)
            items = self._resolve_batch(transfer, [line.item_id for line in lines])
            for line, item in zip(lines, items):
                if line.expected_qty_received is not None and line.expected_qty_received != item.qty_received:
                    raise conflict(
                        "item was received by another request, reload and retry",
                        item_id=str(item.id),
                        expected_qty_received=line.expected_qty_received,
                        qty_received=item.qty_received,
                    )
                outstanding = item.qty_shipped - item.qty_received
                if line.qty_received > outstanding:
                    raise AppError(
                        ErrorCatalog.EXCEEDS_SHIPPED_QUANTITY,
                        details={
                            "message": (
                                f"cannot receive {line.qty_received} units, only {outstanding} "
                                "shipped and not yet received"
                            ),
                            "item_id": str(item.id),
                            "requested": line.qty_received,
                            "remaining": outstanding,
                        },
                    )

            previous_status = transfer.status
            now = datetime.utcnow()
            for line, item in zip(lines, items):
                self.ledger.record_receipt(
                    tenant_id=tenant_id,
                    product_id=item.product_id,
                    branch_id=transfer.destination_branch_id,
                    qty=line.qty_received,
                    unit_cost_pence=item.avg_unit_cost_pence,
                    actor_user_id=actor_user_id,
                    reason=f"Received on {transfer.transfer_number}",
                    source_ref=transfer.transfer_number,
                    occurred_at=now,
                    kind=RECEIPT,
                    transfer_id=transfer.id,
                )
                item.qty_received += line.qty_received

            transfer.status = derive_fulfilment_status(transfer.items)
            transfer.updated_at = now
            if transfer.status == COMPLETED:
                transfer.completed_at = now
            self.db.flush()
        record_transition(transfer, previous_status, actor_user_id)
        return transfer

    def cancel(self, *, tenant_id: str, transfer_id, actor_user_id: str) -> Transfer:
        with unit_of_work(self.db):
            transfer = self.get_transfer(tenant_id=tenant_id, transfer_id=transfer_id, lock=True)
            nothing_shipped = all(item.qty_shipped == 0 for item in transfer.items)
            if transfer.status != REQUESTED and not (transfer.status == APPROVED and nothing_shipped):
                raise conflict(
                    "only requested transfers, or approved ones with nothing shipped, can be cancelled",
                    status=transfer.status,
                )
            is_member = self.access.is_branch_member(
                tenant_id, transfer.source_branch_id, actor_user_id
            ) or self.access.is_branch_member(tenant_id, transfer.destination_branch_id, actor_user_id)
            if not is_member:
                raise AppError(ErrorCatalog.PERMISSION_DENIED)
            previous_status = transfer.status
            transfer.status = CANCELLED
            transfer.cancelled_at = datetime.utcnow()
            self.db.flush()
        record_transition(transfer, previous_status, actor_user_id)
        return transfer

    def update_priority(self, *, tenant_id: str, transfer_id, priority: str) -> Transfer:
        if priority not in PRIORITIES:
            raise validation_error("unknown priority", priority=priority)
        with unit_of_work(self.db):
            transfer = self.get_transfer(tenant_id=tenant_id, transfer_id=transfer_id, lock=True)
            if transfer.status in TERMINAL_STATUSES:
                raise conflict(f"cannot change priority of a {transfer.status} transfer", status=transfer.status)
            transfer.priority = priority
            transfer.updated_at = datetime.utcnow()
            self.db.flush()
        return transfer

    def _resolve_batch(self, transfer: Transfer, item_ids) -> list[TransferItem]:
        if not item_ids:
            raise validation_error("at least one item is required", field="items")
        keys = [str(item_id) for item_id in item_ids]
        if len(set(keys)) != len(keys):
            raise validation_error("an item may appear only once per batch", field="items")
        by_id = {str(item.id): item for item in transfer.items}
        resolved = []
        for key in keys:
            item = by_id.get(key)
            if item is None:
                raise validation_error("item does not belong to this transfer", item_id=key)
            resolved.append(item)
        return resolved

    def _validate_branches(self, tenant_id: str, source_branch_id: str, destination_branch_id: str) -> None:
        if source_branch_id == destination_branch_id:
            raise validation_error("source and destination branches must differ", field="destination_branch_id")
        for field_name, branch_id in (
            ("source_branch_id", source_branch_id),
            ("destination_branch_id", destination_branch_id),
        ):
            branch = self.directory.get_branch(tenant_id, branch_id)
            if branch is None:
                raise not_found("branch not found", field=field_name, branch_id=branch_id)
            if branch.is_archived or not branch.is_active:
                raise conflict("branch is archived or inactive", field=field_name, branch_id=branch_id)

    def _next_transfer_number(self, tenant_id: str, now: datetime) -> str:
        prefix = f"{settings.TRANSFER_NUMBER_PREFIX}-{now.year}-"
        highest = 0
        for number in self.repo.list_numbers_with_prefix(tenant_id, prefix):
            suffix = number[len(prefix):]
            if suffix.isdigit():
                highest = max(highest, int(suffix))
        return f"{prefix}{highest + 1:04d}"
