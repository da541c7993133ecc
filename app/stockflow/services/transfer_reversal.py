from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError

from app.stockflow.core.error_catalog import AppError, ErrorCatalog, conflict, validation_error
from app.stockflow.core.logging import log_event
from app.stockflow.db.models import Transfer
from app.stockflow.services.transfer_status import COMPLETED
from app.stockflow.services.transfers import NewTransferLine, TransferService

logger = logging.getLogger("stockflow.transfers")


class TransferReversalService:
    """Undo a completed transfer by requesting the mirrored movement.

    The reversal is an ordinary new transfer from the original destination back
    to the original source, one item per product that was received. It goes
    through approval rules, shipping and receiving like any other transfer; no
    stock moves here.
    """

    def __init__(self, db):
        self.db = db
        self.transfers = TransferService(db)

    def reverse(self, *, tenant_id: str, transfer_id, actor_user_id: str, reason: str) -> Transfer:
        reason = (reason or "").strip()
        if not reason:
            raise validation_error("a reversal reason is required", field="reason")

        def build() -> Transfer:
            original = self.transfers.get_transfer(tenant_id=tenant_id, transfer_id=transfer_id, lock=True)
            if original.status != COMPLETED:
                raise conflict(
                    f"only {COMPLETED} transfers can be reversed",
                    status=original.status,
                )
            if original.reversed_by_transfer_id is not None:
                raise conflict(
                    "transfer has already been reversed",
                    reversed_by_transfer_id=str(original.reversed_by_transfer_id),
                )
            if not self.transfers.access.is_branch_member(
                tenant_id, original.destination_branch_id, actor_user_id
            ):
                raise AppError(ErrorCatalog.PERMISSION_DENIED)
            lines = [
                NewTransferLine(product_id=str(item.product_id), qty_requested=item.qty_received)
                for item in original.items
                if item.qty_received > 0
            ]
            if not lines:
                raise conflict("transfer has no received items to reverse", transfer_id=str(original.id))
            reversal = self.transfers.build_transfer(
                tenant_id=tenant_id,
                source_branch_id=str(original.destination_branch_id),
                destination_branch_id=str(original.source_branch_id),
                lines=lines,
                requested_by_user_id=actor_user_id,
                priority=original.priority,
                request_notes=f"Reversal of {original.transfer_number}: {reason}",
                reversal_of=original,
                reversal_reason=reason,
                allow_archived_products=True,
            )
            original.reversed_by_transfer_id = reversal.id
            original.reversal_reason = reason
            self.db.flush()
            log_event(
                logger,
                "transfer_reversed",
                tenant_id=str(tenant_id),
                transfer_id=str(original.id),
                reversal_transfer_id=str(reversal.id),
            )
            return reversal

        try:
            return self.transfers.commit_with_number_retry(build, tenant_id=tenant_id, actor_user_id=actor_user_id)
        except IntegrityError as exc:
            if "reversal_of_transfer_id" not in str(exc.orig) and "reversed_by_transfer_id" not in str(exc.orig):
                raise
            raise conflict("transfer has already been reversed", transfer_id=str(transfer_id)) from exc
