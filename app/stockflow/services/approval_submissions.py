from __future__ import annotations

import logging
from datetime import datetime

from app.stockflow.core.error_catalog import AppError, ErrorCatalog, conflict, not_found
from app.stockflow.core.logging import log_event
from app.stockflow.db.models import ApprovalRecord, Transfer
from app.stockflow.db.session import unit_of_work
from app.stockflow.repos.transfers import TransferRepository
from app.stockflow.services.access_control import AccessControlService
from app.stockflow.services.transfer_status import (
    APPROVED,
    PENDING,
    RECORD_APPROVED,
    RECORD_REJECTED,
    REJECTED,
    REQUESTED,
)
from app.stockflow.services.transfers import record_transition

logger = logging.getLogger("stockflow.approvals")

SEQUENTIAL = "SEQUENTIAL"
PARALLEL = "PARALLEL"
HYBRID = "HYBRID"


def blocking_levels(records: list[ApprovalRecord], target: ApprovalRecord, mode: str | None) -> list[int]:
    """Levels that must be approved before ``target`` may be decided.

    SEQUENTIAL: every lower level. PARALLEL: none. HYBRID: lower levels that
    share the target's ``approval_group``; untagged levels are unordered.
    """
    if mode == PARALLEL:
        return []
    if mode == HYBRID:
        if target.approval_group is None:
            return []
        candidates = [record for record in records if record.approval_group == target.approval_group]
    else:
        candidates = records
    return [
        record.level
        for record in candidates
        if record.level < target.level and record.status != RECORD_APPROVED
    ]


class ApprovalSubmissionProcessor:
    def __init__(self, db):
        self.db = db
        self.repo = TransferRepository(db)
        self.access = AccessControlService(db)

    def submit(
        self,
        *,
        tenant_id: str,
        transfer_id,
        level: int,
        approver_user_id: str,
        notes: str | None = None,
    ) -> Transfer:
        with unit_of_work(self.db):
            transfer, record = self._load_decidable(tenant_id, transfer_id, level, approver_user_id)
            now = datetime.utcnow()
            record.status = RECORD_APPROVED
            record.approved_by_user_id = approver_user_id
            record.decided_at = now
            record.notes = notes
            previous_status = transfer.status
            if all(item.status == RECORD_APPROVED for item in transfer.approval_records):
                for item in transfer.items:
                    item.qty_approved = item.qty_requested
                transfer.status = APPROVED
                transfer.reviewed_by_user_id = approver_user_id
                transfer.reviewed_at = now
            else:
                transfer.updated_at = now
            self.db.flush()
        log_event(
            logger,
            "approval_level_approved",
            tenant_id=str(tenant_id),
            transfer_id=str(transfer_id),
            level=level,
            approver_user_id=str(approver_user_id),
        )
        record_transition(transfer, previous_status, approver_user_id)
        return transfer

    def reject(
        self,
        *,
        tenant_id: str,
        transfer_id,
        level: int,
        approver_user_id: str,
        notes: str | None = None,
    ) -> Transfer:
        with unit_of_work(self.db):
            transfer, record = self._load_decidable(tenant_id, transfer_id, level, approver_user_id)
            now = datetime.utcnow()
            record.status = RECORD_REJECTED
            record.approved_by_user_id = approver_user_id
            record.decided_at = now
            record.notes = notes
            previous_status = transfer.status
            transfer.status = REJECTED
            transfer.reviewed_by_user_id = approver_user_id
            transfer.reviewed_at = now
            self.db.flush()
        log_event(
            logger,
            "approval_level_rejected",
            tenant_id=str(tenant_id),
            transfer_id=str(transfer_id),
            level=level,
            approver_user_id=str(approver_user_id),
        )
        record_transition(transfer, previous_status, approver_user_id)
        return transfer

    def progress(self, *, tenant_id: str, transfer_id) -> Transfer:
        transfer = self.repo.get_transfer(tenant_id, transfer_id)
        if transfer is None:
            raise not_found("stock transfer not found", transfer_id=str(transfer_id))
        return transfer

    def _load_decidable(self, tenant_id: str, transfer_id, level: int, approver_user_id: str):
        transfer = self.repo.get_transfer(tenant_id, transfer_id, lock=True)
        if transfer is None:
            raise not_found("stock transfer not found", transfer_id=str(transfer_id))
        if not transfer.requires_multi_level_approval:
            raise conflict("transfer does not require multi-level approval", transfer_id=str(transfer.id))
        if transfer.status != REQUESTED:
            raise conflict(
                f"approvals are only accepted while the transfer is {REQUESTED}",
                status=transfer.status,
            )
        record = next((item for item in transfer.approval_records if item.level == level), None)
        if record is None:
            raise not_found(f"approval level {level} not found for this transfer", level=level)
        if record.status != PENDING:
            raise conflict(f"approval level {level} has already been {record.status.lower()}", level=level)
        blocking = blocking_levels(list(transfer.approval_records), record, transfer.approval_mode)
        if blocking:
            raise AppError(
                ErrorCatalog.PREVIOUS_LEVELS_INCOMPLETE,
                details={
                    "message": f"levels {', '.join(str(item) for item in blocking)} must be approved first",
                    "level": level,
                    "pending_levels": blocking,
                },
            )
        if not self._satisfies_requirement(tenant_id, record, approver_user_id):
            raise AppError(ErrorCatalog.PERMISSION_DENIED)
        return transfer, record

    def _satisfies_requirement(self, tenant_id: str, record: ApprovalRecord, approver_user_id: str) -> bool:
        if record.required_user_id is not None:
            return str(record.required_user_id) == str(approver_user_id)
        if record.required_role_id is not None:
            return self.access.user_holds_role(tenant_id, approver_user_id, record.required_role_id)
        return False
