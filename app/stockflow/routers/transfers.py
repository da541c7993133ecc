from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request

from app.stockflow.core.deps import require_active_user, require_permission, require_request_context
from app.stockflow.core.permissions import TRANSFER_MANAGE, TRANSFER_VIEW
from app.stockflow.db.models import ApprovalRecord, Transfer, TransferItem
from app.stockflow.db.session import get_db
from app.stockflow.schemas.errors import COMMON_ERROR_RESPONSES
from app.stockflow.schemas.transfers import (
    ApprovalDecisionRequest,
    ApprovalProgressResponse,
    ApprovalRecordResponse,
    PriorityUpdateRequest,
    ReceiveRequest,
    ReverseRequest,
    ShipRequest,
    TransferCreateRequest,
    TransferItemResponse,
    TransferListResponse,
    TransferResponse,
)
from app.stockflow.services.approval_submissions import ApprovalSubmissionProcessor
from app.stockflow.services.audit import AuditEventPayload, AuditService
from app.stockflow.services.idempotency import begin_idempotent_request
from app.stockflow.services.transfer_reversal import TransferReversalService
from app.stockflow.services.transfers import TransferService

router = APIRouter()


def _str_or_none(value) -> str | None:
    return str(value) if value is not None else None


def _trace_id(request: Request) -> str:
    return getattr(request.state, "trace_id", "")


def _item_response(item: TransferItem) -> TransferItemResponse:
    return TransferItemResponse(
        id=str(item.id),
        line_number=item.line_number,
        product_id=str(item.product_id),
        qty_requested=item.qty_requested,
        qty_approved=item.qty_approved,
        qty_shipped=item.qty_shipped,
        qty_received=item.qty_received,
        avg_unit_cost_pence=item.avg_unit_cost_pence,
        shipment_batches=list(item.shipment_batches or []),
    )


def _record_response(record: ApprovalRecord) -> ApprovalRecordResponse:
    return ApprovalRecordResponse(
        level=record.level,
        level_name=record.level_name,
        status=record.status,
        required_role_id=_str_or_none(record.required_role_id),
        required_user_id=_str_or_none(record.required_user_id),
        approval_group=record.approval_group,
        approved_by_user_id=_str_or_none(record.approved_by_user_id),
        decided_at=record.decided_at,
        notes=record.notes,
    )


def _transfer_response(transfer: Transfer, trace_id: str | None = None) -> TransferResponse:
    return TransferResponse(
        id=str(transfer.id),
        tenant_id=str(transfer.tenant_id),
        transfer_number=transfer.transfer_number,
        source_branch_id=str(transfer.source_branch_id),
        destination_branch_id=str(transfer.destination_branch_id),
        status=transfer.status,
        priority=transfer.priority,
        requested_by_user_id=str(transfer.requested_by_user_id),
        reviewed_by_user_id=_str_or_none(transfer.reviewed_by_user_id),
        shipped_by_user_id=_str_or_none(transfer.shipped_by_user_id),
        expected_delivery_date=transfer.expected_delivery_date,
        request_notes=transfer.request_notes,
        order_notes=transfer.order_notes,
        requires_multi_level_approval=transfer.requires_multi_level_approval,
        approval_rule_id=_str_or_none(transfer.approval_rule_id),
        approval_mode=transfer.approval_mode,
        reversal_of_transfer_id=_str_or_none(transfer.reversal_of_transfer_id),
        reversed_by_transfer_id=_str_or_none(transfer.reversed_by_transfer_id),
        reversal_reason=transfer.reversal_reason,
        requested_at=transfer.requested_at,
        reviewed_at=transfer.reviewed_at,
        shipped_at=transfer.shipped_at,
        completed_at=transfer.completed_at,
        cancelled_at=transfer.cancelled_at,
        version=transfer.version,
        items=[_item_response(item) for item in transfer.items],
        approval_records=[_record_response(record) for record in transfer.approval_records],
        trace_id=trace_id,
    )


def _audit_state(db, tenant_id: str, transfer_id) -> dict:
    transfer = TransferService(db).get_transfer(tenant_id=tenant_id, transfer_id=transfer_id)
    return {"status": transfer.status, "version": transfer.version, "priority": transfer.priority}


def _complete(
    request: Request,
    db,
    *,
    idempotency,
    response: TransferResponse,
    status_code: int,
    current_user,
    context,
    action: str,
    before: dict | None = None,
    metadata: dict | None = None,
):
    body = response.model_dump(mode="json")
    if idempotency is not None:
        idempotency.record_success(status_code=status_code, response_body=body)
    AuditService(db).record_event(
        AuditEventPayload(
            tenant_id=context.tenant_id,
            user_id=str(current_user.id),
            trace_id=_trace_id(request) or None,
            actor=current_user.username,
            action=action,
            entity_type="stock_transfer",
            entity_id=response.id,
            before=before,
            after={"status": response.status, "version": response.version, "priority": response.priority},
            metadata={"transfer_number": response.transfer_number, **(metadata or {})},
            result="success",
        )
    )
    return response


@router.get("/stock-transfers", response_model=TransferListResponse, responses=COMMON_ERROR_RESPONSES)
def list_transfers(
    request: Request,
    status: str | None = Query(default=None),
    branch_id: UUID | None = Query(default=None),
    direction: str | None = Query(default=None, description="inbound or outbound relative to branch_id"),
    priority: str | None = Query(default=None),
    limit: int | None = Query(default=None, ge=1),
    cursor: UUID | None = Query(default=None),
    context=Depends(require_request_context),
    _user=Depends(require_active_user),
    _permission=Depends(require_permission(TRANSFER_VIEW)),
    db=Depends(get_db),
):
    page = TransferService(db).list_transfers(
        tenant_id=context.tenant_id,
        status=status,
        branch_id=_str_or_none(branch_id),
        direction=direction,
        priority=priority,
        limit=limit,
        cursor=_str_or_none(cursor),
    )
    return TransferListResponse(
        items=[_transfer_response(transfer) for transfer in page.items],
        next_cursor=page.next_cursor,
        trace_id=_trace_id(request),
    )


@router.post(
    "/stock-transfers",
    response_model=TransferResponse,
    status_code=201,
    responses=COMMON_ERROR_RESPONSES,
)
def create_transfer(
    request: Request,
    payload: TransferCreateRequest,
    context=Depends(require_request_context),
    current_user=Depends(require_active_user),
    _permission=Depends(require_permission(TRANSFER_MANAGE)),
    db=Depends(get_db),
):
    idempotency, replay = begin_idempotent_request(
        request, db, tenant_id=context.tenant_id, payload=payload.model_dump(mode="json"), required=True
    )
    if replay:
        return replay.to_response()
    transfer = TransferService(db).create_transfer(
        tenant_id=context.tenant_id,
        actor_user_id=str(current_user.id),
        payload=payload,
    )
    return _complete(
        request,
        db,
        idempotency=idempotency,
        response=_transfer_response(transfer, _trace_id(request)),
        status_code=201,
        current_user=current_user,
        context=context,
        action="stock_transfer.create",
        metadata={"requires_multi_level_approval": transfer.requires_multi_level_approval},
    )


@router.get("/stock-transfers/{transfer_id}", response_model=TransferResponse, responses=COMMON_ERROR_RESPONSES)
def get_transfer(
    transfer_id: UUID,
    request: Request,
    context=Depends(require_request_context),
    _user=Depends(require_active_user),
    _permission=Depends(require_permission(TRANSFER_VIEW)),
    db=Depends(get_db),
):
    transfer = TransferService(db).get_transfer(tenant_id=context.tenant_id, transfer_id=transfer_id)
    return _transfer_response(transfer, _trace_id(request))


@router.post(
    "/stock-transfers/{transfer_id}/ship",
    response_model=TransferResponse,
    responses=COMMON_ERROR_RESPONSES,
)
def ship_transfer(
    transfer_id: UUID,
    request: Request,
    payload: ShipRequest,
    context=Depends(require_request_context),
    current_user=Depends(require_active_user),
    _permission=Depends(require_permission(TRANSFER_MANAGE)),
    db=Depends(get_db),
):
    idempotency, replay = begin_idempotent_request(
        request, db, tenant_id=context.tenant_id, payload=payload.model_dump(mode="json"), required=False
    )
    if replay:
        return replay.to_response()
    before = _audit_state(db, context.tenant_id, transfer_id)
    transfer = TransferService(db).ship(
        tenant_id=context.tenant_id,
        transfer_id=transfer_id,
        actor_user_id=str(current_user.id),
        lines=payload.items,
    )
    return _complete(
        request,
        db,
        idempotency=idempotency,
        response=_transfer_response(transfer, _trace_id(request)),
        status_code=200,
        current_user=current_user,
        context=context,
        action="stock_transfer.ship",
        before=before,
        metadata={"items": [{"item_id": str(item.item_id), "qty": item.qty_to_ship} for item in payload.items]},
    )


@router.post(
    "/stock-transfers/{transfer_id}/receive",
    response_model=TransferResponse,
    responses=COMMON_ERROR_RESPONSES,
)
def receive_transfer(
    transfer_id: UUID,
    request: Request,
    payload: ReceiveRequest,
    context=Depends(require_request_context),
    current_user=Depends(require_active_user),
    _permission=Depends(require_permission(TRANSFER_MANAGE)),
    db=Depends(get_db),
):
    idempotency, replay = begin_idempotent_request(
        request, db, tenant_id=context.tenant_id, payload=payload.model_dump(mode="json"), required=False
    )
    if replay:
        return replay.to_response()
    before = _audit_state(db, context.tenant_id, transfer_id)
    transfer = TransferService(db).receive(
        tenant_id=context.tenant_id,
        transfer_id=transfer_id,
        actor_user_id=str(current_user.id),
        lines=payload.items,
    )
    return _complete(
        request,
        db,
        idempotency=idempotency,
        response=_transfer_response(transfer, _trace_id(request)),
        status_code=200,
        current_user=current_user,
        context=context,
        action="stock_transfer.receive",
        before=before,
        metadata={"items": [{"item_id": str(item.item_id), "qty": item.qty_received} for item in payload.items]},
    )


@router.post(
    "/stock-transfers/{transfer_id}/approvals/{level}",
    response_model=TransferResponse,
    responses=COMMON_ERROR_RESPONSES,
)
def approve_level(
    transfer_id: UUID,
    level: int,
    request: Request,
    payload: ApprovalDecisionRequest | None = None,
    context=Depends(require_request_context),
    current_user=Depends(require_active_user),
    _permission=Depends(require_permission(TRANSFER_VIEW)),
    db=Depends(get_db),
):
    payload = payload or ApprovalDecisionRequest()
    idempotency, replay = begin_idempotent_request(
        request, db, tenant_id=context.tenant_id, payload=payload.model_dump(mode="json"), required=False
    )
    if replay:
        return replay.to_response()
    before = _audit_state(db, context.tenant_id, transfer_id)
    transfer = ApprovalSubmissionProcessor(db).submit(
        tenant_id=context.tenant_id,
        transfer_id=transfer_id,
        level=level,
        approver_user_id=str(current_user.id),
        notes=payload.notes,
    )
    return _complete(
        request,
        db,
        idempotency=idempotency,
        response=_transfer_response(transfer, _trace_id(request)),
        status_code=200,
        current_user=current_user,
        context=context,
        action="stock_transfer.approve_level",
        before=before,
        metadata={"level": level},
    )


@router.post(
    "/stock-transfers/{transfer_id}/approvals/{level}/reject",
    response_model=TransferResponse,
    responses=COMMON_ERROR_RESPONSES,
)
def reject_level(
    transfer_id: UUID,
    level: int,
    request: Request,
    payload: ApprovalDecisionRequest | None = None,
    context=Depends(require_request_context),
    current_user=Depends(require_active_user),
    _permission=Depends(require_permission(TRANSFER_VIEW)),
    db=Depends(get_db),
):
    payload = payload or ApprovalDecisionRequest()
    idempotency, replay = begin_idempotent_request(
        request, db, tenant_id=context.tenant_id, payload=payload.model_dump(mode="json"), required=False
    )
    if replay:
        return replay.to_response()
    before = _audit_state(db, context.tenant_id, transfer_id)
    transfer = ApprovalSubmissionProcessor(db).reject(
        tenant_id=context.tenant_id,
        transfer_id=transfer_id,
        level=level,
        approver_user_id=str(current_user.id),
        notes=payload.notes,
    )
    return _complete(
        request,
        db,
        idempotency=idempotency,
        response=_transfer_response(transfer, _trace_id(request)),
        status_code=200,
        current_user=current_user,
        context=context,
        action="stock_transfer.reject_level",
        before=before,
        metadata={"level": level},
    )


@router.get(
    "/stock-transfers/{transfer_id}/approvals",
    response_model=ApprovalProgressResponse,
    responses=COMMON_ERROR_RESPONSES,
)
def approval_progress(
    transfer_id: UUID,
    request: Request,
    context=Depends(require_request_context),
    _user=Depends(require_active_user),
    _permission=Depends(require_permission(TRANSFER_VIEW)),
    db=Depends(get_db),
):
    transfer = ApprovalSubmissionProcessor(db).progress(tenant_id=context.tenant_id, transfer_id=transfer_id)
    return ApprovalProgressResponse(
        transfer_id=str(transfer.id),
        status=transfer.status,
        approval_mode=transfer.approval_mode,
        records=[_record_response(record) for record in transfer.approval_records],
        trace_id=_trace_id(request),
    )


@router.post(
    "/stock-transfers/{transfer_id}/reverse",
    response_model=TransferResponse,
    status_code=201,
    responses=COMMON_ERROR_RESPONSES,
)
def reverse_transfer(
    transfer_id: UUID,
    request: Request,
    payload: ReverseRequest,
    context=Depends(require_request_context),
    current_user=Depends(require_active_user),
    _permission=Depends(require_permission(TRANSFER_MANAGE)),
    db=Depends(get_db),
):
    idempotency, replay = begin_idempotent_request(
        request, db, tenant_id=context.tenant_id, payload=payload.model_dump(mode="json"), required=False
    )
    if replay:
        return replay.to_response()
    reversal = TransferReversalService(db).reverse(
        tenant_id=context.tenant_id,
        transfer_id=transfer_id,
        actor_user_id=str(current_user.id),
        reason=payload.reason,
    )
    return _complete(
        request,
        db,
        idempotency=idempotency,
        response=_transfer_response(reversal, _trace_id(request)),
        status_code=201,
        current_user=current_user,
        context=context,
        action="stock_transfer.reverse",
        metadata={"reversal_of_transfer_id": str(transfer_id), "reason": payload.reason},
    )


@router.post(
    "/stock-transfers/{transfer_id}/cancel",
    response_model=TransferResponse,
    responses=COMMON_ERROR_RESPONSES,
)
def cancel_transfer(
    transfer_id: UUID,
    request: Request,
    context=Depends(require_request_context),
    current_user=Depends(require_active_user),
    _permission=Depends(require_permission(TRANSFER_MANAGE)),
    db=Depends(get_db),
):
    idempotency, replay = begin_idempotent_request(
        request, db, tenant_id=context.tenant_id, payload={"transfer_id": str(transfer_id)}, required=False
    )
    if replay:
        return replay.to_response()
    before = _audit_state(db, context.tenant_id, transfer_id)
    transfer = TransferService(db).cancel(
        tenant_id=context.tenant_id,
        transfer_id=transfer_id,
        actor_user_id=str(current_user.id),
    )
    return _complete(
        request,
        db,
        idempotency=idempotency,
        response=_transfer_response(transfer, _trace_id(request)),
        status_code=200,
        current_user=current_user,
        context=context,
        action="stock_transfer.cancel",
        before=before,
    )


@router.patch(
    "/stock-transfers/{transfer_id}/priority",
    response_model=TransferResponse,
    responses=COMMON_ERROR_RESPONSES,
)
def update_priority(
    transfer_id: UUID,
    request: Request,
    payload: PriorityUpdateRequest,
    context=Depends(require_request_context),
    current_user=Depends(require_active_user),
    _permission=Depends(require_permission(TRANSFER_MANAGE)),
    db=Depends(get_db),
):
    before = _audit_state(db, context.tenant_id, transfer_id)
    transfer = TransferService(db).update_priority(
        tenant_id=context.tenant_id,
        transfer_id=transfer_id,
        priority=payload.priority,
    )
    return _complete(
        request,
        db,
        idempotency=None,
        response=_transfer_response(transfer, _trace_id(request)),
        status_code=200,
        current_user=current_user,
        context=context,
        action="stock_transfer.update_priority",
        before=before,
        metadata={"priority": payload.priority},
    )
