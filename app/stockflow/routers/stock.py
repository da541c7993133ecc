from __future__ import annotations

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request

from app.stockflow.core.deps import require_active_user, require_permission, require_request_context
from app.stockflow.core.error_catalog import AppError, ErrorCatalog, not_found, validation_error
from app.stockflow.core.permissions import STOCK_MANAGE, STOCK_VIEW
from app.stockflow.db.models import StockLedgerEntry, StockLot
from app.stockflow.db.session import get_db, unit_of_work
from app.stockflow.repos.stock import LedgerQueryFilters
from app.stockflow.repos.tenants import TenantDirectoryRepository
from app.stockflow.schemas.errors import COMMON_ERROR_RESPONSES
from app.stockflow.schemas.stock import (
    LedgerEntryResponse,
    LedgerListResponse,
    LedgerReversalResponse,
    LedgerReverseRequest,
    LotDrawResponse,
    StockAdjustRequest,
    StockConsumeRequest,
    StockLevelsResponse,
    StockLotResponse,
    StockMovementResponse,
    StockReceiveRequest,
)
from app.stockflow.services.audit import AuditEventPayload, AuditService
from app.stockflow.services.idempotency import begin_idempotent_request
from app.stockflow.services.stock_ledger import LEDGER_KINDS, StockLedgerService

router = APIRouter()


def _str_or_none(value) -> str | None:
    return str(value) if value is not None else None


def _lot_response(lot: StockLot) -> StockLotResponse:
    return StockLotResponse(
        id=str(lot.id),
        unit_cost_pence=lot.unit_cost_pence,
        qty_received=lot.qty_received,
        qty_remaining=lot.qty_remaining,
        source_ref=lot.source_ref,
        received_at=lot.received_at,
    )


def _entry_response(entry: StockLedgerEntry) -> LedgerEntryResponse:
    return LedgerEntryResponse(
        id=str(entry.id),
        branch_id=str(entry.branch_id),
        product_id=str(entry.product_id),
        kind=entry.kind,
        qty_delta=entry.qty_delta,
        unit_cost_pence=entry.unit_cost_pence,
        lot_id=_str_or_none(entry.lot_id),
        actor_user_id=_str_or_none(entry.actor_user_id),
        reason=entry.reason,
        reverses_entry_id=_str_or_none(entry.reverses_entry_id),
        transfer_id=_str_or_none(entry.transfer_id),
        occurred_at=entry.occurred_at,
    )


def _ensure_writable_branch(db, *, tenant_id: str, branch_id: str, product_id: str, user_id: str) -> None:
    directory = TenantDirectoryRepository(db)
    branch = directory.get_branch(tenant_id, branch_id)
    if branch is None or branch.is_archived or not branch.is_active:
        raise not_found("branch not found", branch_id=branch_id)
    if directory.get_product(tenant_id, product_id) is None:
        raise not_found("product not found", product_id=product_id)
    if not directory.is_branch_member(tenant_id, branch_id, user_id):
        raise AppError(ErrorCatalog.PERMISSION_DENIED)


def _movement_response(db, request: Request, *, tenant_id: str, branch_id: str, product_id: str, lot=None, draws=()):
    levels = StockLedgerService(db).get_levels(tenant_id=tenant_id, branch_id=branch_id, product_id=product_id)
    return StockMovementResponse(
        branch_id=branch_id,
        product_id=product_id,
        qty_on_hand=levels.qty_on_hand,
        lot=_lot_response(lot) if lot is not None else None,
        draws=[LotDrawResponse(**draw.to_dict()) for draw in draws],
        trace_id=request.state.trace_id,
    )


def _finish_write(request: Request, db, *, idempotency, response, status_code: int, context, current_user, action, entity_id, after):
    if idempotency is not None:
        idempotency.record_success(status_code=status_code, response_body=response.model_dump(mode="json"))
    AuditService(db).record_event(
        AuditEventPayload(
            tenant_id=context.tenant_id,
            user_id=str(current_user.id),
            trace_id=getattr(request.state, "trace_id", "") or None,
            actor=current_user.username,
            action=action,
            entity_type="stock",
            entity_id=entity_id,
            before=None,
            after=after,
            metadata=None,
            result="success",
        )
    )
    return response


@router.post("/stock/receive", response_model=StockMovementResponse, status_code=201, responses=COMMON_ERROR_RESPONSES)
def receive_stock(
    request: Request,
    payload: StockReceiveRequest,
    context=Depends(require_request_context),
    current_user=Depends(require_active_user),
    _permission=Depends(require_permission(STOCK_MANAGE)),
    db=Depends(get_db),
):
    idempotency, replay = begin_idempotent_request(
        request, db, tenant_id=context.tenant_id, payload=payload.model_dump(mode="json"), required=False
    )
    if replay:
        return replay.to_response()
    branch_id, product_id = str(payload.branch_id), str(payload.product_id)
    with unit_of_work(db):
        _ensure_writable_branch(
            db, tenant_id=context.tenant_id, branch_id=branch_id, product_id=product_id, user_id=str(current_user.id)
        )
        lot = StockLedgerService(db).record_receipt(
            tenant_id=context.tenant_id,
            product_id=product_id,
            branch_id=branch_id,
            qty=payload.qty,
            unit_cost_pence=payload.unit_cost_pence,
            actor_user_id=str(current_user.id),
            reason=payload.reason,
            source_ref=payload.source_ref,
            occurred_at=payload.occurred_at,
        )
    response = _movement_response(
        db, request, tenant_id=context.tenant_id, branch_id=branch_id, product_id=product_id, lot=lot
    )
    return _finish_write(
        request,
        db,
        idempotency=idempotency,
        response=response,
        status_code=201,
        context=context,
        current_user=current_user,
        action="stock.receive",
        entity_id=response.lot.id,
        after={"qty": payload.qty, "qty_on_hand": response.qty_on_hand, "branch_id": branch_id},
    )


@router.post("/stock/consume", response_model=StockMovementResponse, responses=COMMON_ERROR_RESPONSES)
def consume_stock(
    request: Request,
    payload: StockConsumeRequest,
    context=Depends(require_request_context),
    current_user=Depends(require_active_user),
    _permission=Depends(require_permission(STOCK_MANAGE)),
    db=Depends(get_db),
):
    idempotency, replay = begin_idempotent_request(
        request, db, tenant_id=context.tenant_id, payload=payload.model_dump(mode="json"), required=False
    )
    if replay:
        return replay.to_response()
    branch_id, product_id = str(payload.branch_id), str(payload.product_id)
    with unit_of_work(db):
        _ensure_writable_branch(
            db, tenant_id=context.tenant_id, branch_id=branch_id, product_id=product_id, user_id=str(current_user.id)
        )
        draws = StockLedgerService(db).record_consumption(
            tenant_id=context.tenant_id,
            product_id=product_id,
            branch_id=branch_id,
            qty=payload.qty,
            actor_user_id=str(current_user.id),
            reason=payload.reason,
        )
    response = _movement_response(
        db, request, tenant_id=context.tenant_id, branch_id=branch_id, product_id=product_id, draws=draws
    )
    return _finish_write(
        request,
        db,
        idempotency=idempotency,
        response=response,
        status_code=200,
        context=context,
        current_user=current_user,
        action="stock.consume",
        entity_id=product_id,
        after={"qty": payload.qty, "qty_on_hand": response.qty_on_hand, "branch_id": branch_id},
    )


@router.post("/stock/adjust", response_model=StockMovementResponse, responses=COMMON_ERROR_RESPONSES)
def adjust_stock(
    request: Request,
    payload: StockAdjustRequest,
    context=Depends(require_request_context),
    current_user=Depends(require_active_user),
    _permission=Depends(require_permission(STOCK_MANAGE)),
    db=Depends(get_db),
):
    idempotency, replay = begin_idempotent_request(
        request, db, tenant_id=context.tenant_id, payload=payload.model_dump(mode="json"), required=False
    )
    if replay:
        return replay.to_response()
    branch_id, product_id = str(payload.branch_id), str(payload.product_id)
    with unit_of_work(db):
        _ensure_writable_branch(
            db, tenant_id=context.tenant_id, branch_id=branch_id, product_id=product_id, user_id=str(current_user.id)
        )
        result = StockLedgerService(db).record_adjustment(
            tenant_id=context.tenant_id,
            product_id=product_id,
            branch_id=branch_id,
            qty_delta=payload.qty_delta,
            actor_user_id=str(current_user.id),
            reason=payload.reason,
            unit_cost_pence=payload.unit_cost_pence,
        )
    if isinstance(result, StockLot):
        response = _movement_response(
            db, request, tenant_id=context.tenant_id, branch_id=branch_id, product_id=product_id, lot=result
        )
    else:
        response = _movement_response(
            db, request, tenant_id=context.tenant_id, branch_id=branch_id, product_id=product_id, draws=result
        )
    return _finish_write(
        request,
        db,
        idempotency=idempotency,
        response=response,
        status_code=200,
        context=context,
        current_user=current_user,
        action="stock.adjust",
        entity_id=product_id,
        after={"qty_delta": payload.qty_delta, "qty_on_hand": response.qty_on_hand, "branch_id": branch_id},
    )


@router.get("/stock/levels", response_model=StockLevelsResponse, responses=COMMON_ERROR_RESPONSES)
def get_levels(
    request: Request,
    branch_id: UUID = Query(...),
    product_id: UUID = Query(...),
    context=Depends(require_request_context),
    _user=Depends(require_active_user),
    _permission=Depends(require_permission(STOCK_VIEW)),
    db=Depends(get_db),
):
    levels = StockLedgerService(db).get_levels(
        tenant_id=context.tenant_id, branch_id=str(branch_id), product_id=str(product_id)
    )
    return StockLevelsResponse(
        branch_id=levels.branch_id,
        product_id=levels.product_id,
        qty_on_hand=levels.qty_on_hand,
        lots=[_lot_response(lot) for lot in levels.lots],
        trace_id=request.state.trace_id,
    )


@router.get("/stock/ledger", response_model=LedgerListResponse, responses=COMMON_ERROR_RESPONSES)
def list_ledger(
    request: Request,
    branch_id: UUID | None = Query(default=None),
    product_id: UUID | None = Query(default=None),
    kind: list[str] | None = Query(default=None),
    occurred_from: datetime | None = Query(default=None),
    occurred_to: datetime | None = Query(default=None),
    limit: int | None = Query(default=None, ge=1),
    cursor: UUID | None = Query(default=None),
    context=Depends(require_request_context),
    _user=Depends(require_active_user),
    _permission=Depends(require_permission(STOCK_VIEW)),
    db=Depends(get_db),
):
    if kind:
        unknown = sorted(set(kind) - set(LEDGER_KINDS))
        if unknown:
            raise validation_error("unknown ledger kind", kinds=unknown)
    filters = LedgerQueryFilters(
        tenant_id=context.tenant_id,
        branch_id=_str_or_none(branch_id),
        product_id=_str_or_none(product_id),
        kinds=tuple(kind) if kind else None,
        occurred_from=occurred_from,
        occurred_to=occurred_to,
    )
    page = StockLedgerService(db).list_ledger(filters, limit=limit, cursor=_str_or_none(cursor))
    return LedgerListResponse(
        items=[_entry_response(entry) for entry in page.entries],
        next_cursor=page.next_cursor,
        trace_id=request.state.trace_id,
    )


@router.post(
    "/stock/ledger/{entry_id}/reverse",
    response_model=LedgerReversalResponse,
    status_code=201,
    responses=COMMON_ERROR_RESPONSES,
)
def reverse_ledger_entry(
    entry_id: UUID,
    request: Request,
    payload: LedgerReverseRequest | None = None,
    context=Depends(require_request_context),
    current_user=Depends(require_active_user),
    _permission=Depends(require_permission(STOCK_MANAGE)),
    db=Depends(get_db),
):
    payload = payload or LedgerReverseRequest()
    idempotency, replay = begin_idempotent_request(
        request,
        db,
        tenant_id=context.tenant_id,
        payload={"entry_id": str(entry_id), **payload.model_dump(mode="json")},
        required=False,
    )
    if replay:
        return replay.to_response()
    service = StockLedgerService(db)
    with unit_of_work(db):
        original = service.repo.get_entry(context.tenant_id, str(entry_id))
        if original is not None and not TenantDirectoryRepository(db).is_branch_member(
            context.tenant_id, str(original.branch_id), str(current_user.id)
        ):
            raise AppError(ErrorCatalog.PERMISSION_DENIED)
        entry = service.record_reversal(
            tenant_id=context.tenant_id,
            original_entry_id=str(entry_id),
            actor_user_id=str(current_user.id),
            reason=payload.reason,
        )
    levels = service.get_levels(
        tenant_id=context.tenant_id, branch_id=str(entry.branch_id), product_id=str(entry.product_id)
    )
    response = LedgerReversalResponse(
        entry=_entry_response(entry),
        qty_on_hand=levels.qty_on_hand,
        trace_id=request.state.trace_id,
    )
    return _finish_write(
        request,
        db,
        idempotency=idempotency,
        response=response,
        status_code=201,
        context=context,
        current_user=current_user,
        action="stock.ledger_reverse",
        entity_id=str(entry_id),
        after={"reversal_entry_id": response.entry.id, "qty_delta": response.entry.qty_delta},
    )
