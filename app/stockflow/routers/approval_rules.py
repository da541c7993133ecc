from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request

from app.stockflow.core.deps import require_active_user, require_permission, require_request_context
from app.stockflow.core.permissions import APPROVAL_RULE_MANAGE, TRANSFER_VIEW
from app.stockflow.db.models import ApprovalRule
from app.stockflow.db.session import get_db, unit_of_work
from app.stockflow.schemas.approval_rules import (
    ApprovalConditionResponse,
    ApprovalLevelResponse,
    ApprovalRuleCreateRequest,
    ApprovalRuleListResponse,
    ApprovalRuleResponse,
    ApprovalRuleUpdateRequest,
)
from app.stockflow.schemas.errors import COMMON_ERROR_RESPONSES
from app.stockflow.services.approval_rules import ApprovalRuleService
from app.stockflow.services.audit import AuditEventPayload, AuditService
from app.stockflow.services.idempotency import begin_idempotent_request

router = APIRouter()


def _str_or_none(value) -> str | None:
    return str(value) if value is not None else None


def _rule_response(rule: ApprovalRule, trace_id: str | None = None) -> ApprovalRuleResponse:
    return ApprovalRuleResponse(
        id=str(rule.id),
        tenant_id=str(rule.tenant_id),
        name=rule.name,
        description=rule.description,
        is_active=rule.is_active,
        is_archived=rule.is_archived,
        archived_at=rule.archived_at,
        approval_mode=rule.approval_mode,
        priority=rule.priority,
        created_at=rule.created_at,
        conditions=[
            ApprovalConditionResponse(
                id=str(condition.id),
                condition_type=condition.condition_type,
                threshold=condition.threshold,
                branch_id=_str_or_none(condition.branch_id),
            )
            for condition in rule.conditions
        ],
        levels=[
            ApprovalLevelResponse(
                id=str(level.id),
                level=level.level,
                name=level.name,
                required_role_id=_str_or_none(level.required_role_id),
                required_user_id=_str_or_none(level.required_user_id),
                approval_group=level.approval_group,
            )
            for level in rule.levels
        ],
        trace_id=trace_id,
    )


def _audit(request: Request, db, *, context, current_user, action: str, rule_id: str, after: dict | None) -> None:
    AuditService(db).record_event(
        AuditEventPayload(
            tenant_id=context.tenant_id,
            user_id=str(current_user.id),
            trace_id=getattr(request.state, "trace_id", "") or None,
            actor=current_user.username,
            action=action,
            entity_type="transfer_approval_rule",
            entity_id=rule_id,
            before=None,
            after=after,
            metadata=None,
            result="success",
        )
    )


@router.post(
    "/transfer-approval-rules",
    response_model=ApprovalRuleResponse,
    status_code=201,
    responses=COMMON_ERROR_RESPONSES,
)
def create_rule(
    request: Request,
    payload: ApprovalRuleCreateRequest,
    context=Depends(require_request_context),
    current_user=Depends(require_active_user),
    _permission=Depends(require_permission(APPROVAL_RULE_MANAGE)),
    db=Depends(get_db),
):
    idempotency, replay = begin_idempotent_request(
        request, db, tenant_id=context.tenant_id, payload=payload.model_dump(mode="json"), required=True
    )
    if replay:
        return replay.to_response()
    service = ApprovalRuleService(db)
    with unit_of_work(db):
        rule_id = service.create_rule(
            tenant_id=context.tenant_id,
            payload=payload,
            actor_user_id=str(current_user.id),
        ).id
    response = _rule_response(service.get_rule(tenant_id=context.tenant_id, rule_id=rule_id), request.state.trace_id)
    idempotency.record_success(status_code=201, response_body=response.model_dump(mode="json"))
    _audit(
        request,
        db,
        context=context,
        current_user=current_user,
        action="transfer_approval_rule.create",
        rule_id=response.id,
        after={"name": response.name, "priority": response.priority, "approval_mode": response.approval_mode},
    )
    return response


@router.get("/transfer-approval-rules", response_model=ApprovalRuleListResponse, responses=COMMON_ERROR_RESPONSES)
def list_rules(
    request: Request,
    archived: str = Query(default="active-only", description="active-only, archived-only or all"),
    is_active: bool | None = Query(default=None),
    sort_by: str = Query(default="priority"),
    sort_dir: str = Query(default="desc"),
    limit: int | None = Query(default=None, ge=1),
    cursor: UUID | None = Query(default=None),
    include_total: bool = Query(default=False),
    context=Depends(require_request_context),
    _user=Depends(require_active_user),
    _permission=Depends(require_permission(TRANSFER_VIEW)),
    db=Depends(get_db),
):
    page = ApprovalRuleService(db).list_rules(
        tenant_id=context.tenant_id,
        archived=archived,
        is_active=is_active,
        sort_by=sort_by,
        sort_dir=sort_dir,
        limit=limit,
        cursor=_str_or_none(cursor),
        include_total=include_total,
    )
    return ApprovalRuleListResponse(
        items=[_rule_response(rule) for rule in page.items],
        next_cursor=page.next_cursor,
        total=page.total,
        trace_id=request.state.trace_id,
    )


@router.get(
    "/transfer-approval-rules/{rule_id}",
    response_model=ApprovalRuleResponse,
    responses=COMMON_ERROR_RESPONSES,
)
def get_rule(
    rule_id: UUID,
    request: Request,
    context=Depends(require_request_context),
    _user=Depends(require_active_user),
    _permission=Depends(require_permission(TRANSFER_VIEW)),
    db=Depends(get_db),
):
    rule = ApprovalRuleService(db).get_rule(tenant_id=context.tenant_id, rule_id=rule_id)
    return _rule_response(rule, request.state.trace_id)


@router.patch(
    "/transfer-approval-rules/{rule_id}",
    response_model=ApprovalRuleResponse,
    responses=COMMON_ERROR_RESPONSES,
)
def update_rule(
    rule_id: UUID,
    request: Request,
    payload: ApprovalRuleUpdateRequest,
    context=Depends(require_request_context),
    current_user=Depends(require_active_user),
    _permission=Depends(require_permission(APPROVAL_RULE_MANAGE)),
    db=Depends(get_db),
):
    service = ApprovalRuleService(db)
    with unit_of_work(db):
        service.update_rule(tenant_id=context.tenant_id, rule_id=rule_id, payload=payload)
    response = _rule_response(service.get_rule(tenant_id=context.tenant_id, rule_id=rule_id), request.state.trace_id)
    _audit(
        request,
        db,
        context=context,
        current_user=current_user,
        action="transfer_approval_rule.update",
        rule_id=response.id,
        after=payload.model_dump(mode="json", exclude_unset=True),
    )
    return response


@router.delete(
    "/transfer-approval-rules/{rule_id}",
    response_model=ApprovalRuleResponse,
    responses=COMMON_ERROR_RESPONSES,
)
def archive_rule(
    rule_id: UUID,
    request: Request,
    context=Depends(require_request_context),
    current_user=Depends(require_active_user),
    _permission=Depends(require_permission(APPROVAL_RULE_MANAGE)),
    db=Depends(get_db),
):
    service = ApprovalRuleService(db)
    with unit_of_work(db):
        service.archive_rule(tenant_id=context.tenant_id, rule_id=rule_id, actor_user_id=str(current_user.id))
    response = _rule_response(service.get_rule(tenant_id=context.tenant_id, rule_id=rule_id), request.state.trace_id)
    _audit(
        request,
        db,
        context=context,
        current_user=current_user,
        action="transfer_approval_rule.archive",
        rule_id=response.id,
        after={"is_archived": True},
    )
    return response


@router.post(
    "/transfer-approval-rules/{rule_id}/restore",
    response_model=ApprovalRuleResponse,
    responses=COMMON_ERROR_RESPONSES,
)
def restore_rule(
    rule_id: UUID,
    request: Request,
    context=Depends(require_request_context),
    current_user=Depends(require_active_user),
    _permission=Depends(require_permission(APPROVAL_RULE_MANAGE)),
    db=Depends(get_db),
):
    service = ApprovalRuleService(db)
    with unit_of_work(db):
        service.restore_rule(tenant_id=context.tenant_id, rule_id=rule_id)
    response = _rule_response(service.get_rule(tenant_id=context.tenant_id, rule_id=rule_id), request.state.trace_id)
    _audit(
        request,
        db,
        context=context,
        current_user=current_user,
        action="transfer_approval_rule.restore",
        rule_id=response.id,
        after={"is_archived": False},
    )
    return response
