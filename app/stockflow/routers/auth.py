import logging

from fastapi import APIRouter, Depends, Request

from app.stockflow.core.error_catalog import AppError
from app.stockflow.core.logging import log_event
from app.stockflow.db.session import get_db
from app.stockflow.schemas.auth import LoginRequest, TokenResponse
from app.stockflow.schemas.errors import COMMON_ERROR_RESPONSES
from app.stockflow.services.audit import AuditEventPayload, AuditService
from app.stockflow.services.auth import AuthService

router = APIRouter()
logger = logging.getLogger("stockflow.auth")


@router.post("/login", response_model=TokenResponse, responses=COMMON_ERROR_RESPONSES)
def login(request: Request, payload: LoginRequest, db=Depends(get_db)):
    trace_id = getattr(request.state, "trace_id", "")
    tenant_id = str(payload.tenant_id) if payload.tenant_id else None
    try:
        user, resolved_tenant_id, token = AuthService(db).login(
            payload.username_or_email, payload.password, tenant_id
        )
    except AppError as exc:
        log_event(
            logger,
            "login_failed",
            trace_id=trace_id,
            identifier=payload.username_or_email,
            error_code=exc.error.code,
        )
        raise
    AuditService(db).record_event(
        AuditEventPayload(
            tenant_id=resolved_tenant_id,
            user_id=str(user.id),
            trace_id=trace_id or None,
            actor=user.username,
            action="auth.login",
            entity_type="user",
            entity_id=str(user.id),
            before=None,
            after=None,
            metadata=None,
            result="success",
        )
    )
    return TokenResponse(
        access_token=token,
        tenant_id=resolved_tenant_id,
        user_id=str(user.id),
        trace_id=trace_id,
    )
