from app.stockflow.core.error_catalog import AppError, ErrorCatalog
from app.stockflow.core.security import create_user_access_token, verify_password
from app.stockflow.repos.tenants import TenantDirectoryRepository
from app.stockflow.repos.users import UserRepository


class AuthService:
    def __init__(self, db):
        self.repo = UserRepository(db)
        self.directory = TenantDirectoryRepository(db)

    def login(self, identifier: str, password: str, tenant_id: str | None = None):
        candidates = self.repo.list_by_username_or_email(identifier)
        for user in candidates:
            if not verify_password(password, user.hashed_password):
                continue
            if not user.is_active:
                raise AppError(ErrorCatalog.USER_INACTIVE)
            resolved_tenant_id = self._resolve_tenant(user, tenant_id)
            return user, resolved_tenant_id, create_user_access_token(user, resolved_tenant_id)
        raise AppError(ErrorCatalog.INVALID_CREDENTIALS)

    def _resolve_tenant(self, user, tenant_id: str | None) -> str:
        memberships = self.directory.list_memberships_for_user(str(user.id))
        tenant_ids = [str(membership.tenant_id) for membership in memberships]
        if tenant_id is not None:
            if str(tenant_id) not in tenant_ids:
                raise AppError(ErrorCatalog.PERMISSION_DENIED)
            return str(tenant_id)
        if len(tenant_ids) != 1:
            raise AppError(
                ErrorCatalog.TENANT_SCOPE_REQUIRED,
                details={"message": "user belongs to several tenants, pass tenant_id"} if tenant_ids else None,
            )
        return tenant_ids[0]
