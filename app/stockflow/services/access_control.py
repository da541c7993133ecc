from __future__ import annotations

from dataclasses import dataclass

from app.stockflow.core.context import RequestContext
from app.stockflow.core.permissions import ALL_PERMISSIONS
from app.stockflow.repos.tenants import TenantDirectoryRepository


@dataclass(frozen=True)
class PermissionDecision:
    key: str
    allowed: bool
    source: str


class AccessControlService:
    """Resolves permissions and role holdings from tenant memberships."""

    def __init__(self, db, cache: dict | None = None):
        self.repo = TenantDirectoryRepository(db)
        self.cache = cache if cache is not None else {}

    def evaluate_permission(self, permission_key: str, context: RequestContext) -> PermissionDecision:
        normalized_key = permission_key.strip()
        if normalized_key not in ALL_PERMISSIONS:
            return PermissionDecision(key=normalized_key, allowed=False, source="unknown_permission")
        if not context.user_id or not context.tenant_id:
            return PermissionDecision(key=normalized_key, allowed=False, source="default_deny")

        role_id, permissions = self._get_role_permissions(context.tenant_id, context.user_id)
        if role_id is None:
            return PermissionDecision(key=normalized_key, allowed=False, source="no_membership")
        if normalized_key in permissions:
            return PermissionDecision(key=normalized_key, allowed=True, source="role")
        return PermissionDecision(key=normalized_key, allowed=False, source="default_deny")

    def user_holds_role(self, tenant_id: str, user_id: str, role_id: str) -> bool:
        held_role_id, _permissions = self._get_role_permissions(tenant_id, user_id)
        return held_role_id is not None and held_role_id == str(role_id)

    def is_branch_member(self, tenant_id: str, branch_id: str, user_id: str) -> bool:
        return self.repo.is_branch_member(tenant_id, str(branch_id), user_id)

    def _get_role_permissions(self, tenant_id: str, user_id: str) -> tuple[str | None, set[str]]:
        cache_key = ("membership", str(tenant_id), str(user_id))
        if cache_key in self.cache:
            return self.cache[cache_key]
        membership = self.repo.get_membership(str(tenant_id), str(user_id))
        if membership is None or membership.role is None or membership.role.is_archived:
            resolved = (None, set())
        else:
            resolved = (str(membership.role_id), set(membership.role.permissions or []))
        self.cache[cache_key] = resolved
        return resolved
