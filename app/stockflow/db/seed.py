from sqlalchemy import select

from app.stockflow.core.config import settings
from app.stockflow.core.permissions import ALL_PERMISSIONS
from app.stockflow.core.security import get_password_hash
from app.stockflow.db.models import Branch, BranchMembership, Role, Tenant, TenantMembership, User


DEFAULT_ROLES = {
    "ADMIN": list(ALL_PERMISSIONS),
    "MANAGER": ["STOCK_VIEW", "STOCK_MANAGE", "TRANSFER_VIEW", "TRANSFER_MANAGE"],
    "STAFF": ["STOCK_VIEW", "TRANSFER_VIEW"],
}


def _slugify(value: str) -> str:
    return "-".join(part for part in "".join(ch.lower() if ch.isalnum() else " " for ch in value).split())


def _get_or_create_tenant(db):
    tenant = db.execute(select(Tenant).where(Tenant.name == settings.DEFAULT_TENANT_NAME)).scalars().first()
    if tenant:
        return tenant
    tenant = Tenant(name=settings.DEFAULT_TENANT_NAME)
    db.add(tenant)
    db.flush()
    return tenant


def _get_or_create_branch(db, tenant):
    slug = _slugify(settings.DEFAULT_BRANCH_NAME)
    branch = (
        db.execute(select(Branch).where(Branch.tenant_id == tenant.id, Branch.slug == slug))
        .scalars()
        .first()
    )
    if branch:
        return branch
    branch = Branch(tenant_id=tenant.id, name=settings.DEFAULT_BRANCH_NAME, slug=slug)
    db.add(branch)
    db.flush()
    return branch


def _get_or_create_roles(db, tenant):
    existing = {
        role.name: role for role in db.execute(select(Role).where(Role.tenant_id == tenant.id)).scalars().all()
    }
    for name, permissions in DEFAULT_ROLES.items():
        if name in existing:
            continue
        role = Role(tenant_id=tenant.id, name=name, permissions=permissions)
        db.add(role)
        existing[name] = role
    db.flush()
    return existing


def _get_or_create_superadmin(db, tenant, branch, admin_role):
    user = db.execute(select(User).where(User.username == settings.SUPERADMIN_USERNAME)).scalars().first()
    if user is None:
        user = User(
            username=settings.SUPERADMIN_USERNAME,
            email=settings.SUPERADMIN_EMAIL,
            hashed_password=get_password_hash(settings.SUPERADMIN_PASSWORD),
            is_active=True,
        )
        db.add(user)
        db.flush()
    membership = (
        db.execute(
            select(TenantMembership).where(
                TenantMembership.tenant_id == tenant.id, TenantMembership.user_id == user.id
            )
        )
        .scalars()
        .first()
    )
    if membership is None:
        db.add(TenantMembership(tenant_id=tenant.id, user_id=user.id, role_id=admin_role.id))
    branch_membership = (
        db.execute(
            select(BranchMembership).where(
                BranchMembership.branch_id == branch.id, BranchMembership.user_id == user.id
            )
        )
        .scalars()
        .first()
    )
    if branch_membership is None:
        db.add(BranchMembership(tenant_id=tenant.id, branch_id=branch.id, user_id=user.id))
    return user


def run_seed(db):
    tenant = _get_or_create_tenant(db)
    branch = _get_or_create_branch(db, tenant)
    roles = _get_or_create_roles(db, tenant)
    _get_or_create_superadmin(db, tenant, branch, roles["ADMIN"])
    db.commit()
