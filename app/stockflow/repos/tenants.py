from sqlalchemy import select

from app.stockflow.db.models import Branch, BranchMembership, Product, Role, TenantMembership


class TenantDirectoryRepository:
    """Read access to the tenant-owned reference data: branches, products, roles and memberships."""

    def __init__(self, db):
        self.db = db

    def get_branch(self, tenant_id: str, branch_id: str) -> Branch | None:
        stmt = select(Branch).where(Branch.id == branch_id, Branch.tenant_id == tenant_id)
        return self.db.execute(stmt).scalars().first()

    def get_product(self, tenant_id: str, product_id: str) -> Product | None:
        stmt = select(Product).where(Product.id == product_id, Product.tenant_id == tenant_id)
        return self.db.execute(stmt).scalars().first()

    def get_products(self, tenant_id: str, product_ids) -> dict[str, Product]:
        ids = list({str(product_id) for product_id in product_ids})
        if not ids:
            return {}
        stmt = select(Product).where(Product.tenant_id == tenant_id, Product.id.in_(ids))
        return {str(product.id): product for product in self.db.execute(stmt).scalars().all()}

    def get_role(self, tenant_id: str, role_id: str) -> Role | None:
        stmt = select(Role).where(Role.id == role_id, Role.tenant_id == tenant_id)
        return self.db.execute(stmt).scalars().first()

    def get_membership(self, tenant_id: str, user_id: str) -> TenantMembership | None:
        stmt = select(TenantMembership).where(
            TenantMembership.tenant_id == tenant_id,
            TenantMembership.user_id == user_id,
        )
        return self.db.execute(stmt).scalars().first()

    def list_memberships_for_user(self, user_id: str) -> list[TenantMembership]:
        stmt = select(TenantMembership).where(TenantMembership.user_id == user_id)
        return self.db.execute(stmt).scalars().all()

    def is_branch_member(self, tenant_id: str, branch_id: str, user_id: str) -> bool:
        stmt = select(BranchMembership.id).where(
            BranchMembership.tenant_id == tenant_id,
            BranchMembership.branch_id == branch_id,
            BranchMembership.user_id == user_id,
        )
        return self.db.execute(stmt).first() is not None
