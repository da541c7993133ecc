"""initial stockflow schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-18 00:00:00.000000
"""

from alembic import op
import sqlalchemy as sa


revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


class GUID(sa.TypeDecorator):
    impl = sa.CHAR
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            from sqlalchemy.dialects.postgresql import UUID

            return dialect.type_descriptor(UUID(as_uuid=True))
        return dialect.type_descriptor(sa.CHAR(36))


def _archive_columns() -> list[sa.Column]:
    return [
        sa.Column("is_archived", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("archived_at", sa.DateTime(), nullable=True),
        sa.Column("archived_by_user_id", GUID(), nullable=True),
    ]


def upgrade() -> None:
    op.create_table(
        "tenants",
        sa.Column("id", GUID(), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False, unique=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_table(
        "branches",
        sa.Column("id", GUID(), primary_key=True),
        sa.Column("tenant_id", GUID(), sa.ForeignKey("tenants.id"), nullable=False, index=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("slug", sa.String(length=255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_archive_columns(),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("tenant_id", "slug", name="uq_branches_tenant_slug"),
    )
    op.create_table(
        "products",
        sa.Column("id", GUID(), primary_key=True),
        sa.Column("tenant_id", GUID(), sa.ForeignKey("tenants.id"), nullable=False, index=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("sku", sa.String(length=100), nullable=False),
        sa.Column("price_pence", sa.Integer(), nullable=False, server_default="0"),
        *_archive_columns(),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("tenant_id", "sku", name="uq_products_tenant_sku"),
        sa.CheckConstraint("price_pence >= 0", name="ck_products_price_non_negative"),
    )
    op.create_table(
        "roles",
        sa.Column("id", GUID(), primary_key=True),
        sa.Column("tenant_id", GUID(), sa.ForeignKey("tenants.id"), nullable=False, index=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("permissions", sa.JSON(), nullable=False),
        *_archive_columns(),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("tenant_id", "name", name="uq_roles_tenant_name"),
    )
    op.create_table(
        "users",
        sa.Column("id", GUID(), primary_key=True),
        sa.Column("username", sa.String(length=150), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("hashed_password", sa.String(length=255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_users_username", "users", ["username"], unique=True)
    op.create_index("ix_users_email", "users", ["email"], unique=True)
    op.create_table(
        "tenant_memberships",
        sa.Column("id", GUID(), primary_key=True),
        sa.Column("tenant_id", GUID(), sa.ForeignKey("tenants.id"), nullable=False, index=True),
        sa.Column("user_id", GUID(), sa.ForeignKey("users.id"), nullable=False, index=True),
        sa.Column("role_id", GUID(), sa.ForeignKey("roles.id"), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("tenant_id", "user_id", name="uq_tenant_memberships_tenant_user"),
    )
    op.create_table(
        "branch_memberships",
        sa.Column("id", GUID(), primary_key=True),
        sa.Column("tenant_id", GUID(), sa.ForeignKey("tenants.id"), nullable=False, index=True),
        sa.Column("branch_id", GUID(), sa.ForeignKey("branches.id"), nullable=False, index=True),
        sa.Column("user_id", GUID(), sa.ForeignKey("users.id"), nullable=False, index=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("branch_id", "user_id", name="uq_branch_memberships_branch_user"),
    )

    op.create_table(
        "approval_rules",
        sa.Column("id", GUID(), primary_key=True),
        sa.Column("tenant_id", GUID(), sa.ForeignKey("tenants.id"), nullable=False, index=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_archive_columns(),
        sa.Column("approval_mode", sa.String(length=20), nullable=False, server_default="SEQUENTIAL"),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_by_user_id", GUID(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_approval_rules_tenant_priority", "approval_rules", ["tenant_id", "priority"])
    op.create_table(
        "approval_conditions",
        sa.Column("id", GUID(), primary_key=True),
        sa.Column("rule_id", GUID(), sa.ForeignKey("approval_rules.id"), nullable=False, index=True),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("condition_type", sa.String(length=40), nullable=False),
        sa.Column("threshold", sa.Integer(), nullable=True),
        sa.Column("branch_id", GUID(), sa.ForeignKey("branches.id"), nullable=True),
    )
    op.create_table(
        "approval_levels",
        sa.Column("id", GUID(), primary_key=True),
        sa.Column("rule_id", GUID(), sa.ForeignKey("approval_rules.id"), nullable=False, index=True),
        sa.Column("level", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("required_role_id", GUID(), sa.ForeignKey("roles.id"), nullable=True),
        sa.Column("required_user_id", GUID(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("approval_group", sa.String(length=100), nullable=True),
        sa.UniqueConstraint("rule_id", "level", name="uq_approval_levels_rule_level"),
        sa.CheckConstraint(
            "(required_role_id IS NULL) <> (required_user_id IS NULL)",
            name="ck_approval_levels_single_requirement",
        ),
    )

    op.create_table(
        "transfers",
        sa.Column("id", GUID(), primary_key=True),
        sa.Column("tenant_id", GUID(), sa.ForeignKey("tenants.id"), nullable=False, index=True),
        sa.Column("transfer_number", sa.String(length=50), nullable=False),
        sa.Column("source_branch_id", GUID(), sa.ForeignKey("branches.id"), nullable=False, index=True),
        sa.Column("destination_branch_id", GUID(), sa.ForeignKey("branches.id"), nullable=False, index=True),
        sa.Column("status", sa.String(length=30), nullable=False),
        sa.Column("priority", sa.String(length=20), nullable=False, server_default="NORMAL"),
        sa.Column("requested_by_user_id", GUID(), nullable=False),
        sa.Column("reviewed_by_user_id", GUID(), nullable=True),
        sa.Column("shipped_by_user_id", GUID(), nullable=True),
        sa.Column("expected_delivery_date", sa.Date(), nullable=True),
        sa.Column("request_notes", sa.Text(), nullable=True),
        sa.Column("order_notes", sa.Text(), nullable=True),
        sa.Column("requires_multi_level_approval", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("approval_rule_id", GUID(), sa.ForeignKey("approval_rules.id"), nullable=True),
        sa.Column("approval_mode", sa.String(length=20), nullable=True),
        sa.Column("reversal_of_transfer_id", GUID(), sa.ForeignKey("transfers.id"), nullable=True, unique=True),
        sa.Column("reversed_by_transfer_id", GUID(), sa.ForeignKey("transfers.id"), nullable=True, unique=True),
        sa.Column("reversal_reason", sa.Text(), nullable=True),
        sa.Column("requested_at", sa.DateTime(), nullable=False),
        sa.Column("reviewed_at", sa.DateTime(), nullable=True),
        sa.Column("shipped_at", sa.DateTime(), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.UniqueConstraint("tenant_id", "transfer_number", name="uq_transfers_tenant_number"),
        sa.CheckConstraint("source_branch_id <> destination_branch_id", name="ck_transfers_distinct_branches"),
    )
    op.create_index("ix_transfers_tenant_status_created", "transfers", ["tenant_id", "status", "created_at"])
    op.create_table(
        "transfer_items",
        sa.Column("id", GUID(), primary_key=True),
        sa.Column("tenant_id", GUID(), sa.ForeignKey("tenants.id"), nullable=False, index=True),
        sa.Column("transfer_id", GUID(), sa.ForeignKey("transfers.id"), nullable=False, index=True),
        sa.Column("line_number", sa.Integer(), nullable=False),
        sa.Column("product_id", GUID(), sa.ForeignKey("products.id"), nullable=False),
        sa.Column("qty_requested", sa.Integer(), nullable=False),
        sa.Column("qty_approved", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("qty_shipped", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("qty_received", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("avg_unit_cost_pence", sa.Integer(), nullable=True),
        sa.Column("lots_consumed", sa.JSON(), nullable=False),
        sa.Column("shipment_batches", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.CheckConstraint("qty_requested > 0", name="ck_transfer_items_requested_positive"),
        sa.CheckConstraint(
            "qty_received >= 0 AND qty_received <= qty_shipped "
            "AND qty_shipped <= qty_approved AND qty_approved <= qty_requested",
            name="ck_transfer_items_counter_order",
        ),
        sa.UniqueConstraint("transfer_id", "line_number", name="uq_transfer_items_line"),
    )
    op.create_table(
        "approval_records",
        sa.Column("id", GUID(), primary_key=True),
        sa.Column("tenant_id", GUID(), sa.ForeignKey("tenants.id"), nullable=False, index=True),
        sa.Column("transfer_id", GUID(), sa.ForeignKey("transfers.id"), nullable=False, index=True),
        sa.Column("level", sa.Integer(), nullable=False),
        sa.Column("level_name", sa.String(length=255), nullable=False),
        sa.Column("required_role_id", GUID(), nullable=True),
        sa.Column("required_user_id", GUID(), nullable=True),
        sa.Column("approval_group", sa.String(length=100), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="PENDING"),
        sa.Column("approved_by_user_id", GUID(), nullable=True),
        sa.Column("decided_at", sa.DateTime(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.UniqueConstraint("transfer_id", "level", name="uq_approval_records_transfer_level"),
    )

    op.create_table(
        "stock_lots",
        sa.Column("id", GUID(), primary_key=True),
        sa.Column("tenant_id", GUID(), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("product_id", GUID(), sa.ForeignKey("products.id"), nullable=False),
        sa.Column("branch_id", GUID(), sa.ForeignKey("branches.id"), nullable=False),
        sa.Column("unit_cost_pence", sa.Integer(), nullable=True),
        sa.Column("qty_received", sa.Integer(), nullable=False),
        sa.Column("qty_remaining", sa.Integer(), nullable=False),
        sa.Column("source_ref", sa.String(length=255), nullable=True),
        sa.Column("received_at", sa.DateTime(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.CheckConstraint("qty_received > 0", name="ck_stock_lots_received_positive"),
        sa.CheckConstraint(
            "qty_remaining >= 0 AND qty_remaining <= qty_received",
            name="ck_stock_lots_remaining_bounds",
        ),
    )
    op.create_index("ix_stock_lots_fifo", "stock_lots", ["tenant_id", "product_id", "branch_id", "received_at"])
    op.create_table(
        "stock_ledger_entries",
        sa.Column("id", GUID(), primary_key=True),
        sa.Column("tenant_id", GUID(), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("product_id", GUID(), sa.ForeignKey("products.id"), nullable=False),
        sa.Column("branch_id", GUID(), sa.ForeignKey("branches.id"), nullable=False),
        sa.Column("kind", sa.String(length=20), nullable=False),
        sa.Column("qty_delta", sa.Integer(), nullable=False),
        sa.Column("unit_cost_pence", sa.Integer(), nullable=True),
        sa.Column("lot_id", GUID(), sa.ForeignKey("stock_lots.id"), nullable=True),
        sa.Column("actor_user_id", GUID(), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column(
            "reverses_entry_id",
            GUID(),
            sa.ForeignKey("stock_ledger_entries.id"),
            nullable=True,
            unique=True,
        ),
        sa.Column("transfer_id", GUID(), sa.ForeignKey("transfers.id"), nullable=True),
        sa.Column("occurred_at", sa.DateTime(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("qty_delta <> 0", name="ck_stock_ledger_entries_nonzero"),
    )
    op.create_index(
        "ix_stock_ledger_lookup",
        "stock_ledger_entries",
        ["tenant_id", "product_id", "branch_id", "occurred_at"],
    )
    op.create_table(
        "product_stock",
        sa.Column("id", GUID(), primary_key=True),
        sa.Column("tenant_id", GUID(), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("branch_id", GUID(), sa.ForeignKey("branches.id"), nullable=False),
        sa.Column("product_id", GUID(), sa.ForeignKey("products.id"), nullable=False),
        sa.Column("qty_on_hand", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.UniqueConstraint("tenant_id", "branch_id", "product_id", name="uq_product_stock_triple"),
        sa.CheckConstraint("qty_on_hand >= 0", name="ck_product_stock_non_negative"),
    )

    op.create_table(
        "idempotency_records",
        sa.Column("id", GUID(), primary_key=True),
        sa.Column("tenant_id", GUID(), nullable=False, index=True),
        sa.Column("endpoint", sa.String(length=255), nullable=False),
        sa.Column("method", sa.String(length=10), nullable=False),
        sa.Column("idempotency_key", sa.String(length=255), nullable=False),
        sa.Column("request_hash", sa.String(length=64), nullable=False),
        sa.Column("state", sa.String(length=20), nullable=False),
        sa.Column("status_code", sa.Integer(), nullable=True),
        sa.Column("response_body", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.UniqueConstraint("tenant_id", "endpoint", "method", "idempotency_key", name="uq_idempotency"),
    )
    op.create_table(
        "audit_events",
        sa.Column("id", GUID(), primary_key=True),
        sa.Column("tenant_id", GUID(), nullable=False, index=True),
        sa.Column("user_id", GUID(), nullable=True, index=True),
        sa.Column("trace_id", sa.String(length=64), nullable=True),
        sa.Column("actor", sa.String(length=255), nullable=False),
        sa.Column("action", sa.String(length=255), nullable=False),
        sa.Column("entity_type", sa.String(length=100), nullable=False),
        sa.Column("entity_id", sa.String(length=64), nullable=True),
        sa.Column("before_payload", sa.JSON(), nullable=True),
        sa.Column("after_payload", sa.JSON(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("result", sa.String(length=20), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )


def downgrade() -> None:
    for table in (
        "audit_events",
        "idempotency_records",
        "product_stock",
        "stock_ledger_entries",
        "stock_lots",
        "approval_records",
        "transfer_items",
        "transfers",
        "approval_levels",
        "approval_conditions",
        "approval_rules",
        "branch_memberships",
        "tenant_memberships",
        "users",
        "roles",
        "products",
        "branches",
        "tenants",
    ):
        op.drop_table(table)
