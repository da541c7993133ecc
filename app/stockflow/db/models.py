import uuid
from datetime import date, datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.types import TypeDecorator, CHAR


class GUID(TypeDecorator):
    impl = CHAR
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            from sqlalchemy.dialects.postgresql import UUID

            return dialect.type_descriptor(UUID(as_uuid=True))
        return dialect.type_descriptor(CHAR(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if not isinstance(value, uuid.UUID):
            value = uuid.UUID(str(value))
        if dialect.name == "postgresql":
            return value
        return str(value)

    def process_result_value(self, value, dialect):
        if value is None or isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(value)


class Base(DeclarativeBase):
    pass


class Tenant(Base):
    __tablename__ = "tenants"

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    branches = relationship("Branch", back_populates="tenant")


class Branch(Base):
    __tablename__ = "branches"

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("tenants.id"), index=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_archived: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    archived_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    archived_by_user_id: Mapped[uuid.UUID | None] = mapped_column(GUID(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    tenant = relationship("Tenant", back_populates="branches")

    __table_args__ = (UniqueConstraint("tenant_id", "slug", name="uq_branches_tenant_slug"),)


class Product(Base):
    __tablename__ = "products"

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("tenants.id"), index=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    sku: Mapped[str] = mapped_column(String(100), nullable=False)
    price_pence: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_archived: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    archived_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    archived_by_user_id: Mapped[uuid.UUID | None] = mapped_column(GUID(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("tenant_id", "sku", name="uq_products_tenant_sku"),
        CheckConstraint("price_pence >= 0", name="ck_products_price_non_negative"),
    )


class Role(Base):
    __tablename__ = "roles"

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("tenants.id"), index=True, nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    permissions: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    is_archived: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    archived_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    archived_by_user_id: Mapped[uuid.UUID | None] = mapped_column(GUID(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (UniqueConstraint("tenant_id", "name", name="uq_roles_tenant_name"),)


class User(Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    username: Mapped[str] = mapped_column(String(150), nullable=False, unique=True, index=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    hashed_password: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)


class TenantMembership(Base):
    __tablename__ = "tenant_memberships"

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("tenants.id"), index=True, nullable=False)
    user_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("users.id"), index=True, nullable=False)
    role_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("roles.id"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    role = relationship("Role")

    __table_args__ = (UniqueConstraint("tenant_id", "user_id", name="uq_tenant_memberships_tenant_user"),)


class BranchMembership(Base):
    __tablename__ = "branch_memberships"

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("tenants.id"), index=True, nullable=False)
    branch_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("branches.id"), index=True, nullable=False)
    user_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("users.id"), index=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (UniqueConstraint("branch_id", "user_id", name="uq_branch_memberships_branch_user"),)


class Transfer(Base):
    __tablename__ = "transfers"

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("tenants.id"), index=True, nullable=False)
    transfer_number: Mapped[str] = mapped_column(String(50), nullable=False)
    source_branch_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("branches.id"), index=True, nullable=False)
    destination_branch_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("branches.id"), index=True, nullable=False
    )
    status: Mapped[str] = mapped_column(String(30), nullable=False)
    priority: Mapped[str] = mapped_column(String(20), default="NORMAL", nullable=False)
    requested_by_user_id: Mapped[uuid.UUID] = mapped_column(GUID(), nullable=False)
    reviewed_by_user_id: Mapped[uuid.UUID | None] = mapped_column(GUID(), nullable=True)
    shipped_by_user_id: Mapped[uuid.UUID | None] = mapped_column(GUID(), nullable=True)
    expected_delivery_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    request_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    order_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    requires_multi_level_approval: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    approval_rule_id: Mapped[uuid.UUID | None] = mapped_column(
        GUID(), ForeignKey("approval_rules.id"), nullable=True
    )
    approval_mode: Mapped[str | None] = mapped_column(String(20), nullable=True)
    reversal_of_transfer_id: Mapped[uuid.UUID | None] = mapped_column(
        GUID(), ForeignKey("transfers.id"), nullable=True, unique=True
    )
    reversed_by_transfer_id: Mapped[uuid.UUID | None] = mapped_column(
        GUID(), ForeignKey("transfers.id"), nullable=True, unique=True
    )
    reversal_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    requested_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    shipped_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, onupdate=datetime.utcnow)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    items = relationship(
        "TransferItem",
        back_populates="transfer",
        order_by="TransferItem.line_number",
        cascade="all, delete-orphan",
    )
    approval_records = relationship(
        "ApprovalRecord",
        back_populates="transfer",
        order_by="ApprovalRecord.level",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        UniqueConstraint("tenant_id", "transfer_number", name="uq_transfers_tenant_number"),
        CheckConstraint("source_branch_id <> destination_branch_id", name="ck_transfers_distinct_branches"),
        Index("ix_transfers_tenant_status_created", "tenant_id", "status", "created_at"),
    )


class TransferItem(Base):
    __tablename__ = "transfer_items"

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("tenants.id"), index=True, nullable=False)
    transfer_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("transfers.id"), index=True, nullable=False)
    line_number: Mapped[int] = mapped_column(Integer, nullable=False)
    product_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("products.id"), nullable=False)
    qty_requested: Mapped[int] = mapped_column(Integer, nullable=False)
    qty_approved: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    qty_shipped: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    qty_received: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    avg_unit_cost_pence: Mapped[int | None] = mapped_column(Integer, nullable=True)
    lots_consumed: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    shipment_batches: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    transfer = relationship("Transfer", back_populates="items")

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        CheckConstraint("qty_requested > 0", name="ck_transfer_items_requested_positive"),
        CheckConstraint(
            "qty_received >= 0 AND qty_received <= qty_shipped "
            "AND qty_shipped <= qty_approved AND qty_approved <= qty_requested",
            name="ck_transfer_items_counter_order",
        ),
        UniqueConstraint("transfer_id", "line_number", name="uq_transfer_items_line"),
    )


class ApprovalRule(Base):
    __tablename__ = "approval_rules"

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("tenants.id"), index=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_archived: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    archived_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    archived_by_user_id: Mapped[uuid.UUID | None] = mapped_column(GUID(), nullable=True)
    approval_mode: Mapped[str] = mapped_column(String(20), default="SEQUENTIAL", nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_by_user_id: Mapped[uuid.UUID | None] = mapped_column(GUID(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, onupdate=datetime.utcnow)

    conditions = relationship(
        "ApprovalCondition",
        back_populates="rule",
        order_by="ApprovalCondition.position",
        cascade="all, delete-orphan",
    )
    levels = relationship(
        "ApprovalLevel",
        back_populates="rule",
        order_by="ApprovalLevel.level",
        cascade="all, delete-orphan",
    )

    __table_args__ = (Index("ix_approval_rules_tenant_priority", "tenant_id", "priority"),)


class ApprovalCondition(Base):
    __tablename__ = "approval_conditions"

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    rule_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("approval_rules.id"), index=True, nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    condition_type: Mapped[str] = mapped_column(String(40), nullable=False)
    threshold: Mapped[int | None] = mapped_column(Integer, nullable=True)
    branch_id: Mapped[uuid.UUID | None] = mapped_column(GUID(), ForeignKey("branches.id"), nullable=True)

    rule = relationship("ApprovalRule", back_populates="conditions")


class ApprovalLevel(Base):
    __tablename__ = "approval_levels"

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    rule_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("approval_rules.id"), index=True, nullable=False)
    level: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    required_role_id: Mapped[uuid.UUID | None] = mapped_column(GUID(), ForeignKey("roles.id"), nullable=True)
    required_user_id: Mapped[uuid.UUID | None] = mapped_column(GUID(), ForeignKey("users.id"), nullable=True)
    approval_group: Mapped[str | None] = mapped_column(String(100), nullable=True)

    rule = relationship("ApprovalRule", back_populates="levels")

    __table_args__ = (
        UniqueConstraint("rule_id", "level", name="uq_approval_levels_rule_level"),
        CheckConstraint(
            "(required_role_id IS NULL) <> (required_user_id IS NULL)",
            name="ck_approval_levels_single_requirement",
        ),
    )


class ApprovalRecord(Base):
    __tablename__ = "approval_records"

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("tenants.id"), index=True, nullable=False)
    transfer_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("transfers.id"), index=True, nullable=False)
    level: Mapped[int] = mapped_column(Integer, nullable=False)
    level_name: Mapped[str] = mapped_column(String(255), nullable=False)
    required_role_id: Mapped[uuid.UUID | None] = mapped_column(GUID(), nullable=True)
    required_user_id: Mapped[uuid.UUID | None] = mapped_column(GUID(), nullable=True)
    approval_group: Mapped[str | None] = mapped_column(String(100), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="PENDING", nullable=False)
    approved_by_user_id: Mapped[uuid.UUID | None] = mapped_column(GUID(), nullable=True)
    decided_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    transfer = relationship("Transfer", back_populates="approval_records")

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (UniqueConstraint("transfer_id", "level", name="uq_approval_records_transfer_level"),)


class StockLot(Base):
    __tablename__ = "stock_lots"

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("tenants.id"), nullable=False)
    product_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("products.id"), nullable=False)
    branch_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("branches.id"), nullable=False)
    unit_cost_pence: Mapped[int | None] = mapped_column(Integer, nullable=True)
    qty_received: Mapped[int] = mapped_column(Integer, nullable=False)
    qty_remaining: Mapped[int] = mapped_column(Integer, nullable=False)
    source_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    received_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        CheckConstraint("qty_received > 0", name="ck_stock_lots_received_positive"),
        CheckConstraint(
            "qty_remaining >= 0 AND qty_remaining <= qty_received",
            name="ck_stock_lots_remaining_bounds",
        ),
        Index("ix_stock_lots_fifo", "tenant_id", "product_id", "branch_id", "received_at"),
    )


class StockLedgerEntry(Base):
    __tablename__ = "stock_ledger_entries"

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("tenants.id"), nullable=False)
    product_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("products.id"), nullable=False)
    branch_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("branches.id"), nullable=False)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    qty_delta: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_cost_pence: Mapped[int | None] = mapped_column(Integer, nullable=True)
    lot_id: Mapped[uuid.UUID | None] = mapped_column(GUID(), ForeignKey("stock_lots.id"), nullable=True)
    actor_user_id: Mapped[uuid.UUID | None] = mapped_column(GUID(), nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    reverses_entry_id: Mapped[uuid.UUID | None] = mapped_column(
        GUID(), ForeignKey("stock_ledger_entries.id"), nullable=True, unique=True
    )
    transfer_id: Mapped[uuid.UUID | None] = mapped_column(GUID(), ForeignKey("transfers.id"), nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("qty_delta <> 0", name="ck_stock_ledger_entries_nonzero"),
        Index("ix_stock_ledger_lookup", "tenant_id", "product_id", "branch_id", "occurred_at"),
    )


class ProductStock(Base):
    __tablename__ = "product_stock"

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("tenants.id"), nullable=False)
    branch_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("branches.id"), nullable=False)
    product_id: Mapped[uuid.UUID] = mapped_column(GUID(), ForeignKey("products.id"), nullable=False)
    qty_on_hand: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        UniqueConstraint("tenant_id", "branch_id", "product_id", name="uq_product_stock_triple"),
        CheckConstraint("qty_on_hand >= 0", name="ck_product_stock_non_negative"),
    )


class IdempotencyRecord(Base):
    __tablename__ = "idempotency_records"

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(GUID(), index=True, nullable=False)
    endpoint: Mapped[str] = mapped_column(String(255), nullable=False)
    method: Mapped[str] = mapped_column(String(10), nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False)
    request_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    state: Mapped[str] = mapped_column(String(20), nullable=False)
    status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    response_body: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("tenant_id", "endpoint", "method", "idempotency_key", name="uq_idempotency"),
    )


class AuditEvent(Base):
    __tablename__ = "audit_events"

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(GUID(), index=True, nullable=False)
    user_id: Mapped[uuid.UUID | None] = mapped_column(GUID(), index=True, nullable=True)
    trace_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    actor: Mapped[str] = mapped_column(String(255), nullable=False)
    action: Mapped[str] = mapped_column(String(255), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    before_payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    after_payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    event_metadata: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)
    result: Mapped[str] = mapped_column(String(20), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
