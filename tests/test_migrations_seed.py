import os
from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine, func, inspect, select
from sqlalchemy.orm import sessionmaker

from app.stockflow.db.models import Branch, Role, Tenant, TenantMembership, User
from app.stockflow.db.seed import run_seed


def _run_migrations(database_url: str):
    os.environ["DATABASE_URL"] = database_url
    config = Config("alembic.ini")
    config.set_main_option("sqlalchemy.url", database_url)
    command.upgrade(config, "head")


def test_migrations_apply(tmp_path: Path):
    database_url = f"sqlite+pysqlite:///{tmp_path / 'migrations.db'}"
    _run_migrations(database_url)

    inspector = inspect(create_engine(database_url, future=True))
    tables = set(inspector.get_table_names())
    for table in (
        "tenants",
        "branches",
        "products",
        "users",
        "approval_rules",
        "approval_levels",
        "transfers",
        "transfer_items",
        "approval_records",
        "stock_lots",
        "stock_ledger_entries",
        "product_stock",
        "idempotency_records",
        "audit_events",
    ):
        assert table in tables

    ledger_indexes = [index["name"] for index in inspector.get_indexes("stock_ledger_entries")]
    assert "ix_stock_ledger_lookup" in ledger_indexes
    lot_indexes = [index["name"] for index in inspector.get_indexes("stock_lots")]
    assert "ix_stock_lots_fifo" in lot_indexes


def test_seed_is_idempotent(tmp_path: Path):
    database_url = f"sqlite+pysqlite:///{tmp_path / 'seed.db'}"
    _run_migrations(database_url)

    SessionLocal = sessionmaker(bind=create_engine(database_url, future=True), future=True)

    def counts(db):
        return [
            db.scalar(select(func.count()).select_from(model))
            for model in (Tenant, Branch, Role, User, TenantMembership)
        ]

    with SessionLocal() as db:
        run_seed(db)
        before = counts(db)
        run_seed(db)
        assert counts(db) == before
        assert before == [1, 1, 3, 1, 1]
        assert db.scalar(select(func.count()).select_from(Role).where(Role.name == "ADMIN")) == 1
