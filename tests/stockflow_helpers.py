from __future__ import annotations

import uuid
from types import SimpleNamespace

from app.stockflow.core.security import get_password_hash
from app.stockflow.db.models import Branch, BranchMembership, Product, Role, Tenant, TenantMembership, User
from app.stockflow.db.seed import DEFAULT_ROLES
from app.stockflow.db.session import unit_of_work
from app.stockflow.services.stock_ledger import StockLedgerService

PASSWORD = "Pass1234!"
_PASSWORD_HASH = None


def _password_hash() -> str:
    global _PASSWORD_HASH
    if _PASSWORD_HASH is None:
        _PASSWORD_HASH = get_password_hash(PASSWORD)
    return _PASSWORD_HASH


def create_world(db_session, *, suffix: str = "a"):
    """A tenant with three branches, the default roles and two priced products."""
    tenant = Tenant(id=uuid.uuid4(), name=f"Tenant {suffix}")
    roles = {
        name: Role(id=uuid.uuid4(), tenant_id=tenant.id, name=name, permissions=list(permissions))
        for name, permissions in DEFAULT_ROLES.items()
    }
    branches = {
        key: Branch(id=uuid.uuid4(), tenant_id=tenant.id, name=f"{key.title()} {suffix}", slug=f"{key}-{suffix}")
        for key in ("warehouse", "store", "outlet")
    }
    products = {
        "widget": Product(id=uuid.uuid4(), tenant_id=tenant.id, name="Widget", sku=f"WID-{suffix}", price_pence=250),
        "gadget": Product(id=uuid.uuid4(), tenant_id=tenant.id, name="Gadget", sku=f"GAD-{suffix}", price_pence=1000),
    }
    world = SimpleNamespace(
        tenant_id=str(tenant.id),
        role_ids={name: str(role.id) for name, role in roles.items()},
        branch_ids={key: str(branch.id) for key, branch in branches.items()},
        product_ids={key: str(product.id) for key, product in products.items()},
        suffix=suffix,
    )
    db_session.add(tenant)
    db_session.flush()
    db_session.add_all([*roles.values(), *branches.values(), *products.values()])
    db_session.commit()
    return world


def create_user(db_session, world, username: str, *, role: str = "ADMIN", branches=("warehouse", "store")) -> str:
    user = User(
        id=uuid.uuid4(),
        username=username,
        email=f"{username}@example.com",
        hashed_password=_password_hash(),
        is_active=True,
    )
    user_id = str(user.id)
    db_session.add(user)
    db_session.flush()
    db_session.add(TenantMembership(tenant_id=world.tenant_id, user_id=user_id, role_id=world.role_ids[role]))
    for key in branches:
        db_session.add(BranchMembership(tenant_id=world.tenant_id, branch_id=world.branch_ids[key], user_id=user_id))
    db_session.commit()
    return user_id


def login(client, username: str, password: str = PASSWORD, tenant_id: str | None = None) -> str:
    body = {"username_or_email": username, "password": password}
    if tenant_id:
        body["tenant_id"] = tenant_id
    response = client.post("/stockflow/auth/login", json=body)
    assert response.status_code == 200, response.text
    return response.json()["access_token"]


def auth_headers(token: str, idempotency_key: str | None = None) -> dict:
    headers = {"Authorization": f"Bearer {token}"}
    if idempotency_key:
        headers["Idempotency-Key"] = idempotency_key
    return headers


def seed_stock(db_session, world, *, branch: str, product: str, qty: int, unit_cost_pence: int | None):
    with unit_of_work(db_session):
        lot = StockLedgerService(db_session).record_receipt(
            tenant_id=world.tenant_id,
            product_id=world.product_ids[product],
            branch_id=world.branch_ids[branch],
            qty=qty,
            unit_cost_pence=unit_cost_pence,
            actor_user_id=None,
            reason="opening stock",
        )
        lot_id = str(lot.id)
    return lot_id


def on_hand(db_session, world, *, branch: str, product: str) -> int:
    db_session.expire_all()
    return (
        StockLedgerService(db_session)
        .get_levels(tenant_id=world.tenant_id, branch_id=world.branch_ids[branch], product_id=world.product_ids[product])
        .qty_on_hand
    )


def create_transfer(client, token: str, world, *, items, source: str = "warehouse", destination: str = "store", **extra):
    payload = {
        "source_branch_id": world.branch_ids[source],
        "destination_branch_id": world.branch_ids[destination],
        "items": [{"product_id": world.product_ids[key], "qty_requested": qty} for key, qty in items],
        **extra,
    }
    response = client.post(
        "/stockflow/stock-transfers",
        headers=auth_headers(token, idempotency_key=f"create-{uuid.uuid4()}"),
        json=payload,
    )
    return response


def item_ids(transfer_json: dict) -> dict[str, str]:
    """Map product id to transfer item id."""
    return {item["product_id"]: item["id"] for item in transfer_json["items"]}


def create_rule(client, token: str, *, conditions, levels, approval_mode: str = "SEQUENTIAL", priority: int = 0, name: str | None = None):
    response = client.post(
        "/stockflow/transfer-approval-rules",
        headers=auth_headers(token, idempotency_key=f"rule-{uuid.uuid4()}"),
        json={
            "name": name or f"Rule {uuid.uuid4().hex[:6]}",
            "approval_mode": approval_mode,
            "priority": priority,
            "conditions": conditions,
            "levels": levels,
        },
    )
    return response
