import pytest

from app.stockflow.core.error_catalog import AppError
from app.stockflow.db.models import StockLedgerEntry, StockLot
from app.stockflow.db.session import unit_of_work
from app.stockflow.services.stock_ledger import ADJUSTMENT, CONSUMPTION, RECEIPT, REVERSAL, StockLedgerService

from tests.stockflow_helpers import create_world, on_hand, seed_stock


def _consume(db_session, world, qty, *, branch="warehouse", product="widget"):
    with unit_of_work(db_session):
        draws = StockLedgerService(db_session).record_consumption(
            tenant_id=world.tenant_id,
            product_id=world.product_ids[product],
            branch_id=world.branch_ids[branch],
            qty=qty,
            actor_user_id=None,
        )
    return draws


def test_consumption_draws_oldest_lots_first(client, db_session):
    world = create_world(db_session)
    first_lot = seed_stock(db_session, world, branch="warehouse", product="widget", qty=5, unit_cost_pence=100)
    second_lot = seed_stock(db_session, world, branch="warehouse", product="widget", qty=5, unit_cost_pence=200)

    draws = _consume(db_session, world, 7)

    assert [(draw.lot_id, draw.qty, draw.unit_cost_pence) for draw in draws] == [
        (first_lot, 5, 100),
        (second_lot, 2, 200),
    ]
    assert on_hand(db_session, world, branch="warehouse", product="widget") == 3
    lots = {str(lot.id): lot.qty_remaining for lot in db_session.query(StockLot).all()}
    assert lots == {first_lot: 0, second_lot: 3}


def test_consumption_beyond_on_hand_is_refused_without_side_effects(client, db_session):
    world = create_world(db_session)
    seed_stock(db_session, world, branch="warehouse", product="widget", qty=4, unit_cost_pence=100)

    with pytest.raises(AppError) as excinfo:
        _consume(db_session, world, 5)

    assert excinfo.value.error.code == "INSUFFICIENT_STOCK"
    assert excinfo.value.details["requested"] == 5
    assert excinfo.value.details["available"] == 4
    assert on_hand(db_session, world, branch="warehouse", product="widget") == 4
    assert db_session.query(StockLedgerEntry).filter(StockLedgerEntry.kind == CONSUMPTION).count() == 0


def test_receipt_rejects_non_positive_quantity(client, db_session):
    world = create_world(db_session)
    with pytest.raises(AppError) as excinfo:
        seed_stock(db_session, world, branch="warehouse", product="widget", qty=0, unit_cost_pence=100)
    assert excinfo.value.error.code == "VALIDATION_ERROR"


def test_ledger_sum_matches_aggregate_after_mixed_movements(client, db_session):
    world = create_world(db_session)
    seed_stock(db_session, world, branch="warehouse", product="widget", qty=10, unit_cost_pence=100)
    _consume(db_session, world, 4)
    with unit_of_work(db_session):
        StockLedgerService(db_session).record_adjustment(
            tenant_id=world.tenant_id,
            product_id=world.product_ids["widget"],
            branch_id=world.branch_ids["warehouse"],
            qty_delta=3,
            actor_user_id=None,
            reason="found in back room",
        )

    service = StockLedgerService(db_session)
    ledger_total = service.ledger_sum(
        tenant_id=world.tenant_id,
        product_id=world.product_ids["widget"],
        branch_id=world.branch_ids["warehouse"],
    )
    assert ledger_total == 9
    assert on_hand(db_session, world, branch="warehouse", product="widget") == 9
    kinds = [entry.kind for entry in db_session.query(StockLedgerEntry).order_by(StockLedgerEntry.occurred_at)]
    assert sorted(kinds) == sorted([RECEIPT, CONSUMPTION, ADJUSTMENT])


def test_receive_endpoint_creates_lot(client, db_session, admin_token, world):
    response = client.post(
        "/stockflow/stock/receive",
        headers={"Authorization": f"Bearer {admin_token}"},
        json={
            "branch_id": world.branch_ids["warehouse"],
            "product_id": world.product_ids["widget"],
            "qty": 12,
            "unit_cost_pence": 150,
            "source_ref": "PO-1",
        },
    )
    assert response.status_code == 201
    body = response.json()
    assert body["qty_on_hand"] == 12
    assert body["lot"]["qty_remaining"] == 12
    assert body["lot"]["unit_cost_pence"] == 150


def test_consume_endpoint_reports_draws(client, db_session, admin_token, world):
    seed_stock(db_session, world, branch="warehouse", product="widget", qty=5, unit_cost_pence=100)
    seed_stock(db_session, world, branch="warehouse", product="widget", qty=5, unit_cost_pence=200)

    response = client.post(
        "/stockflow/stock/consume",
        headers={"Authorization": f"Bearer {admin_token}"},
        json={"branch_id": world.branch_ids["warehouse"], "product_id": world.product_ids["widget"], "qty": 7},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["qty_on_hand"] == 3
    assert [draw["qty"] for draw in body["draws"]] == [5, 2]


def test_consume_endpoint_insufficient_stock(client, db_session, admin_token, world):
    seed_stock(db_session, world, branch="warehouse", product="widget", qty=2, unit_cost_pence=100)

    response = client.post(
        "/stockflow/stock/consume",
        headers={"Authorization": f"Bearer {admin_token}"},
        json={"branch_id": world.branch_ids["warehouse"], "product_id": world.product_ids["widget"], "qty": 3},
    )
    assert response.status_code == 409
    body = response.json()
    assert body["code"] == "INSUFFICIENT_STOCK"
    assert body["details"]["available"] == 2


def test_negative_adjustment_uses_fifo(client, db_session, admin_token, world):
    seed_stock(db_session, world, branch="warehouse", product="widget", qty=3, unit_cost_pence=100)
    seed_stock(db_session, world, branch="warehouse", product="widget", qty=3, unit_cost_pence=300)

    response = client.post(
        "/stockflow/stock/adjust",
        headers={"Authorization": f"Bearer {admin_token}"},
        json={
            "branch_id": world.branch_ids["warehouse"],
            "product_id": world.product_ids["widget"],
            "qty_delta": -4,
            "reason": "damaged",
        },
    )
    assert response.status_code == 200
    body = response.json()
    assert body["qty_on_hand"] == 2
    assert [(draw["qty"], draw["unit_cost_pence"]) for draw in body["draws"]] == [(3, 100), (1, 300)]


def test_zero_adjustment_is_rejected(client, admin_token, world):
    response = client.post(
        "/stockflow/stock/adjust",
        headers={"Authorization": f"Bearer {admin_token}"},
        json={"branch_id": world.branch_ids["warehouse"], "product_id": world.product_ids["widget"], "qty_delta": 0},
    )
    assert response.status_code == 422
    assert response.json()["code"] == "VALIDATION_ERROR"


def test_levels_endpoint_lists_open_lots(client, db_session, admin_token, world):
    seed_stock(db_session, world, branch="warehouse", product="widget", qty=2, unit_cost_pence=100)
    seed_stock(db_session, world, branch="warehouse", product="widget", qty=3, unit_cost_pence=120)

    response = client.get(
        "/stockflow/stock/levels",
        headers={"Authorization": f"Bearer {admin_token}"},
        params={"branch_id": world.branch_ids["warehouse"], "product_id": world.product_ids["widget"]},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["qty_on_hand"] == 5
    assert [lot["qty_remaining"] for lot in body["lots"]] == [2, 3]


def test_ledger_listing_pages_newest_first(client, db_session, admin_token, world):
    for cost in (100, 110, 120):
        seed_stock(db_session, world, branch="warehouse", product="widget", qty=1, unit_cost_pence=cost)

    headers = {"Authorization": f"Bearer {admin_token}"}
    first = client.get("/stockflow/stock/ledger", headers=headers, params={"limit": 2})
    assert first.status_code == 200
    first_body = first.json()
    assert len(first_body["items"]) == 2
    assert first_body["next_cursor"]

    second = client.get(
        "/stockflow/stock/ledger",
        headers=headers,
        params={"limit": 2, "cursor": first_body["next_cursor"]},
    )
    second_body = second.json()
    assert len(second_body["items"]) == 1
    assert second_body["next_cursor"] is None
    seen = [item["id"] for item in first_body["items"] + second_body["items"]]
    assert len(set(seen)) == 3


def test_ledger_listing_rejects_unknown_kind(client, admin_token):
    response = client.get(
        "/stockflow/stock/ledger",
        headers={"Authorization": f"Bearer {admin_token}"},
        params={"kind": "TELEPORT"},
    )
    assert response.status_code == 422


def test_stock_writes_require_branch_membership(client, db_session, admin_token, world):
    response = client.post(
        "/stockflow/stock/receive",
        headers={"Authorization": f"Bearer {admin_token}"},
        json={"branch_id": world.branch_ids["outlet"], "product_id": world.product_ids["widget"], "qty": 1},
    )
    assert response.status_code == 403
    assert response.json()["code"] == "PERMISSION_DENIED"


def test_staff_cannot_write_stock(client, db_session, world):
    from tests.stockflow_helpers import create_user, login

    create_user(db_session, world, "staffer", role="STAFF")
    token = login(client, "staffer")
    response = client.post(
        "/stockflow/stock/receive",
        headers={"Authorization": f"Bearer {token}"},
        json={"branch_id": world.branch_ids["warehouse"], "product_id": world.product_ids["widget"], "qty": 1},
    )
    assert response.status_code == 403


def test_reversing_a_receipt_restores_the_lot(client, db_session, admin_token, world):
    seed_stock(db_session, world, branch="warehouse", product="widget", qty=5, unit_cost_pence=100)
    entry = db_session.query(StockLedgerEntry).filter(StockLedgerEntry.kind == RECEIPT).one()
    entry_id = str(entry.id)

    response = client.post(
        f"/stockflow/stock/ledger/{entry_id}/reverse",
        headers={"Authorization": f"Bearer {admin_token}"},
        json={"reason": "keyed twice"},
    )
    assert response.status_code == 201
    body = response.json()
    assert body["entry"]["kind"] == REVERSAL
    assert body["entry"]["qty_delta"] == -5
    assert body["entry"]["reverses_entry_id"] == entry_id
    assert body["qty_on_hand"] == 0

    again = client.post(
        f"/stockflow/stock/ledger/{entry_id}/reverse",
        headers={"Authorization": f"Bearer {admin_token}"},
        json={"reason": "keyed twice"},
    )
    assert again.status_code == 409
    assert again.json()["code"] == "CONFLICT"


def test_reversing_a_partially_consumed_receipt_is_refused(client, db_session, admin_token, world):
    seed_stock(db_session, world, branch="warehouse", product="widget", qty=5, unit_cost_pence=100)
    _consume(db_session, world, 3)
    receipt = db_session.query(StockLedgerEntry).filter(StockLedgerEntry.kind == RECEIPT).one()

    response = client.post(
        f"/stockflow/stock/ledger/{receipt.id}/reverse",
        headers={"Authorization": f"Bearer {admin_token}"},
    )
    assert response.status_code == 409
    assert response.json()["code"] == "INSUFFICIENT_STOCK"
    assert on_hand(db_session, world, branch="warehouse", product="widget") == 2


def test_reversal_entries_cannot_be_reversed(client, db_session, admin_token, world):
    seed_stock(db_session, world, branch="warehouse", product="widget", qty=5, unit_cost_pence=100)
    receipt = db_session.query(StockLedgerEntry).filter(StockLedgerEntry.kind == RECEIPT).one()
    first = client.post(
        f"/stockflow/stock/ledger/{receipt.id}/reverse",
        headers={"Authorization": f"Bearer {admin_token}"},
    )
    reversal_id = first.json()["entry"]["id"]

    response = client.post(
        f"/stockflow/stock/ledger/{reversal_id}/reverse",
        headers={"Authorization": f"Bearer {admin_token}"},
    )
    assert response.status_code == 409
