import uuid

from app.stockflow.db.models import Product
from app.stockflow.services.stock_ledger import StockLedgerService

from tests.stockflow_helpers import auth_headers, create_transfer, item_ids, on_hand, seed_stock


def _ship(client, token, transfer_id, item_id, qty):
    response = client.post(
        f"/stockflow/stock-transfers/{transfer_id}/ship",
        headers=auth_headers(token),
        json={"items": [{"item_id": item_id, "qty_to_ship": qty}]},
    )
    assert response.status_code == 200, response.text
    return response.json()


def _receive(client, token, transfer_id, item_id, qty):
    response = client.post(
        f"/stockflow/stock-transfers/{transfer_id}/receive",
        headers=auth_headers(token),
        json={"items": [{"item_id": item_id, "qty_received": qty}]},
    )
    assert response.status_code == 200, response.text
    return response.json()


def _assert_ledger_balanced(db_session, world, product="widget"):
    db_session.expire_all()
    ledger = StockLedgerService(db_session)
    for branch in ("warehouse", "store"):
        scope = dict(
            tenant_id=world.tenant_id,
            branch_id=world.branch_ids[branch],
            product_id=world.product_ids[product],
        )
        levels = ledger.get_levels(**scope)
        assert ledger.ledger_sum(**scope) == levels.qty_on_hand, branch
        assert sum(lot.qty_remaining for lot in levels.lots) == levels.qty_on_hand, branch


def _completed_transfer(client, db_session, admin_token, world, qty=6):
    seed_stock(db_session, world, branch="warehouse", product="widget", qty=qty, unit_cost_pence=120)
    transfer = create_transfer(client, admin_token, world, items=[("widget", qty)]).json()
    item_id = item_ids(transfer)[world.product_ids["widget"]]
    client.post(
        f"/stockflow/stock-transfers/{transfer['id']}/ship",
        headers=auth_headers(admin_token),
        json={"items": [{"item_id": item_id, "qty_to_ship": qty}]},
    )
    done = client.post(
        f"/stockflow/stock-transfers/{transfer['id']}/receive",
        headers=auth_headers(admin_token),
        json={"items": [{"item_id": item_id, "qty_received": qty}]},
    ).json()
    assert done["status"] == "COMPLETED"
    return done


def test_reversal_requests_the_mirrored_movement(client, db_session, admin_token, world):
    original = _completed_transfer(client, db_session, admin_token, world)

    response = client.post(
        f"/stockflow/stock-transfers/{original['id']}/reverse",
        headers=auth_headers(admin_token),
        json={"reason": "sent to the wrong store"},
    )
    assert response.status_code == 201
    reversal = response.json()
    assert reversal["source_branch_id"] == world.branch_ids["store"]
    assert reversal["destination_branch_id"] == world.branch_ids["warehouse"]
    assert reversal["reversal_of_transfer_id"] == original["id"]
    assert reversal["reversal_reason"] == "sent to the wrong store"
    assert reversal["status"] == "APPROVED"
    assert [item["qty_requested"] for item in reversal["items"]] == [6]

    refreshed = client.get(
        f"/stockflow/stock-transfers/{original['id']}", headers=auth_headers(admin_token)
    ).json()
    assert refreshed["reversed_by_transfer_id"] == reversal["id"]
    assert refreshed["status"] == "COMPLETED"

    # nothing moves until the reversal itself is shipped
    assert on_hand(db_session, world, branch="store", product="widget") == 6


def test_reversal_ships_back_at_received_cost(client, db_session, admin_token, world):
    original = _completed_transfer(client, db_session, admin_token, world, qty=3)
    reversal = client.post(
        f"/stockflow/stock-transfers/{original['id']}/reverse",
        headers=auth_headers(admin_token),
        json={"reason": "overstock"},
    ).json()
    item_id = item_ids(reversal)[world.product_ids["widget"]]
    shipped = client.post(
        f"/stockflow/stock-transfers/{reversal['id']}/ship",
        headers=auth_headers(admin_token),
        json={"items": [{"item_id": item_id, "qty_to_ship": 3}]},
    ).json()
    assert shipped["items"][0]["avg_unit_cost_pence"] == 120
    assert on_hand(db_session, world, branch="store", product="widget") == 0


def test_transfer_can_be_reversed_once(client, db_session, admin_token, world):
    original = _completed_transfer(client, db_session, admin_token, world)
    url = f"/stockflow/stock-transfers/{original['id']}/reverse"
    assert client.post(url, headers=auth_headers(admin_token), json={"reason": "first"}).status_code == 201

    second = client.post(url, headers=auth_headers(admin_token), json={"reason": "second"})
    assert second.status_code == 409
    assert second.json()["code"] == "CONFLICT"


def test_only_completed_transfers_reverse(client, admin_token, world):
    transfer = create_transfer(client, admin_token, world, items=[("widget", 1)]).json()
    response = client.post(
        f"/stockflow/stock-transfers/{transfer['id']}/reverse",
        headers=auth_headers(admin_token),
        json={"reason": "changed my mind"},
    )
    assert response.status_code == 409


def test_reversal_needs_a_reason(client, db_session, admin_token, world):
    original = _completed_transfer(client, db_session, admin_token, world)
    response = client.post(
        f"/stockflow/stock-transfers/{original['id']}/reverse",
        headers=auth_headers(admin_token),
        json={"reason": "   "},
    )
    assert response.status_code == 422
    assert response.json()["code"] == "VALIDATION_ERROR"


def test_reversal_of_archived_product(client, db_session, admin_token, world):
    original = _completed_transfer(client, db_session, admin_token, world, qty=10)
    product = db_session.get(Product, uuid.UUID(world.product_ids["widget"]))
    product.is_archived = True
    db_session.commit()

    response = client.post(
        f"/stockflow/stock-transfers/{original['id']}/reverse",
        headers=auth_headers(admin_token),
        json={"reason": "line discontinued"},
    )
    assert response.status_code == 201, response.text
    assert [item["product_id"] for item in response.json()["items"]] == [world.product_ids["widget"]]

    # new requests for the archived product are still refused
    fresh = create_transfer(client, admin_token, world, items=[("widget", 1)])
    assert fresh.status_code == 422


def test_ledger_matches_on_hand_through_partial_batches_and_reversal(client, db_session, admin_token, world):
    seed_stock(db_session, world, branch="warehouse", product="widget", qty=10, unit_cost_pence=100)
    _assert_ledger_balanced(db_session, world)

    transfer = create_transfer(client, admin_token, world, items=[("widget", 10)]).json()
    item_id = item_ids(transfer)[world.product_ids["widget"]]
    for qty in (6, 4):
        _ship(client, admin_token, transfer["id"], item_id, qty)
        _assert_ledger_balanced(db_session, world)
    for qty in (7, 3):
        done = _receive(client, admin_token, transfer["id"], item_id, qty)
        _assert_ledger_balanced(db_session, world)
    assert done["status"] == "COMPLETED"
    assert on_hand(db_session, world, branch="store", product="widget") == 10

    reversal = client.post(
        f"/stockflow/stock-transfers/{transfer['id']}/reverse",
        headers=auth_headers(admin_token),
        json={"reason": "returned to warehouse"},
    ).json()
    _assert_ledger_balanced(db_session, world)

    reversal_item_id = item_ids(reversal)[world.product_ids["widget"]]
    _ship(client, admin_token, reversal["id"], reversal_item_id, 10)
    _assert_ledger_balanced(db_session, world)
    returned = _receive(client, admin_token, reversal["id"], reversal_item_id, 10)
    _assert_ledger_balanced(db_session, world)

    assert returned["status"] == "COMPLETED"
    assert on_hand(db_session, world, branch="warehouse", product="widget") == 10
    assert on_hand(db_session, world, branch="store", product="widget") == 0
