import uuid
from types import SimpleNamespace

from sqlalchemy import update

from app.ops.integrity_checks import (
    check_aggregate_matches_ledger,
    check_lots_match_aggregate,
    check_transfer_item_counters,
    check_transfer_status,
    run_integrity_checks,
    transfer_item_counter_findings,
)
from app.stockflow.db.models import ProductStock, StockLot, Transfer

from tests.stockflow_helpers import auth_headers, create_transfer, item_ids, seed_stock


def _shipped_transfer(client, db_session, admin_token, world):
    seed_stock(db_session, world, branch="warehouse", product="widget", qty=10, unit_cost_pence=100)
    transfer = create_transfer(client, admin_token, world, items=[("widget", 4)]).json()
    item_id = item_ids(transfer)[world.product_ids["widget"]]
    client.post(
        f"/stockflow/stock-transfers/{transfer['id']}/ship",
        headers=auth_headers(admin_token),
        json={"items": [{"item_id": item_id, "qty_to_ship": 4}]},
    )
    return transfer


def test_clean_history_has_no_findings(client, db_session, admin_token, world):
    _shipped_transfer(client, db_session, admin_token, world)
    db_session.expire_all()
    assert run_integrity_checks(db_session, world.tenant_id) == []


def test_aggregate_drift_is_critical(client, db_session, admin_token, world):
    seed_stock(db_session, world, branch="warehouse", product="widget", qty=10, unit_cost_pence=100)
    db_session.execute(
        update(ProductStock)
        .where(ProductStock.tenant_id == uuid.UUID(world.tenant_id))
        .values(qty_on_hand=7)
    )
    db_session.commit()

    ledger = check_aggregate_matches_ledger(db_session, world.tenant_id)
    assert len(ledger) == 1
    assert ledger[0].severity == "CRITICAL"
    assert ledger[0].details["qty_on_hand"] == 7
    assert ledger[0].details["ledger_sum"] == 10

    lots = check_lots_match_aggregate(db_session, world.tenant_id)
    assert [finding.check_id for finding in lots] == ["lots_equal_aggregate"]


def test_lot_drift_is_reported(client, db_session, admin_token, world):
    seed_stock(db_session, world, branch="warehouse", product="gadget", qty=3, unit_cost_pence=900)
    db_session.execute(
        update(StockLot).where(StockLot.tenant_id == uuid.UUID(world.tenant_id)).values(qty_remaining=1)
    )
    db_session.commit()

    assert check_aggregate_matches_ledger(db_session, world.tenant_id) == []
    findings = check_lots_match_aggregate(db_session, world.tenant_id)
    assert findings[0].details["lot_remaining_sum"] == 1


def test_counter_order_findings(client, db_session, admin_token, world):
    _shipped_transfer(client, db_session, admin_token, world)
    db_session.expire_all()
    assert check_transfer_item_counters(db_session, world.tenant_id) == []

    drifted = SimpleNamespace(
        id=uuid.uuid4(),
        transfer_id=uuid.uuid4(),
        qty_requested=4,
        qty_approved=4,
        qty_shipped=4,
        qty_received=5,
    )
    healthy = SimpleNamespace(
        id=uuid.uuid4(),
        transfer_id=drifted.transfer_id,
        qty_requested=4,
        qty_approved=4,
        qty_shipped=2,
        qty_received=1,
    )
    findings = transfer_item_counter_findings(world.tenant_id, [drifted, healthy])
    assert [finding.entity_id for finding in findings] == [str(drifted.id)]
    assert findings[0].severity == "CRITICAL"
    assert findings[0].details["qty_received"] == 5


def test_completed_without_timestamp_is_flagged(client, db_session, admin_token, world):
    transfer = _shipped_transfer(client, db_session, admin_token, world)
    db_session.execute(
        update(Transfer).where(Transfer.id == uuid.UUID(transfer["id"])).values(status="COMPLETED")
    )
    db_session.commit()
    db_session.expire_all()

    status = check_transfer_status(db_session, world.tenant_id)
    assert len(status) == 1
    assert status[0].severity == "WARN"
    assert "completed_at" in status[0].message


def test_status_disagreeing_with_counters_is_flagged(client, db_session, admin_token, world):
    transfer = _shipped_transfer(client, db_session, admin_token, world)
    db_session.execute(
        update(Transfer).where(Transfer.id == uuid.UUID(transfer["id"])).values(status="APPROVED")
    )
    db_session.commit()
    db_session.expire_all()

    status = check_transfer_status(db_session, world.tenant_id)
    assert [finding.entity_id for finding in status] == [transfer["id"]]
    assert "IN_TRANSIT" in status[0].message
