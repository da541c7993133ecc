import uuid

from app.stockflow.db.models import AuditEvent

from tests.stockflow_helpers import auth_headers, create_rule, create_transfer, create_user, login


def _qty_rule_levels(world, count=1, role="ADMIN"):
    return [{"level": n, "name": f"Level {n}", "required_role_id": world.role_ids[role]} for n in range(1, count + 1)]


def test_create_and_fetch_rule(client, db_session, admin_token, world):
    response = create_rule(
        client,
        admin_token,
        name="Bulk moves",
        conditions=[
            {"condition_type": "TOTAL_QTY_THRESHOLD", "threshold": 100},
            {"condition_type": "SOURCE_BRANCH", "branch_id": world.branch_ids["warehouse"]},
        ],
        levels=_qty_rule_levels(world, 2),
        priority=5,
    )
    assert response.status_code == 201
    body = response.json()
    assert body["name"] == "Bulk moves"
    assert body["priority"] == 5
    assert [condition["condition_type"] for condition in body["conditions"]] == [
        "TOTAL_QTY_THRESHOLD",
        "SOURCE_BRANCH",
    ]
    assert [level["level"] for level in body["levels"]] == [1, 2]

    fetched = client.get(f"/stockflow/transfer-approval-rules/{body['id']}", headers=auth_headers(admin_token))
    assert fetched.status_code == 200
    assert fetched.json()["id"] == body["id"]

    event = db_session.query(AuditEvent).filter(AuditEvent.action == "transfer_approval_rule.create").first()
    assert event is not None


def test_create_rule_requires_idempotency_key(client, admin_token, world):
    response = client.post(
        "/stockflow/transfer-approval-rules",
        headers=auth_headers(admin_token),
        json={
            "name": "No key",
            "conditions": [{"condition_type": "TOTAL_QTY_THRESHOLD", "threshold": 1}],
            "levels": _qty_rule_levels(world),
        },
    )
    assert response.status_code == 400
    assert response.json()["code"] == "IDEMPOTENCY_KEY_REQUIRED"


def test_levels_must_be_contiguous(client, admin_token, world):
    response = create_rule(
        client,
        admin_token,
        conditions=[{"condition_type": "TOTAL_QTY_THRESHOLD", "threshold": 1}],
        levels=[
            {"level": 1, "name": "First", "required_role_id": world.role_ids["ADMIN"]},
            {"level": 3, "name": "Third", "required_role_id": world.role_ids["ADMIN"]},
        ],
    )
    assert response.status_code == 422
    assert response.json()["code"] == "VALIDATION_ERROR"


def test_level_needs_exactly_one_requirement(client, admin_token, world):
    response = create_rule(
        client,
        admin_token,
        conditions=[{"condition_type": "TOTAL_QTY_THRESHOLD", "threshold": 1}],
        levels=[{"level": 1, "name": "Nobody"}],
    )
    assert response.status_code == 422


def test_rule_without_conditions_is_rejected(client, admin_token, world):
    response = create_rule(client, admin_token, conditions=[], levels=_qty_rule_levels(world))
    assert response.status_code == 422


def test_rule_rejects_unknown_role_and_branch(client, admin_token, world):
    unknown_role = create_rule(
        client,
        admin_token,
        conditions=[{"condition_type": "TOTAL_QTY_THRESHOLD", "threshold": 1}],
        levels=[{"level": 1, "name": "Ghost", "required_role_id": str(uuid.uuid4())}],
    )
    assert unknown_role.status_code == 422

    unknown_branch = create_rule(
        client,
        admin_token,
        conditions=[{"condition_type": "DESTINATION_BRANCH", "branch_id": str(uuid.uuid4())}],
        levels=_qty_rule_levels(world),
    )
    assert unknown_branch.status_code == 422


def test_approval_group_only_in_hybrid_mode(client, admin_token, world):
    response = create_rule(
        client,
        admin_token,
        approval_mode="PARALLEL",
        conditions=[{"condition_type": "TOTAL_QTY_THRESHOLD", "threshold": 1}],
        levels=[
            {"level": 1, "name": "Ops", "required_role_id": world.role_ids["ADMIN"], "approval_group": "ops"},
        ],
    )
    assert response.status_code == 422


def test_only_rule_managers_may_create_rules(client, db_session, world):
    create_user(db_session, world, "manager", role="MANAGER")
    token = login(client, "manager")
    response = create_rule(
        client,
        token,
        conditions=[{"condition_type": "TOTAL_QTY_THRESHOLD", "threshold": 1}],
        levels=_qty_rule_levels(world),
    )
    assert response.status_code == 403
    assert response.json()["code"] == "PERMISSION_DENIED"


def test_update_archive_restore_cycle(client, admin_token, world):
    rule = create_rule(
        client,
        admin_token,
        conditions=[{"condition_type": "TOTAL_QTY_THRESHOLD", "threshold": 1}],
        levels=_qty_rule_levels(world),
    ).json()
    url = f"/stockflow/transfer-approval-rules/{rule['id']}"

    updated = client.patch(url, headers=auth_headers(admin_token), json={"priority": 9, "is_active": False})
    assert updated.status_code == 200
    assert updated.json()["priority"] == 9
    assert updated.json()["is_active"] is False

    archived = client.delete(url, headers=auth_headers(admin_token))
    assert archived.status_code == 200
    assert archived.json()["is_archived"] is True

    listed = client.get("/stockflow/transfer-approval-rules", headers=auth_headers(admin_token))
    assert rule["id"] not in [item["id"] for item in listed.json()["items"]]

    archived_only = client.get(
        "/stockflow/transfer-approval-rules",
        headers=auth_headers(admin_token),
        params={"archived": "archived-only"},
    )
    assert [item["id"] for item in archived_only.json()["items"]] == [rule["id"]]

    twice = client.delete(url, headers=auth_headers(admin_token))
    assert twice.status_code == 409

    restored = client.post(f"{url}/restore", headers=auth_headers(admin_token))
    assert restored.status_code == 200
    assert restored.json()["is_archived"] is False


def test_list_rules_pagination_and_total(client, admin_token, world):
    for priority in range(3):
        create_rule(
            client,
            admin_token,
            priority=priority,
            conditions=[{"condition_type": "TOTAL_QTY_THRESHOLD", "threshold": 1}],
            levels=_qty_rule_levels(world),
        )
    first = client.get(
        "/stockflow/transfer-approval-rules",
        headers=auth_headers(admin_token),
        params={"limit": 2, "include_total": True},
    ).json()
    assert [item["priority"] for item in first["items"]] == [2, 1]
    assert first["total"] == 3
    second = client.get(
        "/stockflow/transfer-approval-rules",
        headers=auth_headers(admin_token),
        params={"limit": 2, "cursor": first["next_cursor"]},
    ).json()
    assert [item["priority"] for item in second["items"]] == [0]
    assert second["next_cursor"] is None


def test_unmatched_transfer_is_approved_immediately(client, admin_token, world):
    create_rule(
        client,
        admin_token,
        conditions=[{"condition_type": "TOTAL_QTY_THRESHOLD", "threshold": 100}],
        levels=_qty_rule_levels(world),
    )
    response = create_transfer(client, admin_token, world, items=[("widget", 10)])
    assert response.status_code == 201
    body = response.json()
    assert body["status"] == "APPROVED"
    assert body["requires_multi_level_approval"] is False
    assert body["approval_records"] == []
    assert [item["qty_approved"] for item in body["items"]] == [10]


def test_highest_priority_matching_rule_wins(client, admin_token, world):
    low = create_rule(
        client,
        admin_token,
        name="Low",
        priority=1,
        conditions=[{"condition_type": "TOTAL_QTY_THRESHOLD", "threshold": 5}],
        levels=_qty_rule_levels(world, 1),
    ).json()
    high = create_rule(
        client,
        admin_token,
        name="High",
        priority=10,
        conditions=[{"condition_type": "TOTAL_VALUE_THRESHOLD", "threshold": 1000}],
        levels=_qty_rule_levels(world, 2),
    ).json()

    body = create_transfer(client, admin_token, world, items=[("widget", 10)]).json()
    assert body["status"] == "REQUESTED"
    assert body["approval_rule_id"] == high["id"]
    assert len(body["approval_records"]) == 2
    assert body["approval_rule_id"] != low["id"]


def test_equal_priority_prefers_older_rule(client, admin_token, world):
    older = create_rule(
        client,
        admin_token,
        name="Older",
        conditions=[{"condition_type": "DESTINATION_BRANCH", "branch_id": world.branch_ids["store"]}],
        levels=_qty_rule_levels(world, 1),
    ).json()
    create_rule(
        client,
        admin_token,
        name="Newer",
        conditions=[{"condition_type": "SOURCE_BRANCH", "branch_id": world.branch_ids["warehouse"]}],
        levels=_qty_rule_levels(world, 2),
    )

    body = create_transfer(client, admin_token, world, items=[("gadget", 1)]).json()
    assert body["approval_rule_id"] == older["id"]


def test_inactive_and_archived_rules_are_skipped(client, admin_token, world):
    inactive = create_rule(
        client,
        admin_token,
        priority=5,
        conditions=[{"condition_type": "TOTAL_QTY_THRESHOLD", "threshold": 0}],
        levels=_qty_rule_levels(world),
    ).json()
    client.patch(
        f"/stockflow/transfer-approval-rules/{inactive['id']}",
        headers=auth_headers(admin_token),
        json={"is_active": False},
    )
    archived = create_rule(
        client,
        admin_token,
        priority=4,
        conditions=[{"condition_type": "TOTAL_QTY_THRESHOLD", "threshold": 0}],
        levels=_qty_rule_levels(world),
    ).json()
    client.delete(f"/stockflow/transfer-approval-rules/{archived['id']}", headers=auth_headers(admin_token))

    body = create_transfer(client, admin_token, world, items=[("widget", 1)]).json()
    assert body["status"] == "APPROVED"
