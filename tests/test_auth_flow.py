from app.stockflow.core.security import decode_token
from app.stockflow.db.models import AuditEvent, TenantMembership

from tests.stockflow_helpers import PASSWORD, auth_headers, create_user, create_world, login


def test_login_with_username_returns_tenant_scoped_token(client, db_session):
    world = create_world(db_session)
    user_id = create_user(db_session, world, "jane")

    response = client.post("/stockflow/auth/login", json={"username_or_email": "jane", "password": PASSWORD})

    assert response.status_code == 200
    body = response.json()
    assert body["token_type"] == "bearer"
    assert body["tenant_id"] == world.tenant_id
    assert body["user_id"] == user_id
    claims = decode_token(body["access_token"])
    assert claims["sub"] == user_id
    assert claims["tenant_id"] == world.tenant_id


def test_login_with_email(client, db_session):
    world = create_world(db_session)
    create_user(db_session, world, "jane")

    response = client.post(
        "/stockflow/auth/login",
        json={"username_or_email": "jane@example.com", "password": PASSWORD},
    )
    assert response.status_code == 200


def test_login_invalid_password(client, db_session):
    world = create_world(db_session)
    create_user(db_session, world, "jane")

    response = client.post("/stockflow/auth/login", json={"username_or_email": "jane", "password": "wrong-pass"})
    assert response.status_code == 401
    assert response.json()["code"] == "INVALID_CREDENTIALS"


def test_login_unknown_user(client):
    response = client.post("/stockflow/auth/login", json={"username_or_email": "ghost", "password": PASSWORD})
    assert response.status_code == 401
    assert response.json()["code"] == "INVALID_CREDENTIALS"


def test_login_blocked_inactive(client, db_session):
    world = create_world(db_session)
    create_user(db_session, world, "jane")
    from app.stockflow.db.models import User

    user = db_session.query(User).filter(User.username == "jane").one()
    user.is_active = False
    db_session.commit()

    response = client.post("/stockflow/auth/login", json={"username_or_email": "jane", "password": PASSWORD})
    assert response.status_code == 403
    assert response.json()["code"] == "USER_INACTIVE"


def test_login_requires_tenant_when_user_has_several(client, db_session):
    first = create_world(db_session, suffix="one")
    second = create_world(db_session, suffix="two")
    user_id = create_user(db_session, first, "multi")
    db_session.add(TenantMembership(tenant_id=second.tenant_id, user_id=user_id, role_id=second.role_ids["STAFF"]))
    db_session.commit()

    ambiguous = client.post("/stockflow/auth/login", json={"username_or_email": "multi", "password": PASSWORD})
    assert ambiguous.status_code == 403
    assert ambiguous.json()["code"] == "TENANT_SCOPE_REQUIRED"

    scoped = client.post(
        "/stockflow/auth/login",
        json={"username_or_email": "multi", "password": PASSWORD, "tenant_id": second.tenant_id},
    )
    assert scoped.status_code == 200
    assert scoped.json()["tenant_id"] == second.tenant_id


def test_login_writes_audit_event(client, db_session):
    world = create_world(db_session)
    create_user(db_session, world, "jane")
    login(client, "jane")

    event = db_session.query(AuditEvent).filter(AuditEvent.action == "auth.login").first()
    assert event is not None
    assert event.result == "success"
    assert str(event.tenant_id) == world.tenant_id


def test_protected_route_rejects_missing_and_bad_tokens(client):
    missing = client.get("/stockflow/stock-transfers")
    assert missing.status_code == 401

    bad = client.get("/stockflow/stock-transfers", headers=auth_headers("not-a-jwt"))
    assert bad.status_code == 401
    assert bad.json()["code"] == "INVALID_TOKEN"
