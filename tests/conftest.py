import importlib
import os
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from alembic import command
from alembic.config import Config

from tests.db_utils import create_postgres_test_database


def _setup_app(database_url: str):
    os.environ["DATABASE_URL"] = database_url
    os.environ["SECRET_KEY"] = "test-secret"

    import app.stockflow.core.config as config
    import app.stockflow.db.session as session
    import app.main as main

    importlib.reload(config)
    importlib.reload(session)
    importlib.reload(main)

    return main.create_app(), session


def _run_migrations(database_url: str):
    os.environ["DATABASE_URL"] = database_url
    config = Config("alembic.ini")
    config.set_main_option("sqlalchemy.url", database_url)
    command.upgrade(config, "head")


@pytest.fixture()
def database_url(tmp_path: Path):
    url = os.getenv("DATABASE_URL", "")
    cleanup = None
    if url.startswith("postgres"):
        url, cleanup = create_postgres_test_database(url)
    else:
        url = f"sqlite+pysqlite:///{tmp_path / 'test.db'}"
    yield url
    if cleanup:
        cleanup()


@pytest.fixture()
def client(database_url):
    _run_migrations(database_url)
    app, session = _setup_app(database_url)

    with TestClient(app) as client:
        yield client

    session.engine.dispose()


@pytest.fixture()
def db_session(client):
    from app.stockflow.db.session import SessionLocal

    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture()
def other_session(client):
    """A second, independent session for racing writes against ``db_session``."""
    from app.stockflow.db.session import SessionLocal

    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture()
def world(db_session):
    from tests.stockflow_helpers import create_world

    return create_world(db_session)


@pytest.fixture()
def admin_token(client, db_session, world):
    from tests.stockflow_helpers import create_user, login

    create_user(db_session, world, "admin-user", role="ADMIN", branches=("warehouse", "store"))
    return login(client, "admin-user")
