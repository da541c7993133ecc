from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from app.stockflow.core.errors import setup_exception_handlers
from app.stockflow.core.metrics import metrics

from tests.stockflow_helpers import create_transfer


def test_lock_timeout_increments_metric():
    metrics.reset()
    app = FastAPI()
    setup_exception_handlers(app)

    @app.get("/lock-timeout")
    def lock_timeout():
        raise OperationalError("SELECT 1", {}, Exception("lock timeout"))

    with TestClient(app, raise_server_exceptions=False) as client:
        response = client.get("/lock-timeout")

    assert response.status_code == 409
    assert response.json()["code"] == "LOCK_TIMEOUT"

    content = metrics.render().content.decode("utf-8")
    if metrics.enabled:
        assert "lock_wait_timeout_total" in content
    else:
        assert "metrics_disabled" in content


def test_metrics_endpoint_reports_requests_and_transitions(client, admin_token, world):
    metrics.reset()
    create_transfer(client, admin_token, world, items=[("widget", 1)])

    response = client.get("/stockflow/ops/metrics")
    assert response.status_code == 200
    if not metrics.enabled:
        assert response.text == "metrics_disabled\n"
        return
    assert 'transfer_transitions_total{status="APPROVED"} 1.0' in response.text
    assert 'route="/stockflow/stock-transfers"' in response.text
