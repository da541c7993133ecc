from app.main import app


def _parameters(operation):
    return {parameter["name"]: parameter for parameter in operation.get("parameters", [])}


def test_paths_are_tagged_and_named():
    paths = app.openapi()["paths"]

    assert paths["/stockflow/stock-transfers"]["post"]["tags"] == ["Stock Transfers"]
    assert paths["/stockflow/transfer-approval-rules"]["get"]["tags"] == ["Transfer Approval Rules"]
    assert paths["/stockflow/stock/receive"]["post"]["tags"] == ["Stock"]
    assert paths["/health"]["get"]["tags"] == ["Ops"]
    assert paths["/stockflow/stock-transfers/{transfer_id}/ship"]["post"]["operationId"] == (
        "post_stockflow_stock_transfers_transfer_id_ship"
    )


def test_idempotency_header_is_documented():
    paths = app.openapi()["paths"]

    create = _parameters(paths["/stockflow/stock-transfers"]["post"])
    assert create["Idempotency-Key"]["required"] is True

    ship = _parameters(paths["/stockflow/stock-transfers/{transfer_id}/ship"]["post"])
    assert ship["Idempotency-Key"]["required"] is False

    login = _parameters(paths["/stockflow/auth/login"]["post"])
    assert "Idempotency-Key" not in login
