"""
Integration tests for the Cycle Ledger API
Tests end-to-end workflows using FastAPI TestClient
"""

import pytest
from fastapi.testclient import TestClient

from cycle_ledger.api import create_app
from cycle_ledger.config import LedgerConfig
from cycle_ledger.storage import InMemoryStorage
from cycle_ledger.system import LedgerSystem


@pytest.fixture
def client(tmp_path):
    """Create a test client over an in-memory ledger"""
    config = LedgerConfig(database_url="memory://", upload_dir=str(tmp_path / "uploads"))
    system = LedgerSystem(storage=InMemoryStorage(), config=config)
    return TestClient(create_app(system))


def buy(client, cycle="Loop 1", **overrides):
    body = {
        "type": "BUY",
        "cycle": cycle,
        "transactionValue": 3000,
        "transactionCurrency": "TRY",
        "amountReceived": 100,
    }
    body.update(overrides)
    return client.post("/transactions", json=body)


class TestHealthEndpoints:

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"


class TestTransactionFlow:
    """End-to-end transaction tests"""

    def test_create_and_list(self, client):
        r = buy(client, senderName="Alice", recipientInstitution="Bank A")
        assert r.status_code == 200
        data = r.json()
        assert data["type"] == "BUY"
        assert data["cycle"] == "Loop 1"
        assert data["amount_received"] == "100"
        assert data["effective_rate_try"] == "30"
        assert data["recipient_institution"] == "Bank A"

        listed = client.get("/transactions").json()
        assert [t["id"] for t in listed] == [data["id"]]

        institutions = client.get("/transactions/institutions").json()
        assert [i["name"] for i in institutions] == ["Bank A"]

    def test_snake_case_body_accepted(self, client):
        r = client.post("/transactions", json={
            "type": "DEPOSIT_BALANCE_CORRECTION",
            "cycle": "Loop 1",
            "amount": "12.5",
        })
        assert r.status_code == 200
        assert r.json()["amount_received"] == "12.5"

    def test_usd_buy_without_rate(self, client):
        r = buy(client, transactionValue=100, transactionCurrency="USD", amountReceived=99)
        assert r.status_code == 400
        assert r.json()["code"] == "validation_error"
        assert client.get("/transactions").json() == []

    def test_withdraw_exceeding_balance(self, client):
        buy(client)
        r = client.post("/transactions", json={
            "type": "WITHDRAW_BALANCE_CORRECTION", "cycle": "Loop 1", "amount": 101,
        })
        assert r.status_code == 400
        body = r.json()
        assert body["code"] == "insufficient_balance"
        assert "exceeds cycle balance" in body["error"]
        assert len(client.get("/transactions").json()) == 1

    def test_settlement_returns_both_legs(self, client):
        buy(client, cycle="A")
        r = client.post("/transactions", json={
            "type": "CYCLE_SETTLEMENT", "fromCycle": "A", "toCycle": "B", "amount": 40,
        })
        assert r.status_code == 200
        legs = r.json()
        assert len(legs) == 2
        assert legs[0]["amount_sold"] == legs[1]["amount_received"] == "40"
        assert [leg["cycle"] for leg in legs] == ["A", "B"]

    def test_settlement_not_editable(self, client):
        buy(client, cycle="A")
        legs = client.post("/transactions", json={
            "type": "CYCLE_SETTLEMENT", "fromCycle": "A", "toCycle": "B", "amount": 1,
        }).json()

        r = client.patch(f"/transactions/{legs[0]['id']}", json={
            "type": "DEPOSIT_BALANCE_CORRECTION", "cycle": "A", "amount": 1,
        })
        assert r.status_code == 400
        assert r.json()["code"] == "immutable_transaction"

    def test_update_and_delete(self, client):
        created = buy(client).json()

        r = client.patch(f"/transactions/{created['id']}", json={
            "type": "SELL", "cycle": "Loop 1", "amountSold": 1, "pricePerUnit": 31,
        })
        assert r.status_code == 400

        r = client.patch(f"/transactions/{created['id']}", json={
            "type": "DEPOSIT_BALANCE_CORRECTION", "cycle": "Loop 1", "amount": 5,
        })
        assert r.status_code == 200
        assert r.json()["type"] == "DEPOSIT_BALANCE_CORRECTION"

        r = client.delete(f"/transactions/{created['id']}")
        assert r.json() == {"success": True, "deleted_transaction_id": created["id"]}

        r = client.delete(f"/transactions/{created['id']}")
        assert r.status_code == 404
        assert r.json()["code"] == "not_found"

    def test_unknown_type_rejected_by_schema(self, client):
        r = client.post("/transactions", json={"type": "GIFT", "cycle": "A", "amount": 1})
        assert r.status_code == 422


class TestCycleFlow:
    """End-to-end cycle tests"""

    def test_cycle_lifecycle(self, client):
        cycle = client.post("/transactions/cycles", json={"name": " Main "}).json()
        assert cycle["name"] == "Main"

        renamed = client.patch(f"/transactions/cycles/{cycle['id']}", json={"name": "Primary"})
        assert renamed.json()["name"] == "Primary"

        buy(client, cycle="Primary")
        buy(client, cycle="Primary")
        balance = client.get(f"/transactions/cycles/{cycle['id']}/balance").json()
        assert balance["balance"] == "200"

        undo = client.post(f"/transactions/cycles/{cycle['id']}/undo-last").json()
        assert undo["success"] is True

        reset = client.post(f"/transactions/cycles/{cycle['id']}/reset").json()
        assert reset == {"success": True, "deleted_transactions": 1}

        r = client.delete(f"/transactions/cycles/{cycle['id']}")
        assert r.json() == {"success": True}
        assert client.get("/transactions/cycles").json() == []

    def test_missing_cycle(self, client):
        r = client.post("/transactions/cycles/missing/reset")
        assert r.status_code == 404


class TestInstitutionFlow:

    def test_create_with_icon_and_fetch(self, client):
        r = client.post(
            "/transactions/institutions",
            data={"name": "Bank A"},
            files={"icon": ("logo.png", b"\x89PNGdata", "image/png")},
        )
        assert r.status_code == 200
        file_name = r.json()["icon_file_name"]

        icon = client.get(f"/transactions/institutions/icon/{file_name}")
        assert icon.status_code == 200
        assert icon.headers["content-type"] == "image/png"
        assert icon.content == b"\x89PNGdata"

    def test_non_image_icon(self, client):
        r = client.post(
            "/transactions/institutions",
            data={"name": "Bank A"},
            files={"icon": ("notes.txt", b"hello", "text/plain")},
        )
        assert r.status_code == 400

    def test_missing_icon_is_404(self, client):
        r = client.get("/transactions/institutions/icon/%2e%2e")
        assert r.status_code == 404
        r = client.get("/transactions/institutions/icon/none.png")
        assert r.status_code == 404
        assert r.json()["error"] == "Institution icon not found"


class TestSimulatorEndpoint:

    def test_local_mode(self, client):
        r = client.post("/simulate", json={
            "startingCapital": 100, "exchangeRate": 30, "sellRate": 31,
            "buyCommission": 0, "loopCount": 1,
            "useExchangeRate": True, "applyCommission": False, "compoundProfits": False,
        })
        assert r.status_code == 200
        data = r.json()
        assert data["mode"] == "buy-in-lira"
        assert len(data["loops"]) == 1
        assert data["loops"][0]["sell_try"] == "3100"

    def test_invalid_input(self, client):
        r = client.post("/simulate", json={"startingCapital": 0, "exchangeRate": 30, "sellRate": 31})
        assert r.status_code == 400
        assert r.json()["field"] == "starting_capital"
