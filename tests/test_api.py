from datetime import date

from fastapi.testclient import TestClient

from cache import MemoryCache
from main import AppContext, app, get_context
from remote import InMemoryRemoteStore
from store import LedgerStore
from sync import BackoffPolicy, SyncManager


def make_client():
    store = LedgerStore(MemoryCache())
    remote = InMemoryRemoteStore()
    sync = SyncManager(store, remote, backoff=BackoffPolicy(5, 60))
    ctx = AppContext(store, sync, today=date(2025, 1, 10))
    app.dependency_overrides[get_context] = lambda: ctx
    return TestClient(app), remote


def test_transaction_lifecycle_is_synced():
    client, remote = make_client()
    try:
        resp = client.post(
            "/transactions",
            json={
                "description": "Gym",
                "amount": "-20",
                "operation_date": "2025-01-01",
                "recurrence_rule": "weekly",
            },
        )
        assert resp.status_code == 201
        master_id = resp.json()[0]["id"]

        day = client.get("/days/2025-01-08").json()
        assert [t["id"] for t in day] == [f"{master_id}_2025-01-08"]

        resp = client.delete(f"/transactions/{master_id}_2025-01-08", params={"scope": "single"})
        assert resp.status_code == 200
        assert client.get("/days/2025-01-08").json() == []

        status = client.get("/sync/status").json()
        assert status["pending"] == []
        assert status["synced"] is True
        assert remote._data["transactions"][0]["exceptions"] == ["2025-01-08"]
    finally:
        app.dependency_overrides.clear()


def test_validation_and_not_found_errors():
    client, _ = make_client()
    try:
        resp = client.post(
            "/transactions",
            json={"description": "Bad", "amount": "-5", "operation_date": "2025-01-01", "method": "Amex"},
        )
        assert resp.status_code == 400
        assert client.get("/transactions/missing").status_code == 404
        assert client.get("/days/2025-13-01").status_code == 400
        assert client.delete("/cards/Cash").status_code == 400
        assert client.delete("/cards/Amex").status_code == 404
    finally:
        app.dependency_overrides.clear()


def test_balances_and_invoices():
    client, _ = make_client()
    try:
        client.put("/start-balance", json={"amount": "1000"})
        client.post("/cards", json={"name": "Visa", "closing_day": 10, "due_day": 20})
        client.post(
            "/transactions",
            json={"description": "Rent", "amount": "-100", "operation_date": "2025-01-05"},
        )
        client.post(
            "/transactions",
            json={
                "description": "Shoes",
                "amount": "-50",
                "method": "Visa",
                "operation_date": "2025-03-12",
            },
        )

        assert client.get("/balances/2025-01-05").json()["balance"] == "900"
        assert client.get("/balances/2025-04-20").json()["balance"] == "850"
        balances = client.get("/balances", params={"start": "2025-01-01", "end": "2025-01-31"}).json()
        assert len(balances) == 31

        invoice = client.get("/invoices/Visa/2025-04-20").json()
        assert invoice["total"] == "-50"
        assert len(invoice["items"]) == 1
        assert client.get("/methods").json() == ["Cash", "Visa"]
        assert client.get("/stats").json()["current"] == "900"
    finally:
        app.dependency_overrides.clear()


def test_offline_changes_flush_when_back_online():
    client, remote = make_client()
    try:
        client.post("/sync/online", params={"online": "false"})
        client.post("/cards", json={"name": "Visa", "closing_day": 10, "due_day": 20})
        assert client.get("/sync/status").json()["pending"] == ["cards"]
        assert "cards" not in remote._data

        status = client.post("/sync/online", params={"online": "true"}).json()

        assert status["pending"] == []
        assert remote._data["cards"][0]["name"] == "Visa"
    finally:
        app.dependency_overrides.clear()
