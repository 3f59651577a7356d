"""
Integration tests for the ledger API
Tests end-to-end workflows using FastAPI TestClient
"""

import io
import json
import logging
import tempfile
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from ledger_engine.api import app
from ledger_engine.api import dependencies
from ledger_engine.config import LedgerConfig
from ledger_engine.errors import ConcurrencyConflictError
from ledger_engine.logging_config import JSONFormatter
from ledger_engine.storage import SQLiteStorage
from ledger_engine.system import LedgerSystem


@pytest.fixture
def client():
    """Test client backed by a fresh in-memory ledger"""
    original = dependencies.ledger_system
    dependencies.set_ledger_system(LedgerSystem(LedgerConfig(database_url="memory://")))

    yield TestClient(app)

    dependencies.set_ledger_system(original)


def create_account(client, code, account_type, currency="USD", org="acme"):
    r = client.post("/accounts", json={
        "owner_org_id": org,
        "code": code,
        "account_type": account_type,
        "currency": currency
    })
    assert r.status_code == 201, r.text
    return r.json()["id"]


def open_transaction(client, reference_id="order-1", reference_type="order"):
    r = client.post("/transactions", json={
        "organization_id": "acme",
        "reference_type": reference_type,
        "reference_id": reference_id
    })
    assert r.status_code == 201, r.text
    return r.json()["id"]


def append(client, txn_id, account_id, direction, amount, currency="USD"):
    return client.post(f"/transactions/{txn_id}/entries", json={
        "account_id": account_id,
        "direction": direction,
        "amount": amount,
        "currency": currency
    })


class TestHealthEndpoints:
    """Test basic health and root endpoints"""

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        data = r.json()
        assert data["status"] == "healthy"
        assert data["database"] == "connected"
        assert data["storage"] == "InMemoryStorage"

    def test_root(self, client):
        r = client.get("/")
        assert r.status_code == 200
        assert "endpoints" in r.json()

    def test_health_reports_unreachable_storage(self):
        original = dependencies.ledger_system
        temp_dir = tempfile.TemporaryDirectory()
        storage = SQLiteStorage(Path(temp_dir.name) / "ledger.db")
        dependencies.set_ledger_system(LedgerSystem(LedgerConfig(database_url="memory://"), storage=storage))
        try:
            storage.close()
            r = TestClient(app).get("/health")
            assert r.status_code == 503
            data = r.json()
            assert data["status"] == "unhealthy"
            assert data["database"] == "disconnected"
            assert data["error"]
        finally:
            dependencies.set_ledger_system(original)
            temp_dir.cleanup()

    def test_shutdown_closes_ledger_system(self):
        original = dependencies.ledger_system
        temp_dir = tempfile.TemporaryDirectory()
        storage = SQLiteStorage(Path(temp_dir.name) / "ledger.db")
        dependencies.set_ledger_system(LedgerSystem(LedgerConfig(database_url="memory://"), storage=storage))
        try:
            with TestClient(app) as client:
                assert client.get("/health").status_code == 200
            assert dependencies.ledger_system is None
            assert storage._connection is None
        finally:
            dependencies.set_ledger_system(original)
            temp_dir.cleanup()


class TestRequestLogging:
    """Test the per-request log line"""

    def setup_method(self):
        self.stream = io.StringIO()
        self.logger = logging.getLogger("ledger.api")
        self.handler = logging.StreamHandler(self.stream)
        self.handler.setFormatter(JSONFormatter())
        self.logger.addHandler(self.handler)
        self.previous_level = self.logger.level
        self.logger.setLevel(logging.INFO)

    def teardown_method(self):
        self.logger.removeHandler(self.handler)
        self.logger.setLevel(self.previous_level)

    def test_request_is_logged(self, client):
        client.get("/accounts/missing")

        lines = [json.loads(line) for line in self.stream.getvalue().splitlines()]
        requests = [line for line in lines if line.get("action") == "http_request"]
        assert len(requests) == 1
        assert requests[0]["resource"] == "/accounts/missing"
        assert requests[0]["extra"]["method"] == "GET"
        assert requests[0]["extra"]["status_code"] == 404
        assert requests[0]["extra"]["duration_ms"] >= 0


class TestAccountEndpoints:
    """Test account endpoints"""

    def test_create_and_get(self, client):
        account_id = create_account(client, "checking", "liability")

        r = client.get(f"/accounts/{account_id}")
        assert r.status_code == 200
        data = r.json()
        assert data["code"] == "checking"
        assert data["status"] == "open"
        assert data["owner_org_id"] == "acme"

    def test_create_validation_errors(self, client):
        create_account(client, "checking", "liability")

        duplicate = client.post("/accounts", json={
            "owner_org_id": "acme", "code": "checking", "account_type": "asset", "currency": "USD"
        })
        assert duplicate.status_code == 400

        bad_type = client.post("/accounts", json={
            "owner_org_id": "acme", "code": "x", "account_type": "bogus", "currency": "USD"
        })
        assert bad_type.status_code == 400

        no_owner = client.post("/accounts", json={
            "code": "y", "account_type": "asset", "currency": "USD"
        })
        assert no_owner.status_code == 400

        bad_currency = client.post("/accounts", json={
            "owner_org_id": "acme", "code": "z", "account_type": "asset", "currency": "XXX"
        })
        assert bad_currency.status_code == 400

    def test_unknown_account(self, client):
        assert client.get("/accounts/missing").status_code == 404
        assert client.get("/accounts/missing/balance").status_code == 404

    def test_lifecycle(self, client):
        account_id = create_account(client, "cash", "asset")

        r = client.post(f"/accounts/{account_id}/suspend", json={"reason": "review"})
        assert r.status_code == 200
        assert r.json()["status"] == "suspended"

        assert client.post(f"/accounts/{account_id}/suspend", json={}).status_code == 409

        r = client.post(f"/accounts/{account_id}/reopen", json={})
        assert r.json()["status"] == "open"

        r = client.post(f"/accounts/{account_id}/close", json={"reason": "unused"})
        assert r.status_code == 200
        assert r.json()["status"] == "closed"

    def test_close_with_balance_conflicts(self, client):
        cash = create_account(client, "cash", "asset")
        capital = create_account(client, "capital", "equity")
        txn = open_transaction(client)
        append(client, txn, cash, "debit", "5.00")
        append(client, txn, capital, "credit", "5.00")
        assert client.post(f"/transactions/{txn}/post", json={}).status_code == 200

        r = client.post(f"/accounts/{cash}/close", json={})
        assert r.status_code == 409
        assert r.json()["detail"]["balance"] == "5.00"


class TestTransactionWorkflow:
    """Test the draft -> post workflow over HTTP"""

    def test_balanced_post(self, client):
        checking = create_account(client, "checking", "liability")
        revenue = create_account(client, "revenue", "revenue")
        txn = open_transaction(client)

        assert append(client, txn, checking, "debit", "100.00").status_code == 201
        assert append(client, txn, revenue, "credit", "100.00").status_code == 201

        check = client.get(f"/transactions/{txn}/balance-check").json()
        assert check["balanced"] is True

        r = client.post(f"/transactions/{txn}/post", json={"actor": "api-test"})
        assert r.status_code == 200
        assert r.json()["status"] == "posted"

        r = client.get(f"/accounts/{checking}/balance")
        assert r.json()["balance"] == {"amount": "-100.00", "currency": "USD"}
        assert r.json()["derived_balance"] == {"amount": "-100.00", "currency": "USD"}

        r = client.get(f"/accounts/{revenue}/balance")
        assert r.json()["balance"]["amount"] == "100.00"

        r = client.get(f"/transactions/{txn}")
        assert [e["status"] for e in r.json()["entries"]] == ["posted", "posted"]

    def test_unbalanced_post_returns_422(self, client):
        checking = create_account(client, "checking", "liability")
        txn = open_transaction(client, "order-2")
        append(client, txn, checking, "debit", "50.00")

        r = client.post(f"/transactions/{txn}/post", json={})
        assert r.status_code == 422
        detail = r.json()["detail"]
        assert detail["currency"] == "USD"
        assert detail["residual"] == "50.00"

        assert client.get(f"/transactions/{txn}").json()["status"] == "draft"

    def test_entry_errors(self, client):
        cash = create_account(client, "cash", "asset")
        txn = open_transaction(client)

        assert append(client, txn, cash, "debit", "0").status_code == 400
        assert append(client, txn, cash, "debit", "1.001").status_code == 400
        assert append(client, txn, cash, "debit", "1.00", currency="EUR").status_code == 400
        assert append(client, txn, "missing", "debit", "1.00").status_code == 404
        assert append(client, "missing", cash, "debit", "1.00").status_code == 404

        client.post(f"/accounts/{cash}/suspend", json={})
        assert append(client, txn, cash, "debit", "1.00").status_code == 409

    def test_remove_and_list_entries(self, client):
        cash = create_account(client, "cash", "asset")
        txn = open_transaction(client)
        entry_id = append(client, txn, cash, "debit", "1.00").json()["id"]

        r = client.delete(f"/transactions/{txn}/entries/{entry_id}")
        assert r.status_code == 200
        assert client.get(f"/transactions/{txn}/entries").json()["entries"] == []

        assert client.delete(f"/transactions/{txn}/entries/{entry_id}").status_code == 404

    def test_void(self, client):
        cash = create_account(client, "cash", "asset")
        txn = open_transaction(client)
        append(client, txn, cash, "debit", "1.00")

        r = client.post(f"/transactions/{txn}/void", json={"reason": "cancelled"})
        assert r.status_code == 200
        assert r.json()["status"] == "void"

        assert client.post(f"/transactions/{txn}/post", json={}).status_code == 409
        assert append(client, txn, cash, "debit", "1.00").status_code == 409

    def test_reverse(self, client):
        cash = create_account(client, "cash", "asset")
        sales = create_account(client, "sales", "revenue")
        txn = open_transaction(client)
        append(client, txn, cash, "debit", "30.00")
        append(client, txn, sales, "credit", "30.00")
        client.post(f"/transactions/{txn}/post", json={})

        r = client.post(f"/transactions/{txn}/reverse", json={"reason": "refund"})
        assert r.status_code == 200
        data = r.json()
        assert data["reverses"] == txn
        assert data["reference_type"] == "reversal"
        assert [e["direction"] for e in data["entries"]] == ["credit", "debit"]

        assert client.get(f"/accounts/{cash}/balance").json()["balance"]["amount"] == "0.00"
        assert client.get(f"/transactions/{txn}").json()["reversed_by"] == data["id"]
        assert client.post(f"/transactions/{txn}/reverse", json={}).status_code == 409

    def test_bad_reference_type(self, client):
        r = client.post("/transactions", json={"reference_type": "invoice", "reference_id": "1"})
        assert r.status_code == 400

    def test_conflict_maps_to_503(self, client, monkeypatch):
        system = dependencies.get_ledger_system()
        cash = create_account(client, "cash", "asset")
        sales = create_account(client, "sales", "revenue")
        txn = open_transaction(client)
        append(client, txn, cash, "debit", "1.00")
        append(client, txn, sales, "credit", "1.00")

        def busy(*args, **kwargs):
            raise ConcurrencyConflictError("locked")

        monkeypatch.setattr(system.transactions, "post_with_retry", busy)
        r = client.post(f"/transactions/{txn}/post", json={})
        assert r.status_code == 503
        assert r.headers["Retry-After"] == "1"
