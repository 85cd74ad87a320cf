"""
Integration tests for the Banking Core API
Tests end-to-end flows using FastAPI TestClient
"""

import pytest
from decimal import Decimal
from fastapi.testclient import TestClient

from banking_core.api import create_app, status_for
from banking_core.errors import (
    AccountNotActive, BankingError, CollaboratorUnavailable, InsufficientFunds, OwnerNotFound,
    PositiveBalance, RateLimitExceeded
)

from helpers import build_system


TELLER = {"X-User-Id": "teller-7"}


@pytest.fixture
def system():
    system = build_system()
    yield system
    system.close()


@pytest.fixture
def client(system):
    return TestClient(create_app(system))


def open_account(client, owner_id="owner-1", deposit=None):
    r = client.post("/accounts", json={"owner_id": owner_id})
    assert r.status_code == 201
    account = r.json()
    if deposit:
        r = client.post("/transactions/deposit", headers=TELLER, json={
            "account_number": account["account_number"], "amount": deposit
        })
        assert r.status_code == 201
    return account


class TestErrorMapping:

    def test_status_codes(self):
        assert status_for(OwnerNotFound("x")) == 404
        assert status_for(PositiveBalance("x")) == 400
        assert status_for(InsufficientFunds("x")) == 422
        assert status_for(AccountNotActive("x")) == 409
        assert status_for(RateLimitExceeded("x")) == 429
        assert status_for(CollaboratorUnavailable("x")) == 503
        assert status_for(BankingError("x")) == 500


class TestHealthEndpoints:

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        data = r.json()
        assert data["status"] == "healthy"
        assert data["service"] == "banking_core_api"


class TestAccountEndpoints:

    def test_create_and_fetch(self, client):
        account = open_account(client)

        assert account["status"] == "ACTIVA"
        assert account["owner_id"] == "owner-1"
        assert len(account["account_number"]) == 10

        r = client.get(f"/accounts/{account['id']}")
        assert r.status_code == 200
        assert r.json()["account_number"] == account["account_number"]

        r = client.get(f"/accounts/by-number/{account['account_number']}")
        assert r.json()["id"] == account["id"]

        r = client.get("/accounts/owner/owner-1")
        assert [a["id"] for a in r.json()["accounts"]] == [account["id"]]

    def test_unknown_owner(self, client):
        r = client.post("/accounts", json={"owner_id": "ghost"})
        assert r.status_code == 404
        assert r.json()["error"]["code"] == "OWNER_NOT_FOUND"

    def test_unknown_account(self, client):
        r = client.get("/accounts/missing")
        assert r.status_code == 404
        assert r.json()["error"]["code"] == "ACCOUNT_NOT_FOUND"

    def test_restrictions(self, client):
        account = open_account(client)

        r = client.post(f"/accounts/{account['id']}/restrictions", json={"amount_from": "10", "amount_to": "50"})
        assert r.status_code == 201
        restriction = r.json()["restrictions"][0]

        r = client.post(f"/accounts/{account['id']}/restrictions", json={"amount_from": "50", "amount_to": "60"})
        assert r.status_code == 400
        assert r.json()["error"]["code"] == "OVERLAPPING_RANGE"

        r = client.patch(
            f"/accounts/{account['id']}/restrictions/{restriction['id']}", json={"amount_to": "40"}
        )
        assert r.status_code == 200
        assert Decimal(r.json()["restrictions"][0]["amount_to"]) == Decimal("40")

        r = client.delete(f"/accounts/{account['id']}/restrictions/{restriction['id']}")
        assert r.json()["restrictions"] == []

        r = client.delete(f"/accounts/{account['id']}/restrictions/{restriction['id']}")
        assert r.status_code == 404

    def test_status_changes(self, client):
        account = open_account(client)

        r = client.patch(f"/accounts/{account['id']}/status", json={"status": "BLOQUEADA", "reason": "fraud review"})
        assert r.status_code == 200
        assert r.json()["status"] == "BLOQUEADA"

        r = client.post("/transactions/deposit", headers=TELLER, json={
            "account_number": account["account_number"], "amount": "10"
        })
        assert r.status_code == 409
        assert r.json()["error"]["code"] == "ACCOUNT_NOT_ACTIVE"

        r = client.patch(f"/accounts/{account['id']}/status", json={"status": "ABIERTA"})
        assert r.status_code == 400

    def test_cancel_requires_zero_balance(self, client):
        funded = open_account(client, deposit="5.00")
        empty = open_account(client, owner_id="owner-2")

        r = client.post(f"/accounts/{funded['id']}/cancel")
        assert r.status_code == 400
        assert r.json()["error"]["code"] == "POSITIVE_BALANCE"

        r = client.post(f"/accounts/{empty['id']}/cancel")
        assert r.status_code == 200
        assert r.json()["status"] == "CANCELADA"

    def test_movements(self, client):
        account = open_account(client, deposit="25.00")

        r = client.get(f"/accounts/{account['id']}/movements")
        movements = r.json()["movements"]
        assert len(movements) == 1
        assert Decimal(movements[0]["delta"]) == Decimal("25.00")


class TestTransactionEndpoints:

    def setup_accounts(self, client, restriction=None):
        origin = open_account(client, deposit="100.00")
        destination = open_account(client, owner_id="owner-2")
        if restriction:
            client.post(f"/accounts/{origin['id']}/restrictions", json={
                "amount_from": restriction[0], "amount_to": restriction[1]
            })
        return origin, destination

    def transfer(self, client, origin, destination, amount):
        return client.post("/transactions/transfer", headers=TELLER, json={
            "origin_account": origin["account_number"],
            "destination_account": destination["account_number"],
            "amount": amount
        })

    def test_deposit_requires_executor(self, client):
        account = open_account(client)
        r = client.post("/transactions/deposit", json={"account_number": account["account_number"], "amount": "5"})
        assert r.status_code == 400
        assert r.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_unrestricted_transfer_completes(self, client):
        origin, destination = self.setup_accounts(client)

        r = self.transfer(client, origin, destination, "30.00")

        assert r.status_code == 201
        transaction = r.json()
        assert transaction["state"] == "COMPLETADA"
        assert transaction["executor_user_id"] == "teller-7"
        assert Decimal(transaction["settlement_balance"]) == Decimal("100.00")

        r = client.get(f"/transactions/balance/{origin['account_number']}")
        assert Decimal(r.json()["balance"]) == Decimal("70.00")

    def test_insufficient_funds(self, client):
        origin, destination = self.setup_accounts(client)

        r = self.transfer(client, origin, destination, "100.01")

        assert r.status_code == 422
        assert r.json()["error"]["code"] == "INSUFFICIENT_FUNDS"
        assert client.get("/transactions").json()["pagination"]["total"] == 1  # only the funding deposit

    def test_invalid_amount(self, client):
        origin, destination = self.setup_accounts(client)
        r = self.transfer(client, origin, destination, "-1")
        assert r.status_code == 400
        assert r.json()["error"]["code"] == "INVALID_AMOUNT"

    def test_restricted_transfer_needs_authorization(self, client):
        origin, destination = self.setup_accounts(client, restriction=("10", "50"))

        r = self.transfer(client, origin, destination, "20")
        assert r.status_code == 201
        pending = r.json()
        assert pending["state"] == "PENDIENTE"
        assert pending["requires_authentication"] is True

        r = client.post(f"/transactions/{pending['id']}/authorize", json={"verification_code": "123456"})
        assert r.status_code == 200
        assert r.json()["state"] == "COMPLETADA"

        r = client.post(f"/transactions/{pending['id']}/authorize", json={"verification_code": "123456"})
        assert r.status_code == 409
        assert r.json()["error"]["code"] == "NOT_PENDING"

        r = client.get(f"/transactions/{pending['id']}")
        assert r.json()["state"] == "COMPLETADA"

    def test_cancel_pending(self, client):
        origin, destination = self.setup_accounts(client, restriction=("10", "50"))
        pending = self.transfer(client, origin, destination, "20").json()

        r = client.post(f"/transactions/{pending['id']}/cancel")
        assert r.json()["state"] == "CANCELADA"

        r = client.post(f"/transactions/{pending['id']}/cancel")
        assert r.status_code == 409

    def test_unknown_transaction(self, client):
        r = client.post("/transactions/missing/authorize", json={"verification_code": "1"})
        assert r.status_code == 404
        assert r.json()["error"]["code"] == "TRANSACTION_NOT_FOUND"

    def test_validate(self, client):
        origin, destination = self.setup_accounts(client, restriction=("10", "50"))

        r = client.post("/transactions/validate", json={
            "account_number": origin["account_number"],
            "amount": "20",
            "destination_account": destination["account_number"]
        })
        report = r.json()
        assert report["valid"] is True
        assert report["requires_authentication"] is True
        assert report["errors"] == []

        r = client.post("/transactions/validate", json={
            "account_number": origin["account_number"],
            "amount": "500",
            "destination_account": destination["account_number"]
        })
        report = r.json()
        assert report["valid"] is False
        assert [e["code"] for e in report["errors"]] == ["INSUFFICIENT_FUNDS"]

    def test_listing(self, client):
        origin, destination = self.setup_accounts(client)
        self.transfer(client, origin, destination, "10")
        self.transfer(client, origin, destination, "10")

        r = client.get("/transactions", params={"transaction_type": "TRANSFERENCIA", "limit": 1})
        data = r.json()
        assert data["pagination"] == {"total": 2, "page": 1, "limit": 1, "pages": 2}
        assert len(data["transactions"]) == 1

        r = client.get("/transactions", params={"state": "PERDIDA"})
        assert r.status_code == 400

        r = client.get("/transactions", params={"start": "2020-01-01T00:00:00"})
        assert r.status_code == 200
        assert r.json()["pagination"]["total"] == 3

        r = client.get("/transactions", params={"end": "2020-01-01T00:00:00"})
        assert r.json()["pagination"]["total"] == 0


class TestRateLimiting:

    def test_account_attempts_exhausted(self):
        limited = build_system(auth_max_attempts_per_account=1)
        client = TestClient(create_app(limited))
        try:
            origin = open_account(client, deposit="100.00")
            destination = open_account(client, owner_id="owner-2")
            client.post(f"/accounts/{origin['id']}/restrictions", json={"amount_from": "10", "amount_to": "50"})
            body = {
                "origin_account": origin["account_number"],
                "destination_account": destination["account_number"],
                "amount": "20"
            }
            first = client.post("/transactions/transfer", headers=TELLER, json=body).json()
            second = client.post("/transactions/transfer", headers=TELLER, json=body).json()

            r = client.post(f"/transactions/{first['id']}/authorize", json={"verification_code": "1"})
            assert r.status_code == 200

            r = client.post(f"/transactions/{second['id']}/authorize", json={"verification_code": "1"})
            assert r.status_code == 429
            assert r.json()["error"]["code"] == "RATE_LIMIT_EXCEEDED"
        finally:
            limited.close()


class TestAdminEndpoints:

    def test_reconciliation_queue_empty(self, client):
        r = client.get("/reconciliation")
        assert r.json() == {"items": [], "count": 0}

        r = client.get("/reconciliation", params={"kind": "nope"})
        assert r.status_code == 400

        r = client.post("/reconciliation/retry")
        assert r.json() == {"retried": 0, "resolved": 0, "still_open": 0}

        r = client.post("/reconciliation/missing/resolve", json={"note": "x"})
        assert r.status_code == 404

    def test_expire_and_sweep(self, client):
        assert client.post("/maintenance/expire-pending").json()["count"] == 0
        assert client.post("/maintenance/sweep-rate-limits").json()["removed"] == 0

    def test_audit_chain_verifies(self, client):
        open_account(client, deposit="10")

        r = client.get("/audit/verify")
        assert r.status_code == 200
        assert r.json()["valid"] is True
