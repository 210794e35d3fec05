"""
API tests for the balance endpoints
"""

import importlib.util
from datetime import timedelta
from decimal import Decimal
from pathlib import Path
from uuid import uuid4

from balance_engine import api as api_module
from balance_engine.models import utcnow

from .factories import ADMIN_ID, BUYER_ID, ESEWA_DETAILS, REFERRER_ID, UPLINE_ID, fund


PURCHASE = {
    "id": "purchase-1",
    "buyer_id": BUYER_ID,
    "referrer_id": REFERRER_ID,
    "amount": 1000,
    "package_id": "pkg-basic",
    "package_title": "Basic Package",
}


def withdraw(client, user_id=REFERRER_ID, amount=500, **overrides):
    body = {"amount": amount, "method": "esewa", "account_details": ESEWA_DETAILS, **overrides}
    return client.post(f"/users/{user_id}/withdrawals", json=body)


class TestHealth:
    def test_health(self, client):
        http, _ = client

        response = http.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestPurchaseApproval:
    def test_credits_commissions(self, client):
        http, engine = client

        response = http.post("/purchases/approved", json=PURCHASE)

        assert response.status_code == 200
        results = response.json()
        assert [r["user_id"] for r in results] == [REFERRER_ID, UPLINE_ID]
        assert Decimal(results[0]["amount"]) == Decimal("650")
        assert engine.get_balance(REFERRER_ID).pending == Decimal("650")

    def test_redelivery_is_duplicate(self, client):
        http, engine = client
        http.post("/purchases/approved", json=PURCHASE)

        results = http.post("/purchases/approved", json=PURCHASE).json()

        assert all(r["duplicate"] for r in results)
        assert engine.get_balance(REFERRER_ID).pending == Decimal("650")


class TestBalanceEndpoints:
    def test_balance_summary(self, client):
        http, _ = client
        http.post("/purchases/approved", json=PURCHASE)

        body = http.get(f"/users/{REFERRER_ID}/balance").json()

        assert body["currency"] == "NPR"
        assert Decimal(body["pending"]) == Decimal("650")
        assert Decimal(body["total"]) == Decimal("650")
        assert len(body["recent_transactions"]) == 1

    def test_transaction_history_filters(self, client):
        http, engine = client
        fund(engine, REFERRER_ID, 500)

        body = http.get(f"/users/{REFERRER_ID}/transactions", params={"category": "maturation"}).json()

        assert body["total"] == 1
        assert body["entries"][0]["type"] == "transfer"

    def test_transaction_history_rejects_bad_limit(self, client):
        http, _ = client

        response = http.get(f"/users/{REFERRER_ID}/transactions", params={"limit": 0})

        assert response.status_code == 422


class TestWithdrawalEndpoints:
    def test_request_withdrawal(self, client):
        http, engine = client
        fund(engine, REFERRER_ID, 500)

        response = withdraw(http)

        assert response.status_code == 201
        assert response.json()["status"] == "pending"
        assert engine.get_balance(REFERRER_ID).processing == Decimal("500")

    def test_insufficient_balance_is_400(self, client):
        http, engine = client
        fund(engine, REFERRER_ID, 200)

        response = withdraw(http, amount=300)

        assert response.status_code == 400
        assert "Insufficient" in response.json()["detail"]

    def test_below_minimum_is_400(self, client):
        http, engine = client
        fund(engine, REFERRER_ID, 500)

        response = withdraw(http, amount=50)

        assert response.status_code == 400

    def test_missing_kyc_is_403(self, client):
        http, engine = client
        fund(engine, UPLINE_ID, 500)

        response = withdraw(http, user_id=UPLINE_ID, amount=200)

        assert response.status_code == 403
        assert "KYC" in response.json()["detail"]

    def test_list_user_withdrawals(self, client):
        http, engine = client
        fund(engine, REFERRER_ID, 500)
        withdraw(http, amount=200)

        body = http.get(f"/users/{REFERRER_ID}/withdrawals").json()

        assert body["total"] == 1
        assert Decimal(body["withdrawals"][0]["amount"]) == Decimal("200")


class TestAdminEndpoints:
    def test_approve_then_conflict(self, client):
        http, engine = client
        fund(engine, REFERRER_ID, 500)
        withdrawal_id = withdraw(http).json()["id"]

        approved = http.post(
            f"/admin/withdrawals/{withdrawal_id}/resolve",
            json={"action": "approve", "approver_id": ADMIN_ID, "transaction_id": "TX1"},
        )
        again = http.post(
            f"/admin/withdrawals/{withdrawal_id}/resolve",
            json={"action": "reject", "approver_id": ADMIN_ID, "rejection_reason": "late"},
        )

        assert approved.status_code == 200
        assert approved.json()["status"] == "completed"
        assert again.status_code == 409
        assert engine.get_balance(REFERRER_ID).withdrawn == Decimal("500")

    def test_approve_without_transaction_id_is_400(self, client):
        http, engine = client
        fund(engine, REFERRER_ID, 500)
        withdrawal_id = withdraw(http).json()["id"]

        response = http.post(
            f"/admin/withdrawals/{withdrawal_id}/resolve",
            json={"action": "approve", "approver_id": ADMIN_ID},
        )

        assert response.status_code == 400

    def test_unknown_withdrawal_is_404(self, client):
        http, _ = client

        response = http.post(
            f"/admin/withdrawals/{uuid4()}/resolve",
            json={"action": "approve", "approver_id": ADMIN_ID, "transaction_id": "TX1"},
        )

        assert response.status_code == 404

    def test_list_by_status(self, client):
        http, engine = client
        fund(engine, REFERRER_ID, 500)
        withdraw(http, amount=200)

        pending = http.get("/admin/withdrawals", params={"status": "pending"}).json()
        completed = http.get("/admin/withdrawals", params={"status": "completed"}).json()

        assert pending["total"] == 1
        assert completed["total"] == 0

    def test_sync_single_user(self, client):
        http, engine = client
        http.post("/purchases/approved", json=PURCHASE)

        body = http.post("/admin/balances/sync", json={"user_id": REFERRER_ID}).json()

        assert body["synced"] == 1
        assert body["results"][0]["changed"] is False

    def test_release_pending(self, client):
        http, engine = client
        http.post("/purchases/approved", json=PURCHASE)

        response = http.post("/admin/balances/release-pending", json={"user_id": REFERRER_ID})

        assert response.status_code == 200
        assert engine.get_balance(REFERRER_ID).available == Decimal("650")


class TestCronEndpoint:
    def test_wrong_token_is_401(self, client):
        http, _ = client

        response = http.get("/cron/process-commissions", params={"token": "wrong"})

        assert response.status_code == 401

    def test_missing_token_is_401(self, client):
        http, _ = client

        assert http.get("/cron/process-commissions").status_code == 401

    def test_processes_nothing_before_holding_period(self, client):
        http, engine = client
        http.post("/purchases/approved", json=PURCHASE)

        response = http.get("/cron/process-commissions", params={"token": "cron-secret"})

        assert response.status_code == 200
        assert response.json() == {"success": True, "processed": 0}
        assert engine.get_balance(REFERRER_ID).pending == Decimal("650")

    def test_processes_matured_commissions(self, client, monkeypatch):
        http, engine = client
        http.post("/purchases/approved", json=PURCHASE)
        later = utcnow() + timedelta(days=15)
        monkeypatch.setattr("balance_engine.service.utcnow", lambda: later)

        response = http.get("/cron/process-commissions", params={"token": "cron-secret"})

        assert response.json() == {"success": True, "processed": 2}
        assert engine.get_balance(REFERRER_ID).available == Decimal("650")


class TestBackfillEndpoint:
    def test_backfill_credits_missing_and_skips_known(self, client):
        http, engine = client
        http.post("/purchases/approved", json=PURCHASE)
        second = {**PURCHASE, "id": "purchase-2"}

        response = http.post("/admin/commissions/backfill", json=[PURCHASE, second])

        assert response.status_code == 200
        body = response.json()
        assert body["purchases"] == 2
        assert body["credited"] == 2
        assert body["duplicates"] == 2
        assert body["failed"] == 0
        assert engine.get_balance(REFERRER_ID).pending == Decimal("1300")


class TestServerlessEntry:
    def test_handler_wraps_the_module_app(self):
        """The serverless handler serves the same app and engine as balance_engine.api."""
        path = Path(__file__).resolve().parents[2] / "api" / "index.py"
        spec = importlib.util.spec_from_file_location("serverless_index", path)
        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)

        assert module.app is api_module.app
        assert module.app.state.engine is api_module.app.state.engine
        assert module.app.root_path == "/api"
