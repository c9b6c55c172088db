"""
HTTP tests for the credit ledger API: auth, the error envelope, rate limiting
and the purchase and marketplace flows end to end.
"""
import pytest
from fastapi.testclient import TestClient

from common.redis_client import RedisRateLimiter
from common.security import mint_internal_jwt, mint_user_jwt
from credit_ledger_service.main import create_app
from conftest import ALICE, BOB, PAYOUT_WALLET, FakeRedis

def auth(account):
    return {"Authorization": f"Bearer {mint_user_jwt(account.user_id, account.wallet_address)}"}

INTERNAL = {"Authorization": f"Bearer {mint_internal_jwt()}"}

@pytest.fixture
def client(services):
    return TestClient(create_app(services))

def buy_storage(client, payments, account, storage_mb):
    resp = client.post("/purchases", json={"storage_mb": storage_mb}, headers=auth(account))
    assert resp.status_code == 200
    purchase = resp.json()["purchase"]
    payments.confirm(purchase["charge_id"])
    resp = client.post(f"/purchases/{purchase['id']}/confirm", json={"charge_id": purchase["charge_id"]},
                       headers=auth(account))
    assert resp.status_code == 200
    return resp.json()

class TestBasics:
    def test_health(self, client):
        resp = client.get("/health")

        assert resp.status_code == 200
        assert resp.json() == {"ok": True, "service": "credit-ledger"}

    def test_circuit_breaker_status(self, client):
        resp = client.get("/health/circuit-breakers")

        assert resp.status_code == 200
        breakers = resp.json()["circuit_breakers"]
        assert breakers["price-feeds"]["state"] == "CLOSED"
        assert breakers["price-feeds"]["failure_count"] == 0

    def test_missing_token_uses_error_envelope(self, client):
        """Test that a 401 comes back in the standard error format"""
        resp = client.get("/accounts/balance")

        assert resp.status_code == 401
        body = resp.json()
        assert body["success"] is False
        assert body["error"]["code"] == "UNAUTHORIZED"
        assert body["trace_id"]

    def test_token_without_wallet_rejected(self, client):
        token = mint_user_jwt("alice")

        resp = client.get("/accounts/balance", headers={"Authorization": f"Bearer {token}"})

        assert resp.status_code == 401

    def test_trace_id_propagates(self, client):
        resp = client.get("/health", headers={"X-Trace-ID": "abc123"})

        assert resp.headers["X-Trace-ID"] == "abc123"
        assert resp.headers["X-Span-ID"]

    def test_request_validation_is_400(self, client):
        resp = client.post("/listings", json={"price_per_gb": 1.0}, headers=auth(ALICE))

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_openapi_documents_error_envelope(self, client):
        schema = client.get("/openapi.json").json()

        assert "ErrorResponse" in schema["components"]["schemas"]
        assert "bearerAuth" in schema["components"]["securitySchemes"]

class TestPurchases:
    def test_quote(self, client):
        resp = client.post("/purchases/quote", json={"storage_mb": 1024}, headers=auth(ALICE))

        assert resp.status_code == 200
        assert resp.json()["price_usdc"] == 12.5

    def test_dry_run(self, client, payments):
        resp = client.post("/purchases", json={"storage_mb": 1024, "dry_run": True}, headers=auth(ALICE))

        assert resp.json()["dry_run"] is True
        assert resp.json()["quote"]["storage_gb"] == 1
        assert payments.created == []

    def test_purchase_and_confirm(self, client, payments):
        purchase = buy_storage(client, payments, ALICE, 1024)

        assert purchase["status"] == "completed"
        balance = client.get("/accounts/balance", headers=auth(ALICE)).json()
        assert balance["available_credits_mb"] == 1024

    def test_unpaid_confirm_is_402(self, client):
        purchase = client.post("/purchases", json={"storage_mb": 1024}, headers=auth(ALICE)).json()["purchase"]

        resp = client.post(f"/purchases/{purchase['id']}/confirm", json={"charge_id": purchase["charge_id"]},
                           headers=auth(ALICE))

        assert resp.status_code == 402
        assert resp.json()["error"]["code"] == "PAYMENT_NOT_CONFIRMED"

class TestMarketplace:
    def test_listing_sale_end_to_end(self, client, payments):
        """Test that a listing bought over HTTP moves credits from A to B"""
        buy_storage(client, payments, ALICE, 2048)

        resp = client.post("/listings", json={"amount_gb": 1, "price_per_gb": 2.0,
                                              "receiving_wallet": PAYOUT_WALLET}, headers=auth(ALICE))
        assert resp.status_code == 200
        listing = resp.json()
        assert [l["id"] for l in client.get("/listings").json()] == [listing["id"]]

        resp = client.post(f"/listings/{listing['id']}/purchase", json={"amount_gb": 1}, headers=auth(BOB))
        assert resp.status_code == 200
        settlement = resp.json()
        assert (settlement["platform_fee"], settlement["seller_payment"]) == (0.2, 1.8)

        charges = {"platform_charge_id": settlement["platform_charge_id"],
                   "seller_charge_id": settlement["seller_charge_id"]}
        payments.confirm(*charges.values())
        resp = client.post(f"/settlements/{settlement['id']}/confirm", json=charges, headers=auth(BOB))
        assert resp.status_code == 200
        assert resp.json()["status"] == "completed"

        bob = client.get("/accounts/balance", headers=auth(BOB)).json()
        alice = client.get("/accounts/balance", headers=auth(ALICE)).json()
        assert bob["available_credits_mb"] == 1024
        assert alice["available_credits_mb"] == 1024
        assert (alice["total_credits_mb"], alice["reserved_credits_mb"]) == (1024, 0)
        assert client.get("/listings").json() == []

        resp = client.post(f"/settlements/{settlement['id']}/confirm", json=charges, headers=auth(BOB))
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "ALREADY_COMPLETED"

    def test_unpaid_settlement_lists_unconfirmed_legs(self, client, ledger):
        ledger.deposit(ALICE, 2048)
        listing = client.post("/listings", json={"amount_gb": 1, "price_per_gb": 2.0,
                                                 "receiving_wallet": PAYOUT_WALLET}, headers=auth(ALICE)).json()
        settlement = client.post(f"/listings/{listing['id']}/purchase", json={"amount_gb": 1},
                                 headers=auth(BOB)).json()

        resp = client.post(f"/settlements/{settlement['id']}/confirm", headers=auth(BOB), json={
            "platform_charge_id": settlement["platform_charge_id"],
            "seller_charge_id": settlement["seller_charge_id"],
        })

        assert resp.status_code == 402
        assert resp.json()["error"]["context"]["unconfirmed_legs"] == ["platform", "seller"]

    def test_self_trade_rejected(self, client, ledger):
        ledger.deposit(ALICE, 2048)
        listing = client.post("/listings", json={"amount_gb": 1, "price_per_gb": 2.0,
                                                 "receiving_wallet": PAYOUT_WALLET}, headers=auth(ALICE)).json()

        resp = client.post(f"/listings/{listing['id']}/purchase", json={"amount_gb": 1}, headers=auth(ALICE))

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "SELF_TRADE_NOT_ALLOWED"

    def test_insufficient_credits(self, client):
        resp = client.post("/listings", json={"amount_gb": 1, "price_per_gb": 2.0,
                                              "receiving_wallet": PAYOUT_WALLET}, headers=auth(ALICE))

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "INSUFFICIENT_CREDITS"

    def test_cancel_by_other_user_forbidden(self, client, ledger):
        ledger.deposit(ALICE, 2048)
        listing = client.post("/listings", json={"amount_gb": 1, "price_per_gb": 2.0,
                                                 "receiving_wallet": PAYOUT_WALLET}, headers=auth(ALICE)).json()

        resp = client.post(f"/listings/{listing['id']}/cancel", headers=auth(BOB))
        assert resp.status_code == 403

        resp = client.post(f"/listings/{listing['id']}/cancel", headers=auth(ALICE))
        assert resp.status_code == 200
        assert resp.json()["status"] == "cancelled"

    def test_unknown_listing(self, client):
        resp = client.get("/listings/nope")

        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "NOT_FOUND"

class TestAccounts:
    def test_summary_with_history(self, client, payments):
        buy_storage(client, payments, ALICE, 1024)

        resp = client.get("/accounts/summary", params={"include_history": True}, headers=auth(ALICE))

        assert resp.status_code == 200
        summary = resp.json()
        assert summary["total_gb"] == 1
        assert summary["financial"]["total_spent_usdc"] == 12.5
        assert len(summary["recent_purchases"]) == 1
        assert [e["transaction_type"] for e in summary["history"]] == ["purchase"]
        assert summary["recommendations"]["should_purchase_more"] is False

    def test_summary_reports_reserved_credits(self, client, payments):
        buy_storage(client, payments, ALICE, 4096)
        resp = client.post("/listings", json={"amount_gb": 1, "price_per_gb": 2.0,
                                              "receiving_wallet": PAYOUT_WALLET}, headers=auth(ALICE))
        assert resp.status_code == 200

        summary = client.get("/accounts/summary", headers=auth(ALICE)).json()

        assert (summary["total_gb"], summary["reserved_gb"], summary["available_gb"]) == (4, 1, 3)
        assert summary["balance"]["reserved_credits_mb"] == 1024

class TestInternal:
    def test_usage_requires_internal_token(self, client):
        """Test that a user token cannot report usage"""
        body = {"user_id": "alice", "wallet_address": ALICE.wallet_address, "storage_mb": 10}

        resp = client.post("/internal/usage", json=body, headers=auth(ALICE))

        assert resp.status_code == 401

    def test_usage_consumes_credits(self, client, ledger):
        ledger.deposit(ALICE, 100)
        body = {"user_id": "alice", "wallet_address": ALICE.wallet_address, "storage_mb": 30,
                "file_name": "photo.jpg"}

        resp = client.post("/internal/usage", json=body, headers=INTERNAL)

        assert resp.status_code == 200
        assert resp.json()["used_credits_mb"] == 30
        assert resp.json()["available_credits_mb"] == 70

    def test_usage_beyond_balance(self, client, ledger):
        ledger.deposit(ALICE, 10)
        body = {"user_id": "alice", "wallet_address": ALICE.wallet_address, "storage_mb": 30}

        resp = client.post("/internal/usage", json=body, headers=INTERNAL)

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "INSUFFICIENT_CREDITS"

    def test_expire_settlements(self, client):
        resp = client.post("/internal/settlements/expire", headers=INTERNAL)

        assert resp.json() == {"expired": 0}

def test_rate_limit(services):
    """Test that the third mutating call inside one window gets 429"""
    services.rate_limiter = RedisRateLimiter(FakeRedis(), max_requests=2, window_seconds=60)
    client = TestClient(create_app(services))

    codes = [client.post("/purchases", json={"storage_mb": 1024, "dry_run": True}, headers=auth(ALICE)).status_code
             for _ in range(3)]

    assert codes == [200, 200, 429]
    resp = client.post("/purchases", json={"storage_mb": 1024, "dry_run": True}, headers=auth(BOB))
    assert resp.status_code == 200
