"""
Shared fixtures: a throwaway SQLite database per test plus in-memory fakes
for the payment provider, the price feeds, Redis and Kafka.
"""
import itertools
import json

import pytest
import requests

from common.error_handling import ExternalServiceUnavailable
from common.redis_client import RedisRateLimiter
from common.retry import RetryConfig
from common.schemas import AccountRef
from common.settings import Settings
from credit_ledger_service.payments import Charge, TimelineEvent
from credit_ledger_service.pricing import PricingOracle
from credit_ledger_service.services import build_services

ALICE = AccountRef(user_id="alice", wallet_address="0x" + "a" * 40)
BOB = AccountRef(user_id="bob", wallet_address="0x" + "b" * 40)
CAROL = AccountRef(user_id="carol", wallet_address="0x" + "c" * 40)
PAYOUT_WALLET = "0x" + "1" * 40

# 1 GB of storage costs exactly one token; one token costs 10 USD
TOKEN_PRICE_USD = 10.0
WINSTON_PER_BYTE = 1e12 / (1024 ** 3)

NO_WAIT_RETRY = RetryConfig(max_attempts=2, base_delay=0, jitter=False,
                            retryable_exceptions=[ExternalServiceUnavailable])

class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=None):
        self.status_code = status_code
        self._payload = payload
        self.text = text if text is not None else json.dumps(payload)

    def json(self):
        if self._payload is None:
            raise ValueError("no json body")
        return self._payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

class FakePriceFeeds:
    """Stands in for requests.Session on the two price feed URLs"""

    def __init__(self, token_price=TOKEN_PRICE_USD, winston_per_byte=WINSTON_PER_BYTE):
        self.token_price = token_price
        self.winston_per_byte = winston_per_byte
        self.calls = []
        self.fail_with = None

    def get(self, url, timeout=None, headers=None):
        self.calls.append(url)
        if self.fail_with is not None:
            raise self.fail_with
        if "simple/price" in url:
            return FakeResponse(payload={"arweave": {"usd": self.token_price}})
        num_bytes = int(url.rstrip("/").rsplit("/", 1)[1])
        return FakeResponse(text=str(int(round(num_bytes * self.winston_per_byte))))

class FakePaymentProvider:
    """In-memory charge provider with idempotency keys and a status timeline"""

    def __init__(self):
        self.charges = {}
        self.created = []
        self._keys = {}
        self._ids = itertools.count(1)

    def create_charge(self, amount, currency, name, description, metadata=None, idempotency_key=None):
        if idempotency_key and idempotency_key in self._keys:
            return self.get_charge(self._keys[idempotency_key])
        charge = Charge(
            charge_id=f"CHG{next(self._ids):04d}",
            hosted_url="https://pay.example/charge",
            amount=round(amount, 2),
            currency=currency,
            metadata=metadata or {},
            timeline=[TimelineEvent(status="NEW", time="2024-01-01T00:00:00Z")],
        )
        self.charges[charge.charge_id] = charge
        self.created.append({"charge": charge, "name": name, "idempotency_key": idempotency_key})
        if idempotency_key:
            self._keys[idempotency_key] = charge.charge_id
        return charge

    def get_charge(self, charge_id):
        return self.charges[charge_id].model_copy(deep=True)

    def _push(self, charge_id, status):
        self.charges[charge_id].timeline.append(TimelineEvent(status=status, time="2024-01-01T00:05:00Z"))

    def confirm(self, *charge_ids):
        for charge_id in charge_ids:
            self._push(charge_id, "PENDING")
            self._push(charge_id, "CONFIRMED")

    def expire(self, charge_id):
        self._push(charge_id, "EXPIRED")

    def set_amount(self, charge_id, amount):
        self.charges[charge_id].amount = amount

class FakePipeline:
    def __init__(self, redis):
        self.redis = redis
        self.ops = []

    def incr(self, key):
        self.ops.append(("incr", key))
        return self

    def expire(self, key, seconds):
        self.ops.append(("expire", key))
        return self

    def execute(self):
        results = []
        for op, key in self.ops:
            if op == "incr":
                self.redis.store[key] = int(self.redis.store.get(key, 0)) + 1
                results.append(self.redis.store[key])
            else:
                results.append(True)
        return results

class FakeRedis:
    def __init__(self):
        self.store = {}

    def get(self, key):
        value = self.store.get(key)
        return str(value) if value is not None else None

    def pipeline(self):
        return FakePipeline(self)

    def ping(self):
        return True

class RecordingPublisher:
    def __init__(self, error=None):
        self.published = []
        self.error = error

    def publish(self, topic, payload, key=None):
        if self.error is not None:
            raise self.error
        self.published.append((topic, key, json.loads(payload)))

@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'credits.db'}",
        redis_url="",
        kafka_topic="storage_credit_events",
        commerce_api_url="https://commerce.example",
        commerce_api_key="test-key",
        arweave_price_url="https://arweave.example/price",
        token_price_url="https://prices.example/api/v3/simple/price?ids=arweave&vs_currencies=usd",
        token_price_id="arweave",
    )

@pytest.fixture
def price_feeds():
    return FakePriceFeeds()

@pytest.fixture
def payments():
    return FakePaymentProvider()

@pytest.fixture
def fake_redis():
    return FakeRedis()

@pytest.fixture
def services(settings, price_feeds, payments, fake_redis):
    oracle = PricingOracle(settings, http=price_feeds, retry_config=NO_WAIT_RETRY)
    limiter = RedisRateLimiter(fake_redis, max_requests=100, window_seconds=60)
    svc = build_services(settings, payments=payments, oracle=oracle, rate_limiter=limiter)
    yield svc
    svc.engine.dispose()

@pytest.fixture
def ledger(services):
    return services.ledger

@pytest.fixture
def journal(services):
    return services.journal

@pytest.fixture
def marketplace(services):
    return services.marketplace

@pytest.fixture
def purchases(services):
    return services.purchases
