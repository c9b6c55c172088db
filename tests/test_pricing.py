"""
Tests for the pricing oracle adapter. The price feeds are faked so one GB
costs one token and one token costs 10 USD.
"""
import pytest
import requests

from common.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from common.error_handling import ExternalServiceUnavailable, ValidationError
from common.tracing import Tracer
from credit_ledger_service.pricing import PricingOracle, require_minimum_price
from conftest import NO_WAIT_RETRY, FakePriceFeeds

@pytest.fixture
def oracle(settings, price_feeds):
    return PricingOracle(settings, http=price_feeds, retry_config=NO_WAIT_RETRY)

class TestPriceFor:
    def test_default_margin(self, oracle):
        """Test base cost, 25% margin and per-GB price for one GB"""
        quote = oracle.price_for(1024)

        assert quote.token_price_usd == 10.0
        assert quote.token_amount == pytest.approx(1.0)
        assert quote.base_cost == pytest.approx(10.0)
        assert quote.final_price == pytest.approx(12.5)
        assert quote.per_gb_price == pytest.approx(12.5)

    def test_margin_and_discount(self, oracle):
        """Test final = base * (1 + margin) * (1 - discount)"""
        quote = oracle.price_for(2048, profit_margin_percent=50, discount_percent=10)

        assert quote.base_cost == pytest.approx(20.0)
        assert quote.final_price == pytest.approx(20.0 * 1.5 * 0.9)
        assert quote.per_gb_price == pytest.approx(13.5)

    def test_requests_fee_for_exact_byte_count(self, oracle, price_feeds):
        """Test that the storage feed is asked for MB * 1024 * 1024 bytes"""
        oracle.price_for(1)

        assert any(url.endswith("/price/1048576") for url in price_feeds.calls)

    def test_invalid_storage_amount(self, oracle):
        with pytest.raises(ValidationError):
            oracle.price_for(0)

class TestStorageForBudget:
    def test_back_solves_whole_megabytes(self, oracle):
        """Test that 25 USD buys exactly 2 GB at 12.5 USD/GB"""
        assert oracle.storage_for_budget(25.0) == 2048

    def test_floor_to_whole_mb(self, oracle):
        assert oracle.storage_for_budget(1.0) == 81

    def test_budget_too_small(self, oracle):
        with pytest.raises(ValidationError):
            oracle.storage_for_budget(0.001)

class TestFeedFailures:
    def test_unreachable_feed_fails_loudly_after_retries(self, oracle, price_feeds):
        """Test that a connection error surfaces as ExternalServiceUnavailable"""
        price_feeds.fail_with = requests.ConnectionError("down")

        with pytest.raises(ExternalServiceUnavailable):
            oracle.price_for(1024)

        assert len(price_feeds.calls) == NO_WAIT_RETRY.max_attempts

    def test_timeout_fails_loudly(self, oracle, price_feeds):
        price_feeds.fail_with = requests.Timeout("slow")

        with pytest.raises(ExternalServiceUnavailable):
            oracle.token_price()

    def test_non_positive_token_price(self, settings):
        oracle = PricingOracle(settings, http=FakePriceFeeds(token_price=0), retry_config=NO_WAIT_RETRY)

        with pytest.raises(ExternalServiceUnavailable):
            oracle.price_for(1024)

    def test_non_numeric_storage_fee(self, settings, price_feeds):
        """Test that a garbage fee body is not turned into a price"""
        original_get = price_feeds.get

        def garbage_fee(url, timeout=None, headers=None):
            response = original_get(url, timeout, headers)
            if "simple/price" not in url:
                response.text = "not-a-number"
            return response

        price_feeds.get = garbage_fee
        oracle = PricingOracle(settings, http=price_feeds, retry_config=NO_WAIT_RETRY)

        with pytest.raises(ExternalServiceUnavailable):
            oracle.storage_cost(1024)

    def test_open_circuit_skips_feed(self, settings, price_feeds):
        """Test that an open breaker fails fast without calling the feed"""
        breaker = CircuitBreaker("price-feeds", CircuitBreakerConfig(failure_threshold=2, reset_timeout=60))
        oracle = PricingOracle(settings, http=price_feeds, breaker=breaker, retry_config=NO_WAIT_RETRY)
        price_feeds.fail_with = requests.ConnectionError("down")

        for _ in range(2):
            with pytest.raises(ExternalServiceUnavailable):
                oracle.token_price()
        calls_before = len(price_feeds.calls)

        with pytest.raises(ExternalServiceUnavailable):
            oracle.token_price()

        assert len(price_feeds.calls) == calls_before
        assert breaker.get_state()["state"] == "OPEN"

    def test_feed_request_runs_in_child_span(self, settings, price_feeds):
        """Test that the feed sees the caller's trace id under a span of its own"""
        seen = []
        original_get = price_feeds.get

        def traced_get(url, timeout=None, headers=None):
            seen.append(headers)
            return original_get(url, timeout, headers)

        price_feeds.get = traced_get
        tracer = Tracer()
        oracle = PricingOracle(settings, http=price_feeds, retry_config=NO_WAIT_RETRY, tracer=tracer)

        with tracer.start_span("quote", trace_id="t-42") as outer:
            oracle.token_price()

        assert seen[0]["X-Trace-ID"] == "t-42"
        assert seen[0]["X-Span-ID"] != outer.span_id

class TestMinimumPrice:
    def test_below_minimum(self):
        with pytest.raises(ValidationError):
            require_minimum_price(0.49, 0.5)

    def test_at_minimum(self):
        require_minimum_price(0.5, 0.5)
