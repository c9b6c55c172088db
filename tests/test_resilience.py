"""
Tests for the shared plumbing: retry, circuit breaker, rate limiting, tokens
and trace propagation.
"""
import jwt
import pytest
import redis

from common.circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitBreakerException
from common.error_handling import ExternalServiceUnavailable, ValidationError
from common.redis_client import RedisRateLimiter
from common.retry import RetryConfig, calculate_delay, retry_call
from common.security import (
    INTERNAL_AUDIENCE, account_from_token, mint_internal_jwt, mint_user_jwt, verify_token,
)
from common.tracing import Tracer, get_current_trace_id, get_trace_headers
from conftest import FakeRedis

def down():
    raise RuntimeError("down")

class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

class TestRetry:
    def test_retries_until_success(self):
        attempts = []

        def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise ExternalServiceUnavailable("down")
            return "ok"

        config = RetryConfig(max_attempts=3, base_delay=0, jitter=False,
                             retryable_exceptions=[ExternalServiceUnavailable])

        assert retry_call(flaky, config) == "ok"
        assert len(attempts) == 3

    def test_non_retryable_raised_immediately(self):
        attempts = []

        def rejected():
            attempts.append(1)
            raise ValidationError("bad input")

        config = RetryConfig(max_attempts=5, base_delay=0, retryable_exceptions=[ExternalServiceUnavailable])

        with pytest.raises(ValidationError):
            retry_call(rejected, config)
        assert len(attempts) == 1

    def test_backoff_is_capped(self):
        config = RetryConfig(base_delay=1.0, max_delay=5.0, jitter=False)

        assert [calculate_delay(n, config) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]

class TestCircuitBreaker:
    def test_opens_then_recovers(self):
        """Test closed -> open -> half-open -> closed with a fake clock"""
        clock = FakeClock()
        breaker = CircuitBreaker("feed", CircuitBreakerConfig(failure_threshold=2, reset_timeout=30,
                                                              success_threshold=1), clock=clock)

        for _ in range(2):
            with pytest.raises(RuntimeError):
                breaker.call(down)
        assert breaker.get_state()["state"] == "OPEN"

        with pytest.raises(CircuitBreakerException):
            breaker.call(lambda: "never")

        clock.now += 31
        assert breaker.call(lambda: "ok") == "ok"
        assert breaker.get_state()["state"] == "CLOSED"

    def test_failure_in_half_open_reopens(self):
        clock = FakeClock()
        breaker = CircuitBreaker("feed", CircuitBreakerConfig(failure_threshold=1, reset_timeout=10), clock=clock)

        with pytest.raises(RuntimeError):
            breaker.call(down)
        clock.now += 11
        with pytest.raises(RuntimeError):
            breaker.call(down)

        assert breaker.get_state()["state"] == "OPEN"

class TestRateLimiter:
    def test_fixed_window(self):
        clock = FakeClock(now=120.0)
        limiter = RedisRateLimiter(FakeRedis(), max_requests=2, window_seconds=60, clock=clock)

        results = [limiter.check("alice", "/listings") for _ in range(3)]

        assert [r["allowed"] for r in results] == [True, True, False]
        assert results[2]["retry_after"] == 60
        assert limiter.check("alice", "/purchases")["allowed"]

        clock.now += 60
        assert limiter.check("alice", "/listings")["allowed"]

    def test_fails_open_when_redis_is_down(self):
        class DownRedis(FakeRedis):
            def get(self, key):
                raise redis.ConnectionError("refused")

            def ping(self):
                raise redis.ConnectionError("refused")

        limiter = RedisRateLimiter(DownRedis(), max_requests=1, window_seconds=60)

        assert limiter.check("alice", "/listings")["allowed"]
        assert limiter.ping() is False

class TestTokens:
    def test_user_token_carries_wallet(self):
        claims = verify_token(mint_user_jwt("alice", "0x" + "a" * 40))

        assert claims["sub"] == "alice"
        assert claims["wallet"] == "0x" + "a" * 40

    def test_internal_token_requires_audience(self):
        token = mint_internal_jwt()

        assert verify_token(token, audience=INTERNAL_AUDIENCE)["aud"] == INTERNAL_AUDIENCE
        with pytest.raises(jwt.InvalidTokenError):
            verify_token(mint_user_jwt("alice"), audience=INTERNAL_AUDIENCE)

    def test_account_needs_wallet_claim(self):
        assert account_from_token(mint_user_jwt("alice", "0x" + "a" * 40)).user_id == "alice"
        with pytest.raises(jwt.InvalidTokenError):
            account_from_token(mint_user_jwt("alice"))

    def test_tampered_token(self):
        token = mint_user_jwt("alice") + "x"

        with pytest.raises(jwt.InvalidTokenError):
            verify_token(token)

class TestTracing:
    def test_span_sets_and_restores_context(self):
        tracer = Tracer()

        with tracer.start_span("outer", trace_id="t-1") as outer:
            assert get_trace_headers()["X-Trace-ID"] == "t-1"
            with tracer.start_child_span("inner") as inner:
                assert inner.parent_span_id == outer.span_id
                assert get_trace_headers()["X-Span-ID"] == inner.span_id
            assert get_trace_headers()["X-Span-ID"] == outer.span_id

        assert get_current_trace_id() is None

    def test_error_is_tagged(self):
        tracer = Tracer()

        with pytest.raises(ExternalServiceUnavailable):
            with tracer.start_span("call") as span:
                raise ExternalServiceUnavailable("feed down")

        assert span.status == "error"
        assert span.tags["error.code"] == "EXTERNAL_SERVICE_UNAVAILABLE"
