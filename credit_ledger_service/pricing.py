"""
Pricing oracle adapter over the permanent-storage fee feed and the token
price feed. Both feeds are read-only; every failure surfaces as
ExternalServiceUnavailable and no cached or default price is ever used.
"""
import logging
import math
from typing import Optional

import requests

from common.circuit_breaker import CircuitBreaker, CircuitBreakerException, PRICE_FEED_CB_CONFIG
from common.error_handling import ExternalServiceUnavailable, ValidationError
from common.retry import PRICE_FEED_RETRY_CONFIG, RetryConfig, retry_call
from common.schemas import PriceQuote
from common.tracing import Tracer, get_trace_headers
from credit_ledger_service.models import MB_PER_GB

logger = logging.getLogger(__name__)

WINSTON_PER_TOKEN = 1e12
BYTES_PER_MB = 1024 * 1024

def require_minimum_price(total: float, minimum: float, field: str = "total_price"):
    """Reject anything the user would pay below the platform floor"""
    if total is None or not math.isfinite(total) or total < minimum:
        raise ValidationError(
            f"Minimum total price is {minimum:.2f} USDC",
            field=field,
            context={"total_price": total, "minimum_total_price": minimum},
        )

class PricingOracle:
    def __init__(self, settings, http: Optional[requests.Session] = None,
                 breaker: Optional[CircuitBreaker] = None,
                 retry_config: RetryConfig = PRICE_FEED_RETRY_CONFIG, tracer: Optional[Tracer] = None):
        self.settings = settings
        self.http = http or requests.Session()
        self.breaker = breaker or CircuitBreaker("price-feeds", PRICE_FEED_CB_CONFIG)
        self.retry_config = retry_config
        self.tracer = tracer or Tracer()

    def token_price(self) -> float:
        """USD price of one storage-network token"""
        payload = self._get(self.settings.token_price_url, parse_json=True)
        try:
            price = float(payload[self.settings.token_price_id]["usd"])
        except (KeyError, TypeError, ValueError) as e:
            raise ExternalServiceUnavailable("Token price feed returned an unexpected payload", original_error=e)
        return _require_positive(price, "token price")

    def storage_cost(self, storage_mb: float) -> float:
        """Network fee, in tokens, to store ``storage_mb``"""
        num_bytes = int(math.ceil(storage_mb * BYTES_PER_MB))
        body = self._get(f"{self.settings.arweave_price_url.rstrip('/')}/{num_bytes}", parse_json=False)
        try:
            winston = float(body.strip())
        except (AttributeError, ValueError) as e:
            raise ExternalServiceUnavailable("Storage price feed returned a non-numeric fee", original_error=e)
        return _require_positive(winston, "storage fee") / WINSTON_PER_TOKEN

    def price_for(self, storage_mb: float, profit_margin_percent: Optional[float] = None,
                  discount_percent: float = 0.0) -> PriceQuote:
        if storage_mb is None or not math.isfinite(storage_mb) or storage_mb <= 0:
            raise ValidationError("Storage amount must be positive", field="storage_mb")
        if profit_margin_percent is None:
            profit_margin_percent = self.settings.default_profit_margin_percent
        if not 0 <= discount_percent < 100:
            raise ValidationError("Discount must be between 0 and 100 percent", field="discount_percent")

        token_price = self.token_price()
        token_amount = self.storage_cost(storage_mb)

        base_cost = token_amount * token_price
        final_price = base_cost * (1 + profit_margin_percent / 100) * (1 - discount_percent / 100)
        per_gb_price = final_price / (storage_mb / MB_PER_GB)

        return PriceQuote(
            storage_mb=storage_mb,
            token_price_usd=token_price,
            token_amount=token_amount,
            base_cost=base_cost,
            final_price=final_price,
            per_gb_price=per_gb_price,
            profit_margin_percent=profit_margin_percent,
            discount_percent=discount_percent,
        )

    def storage_for_budget(self, usd_amount: float, profit_margin_percent: Optional[float] = None) -> int:
        """Whole MB that ``usd_amount`` buys, refined once against the real curve"""
        if usd_amount is None or not math.isfinite(usd_amount) or usd_amount <= 0:
            raise ValidationError("Spend amount must be positive", field="usd_amount")

        per_mb = self.price_for(MB_PER_GB, profit_margin_percent).final_price / MB_PER_GB
        estimate = usd_amount / per_mb

        refined = self.price_for(estimate, profit_margin_percent)
        storage_mb = math.floor(estimate * (usd_amount / refined.final_price))
        if storage_mb < 1:
            raise ValidationError("Spend amount is too small to buy any storage", field="usd_amount",
                                  context={"usd_amount": usd_amount})
        return storage_mb

    def _get(self, url: str, parse_json: bool):
        try:
            return self.breaker.call(retry_call, self._fetch, self.retry_config, url, parse_json)
        except CircuitBreakerException as e:
            raise ExternalServiceUnavailable("Price feeds temporarily unavailable", original_error=e)

    def _fetch(self, url: str, parse_json: bool):
        try:
            with self.tracer.start_child_span("price_feed.get") as span:
                span.add_tag("http.url", url)
                resp = self.http.get(url, timeout=self.settings.external_timeout_seconds,
                                     headers=get_trace_headers())
                span.add_tag("http.status_code", resp.status_code)
            resp.raise_for_status()
            return resp.json() if parse_json else resp.text
        except requests.RequestException as e:
            logger.warning(f"Price feed request failed: {url} - {e}")
            raise ExternalServiceUnavailable("Price feed unreachable", original_error=e,
                                             context={"url": url})
        except ValueError as e:
            raise ExternalServiceUnavailable("Price feed returned invalid JSON", original_error=e,
                                             context={"url": url})

def _require_positive(value: float, name: str) -> float:
    if not math.isfinite(value) or value <= 0:
        raise ExternalServiceUnavailable(f"Price feed returned a non-positive {name}", context={name: value})
    return value
