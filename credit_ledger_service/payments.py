"""
Client for the hosted payment charge provider (Coinbase Commerce compatible).
"""
import logging
from typing import Any, Dict, List, Optional

import requests
from pydantic import BaseModel

from common.circuit_breaker import CircuitBreaker, CircuitBreakerException, PAYMENT_PROVIDER_CB_CONFIG
from common.error_handling import ExternalServiceUnavailable, NotFound
from common.retry import (
    CHARGE_CREATE_RETRY_CONFIG, PAYMENT_STATUS_RETRY_CONFIG, RetryConfig, retry_call,
)
from common.tracing import Tracer, get_trace_headers

logger = logging.getLogger(__name__)

CONFIRMED = "CONFIRMED"
TERMINAL_FAILURES = ("EXPIRED", "CANCELED")

class TimelineEvent(BaseModel):
    status: str
    time: Optional[str] = None

class Charge(BaseModel):
    charge_id: str
    hosted_url: Optional[str] = None
    amount: Optional[float] = None
    currency: Optional[str] = None
    metadata: Dict[str, Any] = {}
    timeline: List[TimelineEvent] = []

    @property
    def current_status(self) -> Optional[str]:
        return self.timeline[-1].status.upper() if self.timeline else None

    @property
    def confirmed(self) -> bool:
        # A later non-terminal status can follow a transient confirmation
        return any(event.status.upper() == CONFIRMED for event in self.timeline)

    @property
    def failed(self) -> bool:
        return not self.confirmed and self.current_status in TERMINAL_FAILURES

    @classmethod
    def from_provider(cls, data: Dict[str, Any]) -> "Charge":
        local = (data.get("pricing") or {}).get("local") or {}
        amount = local.get("amount")
        return cls(
            charge_id=data["id"],
            hosted_url=data.get("hosted_url"),
            amount=float(amount) if amount is not None else None,
            currency=local.get("currency"),
            metadata=data.get("metadata") or {},
            timeline=[TimelineEvent(status=e.get("status", ""), time=e.get("time"))
                      for e in data.get("timeline") or []],
        )

class CommerceClient:
    def __init__(self, settings, http: Optional[requests.Session] = None,
                 breaker: Optional[CircuitBreaker] = None,
                 status_retry: RetryConfig = PAYMENT_STATUS_RETRY_CONFIG,
                 create_retry: RetryConfig = CHARGE_CREATE_RETRY_CONFIG, tracer: Optional[Tracer] = None):
        self.settings = settings
        self.http = http or requests.Session()
        self.breaker = breaker or CircuitBreaker("payment-provider", PAYMENT_PROVIDER_CB_CONFIG)
        self.status_retry = status_retry
        self.create_retry = create_retry
        self.tracer = tracer or Tracer()

    def create_charge(self, amount: float, currency: str, name: str, description: str,
                      metadata: Optional[Dict[str, Any]] = None,
                      idempotency_key: Optional[str] = None) -> Charge:
        """Create a fixed-price charge.

        Retried only when ``idempotency_key`` is given, so a retry can never
        produce a second charge.
        """
        payload = {
            "name": name,
            "description": description,
            "pricing_type": "fixed_price",
            "local_price": {"amount": f"{amount:.2f}", "currency": currency},
            "metadata": metadata or {},
        }
        headers = self._headers()
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        def post():
            return self._request("POST", "/charges", json=payload, headers=headers)

        if idempotency_key:
            data = self._guarded(retry_call, post, self.create_retry)
        else:
            data = self._guarded(post)

        charge = Charge.from_provider(data)
        logger.info(f"💳 Created charge {charge.charge_id} for {amount:.2f} {currency}", extra={
            "idempotency_key": idempotency_key,
        })
        return charge

    def get_charge(self, charge_id: str) -> Charge:
        data = self._guarded(retry_call, self._request, self.status_retry,
                             "GET", f"/charges/{charge_id}", headers=self._headers())
        return Charge.from_provider(data)

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "X-CC-Api-Key": self.settings.commerce_api_key,
            "X-CC-Version": self.settings.commerce_api_version,
        }

    def _guarded(self, func, *args, **kwargs):
        try:
            return self.breaker.call(func, *args, **kwargs)
        except CircuitBreakerException as e:
            raise ExternalServiceUnavailable("Payment provider temporarily unavailable", original_error=e)

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        url = f"{self.settings.commerce_api_url.rstrip('/')}{path}"
        try:
            with self.tracer.start_child_span(f"payment_provider.{method.lower()}") as span:
                span.add_tag("http.path", path)
                kwargs["headers"] = {**kwargs.get("headers", {}), **get_trace_headers()}
                resp = self.http.request(method, url, timeout=self.settings.external_timeout_seconds, **kwargs)
                span.add_tag("http.status_code", resp.status_code)
        except requests.RequestException as e:
            logger.warning(f"Payment provider request failed: {method} {path} - {e}")
            raise ExternalServiceUnavailable("Payment provider unreachable", original_error=e)

        if resp.status_code == 404:
            raise NotFound("Charge not found", field="charge_id", context={"path": path})
        if resp.status_code >= 400:
            logger.error(f"Payment provider error {resp.status_code}: {resp.text[:200]}")
            raise ExternalServiceUnavailable("Payment provider rejected the request",
                                             context={"status_code": resp.status_code})
        try:
            return resp.json()["data"]
        except (ValueError, KeyError, TypeError) as e:
            raise ExternalServiceUnavailable("Payment provider returned an unexpected payload", original_error=e)
