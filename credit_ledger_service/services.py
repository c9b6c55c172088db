"""
Constructs every collaborator once and wires them together. The API and the
tests receive a ``Services`` instance instead of reaching for module globals.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests

from common.circuit_breaker import CircuitBreaker, PAYMENT_PROVIDER_CB_CONFIG, PRICE_FEED_CB_CONFIG
from common.redis_client import RedisRateLimiter
from common.settings import Settings
from common.tracing import Tracer
from credit_ledger_service.db import make_engine, make_session_factory
from credit_ledger_service.journal import TransactionJournal
from credit_ledger_service.ledger import CreditLedger
from credit_ledger_service.marketplace import MarketplaceEngine
from credit_ledger_service.models import Base
from credit_ledger_service.payments import CommerceClient
from credit_ledger_service.pricing import PricingOracle
from credit_ledger_service.purchases import PurchaseWorkflow

@dataclass
class Services:
    settings: Settings
    engine: Any
    session_factory: Any
    journal: TransactionJournal
    ledger: CreditLedger
    oracle: PricingOracle
    payments: Any
    purchases: PurchaseWorkflow
    marketplace: MarketplaceEngine
    rate_limiter: Optional[RedisRateLimiter]
    tracer: Tracer

    def circuit_breakers(self) -> Dict[str, dict]:
        """State of the breakers guarding the price feeds and the payment provider"""
        breakers = [getattr(client, "breaker", None) for client in (self.oracle, self.payments)]
        return {b.name: b.get_state() for b in breakers if isinstance(b, CircuitBreaker)}

def build_services(settings: Settings, payments=None, oracle: Optional[PricingOracle] = None,
                   rate_limiter: Optional[RedisRateLimiter] = None, http: Optional[requests.Session] = None,
                   create_tables: bool = True) -> Services:
    engine = make_engine(settings.database_url)
    if create_tables:
        Base.metadata.create_all(bind=engine)
    session_factory = make_session_factory(engine)

    http = http or requests.Session()
    tracer = Tracer()
    journal = TransactionJournal(session_factory, topic=settings.kafka_topic)
    ledger = CreditLedger(session_factory, journal)
    oracle = oracle or PricingOracle(settings, http=http,
                                     breaker=CircuitBreaker("price-feeds", PRICE_FEED_CB_CONFIG), tracer=tracer)
    payments = payments or CommerceClient(settings, http=http,
                                          breaker=CircuitBreaker("payment-provider", PAYMENT_PROVIDER_CB_CONFIG),
                                          tracer=tracer)
    if rate_limiter is None and settings.redis_url:
        rate_limiter = RedisRateLimiter.from_url(settings.redis_url, settings.rate_limit_max_requests,
                                                 settings.rate_limit_window_seconds)

    return Services(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        journal=journal,
        ledger=ledger,
        oracle=oracle,
        payments=payments,
        purchases=PurchaseWorkflow(session_factory, ledger, oracle, payments, settings),
        marketplace=MarketplaceEngine(session_factory, ledger, journal, payments, settings),
        rate_limiter=rate_limiter,
        tracer=tracer,
    )
