import logging
from typing import List, Optional

import jwt
from fastapi import Depends, FastAPI, Header, HTTPException, Request

from common.documentation import API_DESCRIPTION, create_custom_openapi
from common.error_handling import RateLimitExceeded, add_error_handlers
from common.schemas import (
    AccountRef, AccountSummary, ConfirmPurchaseRequest, ConfirmSettlementRequest, CreateListingRequest,
    CreditBalance, InitiatePurchaseRequest, ListingOut, PackageOut, PurchaseListingRequest, PurchaseOut,
    PurchaseQuote, QuoteRequest, SettlementOut, UsageRequest,
)
from common.security import INTERNAL_AUDIENCE, account_from_token, verify_token
from common.settings import settings
from common.tracing import tracing_middleware
from credit_ledger_service.services import Services, build_services
from credit_ledger_service.summary import build_account_summary

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

API_TITLE = "Storage Credit Exchange"
API_VERSION = "1.0.0"

def get_services(request: Request) -> Services:
    return request.app.state.services

def _bearer(authorization: Optional[str]) -> str:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(401, "missing bearer token")
    return authorization.split(" ", 1)[1]

def user_auth(authorization: Optional[str] = Header(None)) -> AccountRef:
    """Resolve the caller's credit account from a user token"""
    token = _bearer(authorization)
    try:
        return account_from_token(token)
    except jwt.InvalidTokenError as e:
        raise HTTPException(401, f"invalid token: {e}")

def internal_auth(authorization: Optional[str] = Header(None)):
    token = _bearer(authorization)
    try:
        verify_token(token, audience=INTERNAL_AUDIENCE)
    except jwt.InvalidTokenError as e:
        raise HTTPException(401, f"invalid internal token: {e}")

def rate_limit(request: Request, account: AccountRef = Depends(user_auth),
               services: Services = Depends(get_services)):
    if services.rate_limiter is None:
        return
    result = services.rate_limiter.check(account.user_id, request.url.path)
    if not result["allowed"]:
        raise RateLimitExceeded(
            "Too many requests, slow down",
            context={"retry_after": result["retry_after"], "reset_time": result["reset_time"]},
        )

def create_app(services: Optional[Services] = None) -> FastAPI:
    services = services or build_services(settings)

    app = FastAPI(title=API_TITLE, version=API_VERSION)
    app.state.services = services
    add_error_handlers(app)

    @app.middleware("http")
    async def add_tracing(request: Request, call_next):
        return await tracing_middleware(request, call_next, services.tracer)

    @app.get("/health", tags=["Health"])
    def health():
        return {"ok": True, "service": "credit-ledger"}

    @app.get("/health/circuit-breakers", tags=["Health"])
    def circuit_breaker_status(services: Services = Depends(get_services)):
        return {"circuit_breakers": services.circuit_breakers()}

    # Purchases

    @app.get("/packages", response_model=List[PackageOut], tags=["Purchases"])
    def list_packages(services: Services = Depends(get_services)):
        return services.purchases.list_packages()

    @app.post("/purchases/quote", response_model=PurchaseQuote, tags=["Purchases"])
    def quote_purchase(body: QuoteRequest, account: AccountRef = Depends(user_auth),
                       services: Services = Depends(get_services)):
        return services.purchases.quote(account, package_id=body.package_id,
                                        storage_mb=body.storage_mb, usd_amount=body.usd_amount)

    @app.post("/purchases", tags=["Purchases"], dependencies=[Depends(rate_limit)])
    def initiate_purchase(body: InitiatePurchaseRequest, account: AccountRef = Depends(user_auth),
                          services: Services = Depends(get_services)):
        result = services.purchases.initiate(account, package_id=body.package_id, storage_mb=body.storage_mb,
                                             usd_amount=body.usd_amount, dry_run=body.dry_run)
        if body.dry_run:
            return {"dry_run": True, "quote": result}
        return {"dry_run": False, "purchase": PurchaseOut.model_validate(result)}

    @app.post("/purchases/{purchase_id}/confirm", response_model=PurchaseOut, tags=["Purchases"],
              dependencies=[Depends(rate_limit)])
    def confirm_purchase(purchase_id: str, body: ConfirmPurchaseRequest, account: AccountRef = Depends(user_auth),
                         services: Services = Depends(get_services)):
        return services.purchases.confirm(purchase_id, account, body.charge_id,
                                          declared_amount=body.declared_amount)

    # Marketplace

    @app.get("/listings", response_model=List[ListingOut], tags=["Marketplace"])
    def list_listings(limit: int = 50, offset: int = 0, services: Services = Depends(get_services)):
        return services.marketplace.list_active_listings(limit=min(max(limit, 1), 100), offset=max(offset, 0))

    @app.get("/listings/{listing_id}", response_model=ListingOut, tags=["Marketplace"])
    def get_listing(listing_id: str, services: Services = Depends(get_services)):
        listing = services.marketplace.get_listing(listing_id)
        services.marketplace.record_view(listing_id)
        return listing

    @app.post("/listings", response_model=ListingOut, tags=["Marketplace"], dependencies=[Depends(rate_limit)])
    def create_listing(body: CreateListingRequest, account: AccountRef = Depends(user_auth),
                       services: Services = Depends(get_services)):
        return services.marketplace.create_listing(account, body.amount_gb, body.price_per_gb,
                                                   body.receiving_wallet, body.description)

    @app.post("/listings/{listing_id}/purchase", response_model=SettlementOut, tags=["Marketplace"],
              dependencies=[Depends(rate_limit)])
    def purchase_listing(listing_id: str, body: PurchaseListingRequest, account: AccountRef = Depends(user_auth),
                         services: Services = Depends(get_services)):
        return services.marketplace.purchase_listing(listing_id, account, body.amount_gb,
                                                     declared_total=body.declared_total)

    @app.post("/listings/{listing_id}/cancel", response_model=ListingOut, tags=["Marketplace"],
              dependencies=[Depends(rate_limit)])
    def cancel_listing(listing_id: str, account: AccountRef = Depends(user_auth),
                       services: Services = Depends(get_services)):
        return services.marketplace.cancel_listing(listing_id, account)

    @app.get("/settlements/{settlement_id}", response_model=SettlementOut, tags=["Marketplace"])
    def get_settlement(settlement_id: str, account: AccountRef = Depends(user_auth),
                       services: Services = Depends(get_services)):
        return services.marketplace.get_settlement(settlement_id, account)

    @app.post("/settlements/{settlement_id}/confirm", response_model=SettlementOut, tags=["Marketplace"],
              dependencies=[Depends(rate_limit)])
    def confirm_settlement(settlement_id: str, body: ConfirmSettlementRequest,
                           account: AccountRef = Depends(user_auth), services: Services = Depends(get_services)):
        return services.marketplace.confirm_listing_purchase(settlement_id, account, body.platform_charge_id,
                                                             body.seller_charge_id)

    # Accounts

    @app.get("/accounts/balance", response_model=CreditBalance, tags=["Accounts"])
    def get_balance(account: AccountRef = Depends(user_auth), services: Services = Depends(get_services)):
        return services.ledger.balance(account)

    @app.get("/accounts/summary", response_model=AccountSummary, tags=["Accounts"])
    def account_summary(include_history: bool = False, account: AccountRef = Depends(user_auth),
                        services: Services = Depends(get_services)):
        return build_account_summary(account, services.ledger, services.journal, services.purchases,
                                     include_history=include_history)

    # Internal

    @app.post("/internal/usage", response_model=CreditBalance, tags=["Internal"],
              dependencies=[Depends(internal_auth)])
    def record_usage(body: UsageRequest, services: Services = Depends(get_services)):
        account = AccountRef(user_id=body.user_id, wallet_address=body.wallet_address)
        return services.ledger.consume(account, body.storage_mb, details={"file_name": body.file_name})

    @app.post("/internal/settlements/expire", tags=["Internal"], dependencies=[Depends(internal_auth)])
    def expire_settlements(services: Services = Depends(get_services)):
        return {"expired": services.marketplace.expire_stale_settlements()}

    app.openapi = lambda: create_custom_openapi(app, API_TITLE, API_VERSION, API_DESCRIPTION)

    logger.info("🚀 Credit ledger service ready")
    return app

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
