from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, List, Literal, Optional

class AccountRef(BaseModel):
    """A credit account is scoped to one (user, wallet) pair"""
    model_config = ConfigDict(frozen=True)

    user_id: str
    wallet_address: str

class CreditBalance(BaseModel):
    user_id: str
    wallet_address: str
    total_credits_mb: float = 0.0
    used_credits_mb: float = 0.0
    available_credits_mb: float = 0.0
    reserved_credits_mb: float = 0.0

class PriceQuote(BaseModel):
    storage_mb: float
    token_price_usd: float
    token_amount: float
    base_cost: float
    final_price: float
    per_gb_price: float
    profit_margin_percent: float
    discount_percent: float

class PurchaseQuote(BaseModel):
    storage_mb: float
    storage_gb: float
    price_usdc: float
    package_id: Optional[str] = None
    package_name: Optional[str] = None
    price: PriceQuote

class PackageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    storage_mb: float
    profit_margin_percentage: float
    discount_percentage: float
    is_active: bool

class PurchaseOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    wallet_address: str
    package_id: Optional[str] = None
    storage_mb: float
    price_usdc: float
    payment_method: str
    charge_id: Optional[str] = None
    hosted_url: Optional[str] = None
    token_price_at_purchase: Optional[float] = None
    base_cost_usd: Optional[float] = None
    status: str
    failure_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

class ListingOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    seller_user_id: str
    seller_wallet_address: str
    receiving_wallet: str
    original_amount_gb: float
    storage_amount_gb: float
    price_per_gb: float
    total_price: float
    description: Optional[str] = None
    status: str
    views: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

class SettlementOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    listing_id: str
    buyer_user_id: str
    buyer_wallet_address: str
    seller_user_id: str
    seller_wallet_address: str
    receiving_wallet: str
    storage_amount_gb: float
    price_per_gb: float
    total_price: float
    platform_fee: float
    seller_payment: float
    platform_charge_id: Optional[str] = None
    platform_hosted_url: Optional[str] = None
    seller_charge_id: Optional[str] = None
    seller_hosted_url: Optional[str] = None
    status: str
    failure_reason: Optional[str] = None
    expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

class JournalEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: str
    wallet_address: str
    transaction_type: str
    storage_amount_mb: float
    cost_usdc: float
    reference: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None

class UsageStats(BaseModel):
    window_days: int
    total_uploads: int
    total_uploaded_mb: float
    average_file_size_mb: float
    total_spent_usdc: float
    average_daily_usage_mb: float
    estimated_days_remaining: Optional[int] = None

class AccountSummary(BaseModel):
    balance: CreditBalance
    total_gb: float
    used_gb: float
    available_gb: float
    reserved_gb: float
    usage_percentage: float
    usage: Optional[UsageStats] = None
    financial: Dict[str, float]
    recent_purchases: List[PurchaseOut]
    history: Optional[List[JournalEntryOut]] = None
    recommendations: Dict[str, Any]

class CreditEvent(BaseModel):
    """Outbox payload relayed to Kafka for each journal entry"""
    type: Literal["purchase", "sale", "listing-created", "listing-cancelled", "usage", "compensation"]
    entry_id: int
    user_id: str
    wallet_address: str
    storage_amount_mb: float
    cost_usdc: float
    reference: Optional[str] = None
    occurred_at: datetime

# Request bodies

class QuoteRequest(BaseModel):
    package_id: Optional[str] = None
    storage_mb: Optional[float] = Field(default=None, gt=0)
    usd_amount: Optional[float] = Field(default=None, gt=0)

class InitiatePurchaseRequest(QuoteRequest):
    dry_run: bool = False

class ConfirmPurchaseRequest(BaseModel):
    charge_id: str
    declared_amount: Optional[float] = None

class CreateListingRequest(BaseModel):
    amount_gb: float
    price_per_gb: float
    receiving_wallet: str
    description: Optional[str] = Field(default=None, max_length=500)

class PurchaseListingRequest(BaseModel):
    amount_gb: float
    declared_total: Optional[float] = None

class ConfirmSettlementRequest(BaseModel):
    platform_charge_id: str
    seller_charge_id: str

class UsageRequest(BaseModel):
    user_id: str
    wallet_address: str
    storage_mb: float
    file_name: Optional[str] = None
