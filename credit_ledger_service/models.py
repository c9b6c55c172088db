import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON, BigInteger, Boolean, CheckConstraint, Column, DateTime, Double,
    ForeignKey, Index, Integer, String, UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()

MB_PER_GB = 1024

def utcnow() -> datetime:
    """Naive UTC timestamp, comparable across SQLite and MySQL"""
    return datetime.now(timezone.utc).replace(tzinfo=None)

def new_id() -> str:
    return str(uuid.uuid4())

class TransactionType:
    PURCHASE = "purchase"
    SALE = "sale"
    LISTING_CREATED = "listing-created"
    LISTING_CANCELLED = "listing-cancelled"
    USAGE = "usage"
    COMPENSATION = "compensation"

class PurchaseStatus:
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"

class ListingStatus:
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

class SettlementStatus:
    PENDING = "pending"
    SETTLING = "settling"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"

class StorageCredit(Base):
    __tablename__ = "storage_credits"
    __table_args__ = (
        UniqueConstraint("user_id", "wallet_address", name="uq_storage_credits_account"),
        CheckConstraint("available_credits_mb >= 0", name="ck_storage_credits_available_non_negative"),
    )
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False)
    wallet_address = Column(String(64), nullable=False)
    total_credits_mb = Column(Double, nullable=False, default=0.0)
    used_credits_mb = Column(Double, nullable=False, default=0.0)
    available_credits_mb = Column(Double, nullable=False, default=0.0)
    reserved_credits_mb = Column(Double, nullable=False, default=0.0)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

class StoragePackage(Base):
    __tablename__ = "storage_packages"
    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(128), nullable=False)
    storage_mb = Column(Double, nullable=False)
    profit_margin_percentage = Column(Double, nullable=False, default=25.0)
    discount_percentage = Column(Double, nullable=False, default=0.0)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow)

class StoragePurchase(Base):
    __tablename__ = "storage_purchases"
    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(64), nullable=False, index=True)
    wallet_address = Column(String(64), nullable=False)
    package_id = Column(String(36), ForeignKey("storage_packages.id"), nullable=True)
    storage_mb = Column(Double, nullable=False)
    price_usdc = Column(Double, nullable=False)
    payment_method = Column(String(16), nullable=False, default="usdc")
    charge_id = Column(String(64), index=True)
    hosted_url = Column(String(512))
    token_price_at_purchase = Column(Double)
    base_cost_usd = Column(Double)
    status = Column(String(16), nullable=False, default=PurchaseStatus.PENDING)  # pending|completed|failed
    failure_reason = Column(String(255))
    created_at = Column(DateTime, default=utcnow)
    completed_at = Column(DateTime)

class P2PListing(Base):
    __tablename__ = "p2p_listings"
    __table_args__ = (
        Index("ix_p2p_listings_status_created", "status", "created_at"),
    )
    id = Column(String(36), primary_key=True, default=new_id)
    seller_user_id = Column(String(64), nullable=False, index=True)
    seller_wallet_address = Column(String(64), nullable=False)
    receiving_wallet = Column(String(64), nullable=False)
    original_amount_gb = Column(Double, nullable=False)
    storage_amount_gb = Column(Double, nullable=False)  # remaining
    price_per_gb = Column(Double, nullable=False)
    total_price = Column(Double, nullable=False)
    description = Column(String(500))
    status = Column(String(16), nullable=False, default=ListingStatus.ACTIVE)  # active|completed|cancelled
    views = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

class P2PSettlement(Base):
    __tablename__ = "p2p_settlements"
    id = Column(String(36), primary_key=True, default=new_id)
    listing_id = Column(String(36), ForeignKey("p2p_listings.id"), nullable=False, index=True)
    buyer_user_id = Column(String(64), nullable=False, index=True)
    buyer_wallet_address = Column(String(64), nullable=False)
    seller_user_id = Column(String(64), nullable=False)
    seller_wallet_address = Column(String(64), nullable=False)
    receiving_wallet = Column(String(64), nullable=False)
    storage_amount_gb = Column(Double, nullable=False)
    price_per_gb = Column(Double, nullable=False)
    total_price = Column(Double, nullable=False)
    platform_fee = Column(Double, nullable=False)
    seller_payment = Column(Double, nullable=False)
    platform_charge_id = Column(String(64))
    platform_hosted_url = Column(String(512))
    seller_charge_id = Column(String(64))
    seller_hosted_url = Column(String(512))
    status = Column(String(16), nullable=False, default=SettlementStatus.PENDING)
    failure_reason = Column(String(255))
    expires_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)
    completed_at = Column(DateTime)

class StorageTransaction(Base):
    """Journal entry. Append-only."""
    __tablename__ = "storage_transactions"
    __table_args__ = (
        Index("ix_storage_transactions_account_created", "user_id", "wallet_address", "created_at"),
    )
    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False)
    wallet_address = Column(String(64), nullable=False)
    transaction_type = Column(String(32), nullable=False)
    storage_amount_mb = Column(Double, nullable=False, default=0.0)  # signed
    cost_usdc = Column(Double, nullable=False, default=0.0)  # signed
    reference = Column(String(64), index=True)
    details = Column(JSON)
    created_at = Column(DateTime, default=utcnow)

class Outbox(Base):
    __tablename__ = "outbox"
    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    topic = Column(String(64), nullable=False)
    event_key = Column(String(64))
    payload = Column(String(4000), nullable=False)
    created_at = Column(DateTime, default=utcnow)
    status = Column(String(16), default="new")  # new|sent|failed
