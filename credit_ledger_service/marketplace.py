"""
P2P listing and settlement engine.

A listing reserves the seller's credits at creation. Buying from it is two
phases: Phase A creates the platform-fee and seller-payment charges and a
pending settlement without moving anything; Phase B verifies both charges,
takes listing inventory with a conditional update, deposits the credits to
the buyer, completes the settlement and then takes the sold credits out of the
seller's reservation.

Steps commit one at a time. A failure after a committed step runs the
matching compensations, each of which is journaled; if a compensation itself
fails the caller gets CompensationFailed.
"""
import logging
import math
import re
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

from sqlalchemy import select, update

from common.error_handling import (
    AlreadyCompleted, CompensationFailed, InsufficientListingInventory, ListingNotActive,
    NotFound, NotListingOwner, PaymentNotConfirmed, PriceMismatch, SelfTradeNotAllowed,
    ValidationError,
)
from common.schemas import AccountRef
from credit_ledger_service.journal import TransactionJournal
from credit_ledger_service.ledger import CreditLedger
from credit_ledger_service.models import (
    MB_PER_GB, ListingStatus, P2PListing, P2PSettlement, SettlementStatus, TransactionType,
    new_id, utcnow,
)
from credit_ledger_service.pricing import require_minimum_price

logger = logging.getLogger(__name__)

WALLET_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")
MAX_CAS_ATTEMPTS = 5

class MarketplaceEngine:
    def __init__(self, session_factory, ledger: CreditLedger, journal: TransactionJournal, payments, settings,
                 clock: Callable[[], datetime] = utcnow):
        self.session_factory = session_factory
        self.ledger = ledger
        self.journal = journal
        self.payments = payments
        self.settings = settings
        self.clock = clock

    @property
    def epsilon_gb(self) -> float:
        return self.settings.listing_epsilon_gb

    # Listings

    def create_listing(self, seller: AccountRef, amount_gb: float, price_per_gb: float,
                       receiving_wallet: str, description: Optional[str] = None) -> P2PListing:
        _require_positive(amount_gb, "amount_gb")
        _require_positive(price_per_gb, "price_per_gb")
        total_price = amount_gb * price_per_gb
        require_minimum_price(total_price, self.settings.minimum_total_price)
        if not receiving_wallet or not WALLET_ADDRESS_RE.match(receiving_wallet):
            raise ValidationError("Invalid receiving wallet address", field="receiving_wallet")
        if description and len(description) > 500:
            raise ValidationError("Description is too long", field="description")

        listing_id = new_id()
        reserved_mb = amount_gb * MB_PER_GB

        self.ledger.reserve(
            seller, reserved_mb,
            transaction_type=TransactionType.LISTING_CREATED,
            reference=listing_id,
            details={"amount_gb": amount_gb, "price_per_gb": price_per_gb, "total_price": total_price},
        )

        now = self.clock()
        listing = P2PListing(
            id=listing_id,
            seller_user_id=seller.user_id,
            seller_wallet_address=seller.wallet_address,
            receiving_wallet=receiving_wallet,
            original_amount_gb=amount_gb,
            storage_amount_gb=amount_gb,
            price_per_gb=price_per_gb,
            total_price=total_price,
            description=description,
            status=ListingStatus.ACTIVE,
            views=0,
            created_at=now,
            updated_at=now,
        )
        try:
            self._persist(listing)
        except Exception as e:
            logger.error(f"❌ Persisting listing {listing_id} failed, releasing reserved credits: {e}")
            self._run_compensations(
                seller, listing_id, e,
                [("release_reserved_credits", lambda: self.ledger.release(
                    seller, reserved_mb,
                    transaction_type=TransactionType.LISTING_CANCELLED,
                    reference=listing_id,
                    details={"reason": "listing_persist_failed"},
                ))],
            )
            raise

        logger.info(f"📦 Listing {listing_id} active: {amount_gb} GB at {price_per_gb} USDC/GB by {seller.user_id}")
        return listing

    def list_active_listings(self, limit: int = 50, offset: int = 0) -> List[P2PListing]:
        with self.session_factory() as db:
            stmt = (select(P2PListing)
                    .where(P2PListing.status == ListingStatus.ACTIVE)
                    .order_by(P2PListing.created_at.desc())
                    .limit(limit)
                    .offset(offset))
            return list(db.execute(stmt).scalars().all())

    def get_listing(self, listing_id: str) -> P2PListing:
        with self.session_factory() as db:
            listing = db.get(P2PListing, listing_id)
        if listing is None:
            raise NotFound("Listing not found", field="listing_id")
        return listing

    def record_view(self, listing_id: str):
        """Informational counter; lost updates are acceptable"""
        with self.session_factory() as db:
            db.execute(
                update(P2PListing)
                .where(P2PListing.id == listing_id)
                .values(views=P2PListing.views + 1)
                .execution_options(synchronize_session=False)
            )
            db.commit()

    def cancel_listing(self, listing_id: str, seller: AccountRef) -> P2PListing:
        listing = self.get_listing(listing_id)
        if listing.seller_user_id != seller.user_id or listing.seller_wallet_address != seller.wallet_address:
            raise NotListingOwner("Only the seller can cancel this listing", field="listing_id")

        for _ in range(MAX_CAS_ATTEMPTS):
            if listing.status != ListingStatus.ACTIVE:
                raise ListingNotActive(f"Listing is {listing.status}", context={"status": listing.status})
            remaining_gb = listing.storage_amount_gb
            if self._cas_listing(listing_id, ListingStatus.ACTIVE, remaining_gb, status=ListingStatus.CANCELLED):
                break
            listing = self.get_listing(listing_id)
        else:
            raise ListingNotActive("Listing changed concurrently, try again", context={"listing_id": listing_id})

        try:
            self.ledger.release(
                seller, remaining_gb * MB_PER_GB,
                transaction_type=TransactionType.LISTING_CANCELLED,
                reference=listing_id,
                details={"remaining_gb": remaining_gb, "reason": "seller_cancelled"},
            )
        except Exception as e:
            logger.error(f"❌ Releasing credits for cancelled listing {listing_id} failed, reactivating: {e}")
            self._run_compensations(
                seller, listing_id, e,
                [("reactivate_listing", lambda: self._require(
                    self._cas_listing(listing_id, ListingStatus.CANCELLED, remaining_gb,
                                      status=ListingStatus.ACTIVE),
                    "listing no longer cancelled"))],
            )
            raise

        logger.info(f"🚫 Listing {listing_id} cancelled, {remaining_gb} GB returned to {seller.user_id}")
        return self.get_listing(listing_id)

    # Settlements

    def purchase_listing(self, listing_id: str, buyer: AccountRef, amount_gb: float,
                         declared_total: Optional[float] = None) -> P2PSettlement:
        """Phase A: create both charges and a pending settlement. Nothing moves."""
        listing = self.get_listing(listing_id)
        if listing.status != ListingStatus.ACTIVE:
            raise ListingNotActive(f"Listing is {listing.status}", context={"status": listing.status})
        if (buyer.user_id == listing.seller_user_id
                or buyer.wallet_address.lower() == listing.seller_wallet_address.lower()):
            raise SelfTradeNotAllowed("You cannot buy your own listing")
        _require_positive(amount_gb, "amount_gb")
        if amount_gb > listing.storage_amount_gb + self.epsilon_gb:
            raise InsufficientListingInventory(
                "Requested amount exceeds the listing's remaining storage",
                field="amount_gb",
                context={"requested_gb": amount_gb, "remaining_gb": listing.storage_amount_gb},
            )

        total_price = round(amount_gb * listing.price_per_gb, 2)
        require_minimum_price(total_price, self.settings.minimum_total_price)
        if declared_total is not None and abs(declared_total - total_price) > self.settings.price_tolerance:
            raise PriceMismatch(
                "Declared total does not match the listing price",
                field="declared_total",
                context={"declared_total": declared_total, "total_price": total_price},
            )

        platform_fee, seller_payment = self.split_proceeds(total_price)
        settlement_id = new_id()
        metadata = {
            "settlement_id": settlement_id,
            "listing_id": listing_id,
            "buyer_user_id": buyer.user_id,
            "seller_user_id": listing.seller_user_id,
            "storage_amount_gb": amount_gb,
            "type": "p2p_purchase",
        }

        platform_charge = self.payments.create_charge(
            amount=platform_fee,
            currency=self.settings.charge_currency,
            name="P2P Storage Platform Fee",
            description=f"Platform fee for {amount_gb:g} GB of storage credits",
            metadata={**metadata, "leg": "platform"},
            idempotency_key=f"{settlement_id}:platform",
        )
        seller_charge = self.payments.create_charge(
            amount=seller_payment,
            currency=self.settings.charge_currency,
            name="P2P Storage Purchase",
            description=f"{amount_gb:g} GB of storage credits from {listing.receiving_wallet}",
            metadata={**metadata, "leg": "seller", "receiving_wallet": listing.receiving_wallet},
            idempotency_key=f"{settlement_id}:seller",
        )

        now = self.clock()
        settlement = P2PSettlement(
            id=settlement_id,
            listing_id=listing_id,
            buyer_user_id=buyer.user_id,
            buyer_wallet_address=buyer.wallet_address,
            seller_user_id=listing.seller_user_id,
            seller_wallet_address=listing.seller_wallet_address,
            receiving_wallet=listing.receiving_wallet,
            storage_amount_gb=amount_gb,
            price_per_gb=listing.price_per_gb,
            total_price=total_price,
            platform_fee=platform_fee,
            seller_payment=seller_payment,
            platform_charge_id=platform_charge.charge_id,
            platform_hosted_url=platform_charge.hosted_url,
            seller_charge_id=seller_charge.charge_id,
            seller_hosted_url=seller_charge.hosted_url,
            status=SettlementStatus.PENDING,
            expires_at=now + timedelta(minutes=self.settings.settlement_ttl_minutes),
            created_at=now,
        )
        self._persist(settlement)

        logger.info(f"🧾 Settlement {settlement_id} pending: {amount_gb} GB of {listing_id} "
                    f"for {total_price:.2f} (fee {platform_fee:.2f}, seller {seller_payment:.2f})")
        return settlement

    def confirm_listing_purchase(self, settlement_id: str, buyer: AccountRef, platform_charge_id: str,
                                 seller_charge_id: str) -> P2PSettlement:
        """Phase B: finalize once both charges are confirmed. Safe to retry."""
        settlement = self.get_settlement(settlement_id)
        if settlement.buyer_user_id != buyer.user_id or settlement.buyer_wallet_address != buyer.wallet_address:
            raise NotFound("Settlement not found", field="settlement_id")
        if settlement.status in (SettlementStatus.COMPLETED, SettlementStatus.SETTLING):
            raise AlreadyCompleted("Settlement already completed", context={"settlement_id": settlement_id})
        if settlement.status == SettlementStatus.FAILED:
            raise ValidationError("Settlement has failed and cannot be confirmed",
                                  context={"settlement_id": settlement_id, "reason": settlement.failure_reason})
        if (platform_charge_id != settlement.platform_charge_id
                or seller_charge_id != settlement.seller_charge_id):
            raise ValidationError("Charges do not belong to this settlement", field="charge_id")

        legs = {
            "platform": (self.payments.get_charge(platform_charge_id), settlement.platform_fee),
            "seller": (self.payments.get_charge(seller_charge_id), settlement.seller_payment),
        }
        unconfirmed = [leg for leg, (charge, _) in legs.items() if not charge.confirmed]
        if unconfirmed:
            raise PaymentNotConfirmed(
                f"Payment not yet confirmed: {', '.join(unconfirmed)}",
                context={"unconfirmed_legs": unconfirmed,
                         "statuses": {leg: charge.current_status for leg, (charge, _) in legs.items()}},
            )
        for leg, (charge, expected) in legs.items():
            if charge.amount is None or abs(charge.amount - expected) > self.settings.price_tolerance:
                raise PriceMismatch(
                    f"Paid amount for the {leg} leg does not match",
                    context={"leg": leg, "amount": charge.amount, "expected": expected},
                )

        if not self._cas_settlement(settlement_id, (SettlementStatus.PENDING, SettlementStatus.EXPIRED),
                                    status=SettlementStatus.SETTLING):
            raise AlreadyCompleted("Settlement already completed", context={"settlement_id": settlement_id})

        sold_gb, dust_gb = self._take_inventory(settlement)
        sold_mb = sold_gb * MB_PER_GB
        seller = AccountRef(user_id=settlement.seller_user_id, wallet_address=settlement.seller_wallet_address)
        details = {
            "listing_id": settlement.listing_id,
            "settlement_id": settlement_id,
            "platform_charge_id": platform_charge_id,
            "seller_charge_id": seller_charge_id,
            "platform_fee": settlement.platform_fee,
            "seller_payment": settlement.seller_payment,
            "price_per_gb": settlement.price_per_gb,
        }

        restore_inventory = ("restore_listing_inventory", lambda: self._restore_inventory(settlement, sold_gb, dust_gb))
        reset_settlement = ("reset_settlement", lambda: self._require(
            self._cas_settlement(settlement_id, (SettlementStatus.SETTLING,), status=SettlementStatus.PENDING),
            "settlement no longer settling"))

        try:
            self.ledger.deposit(
                buyer, sold_mb,
                transaction_type=TransactionType.SALE,
                cost_usdc=settlement.total_price,
                reference=settlement_id,
                details={**details, "role": "buyer", "seller_user_id": settlement.seller_user_id},
            )
        except Exception as e:
            logger.error(f"❌ Deposit for settlement {settlement_id} failed: {e}")
            self._run_compensations(buyer, settlement_id, e, [restore_inventory, reset_settlement])
            raise

        try:
            self._require(
                self._cas_settlement(settlement_id, (SettlementStatus.SETTLING,),
                                     status=SettlementStatus.COMPLETED, completed_at=self.clock()),
                "settlement no longer settling")
        except Exception as e:
            logger.error(f"❌ Completing settlement {settlement_id} failed: {e}")
            reverse_deposit = ("reverse_buyer_deposit", lambda: self.ledger.withdraw(
                buyer, sold_mb, cost_usdc=-settlement.total_price, reference=settlement_id,
                details={"reason": "settlement_rollback"}))
            self._run_compensations(buyer, settlement_id, e, [reverse_deposit, restore_inventory, reset_settlement])
            raise

        try:
            self.ledger.sell_reserved(
                seller, sold_mb,
                cost_usdc=-settlement.seller_payment,
                reference=settlement_id,
                details={**details, "role": "seller", "buyer_user_id": buyer.user_id,
                         "receiving_wallet": settlement.receiving_wallet},
            )
        except Exception as e:
            logger.error(f"Debiting sold credits from seller for settlement {settlement_id} failed: {e}", extra={
                "settlement_id": settlement_id,
                "seller_user_id": seller.user_id,
                "sold_mb": sold_mb,
            })

        if dust_gb > 0:
            try:
                self.ledger.release(
                    seller, dust_gb * MB_PER_GB,
                    transaction_type=TransactionType.LISTING_CANCELLED,
                    reference=settlement.listing_id,
                    details={"reason": "listing_dust_release", "settlement_id": settlement_id},
                )
            except Exception as e:
                logger.error(f"Releasing {dust_gb} GB dust for listing {settlement.listing_id} failed: {e}")

        logger.info(f"✅ Settlement {settlement_id} completed: {sold_gb} GB to {buyer.user_id}")
        return self.get_settlement(settlement_id)

    def get_settlement(self, settlement_id: str, account: Optional[AccountRef] = None) -> P2PSettlement:
        with self.session_factory() as db:
            settlement = db.get(P2PSettlement, settlement_id)
        if settlement is None:
            raise NotFound("Settlement not found", field="settlement_id")
        if account is not None and account.user_id not in (settlement.buyer_user_id, settlement.seller_user_id):
            raise NotFound("Settlement not found", field="settlement_id")
        return settlement

    def expire_stale_settlements(self, now: Optional[datetime] = None) -> int:
        """Mark pending settlements past their expiry as expired"""
        now = now or self.clock()
        with self.session_factory() as db:
            expired = db.execute(
                update(P2PSettlement)
                .where(P2PSettlement.status == SettlementStatus.PENDING,
                       P2PSettlement.expires_at < now)
                .values(status=SettlementStatus.EXPIRED)
                .execution_options(synchronize_session=False)
            ).rowcount
            db.commit()
        if expired:
            logger.info(f"⏰ Expired {expired} stale settlements")
        return expired

    def split_proceeds(self, total_price: float) -> Tuple[float, float]:
        """(platform_fee, seller_payment), rounded to cents and summing to the total"""
        platform_fee = round(total_price * self.settings.platform_fee_percentage / 100, 2)
        return platform_fee, round(total_price - platform_fee, 2)

    # Internals

    def _take_inventory(self, settlement: P2PSettlement) -> Tuple[float, float]:
        """Remove the settlement's amount from the listing.

        Returns (sold_gb, dust_gb). Fails the settlement and raises
        InsufficientListingInventory when the listing can no longer cover it.
        """
        amount_gb = settlement.storage_amount_gb
        for _ in range(MAX_CAS_ATTEMPTS):
            listing = self.get_listing(settlement.listing_id)
            remaining = listing.storage_amount_gb
            if listing.status != ListingStatus.ACTIVE or amount_gb > remaining + self.epsilon_gb:
                self._fail_settlement(settlement.id, "inventory_unavailable")
                buyer = AccountRef(user_id=settlement.buyer_user_id, wallet_address=settlement.buyer_wallet_address)
                self._journal_compensation(buyer, settlement.id, {
                    "reason": "inventory_unavailable",
                    "listing_id": settlement.listing_id,
                    "platform_charge_id": settlement.platform_charge_id,
                    "seller_charge_id": settlement.seller_charge_id,
                    "total_price": settlement.total_price,
                    "requires_refund": True,
                })
                raise InsufficientListingInventory(
                    "Listing no longer has enough storage for this purchase",
                    context={"requested_gb": amount_gb, "remaining_gb": remaining, "status": listing.status},
                )

            sold_gb = min(amount_gb, remaining)
            left_gb = remaining - sold_gb
            if left_gb <= self.epsilon_gb:
                values = {"status": ListingStatus.COMPLETED, "storage_amount_gb": 0.0, "total_price": 0.0}
                dust_gb = left_gb
            else:
                values = {"storage_amount_gb": left_gb, "total_price": left_gb * listing.price_per_gb}
                dust_gb = 0.0

            if self._cas_listing(listing.id, ListingStatus.ACTIVE, remaining, **values):
                return sold_gb, dust_gb
            logger.info(f"Listing {listing.id} changed during settlement {settlement.id}, retrying")

        self._require(
            self._cas_settlement(settlement.id, (SettlementStatus.SETTLING,), status=SettlementStatus.PENDING),
            "settlement no longer settling")
        raise InsufficientListingInventory("Listing is busy, try confirming again",
                                           context={"listing_id": settlement.listing_id})

    def _restore_inventory(self, settlement: P2PSettlement, sold_gb: float, dust_gb: float):
        """Put sold storage back on the listing, or back to the seller if it was cancelled meanwhile"""
        for _ in range(MAX_CAS_ATTEMPTS):
            listing = self.get_listing(settlement.listing_id)
            if listing.status == ListingStatus.CANCELLED:
                seller = AccountRef(user_id=listing.seller_user_id, wallet_address=listing.seller_wallet_address)
                self.ledger.release(
                    seller, sold_gb * MB_PER_GB,
                    transaction_type=TransactionType.COMPENSATION,
                    reference=settlement.id,
                    details={"reason": "settlement_rollback", "listing_id": listing.id},
                )
                return
            restored = listing.storage_amount_gb + sold_gb + dust_gb
            if self._cas_listing(listing.id, listing.status, listing.storage_amount_gb,
                                 status=ListingStatus.ACTIVE, storage_amount_gb=restored,
                                 total_price=restored * listing.price_per_gb):
                return
        raise RuntimeError(f"could not restore inventory on listing {settlement.listing_id}")

    def _run_compensations(self, account: AccountRef, reference: str, original_error: Exception,
                           steps: List[Tuple[str, Callable]]):
        """Run compensating steps in order; raise CompensationFailed if any fails"""
        failed = []
        for name, step in steps:
            try:
                step()
            except Exception as e:
                failed.append({"step": name, "error": str(e)})

        if not failed:
            self._journal_compensation(account, reference, {
                "compensated": [name for name, _ in steps],
                "original_error": str(original_error),
            })
            return

        logger.critical(f"🚨 Compensation failed for {reference}: {failed}", extra={
            "reference": reference,
            "original_error": str(original_error),
            "failed_steps": failed,
        })
        self._journal_compensation(account, reference, {
            "failed_steps": failed,
            "original_error": str(original_error),
            "requires_reconciliation": True,
        })
        raise CompensationFailed(
            "Rollback failed; manual reconciliation required",
            original_error=original_error,
            context={"reference": reference, "failed_steps": failed},
        ) from original_error

    def _journal_compensation(self, account: AccountRef, reference: str, details: dict):
        try:
            self.journal.record(account, TransactionType.COMPENSATION, 0.0, reference=reference, details=details)
        except Exception as e:
            logger.critical(f"🚨 Could not journal compensation for {reference}: {e}")

    def _cas_listing(self, listing_id: str, expected_status: str, expected_remaining: float, **values) -> bool:
        with self.session_factory() as db:
            updated = db.execute(
                update(P2PListing)
                .where(P2PListing.id == listing_id,
                       P2PListing.status == expected_status,
                       P2PListing.storage_amount_gb == expected_remaining)
                .values(updated_at=self.clock(), **values)
                .execution_options(synchronize_session=False)
            ).rowcount
            db.commit()
        return updated == 1

    def _cas_settlement(self, settlement_id: str, expected_statuses: tuple, **values) -> bool:
        with self.session_factory() as db:
            updated = db.execute(
                update(P2PSettlement)
                .where(P2PSettlement.id == settlement_id,
                       P2PSettlement.status.in_(expected_statuses))
                .values(**values)
                .execution_options(synchronize_session=False)
            ).rowcount
            db.commit()
        return updated == 1

    def _fail_settlement(self, settlement_id: str, reason: str):
        self._cas_settlement(settlement_id, (SettlementStatus.SETTLING,),
                             status=SettlementStatus.FAILED, failure_reason=reason)
        logger.warning(f"Settlement {settlement_id} failed: {reason}")

    def _persist(self, row):
        with self.session_factory() as db:
            db.add(row)
            db.commit()

    @staticmethod
    def _require(ok: bool, message: str):
        if not ok:
            raise RuntimeError(message)

def _require_positive(value: float, field: str):
    if value is None or isinstance(value, bool) or not isinstance(value, (int, float)) \
            or not math.isfinite(value) or value <= 0:
        raise ValidationError(f"{field} must be positive", field=field, context={field: value})
