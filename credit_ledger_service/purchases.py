"""
Purchase workflow: quoting -> pending -> completed | failed.

A purchase is persisted as pending together with its external charge and only
moves to completed, and deposits credits, once the provider's timeline shows
the charge confirmed. ``confirm`` is safe to poll.
"""
import logging
from typing import List, Optional, Union

from sqlalchemy import select, update

from common.error_handling import (
    AlreadyCompleted, CompensationFailed, NotFound, PaymentNotConfirmed,
    PriceMismatch, ValidationError,
)
from common.schemas import AccountRef, PurchaseQuote
from credit_ledger_service.ledger import CreditLedger
from credit_ledger_service.models import (
    MB_PER_GB, PurchaseStatus, StoragePackage, StoragePurchase, TransactionType, new_id, utcnow,
)
from credit_ledger_service.pricing import PricingOracle, require_minimum_price

logger = logging.getLogger(__name__)

class PurchaseWorkflow:
    def __init__(self, session_factory, ledger: CreditLedger, oracle: PricingOracle, payments, settings):
        self.session_factory = session_factory
        self.ledger = ledger
        self.oracle = oracle
        self.payments = payments
        self.settings = settings

    # Packages

    def list_packages(self, include_inactive: bool = False) -> List[StoragePackage]:
        with self.session_factory() as db:
            stmt = select(StoragePackage).order_by(StoragePackage.storage_mb)
            if not include_inactive:
                stmt = stmt.where(StoragePackage.is_active.is_(True))
            return list(db.execute(stmt).scalars().all())

    def create_package(self, name: str, storage_mb: float, profit_margin_percentage: float = 25.0,
                       discount_percentage: float = 0.0) -> StoragePackage:
        if not name:
            raise ValidationError("Package name is required", field="name")
        if storage_mb is None or storage_mb <= 0:
            raise ValidationError("Package size must be positive", field="storage_mb")
        if not 0 <= discount_percentage < 100:
            raise ValidationError("Discount must be between 0 and 100 percent", field="discount_percentage")

        package = StoragePackage(
            id=new_id(),
            name=name,
            storage_mb=storage_mb,
            profit_margin_percentage=profit_margin_percentage,
            discount_percentage=discount_percentage,
            is_active=True,
        )
        with self.session_factory() as db:
            db.add(package)
            db.commit()
        return package

    # Workflow

    def quote(self, account: AccountRef, package_id: Optional[str] = None,
              storage_mb: Optional[float] = None, usd_amount: Optional[float] = None) -> PurchaseQuote:
        """Side-effect free price for exactly one storage selector"""
        selectors = [s for s in (package_id, storage_mb, usd_amount) if s is not None]
        if len(selectors) != 1:
            raise ValidationError("Provide exactly one of package_id, storage_mb or usd_amount")

        package = None
        if package_id is not None:
            package = self._get_package(package_id)
            price = self.oracle.price_for(package.storage_mb, package.profit_margin_percentage,
                                          package.discount_percentage)
        elif storage_mb is not None:
            price = self.oracle.price_for(storage_mb)
        else:
            mb = self.oracle.storage_for_budget(usd_amount)
            price = self.oracle.price_for(mb)

        return PurchaseQuote(
            storage_mb=price.storage_mb,
            storage_gb=round(price.storage_mb / MB_PER_GB, 6),
            price_usdc=round(price.final_price, 2),
            package_id=package.id if package else None,
            package_name=package.name if package else None,
            price=price,
        )

    def initiate(self, account: AccountRef, package_id: Optional[str] = None,
                 storage_mb: Optional[float] = None, usd_amount: Optional[float] = None,
                 dry_run: bool = False) -> Union[PurchaseQuote, StoragePurchase]:
        quote = self.quote(account, package_id=package_id, storage_mb=storage_mb, usd_amount=usd_amount)
        require_minimum_price(quote.price_usdc, self.settings.minimum_total_price, field="price_usdc")
        if dry_run:
            return quote

        purchase_id = new_id()
        charge = self.payments.create_charge(
            amount=quote.price_usdc,
            currency=self.settings.charge_currency,
            name="Storage Credits",
            description=f"{quote.storage_gb:g} GB of permanent storage credits",
            metadata={
                "purchase_id": purchase_id,
                "user_id": account.user_id,
                "wallet_address": account.wallet_address,
                "storage_mb": quote.storage_mb,
                "type": "storage_purchase",
            },
            idempotency_key=purchase_id,
        )

        purchase = StoragePurchase(
            id=purchase_id,
            user_id=account.user_id,
            wallet_address=account.wallet_address,
            package_id=quote.package_id,
            storage_mb=quote.storage_mb,
            price_usdc=quote.price_usdc,
            payment_method="usdc",
            charge_id=charge.charge_id,
            hosted_url=charge.hosted_url,
            token_price_at_purchase=quote.price.token_price_usd,
            base_cost_usd=quote.price.base_cost,
            status=PurchaseStatus.PENDING,
            created_at=utcnow(),
        )
        with self.session_factory() as db:
            db.add(purchase)
            db.commit()

        logger.info(f"🛒 Purchase {purchase_id} pending: {quote.storage_mb} MB for {quote.price_usdc:.2f} USDC")
        return purchase

    def confirm(self, purchase_id: str, account: AccountRef, charge_id: str,
                declared_amount: Optional[float] = None) -> StoragePurchase:
        purchase = self.get_purchase(purchase_id, account)

        if purchase.status == PurchaseStatus.COMPLETED:
            raise AlreadyCompleted("Purchase already completed", context={"purchase_id": purchase_id})
        if purchase.status == PurchaseStatus.FAILED:
            raise ValidationError("Purchase has failed and cannot be confirmed",
                                  context={"purchase_id": purchase_id, "reason": purchase.failure_reason})
        if charge_id != purchase.charge_id:
            raise ValidationError("Charge does not belong to this purchase", field="charge_id")

        charge = self.payments.get_charge(charge_id)

        if not charge.confirmed:
            if charge.failed:
                self._mark_failed(purchase_id, f"charge_{charge.current_status.lower()}")
            raise PaymentNotConfirmed(
                "Payment not yet confirmed",
                context={"charge_id": charge_id, "status": charge.current_status},
            )

        tolerance = self.settings.price_tolerance
        amounts = {"charge": charge.amount}
        if declared_amount is not None:
            amounts["declared"] = declared_amount
        for source, amount in amounts.items():
            if amount is None or abs(amount - purchase.price_usdc) > tolerance:
                self._mark_failed(purchase_id, "price_mismatch")
                raise PriceMismatch(
                    "Paid amount does not match the quoted price",
                    context={"source": source, "amount": amount, "expected": purchase.price_usdc},
                )

        with self.session_factory() as db:
            claimed = db.execute(
                update(StoragePurchase)
                .where(StoragePurchase.id == purchase_id,
                       StoragePurchase.status == PurchaseStatus.PENDING)
                .values(status=PurchaseStatus.COMPLETED, completed_at=utcnow())
                .execution_options(synchronize_session=False)
            ).rowcount
            db.commit()
        if not claimed:
            raise AlreadyCompleted("Purchase already completed", context={"purchase_id": purchase_id})

        try:
            self.ledger.deposit(
                account, purchase.storage_mb,
                transaction_type=TransactionType.PURCHASE,
                cost_usdc=purchase.price_usdc,
                reference=purchase_id,
                details={"charge_id": charge_id, "package_id": purchase.package_id},
            )
        except Exception as e:
            logger.error(f"Deposit failed for purchase {purchase_id}, reverting to pending: {e}")
            self._revert_to_pending(purchase_id, e)
            raise

        logger.info(f"✅ Purchase {purchase_id} completed: +{purchase.storage_mb} MB for {account.user_id}")
        return self.get_purchase(purchase_id, account)

    def get_purchase(self, purchase_id: str, account: Optional[AccountRef] = None) -> StoragePurchase:
        with self.session_factory() as db:
            purchase = db.get(StoragePurchase, purchase_id)
        if purchase is None or (account is not None and (
                purchase.user_id != account.user_id or purchase.wallet_address != account.wallet_address)):
            raise NotFound("Purchase not found", field="purchase_id")
        return purchase

    def recent_purchases(self, account: AccountRef, limit: int = 10) -> List[StoragePurchase]:
        with self.session_factory() as db:
            stmt = (select(StoragePurchase)
                    .where(StoragePurchase.user_id == account.user_id,
                           StoragePurchase.wallet_address == account.wallet_address)
                    .order_by(StoragePurchase.created_at.desc())
                    .limit(limit))
            return list(db.execute(stmt).scalars().all())

    def _get_package(self, package_id: str) -> StoragePackage:
        with self.session_factory() as db:
            package = db.get(StoragePackage, package_id)
        if package is None or not package.is_active:
            raise NotFound("Storage package not found", field="package_id")
        return package

    def _mark_failed(self, purchase_id: str, reason: str):
        with self.session_factory() as db:
            db.execute(
                update(StoragePurchase)
                .where(StoragePurchase.id == purchase_id,
                       StoragePurchase.status == PurchaseStatus.PENDING)
                .values(status=PurchaseStatus.FAILED, failure_reason=reason)
                .execution_options(synchronize_session=False)
            )
            db.commit()
        logger.warning(f"Purchase {purchase_id} failed: {reason}")

    def _revert_to_pending(self, purchase_id: str, original_error: Exception):
        try:
            with self.session_factory() as db:
                db.execute(
                    update(StoragePurchase)
                    .where(StoragePurchase.id == purchase_id,
                           StoragePurchase.status == PurchaseStatus.COMPLETED)
                    .values(status=PurchaseStatus.PENDING, completed_at=None)
                    .execution_options(synchronize_session=False)
                )
                db.commit()
        except Exception as e:
            logger.critical(f"🚨 Could not revert purchase {purchase_id} to pending: {e}", extra={
                "purchase_id": purchase_id,
                "original_error": str(original_error),
            })
            raise CompensationFailed(
                "Purchase marked completed without a deposit; manual reconciliation required",
                original_error=original_error,
                context={"purchase_id": purchase_id},
            ) from e
