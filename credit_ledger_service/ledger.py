"""
Credit ledger: the only writer of the balance columns in ``storage_credits``.

Each mutation is one database transaction holding a single conditional UPDATE
and the matching journal entry. Guarded mutations carry their precondition in
the WHERE clause (``available_credits_mb >= :mb`` for reserve, consume and
withdraw; ``reserved_credits_mb >= :mb`` for release and sell_reserved), so two
concurrent requests can never drive a balance negative: the second one matches
no row and fails with InsufficientCredits.

Every mutation keeps ``total - used - reserved == available``.
"""
import logging
import math
from typing import Any, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from common.error_handling import InsufficientCredits, ValidationError
from common.schemas import AccountRef, CreditBalance
from credit_ledger_service.journal import TransactionJournal
from credit_ledger_service.models import StorageCredit, TransactionType, utcnow

logger = logging.getLogger(__name__)

# Reserved credits are a sum over listings; float subtraction may leave a sliver
RESERVED_TOLERANCE_MB = 1e-6

class CreditLedger:
    def __init__(self, session_factory, journal: TransactionJournal):
        self.session_factory = session_factory
        self.journal = journal

    def balance(self, account: AccountRef) -> CreditBalance:
        """Read-only snapshot; zeros when the account has no row yet"""
        with self.session_factory() as db:
            row = self._select(db, account)
            return self._to_balance(account, row)

    def deposit(self, account: AccountRef, mb: float, transaction_type: str = TransactionType.PURCHASE,
                cost_usdc: float = 0.0, reference: Optional[str] = None,
                details: Optional[Dict[str, Any]] = None) -> CreditBalance:
        """total += mb; available += mb"""
        return self._apply(
            account, mb, guard=None,
            values={
                "total_credits_mb": StorageCredit.total_credits_mb + mb,
                "available_credits_mb": StorageCredit.available_credits_mb + mb,
            },
            transaction_type=transaction_type, signed_mb=mb, cost_usdc=cost_usdc,
            reference=reference, details=details,
        )

    def reserve(self, account: AccountRef, mb: float, transaction_type: str = TransactionType.LISTING_CREATED,
                reference: Optional[str] = None, details: Optional[Dict[str, Any]] = None) -> CreditBalance:
        """available -= mb; reserved += mb, failing with InsufficientCredits if available < mb"""
        return self._apply(
            account, mb, guard=StorageCredit.available_credits_mb,
            values={
                "available_credits_mb": StorageCredit.available_credits_mb - mb,
                "reserved_credits_mb": StorageCredit.reserved_credits_mb + mb,
            },
            transaction_type=transaction_type, signed_mb=-mb,
            reference=reference, details=details,
        )

    def release(self, account: AccountRef, mb: float, transaction_type: str = TransactionType.LISTING_CANCELLED,
                reference: Optional[str] = None, details: Optional[Dict[str, Any]] = None) -> CreditBalance:
        """reserved -= mb; available += mb. Only credits reserved earlier can be released."""
        return self._apply(
            account, mb, guard=StorageCredit.reserved_credits_mb, slack=RESERVED_TOLERANCE_MB,
            values={
                "available_credits_mb": StorageCredit.available_credits_mb + mb,
                "reserved_credits_mb": StorageCredit.reserved_credits_mb - mb,
            },
            transaction_type=transaction_type, signed_mb=mb,
            reference=reference, details=details,
        )

    def sell_reserved(self, account: AccountRef, mb: float, cost_usdc: float = 0.0,
                      reference: Optional[str] = None, details: Optional[Dict[str, Any]] = None) -> CreditBalance:
        """Reserved credits sold from a listing leave the account: reserved -= mb; total -= mb"""
        return self._apply(
            account, mb, guard=StorageCredit.reserved_credits_mb, slack=RESERVED_TOLERANCE_MB,
            values={
                "total_credits_mb": StorageCredit.total_credits_mb - mb,
                "reserved_credits_mb": StorageCredit.reserved_credits_mb - mb,
            },
            transaction_type=TransactionType.SALE, signed_mb=-mb, cost_usdc=cost_usdc,
            reference=reference, details=details,
        )

    def consume(self, account: AccountRef, mb: float, reference: Optional[str] = None,
                details: Optional[Dict[str, Any]] = None) -> CreditBalance:
        """available -= mb; used += mb"""
        return self._apply(
            account, mb, guard=StorageCredit.available_credits_mb,
            values={
                "available_credits_mb": StorageCredit.available_credits_mb - mb,
                "used_credits_mb": StorageCredit.used_credits_mb + mb,
            },
            transaction_type=TransactionType.USAGE, signed_mb=-mb,
            reference=reference, details=details,
        )

    def withdraw(self, account: AccountRef, mb: float, cost_usdc: float = 0.0,
                 reference: Optional[str] = None, details: Optional[Dict[str, Any]] = None) -> CreditBalance:
        """Reverse a deposit: total -= mb; available -= mb. Compensation only."""
        return self._apply(
            account, mb, guard=StorageCredit.available_credits_mb,
            values={
                "total_credits_mb": StorageCredit.total_credits_mb - mb,
                "available_credits_mb": StorageCredit.available_credits_mb - mb,
            },
            transaction_type=TransactionType.COMPENSATION, signed_mb=-mb, cost_usdc=cost_usdc,
            reference=reference, details=details,
        )

    def _apply(self, account: AccountRef, mb: float, guard, values: Dict[str, Any],
               transaction_type: str, signed_mb: float, cost_usdc: float = 0.0,
               reference: Optional[str] = None, details: Optional[Dict[str, Any]] = None,
               slack: float = 0.0) -> CreditBalance:
        """Run one conditional UPDATE; ``guard`` is the column that must cover ``mb``"""
        _validate_amount(mb)
        self._ensure_account(account)

        with self.session_factory() as db:
            stmt = update(StorageCredit).where(
                StorageCredit.user_id == account.user_id,
                StorageCredit.wallet_address == account.wallet_address,
            )
            if guard is not None:
                stmt = stmt.where(guard >= mb - slack)
            stmt = stmt.values(updated_at=utcnow(), **values).execution_options(synchronize_session=False)

            result = db.execute(stmt)
            if result.rowcount == 0:
                db.rollback()
                current = self._to_balance(account, self._select(db, account))
                raise InsufficientCredits(
                    "Insufficient storage credits",
                    field="storage_mb",
                    context={"requested_mb": mb, "available_mb": current.available_credits_mb,
                             "reserved_mb": current.reserved_credits_mb},
                )

            self.journal.append(db, account, transaction_type, signed_mb, cost_usdc, reference, details)
            db.commit()

            balance = self._to_balance(account, self._select(db, account))

        logger.info(f"Ledger {transaction_type}: {account.user_id} {signed_mb:+.3f} MB "
                    f"(available {balance.available_credits_mb:.3f} MB, reserved {balance.reserved_credits_mb:.3f} MB)")
        return balance

    def _ensure_account(self, account: AccountRef):
        """Create the zeroed balance row on first use"""
        with self.session_factory() as db:
            if self._select(db, account) is not None:
                return
            db.add(StorageCredit(
                user_id=account.user_id,
                wallet_address=account.wallet_address,
                total_credits_mb=0.0,
                used_credits_mb=0.0,
                available_credits_mb=0.0,
                reserved_credits_mb=0.0,
            ))
            try:
                db.commit()
                logger.info(f"Created credit account for {account.user_id} / {account.wallet_address}")
            except IntegrityError:
                # Created concurrently by another request
                db.rollback()

    @staticmethod
    def _select(db, account: AccountRef) -> Optional[StorageCredit]:
        return db.execute(
            select(StorageCredit).where(
                StorageCredit.user_id == account.user_id,
                StorageCredit.wallet_address == account.wallet_address,
            )
        ).scalar_one_or_none()

    @staticmethod
    def _to_balance(account: AccountRef, row: Optional[StorageCredit]) -> CreditBalance:
        if row is None:
            return CreditBalance(user_id=account.user_id, wallet_address=account.wallet_address)
        return CreditBalance(
            user_id=row.user_id,
            wallet_address=row.wallet_address,
            total_credits_mb=row.total_credits_mb,
            used_credits_mb=row.used_credits_mb,
            available_credits_mb=row.available_credits_mb,
            reserved_credits_mb=row.reserved_credits_mb,
        )

def _validate_amount(mb: float):
    if mb is None or isinstance(mb, bool) or not isinstance(mb, (int, float)):
        raise ValidationError("Storage amount must be a number", field="storage_mb")
    if not math.isfinite(mb) or mb <= 0:
        raise ValidationError("Storage amount must be positive", field="storage_mb", context={"storage_mb": mb})
