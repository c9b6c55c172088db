"""
Append-only transaction journal.

Every ledger mutation appends one entry inside the same database transaction
as the balance update, together with an outbox row that the outbox worker
relays to Kafka. Secondary entries (the seller side of a sale, compensation
audits) are written with ``record`` in their own transaction.
"""
import logging
import math
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from common.schemas import AccountRef, CreditEvent, UsageStats
from credit_ledger_service.models import (
    Outbox, StorageCredit, StorageTransaction, TransactionType, utcnow,
)

logger = logging.getLogger(__name__)

SPEND_TYPES = (TransactionType.PURCHASE, TransactionType.SALE)

class TransactionJournal:
    def __init__(self, session_factory, topic: str):
        self.session_factory = session_factory
        self.topic = topic

    def append(
        self,
        db: Session,
        account: AccountRef,
        transaction_type: str,
        storage_amount_mb: float,
        cost_usdc: float = 0.0,
        reference: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> StorageTransaction:
        """Insert an entry inside the caller's transaction; the caller commits"""
        entry = StorageTransaction(
            user_id=account.user_id,
            wallet_address=account.wallet_address,
            transaction_type=transaction_type,
            storage_amount_mb=storage_amount_mb,
            cost_usdc=cost_usdc,
            reference=reference,
            details=details or {},
            created_at=utcnow(),
        )
        db.add(entry)
        db.flush()

        event = CreditEvent(
            type=transaction_type,
            entry_id=entry.id,
            user_id=account.user_id,
            wallet_address=account.wallet_address,
            storage_amount_mb=storage_amount_mb,
            cost_usdc=cost_usdc,
            reference=reference,
            occurred_at=entry.created_at,
        )
        db.add(Outbox(topic=self.topic, event_key=account.user_id, payload=event.model_dump_json()))
        return entry

    def record(self, account: AccountRef, transaction_type: str, storage_amount_mb: float,
               cost_usdc: float = 0.0, reference: Optional[str] = None,
               details: Optional[Dict[str, Any]] = None) -> StorageTransaction:
        """Standalone append in its own transaction"""
        with self.session_factory() as db:
            entry = self.append(db, account, transaction_type, storage_amount_mb,
                                cost_usdc, reference, details)
            db.commit()
        return entry

    def entries_for_reference(self, reference: str) -> List[StorageTransaction]:
        with self.session_factory() as db:
            stmt = (select(StorageTransaction)
                    .where(StorageTransaction.reference == reference)
                    .order_by(StorageTransaction.id))
            return list(db.execute(stmt).scalars().all())

    def history(self, account: AccountRef, limit: int = 50) -> List[StorageTransaction]:
        """Newest entries first"""
        with self.session_factory() as db:
            stmt = (select(StorageTransaction)
                    .where(StorageTransaction.user_id == account.user_id,
                           StorageTransaction.wallet_address == account.wallet_address)
                    .order_by(StorageTransaction.created_at.desc(), StorageTransaction.id.desc())
                    .limit(limit))
            return list(db.execute(stmt).scalars().all())

    def project(self, account: AccountRef, since_days: int = 30, now: Optional[datetime] = None) -> UsageStats:
        """Usage statistics over the last ``since_days`` days.

        ``estimated_days_remaining`` is a linear projection of the available
        balance at the window's average daily usage. It is ``None`` when the
        window holds no usage entry or nothing is available.
        """
        since_days = max(1, int(since_days))
        now = now or utcnow()
        window_start = now - timedelta(days=since_days)

        with self.session_factory() as db:
            entries = db.execute(
                select(StorageTransaction)
                .where(StorageTransaction.user_id == account.user_id,
                       StorageTransaction.wallet_address == account.wallet_address,
                       StorageTransaction.created_at >= window_start,
                       StorageTransaction.created_at <= now)
            ).scalars().all()
            available = db.execute(
                select(StorageCredit.available_credits_mb)
                .where(StorageCredit.user_id == account.user_id,
                       StorageCredit.wallet_address == account.wallet_address)
            ).scalar_one_or_none() or 0.0

        usage = [e for e in entries if e.transaction_type == TransactionType.USAGE]
        uploaded_mb = sum(abs(e.storage_amount_mb) for e in usage)
        spent = sum(e.cost_usdc for e in entries
                    if e.transaction_type in SPEND_TYPES and e.cost_usdc > 0)

        average_daily = 0.0
        estimate = None
        if usage:
            oldest = min(e.created_at for e in usage)
            observed_days = max(1, min(since_days, (now - oldest).days))
            average_daily = uploaded_mb / observed_days
            if available > 0 and average_daily > 0:
                estimate = math.floor(available / average_daily)

        return UsageStats(
            window_days=since_days,
            total_uploads=len(usage),
            total_uploaded_mb=round(uploaded_mb, 3),
            average_file_size_mb=round(uploaded_mb / len(usage), 3) if usage else 0.0,
            total_spent_usdc=round(spent, 2),
            average_daily_usage_mb=round(average_daily, 3),
            estimated_days_remaining=estimate,
        )
