from datetime import datetime
from typing import Optional

from common.schemas import AccountRef, AccountSummary, JournalEntryOut, PurchaseOut
from credit_ledger_service.models import MB_PER_GB, PurchaseStatus

LOW_BALANCE_MB = 100
HIGH_USAGE_DAYS = 30

def build_account_summary(account: AccountRef, ledger, journal, purchases,
                          include_history: bool = False, now: Optional[datetime] = None) -> AccountSummary:
    """Balance, usage projection, spend and recommendations for one account"""
    balance = ledger.balance(account)
    usage = journal.project(account, since_days=30, now=now)
    recent = purchases.recent_purchases(account, limit=10)

    completed = [p for p in recent if p.status == PurchaseStatus.COMPLETED]
    total_spent = sum(p.price_usdc for p in completed)
    purchased_gb = sum(p.storage_mb for p in completed) / MB_PER_GB

    total_gb = balance.total_credits_mb / MB_PER_GB
    usage_percentage = (balance.used_credits_mb / balance.total_credits_mb * 100
                        if balance.total_credits_mb > 0 else 0.0)

    days_left = usage.estimated_days_remaining
    history = None
    if include_history:
        history = [JournalEntryOut.model_validate(e) for e in journal.history(account, limit=50)]

    return AccountSummary(
        balance=balance,
        total_gb=round(total_gb, 3),
        used_gb=round(balance.used_credits_mb / MB_PER_GB, 3),
        available_gb=round(balance.available_credits_mb / MB_PER_GB, 3),
        reserved_gb=round(balance.reserved_credits_mb / MB_PER_GB, 3),
        usage_percentage=round(usage_percentage, 2),
        usage=usage,
        financial={
            "total_spent_usdc": round(total_spent, 2),
            "cost_per_gb": round(total_spent / purchased_gb, 4) if purchased_gb > 0 else 0.0,
            "completed_purchases": float(len(completed)),
        },
        recent_purchases=[PurchaseOut.model_validate(p) for p in recent],
        history=history,
        recommendations={
            "should_purchase_more": balance.available_credits_mb < LOW_BALANCE_MB,
            "usage_trend": "high" if days_left is not None and days_left < HIGH_USAGE_DAYS else "normal",
            "estimated_days_remaining": days_left,
        },
    )
