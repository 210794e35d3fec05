"""
Affiliate Balance Engine

This package provides:
- Four-bucket affiliate balances (pending, available, processing, withdrawn)
- Two-tier commission crediting, idempotent per purchase and tier
- Pending → available maturation after a holding period
- Withdrawal lifecycle: pending → completed / rejected
- Append-only balance transaction log and balance reconciliation
"""

from .commission import compute_commissions
from .models import (
    Balance,
    BalanceTransaction,
    AffiliateEarning,
    Withdrawal,
    WithdrawalStatus,
    WithdrawalAction,
)
from .service import BalanceEngine, create_engine

__all__ = [
    "Balance",
    "BalanceTransaction",
    "AffiliateEarning",
    "Withdrawal",
    "WithdrawalStatus",
    "WithdrawalAction",
    "BalanceEngine",
    "compute_commissions",
    "create_engine",
]
