"""
Financial Ledger System for Referral Rewards

This module provides:
- Immutable ledger entries with balances derived from them
- Credit, debit, and reversal flows
- Reward lifecycle management: pending → confirmed → paid / reversed
- Idempotent reward creation
"""

from .idempotency import IdempotencyGuard
from .models import (
    EntryStatus,
    EntryType,
    LedgerEntry,
    Reward,
    RewardStatus,
    User,
    UserBalance,
)
from .service import RewardService
from .store import LedgerStore
from .users import UserDirectory

__all__ = [
    "EntryStatus",
    "EntryType",
    "RewardStatus",
    "LedgerEntry",
    "Reward",
    "User",
    "UserBalance",
    "IdempotencyGuard",
    "LedgerStore",
    "RewardService",
    "UserDirectory",
]
