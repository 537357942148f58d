"""
Loyalty Points Ledger

This module provides:
- Per-customer loyalty accounts with balance, lifetime totals and tier
- Immutable earn, redeem, adjust and expire transactions
- Atomic balance updates with tier recomputation
- Post-commit notifications that never roll back a ledger write
- A batch expiry sweep for aged points
"""

from .errors import (
    AccountAlreadyExistsError,
    AccountNotFoundError,
    InsufficientBalanceError,
    InvalidAmountError,
    InvalidPaginationError,
    LedgerServiceError,
    NotFoundError,
    TransactionNotFoundError,
    TransientStoreError,
)
from .expiry import ExpirySweeper
from .models import (
    Account,
    LedgerResult,
    SweepResult,
    Tier,
    Transaction,
    TransactionPage,
    TransactionType,
)
from .notifier import NotificationEvent, Notifier
from .service import LedgerService
from .store import InMemoryLedgerStore, LedgerStore
from .tiers import TierPolicy

__all__ = [
    "Account",
    "AccountAlreadyExistsError",
    "AccountNotFoundError",
    "ExpirySweeper",
    "InMemoryLedgerStore",
    "InsufficientBalanceError",
    "InvalidAmountError",
    "InvalidPaginationError",
    "LedgerResult",
    "LedgerService",
    "LedgerServiceError",
    "LedgerStore",
    "NotFoundError",
    "NotificationEvent",
    "Notifier",
    "SweepResult",
    "Tier",
    "TierPolicy",
    "Transaction",
    "TransactionNotFoundError",
    "TransactionPage",
    "TransactionType",
    "TransientStoreError",
]
