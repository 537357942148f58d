"""
Ledger store contract and the in-memory reference backend.

A store holds one Account per customer and the append-only Transactions that
belong to it. Every balance-changing write goes through ``run_atomic``: the
callback receives an ``AtomicHandle`` and either all of its writes become
visible together or none do.
"""

import threading
from abc import ABC, abstractmethod
from datetime import datetime
from itertools import count
from typing import Callable, Iterable, Optional, TypeVar
from uuid import UUID, uuid4

import structlog

from .errors import AccountAlreadyExistsError, AccountNotFoundError, TransientStoreError
from .models import Account, Tier, Transaction, TransactionFilter, TransactionType, utcnow

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class AtomicHandle(ABC):
    """Scoped view of the store inside one atomic unit of work."""

    @abstractmethod
    def get_account_for_update(self, account_id: UUID) -> Account:
        """Read an account and hold it exclusively until the unit commits or rolls back."""

    @abstractmethod
    def insert_transaction(self, transaction: Transaction) -> Transaction:
        ...

    @abstractmethod
    def update_account(self, account: Account) -> Account:
        ...

    @abstractmethod
    def mark_expired(self, transaction_ids: Iterable[UUID], expired_at: datetime) -> list[UUID]:
        """
        Stamp EARN transactions as consumed by an expiry.

        Returns the ids actually stamped; rows already consumed by another
        sweep are left alone and omitted.
        """


class LedgerStore(ABC):
    @abstractmethod
    def get_account(self, customer_id: str) -> Optional[Account]:
        ...

    @abstractmethod
    def get_account_by_id(self, account_id: UUID) -> Optional[Account]:
        ...

    @abstractmethod
    def create_account(self, customer_id: str, tier: Tier = Tier.BRONZE) -> Account:
        """Raises AccountAlreadyExistsError when the customer already has an account."""

    @abstractmethod
    def run_atomic(self, fn: Callable[[AtomicHandle], T]) -> T:
        ...

    @abstractmethod
    def get_transaction(self, transaction_id: UUID) -> Optional[Transaction]:
        ...

    @abstractmethod
    def list_transactions(self, account_id: UUID, filter: TransactionFilter) -> tuple[list[Transaction], int]:
        """Newest first, with a stable tie-break for equal ``created_at``."""

    @abstractmethod
    def list_expiring_earn_transactions(
        self, before: datetime, account_id: Optional[UUID] = None
    ) -> list[Transaction]:
        """Unconsumed EARN transactions with ``expires_at <= before``."""

    def sum_transaction_points(self, account_id: UUID) -> tuple[int, int]:
        """Return (sum of signed points, number of transactions) for one account."""
        total, transactions = 0, 0
        page = 1
        while True:
            items, count_ = self.list_transactions(account_id, TransactionFilter(page=page, limit=500))
            total += sum(t.points for t in items)
            transactions += len(items)
            if transactions >= count_ or not items:
                return total, transactions
            page += 1


class InMemoryStorage:
    def __init__(self):
        self.accounts: dict[UUID, Account] = {}
        self.customer_index: dict[str, UUID] = {}
        self.transactions: dict[UUID, Transaction] = {}
        self.sequence: dict[UUID, int] = {}


class _InMemoryAtomicHandle(AtomicHandle):
    def __init__(self, storage: InMemoryStorage, sequence: "count[int]"):
        self._storage = storage
        self._sequence = sequence
        self.accounts: dict[UUID, Account] = {}
        self.transactions: list[Transaction] = []
        self.marks: dict[UUID, datetime] = {}

    def get_account_for_update(self, account_id: UUID) -> Account:
        if account_id in self.accounts:
            return self.accounts[account_id]
        account = self._storage.accounts.get(account_id)
        if account is None:
            raise AccountNotFoundError(f"Account {account_id} not found")
        return account

    def insert_transaction(self, transaction: Transaction) -> Transaction:
        if transaction.account_id not in self._storage.accounts:
            raise AccountNotFoundError(f"Account {transaction.account_id} not found")
        if transaction.id in self._storage.transactions:
            raise ValueError(f"Transaction {transaction.id} already recorded")
        self.transactions.append(transaction)
        return transaction

    def update_account(self, account: Account) -> Account:
        if account.id not in self._storage.accounts:
            raise AccountNotFoundError(f"Account {account.id} not found")
        self.accounts[account.id] = account
        return account

    def mark_expired(self, transaction_ids: Iterable[UUID], expired_at: datetime) -> list[UUID]:
        stamped = []
        for transaction_id in transaction_ids:
            existing = self._storage.transactions.get(transaction_id)
            if existing is None or existing.type != TransactionType.EARN:
                continue
            if existing.expired_at is not None or transaction_id in self.marks:
                continue
            self.marks[transaction_id] = expired_at
            stamped.append(transaction_id)
        return stamped

    def apply(self) -> None:
        for account in self.accounts.values():
            self._storage.accounts[account.id] = account
        for transaction in self.transactions:
            self._storage.transactions[transaction.id] = transaction
            self._storage.sequence[transaction.id] = next(self._sequence)
        for transaction_id, expired_at in self.marks.items():
            existing = self._storage.transactions[transaction_id]
            self._storage.transactions[transaction_id] = existing.model_copy(update={"expired_at": expired_at})


class InMemoryLedgerStore(LedgerStore):
    """
    Thread-safe store backed by dicts.

    Writers are serialised by one store-wide lock; waiting longer than
    ``timeout`` seconds for it raises TransientStoreError.
    """

    def __init__(self, storage: Optional[InMemoryStorage] = None, timeout: float = 30.0):
        self.storage = storage or InMemoryStorage()
        self.timeout = timeout
        self._lock = threading.RLock()
        self._sequence = count()

    def get_account(self, customer_id: str) -> Optional[Account]:
        with self._lock:
            account_id = self.storage.customer_index.get(customer_id)
            return self.storage.accounts.get(account_id) if account_id else None

    def get_account_by_id(self, account_id: UUID) -> Optional[Account]:
        with self._lock:
            return self.storage.accounts.get(account_id)

    def create_account(self, customer_id: str, tier: Tier = Tier.BRONZE) -> Account:
        with self._lock:
            if customer_id in self.storage.customer_index:
                raise AccountAlreadyExistsError(f"Account for customer {customer_id} already exists")
            now = utcnow()
            account = Account(id=uuid4(), customer_id=customer_id, tier=tier, created_at=now, updated_at=now)
            self.storage.accounts[account.id] = account
            self.storage.customer_index[customer_id] = account.id
            return account

    def run_atomic(self, fn: Callable[[AtomicHandle], T]) -> T:
        if not self._lock.acquire(timeout=self.timeout):
            logger.warning("Timed out waiting for ledger lock", timeout=self.timeout)
            raise TransientStoreError(f"Could not acquire ledger lock within {self.timeout}s")
        try:
            handle = _InMemoryAtomicHandle(self.storage, self._sequence)
            result = fn(handle)
            handle.apply()
            return result
        finally:
            self._lock.release()

    def get_transaction(self, transaction_id: UUID) -> Optional[Transaction]:
        with self._lock:
            return self.storage.transactions.get(transaction_id)

    def list_transactions(self, account_id: UUID, filter: TransactionFilter) -> tuple[list[Transaction], int]:
        with self._lock:
            matching = [
                t for t in self.storage.transactions.values()
                if t.account_id == account_id and filter.matches(t)
            ]
            matching.sort(key=lambda t: (t.created_at, self.storage.sequence[t.id]), reverse=True)
        return matching[filter.offset:filter.offset + filter.limit], len(matching)

    def list_expiring_earn_transactions(
        self, before: datetime, account_id: Optional[UUID] = None
    ) -> list[Transaction]:
        with self._lock:
            due = [
                t for t in self.storage.transactions.values()
                if t.type == TransactionType.EARN
                and t.expires_at is not None
                and t.expires_at <= before
                and t.expired_at is None
                and (account_id is None or t.account_id == account_id)
            ]
        due.sort(key=lambda t: (t.expires_at, t.created_at))
        return due
