from concurrent.futures import Executor
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional
from uuid import UUID, uuid4

import structlog

from .config import Settings
from .errors import (
    AccountAlreadyExistsError,
    AccountNotFoundError,
    InsufficientBalanceError,
    InvalidAmountError,
    InvalidPaginationError,
    TransactionNotFoundError,
)
from .expiry import ExpirySweeper
from .models import (
    Account,
    BalanceReconciliation,
    LedgerResult,
    LoyaltySummary,
    SweepResult,
    Transaction,
    TransactionFilter,
    TransactionPage,
    TransactionType,
    utcnow,
)
from .notifier import NotificationEvent, Notifier, NullNotifier, PostCommitDispatcher
from .store import AtomicHandle, InMemoryLedgerStore, LedgerStore
from .tiers import TierPolicy

logger = structlog.get_logger(__name__)


class LedgerService:
    """
    Loyalty points ledger.

    Every balance change is one call to ``store.run_atomic``: the transaction
    row, the account totals and the recomputed tier commit together. Events
    for the notifier are sent only after that call has returned.
    """

    def __init__(
        self,
        store: Optional[LedgerStore] = None,
        notifier: Optional[Notifier] = None,
        tier_policy: Optional[TierPolicy] = None,
        *,
        default_expiry_days: Optional[int] = None,
        expiry_warning_days: int = 30,
        default_page_size: int = 20,
        max_page_size: int = 100,
        sweep_max_workers: int = 1,
        notification_executor: Optional[Executor] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store or InMemoryLedgerStore()
        self.notifier = notifier or NullNotifier()
        self.tier_policy = tier_policy or TierPolicy()
        self.default_expiry_days = default_expiry_days
        self.expiry_warning_days = expiry_warning_days
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size
        self.sweep_max_workers = sweep_max_workers
        self.notification_executor = notification_executor
        self.clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: LedgerStore,
        notifier: Optional[Notifier] = None,
        **kwargs,
    ) -> "LedgerService":
        return cls(
            store,
            notifier,
            settings.tier_policy(),
            default_expiry_days=settings.default_expiry_days,
            expiry_warning_days=settings.expiry_warning_days,
            default_page_size=settings.default_page_size,
            max_page_size=settings.max_page_size,
            sweep_max_workers=settings.sweep_max_workers,
            **kwargs,
        )

    # Accounts

    def get_account(self, customer_id: str) -> Account:
        account = self.store.get_account(customer_id)
        if account is None:
            raise AccountNotFoundError(f"No loyalty account for customer {customer_id}")
        return account

    def get_or_create_account(self, customer_id: str) -> Account:
        account = self.store.get_account(customer_id)
        if account is not None:
            return account
        try:
            return self.open_account(customer_id)
        except AccountAlreadyExistsError:
            # Another caller provisioned it between our read and insert.
            return self.get_account(customer_id)

    def open_account(self, customer_id: str) -> Account:
        account = self.store.create_account(customer_id, self.tier_policy.tier_for(0))
        logger.info("Loyalty account created", customer_id=customer_id, account_id=str(account.id))
        return account

    # Balance-changing operations

    def earn_points(
        self,
        customer_id: str,
        points: int,
        description: str,
        reference: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> LedgerResult:
        self._require_positive(points, "earn", customer_id)
        account = self.get_or_create_account(customer_id)
        now = self.clock()
        if expires_at is None and self.default_expiry_days:
            expires_at = now + timedelta(days=self.default_expiry_days)

        def operation(handle: AtomicHandle) -> LedgerResult:
            current = handle.get_account_for_update(account.id)
            transaction = self._record(handle, current, TransactionType.EARN, points, description,
                                       reference, now, expires_at=expires_at)
            earned = current.points_earned + points
            updated = handle.update_account(current.model_copy(update={
                "points_balance": current.points_balance + points,
                "points_earned": earned,
                "tier": self.tier_policy.promote(current.tier, earned),
                "updated_at": now,
            }))
            return LedgerResult(account=updated, transaction=transaction, previous_tier=current.tier)

        return self._apply(operation, NotificationEvent.POINTS_EARNED)

    def redeem_points(
        self,
        customer_id: str,
        points: int,
        description: str,
        reference: Optional[str] = None,
    ) -> LedgerResult:
        self._require_positive(points, "redeem", customer_id)
        account = self.get_account(customer_id)
        now = self.clock()

        def operation(handle: AtomicHandle) -> LedgerResult:
            current = handle.get_account_for_update(account.id)
            if current.points_balance < points:
                logger.warning(
                    "Redemption rejected",
                    customer_id=customer_id,
                    points=points,
                    balance=current.points_balance,
                )
                raise InsufficientBalanceError(current.points_balance, points)
            transaction = self._record(handle, current, TransactionType.REDEEM, -points, description,
                                       reference, now)
            # Tier follows lifetime earned points, so redeeming never demotes.
            updated = handle.update_account(current.model_copy(update={
                "points_balance": current.points_balance - points,
                "points_redeemed": current.points_redeemed + points,
                "updated_at": now,
            }))
            return LedgerResult(account=updated, transaction=transaction, previous_tier=current.tier)

        return self._apply(operation, NotificationEvent.POINTS_REDEEMED)

    def adjust_points(
        self,
        customer_id: str,
        points: int,
        description: str,
        reference: Optional[str] = None,
    ) -> LedgerResult:
        """
        Administrative correction with an arbitrary sign.

        Unlike redemption there is no balance floor: an adjustment may leave
        the balance negative. Positive adjustments count toward tier like an
        earn; negative ones never reduce lifetime earned points or tier.
        """
        if points == 0:
            logger.warning("Adjustment rejected", customer_id=customer_id, points=points)
            raise InvalidAmountError("Adjustment points must not be zero")
        account = self.get_or_create_account(customer_id)
        now = self.clock()

        def operation(handle: AtomicHandle) -> LedgerResult:
            current = handle.get_account_for_update(account.id)
            transaction = self._record(handle, current, TransactionType.ADJUST, points, description,
                                       reference, now)
            changes = {"points_balance": current.points_balance + points, "updated_at": now}
            if points > 0:
                changes["points_earned"] = current.points_earned + points
                changes["tier"] = self.tier_policy.promote(current.tier, changes["points_earned"])
            if changes["points_balance"] < 0:
                logger.warning(
                    "Adjustment leaves negative balance",
                    customer_id=customer_id,
                    balance=changes["points_balance"],
                )
            updated = handle.update_account(current.model_copy(update=changes))
            return LedgerResult(account=updated, transaction=transaction, previous_tier=current.tier)

        return self._apply(operation, NotificationEvent.POINTS_ADJUSTED)

    def expire_points(
        self,
        account_id: UUID,
        points: int,
        description: str,
    ) -> LedgerResult:
        """
        Remove expired points from an account.

        The caller clamps ``points`` to the balance it read; if the balance has
        dropped since, the call fails with InsufficientBalanceError and nothing
        is written.
        """
        if points <= 0:
            raise InvalidAmountError("Expired points must be positive")
        created_at = self.clock()

        def operation(handle: AtomicHandle) -> LedgerResult:
            current = handle.get_account_for_update(account_id)
            if current.points_balance < points:
                raise InsufficientBalanceError(
                    current.points_balance, points,
                    f"Cannot expire {points} points from a balance of {current.points_balance}",
                )
            return self._debit_expired(handle, current, points, description, created_at)

        return self._apply(operation, NotificationEvent.POINTS_EXPIRED)

    def expire_due_points(
        self,
        account_id: UUID,
        due: Iterable[Transaction],
        now: Optional[datetime] = None,
    ) -> Optional[LedgerResult]:
        """
        Settle one account's due EARN transactions. Used by the expiry sweep.

        The rows are stamped first, under the account lock. Only rows this call
        actually stamped count toward the expiry, so a sweep working from a stale
        due list, or racing another sweep, cannot expire the same points twice.
        The amount is clamped to the balance inside the same unit. Returns None
        when nothing was debited.
        """
        points_by_id = {t.id: abs(t.points) for t in due}
        created_at = self.clock()
        expired_at = now or created_at

        def operation(handle: AtomicHandle) -> Optional[LedgerResult]:
            current = handle.get_account_for_update(account_id)
            stamped = handle.mark_expired(list(points_by_id), expired_at)
            if len(stamped) < len(points_by_id):
                logger.info("Skipping already expired transactions", account_id=str(account_id),
                            skipped=len(points_by_id) - len(stamped))
            points = min(sum(points_by_id[i] for i in stamped), current.points_balance)
            if points <= 0:
                return None
            return self._debit_expired(handle, current, points, f"{points} points expired", created_at)

        result = self.store.run_atomic(operation)
        if result is not None:
            self._publish(result, NotificationEvent.POINTS_EXPIRED)
        return result

    def run_expiry_sweep(self, now: Optional[datetime] = None) -> SweepResult:
        return ExpirySweeper(self, max_workers=self.sweep_max_workers).run(now)

    # Reads

    def get_transaction(self, transaction_id: UUID) -> Transaction:
        transaction = self.store.get_transaction(transaction_id)
        if transaction is None:
            raise TransactionNotFoundError(f"Transaction {transaction_id} not found")
        return transaction

    def list_transactions(
        self,
        customer_id: str,
        page: int = 1,
        limit: Optional[int] = None,
        type: Optional[TransactionType] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
    ) -> TransactionPage:
        limit = self.default_page_size if limit is None else limit
        if page < 1:
            raise InvalidPaginationError("page must be 1 or greater")
        if not 1 <= limit <= self.max_page_size:
            raise InvalidPaginationError(f"limit must be between 1 and {self.max_page_size}")
        if date_from and date_to and date_from > date_to:
            raise InvalidPaginationError("date_from must not be after date_to")

        account = self.get_account(customer_id)
        items, total = self.store.list_transactions(
            account.id,
            TransactionFilter(type=type, date_from=date_from, date_to=date_to, page=page, limit=limit),
        )
        return TransactionPage.build(items, total, page, limit)

    def get_summary(self, customer_id: str, now: Optional[datetime] = None) -> LoyaltySummary:
        account = self.get_account(customer_id)
        now = now or self.clock()
        horizon = now + timedelta(days=self.expiry_warning_days)
        due = self.store.list_expiring_earn_transactions(horizon, account_id=account.id)
        expiring = min(sum(t.points for t in due), max(account.points_balance, 0))
        upcoming = self.tier_policy.next_tier(account.points_earned)

        return LoyaltySummary(
            customer_id=customer_id,
            tier=account.tier,
            points_balance=account.points_balance,
            points_earned=account.points_earned,
            points_redeemed=account.points_redeemed,
            expiring_points=expiring,
            next_expiry_at=min((t.expires_at for t in due), default=None),
            next_tier=upcoming[0] if upcoming else None,
            points_to_next_tier=upcoming[1] if upcoming else None,
        )

    def reconcile_account(self, customer_id: str) -> BalanceReconciliation:
        account = self.get_account(customer_id)
        ledger_balance, transaction_count = self.store.sum_transaction_points(account.id)
        consistent = ledger_balance == account.points_balance
        if not consistent:
            logger.error(
                "Loyalty balance drift detected",
                customer_id=customer_id,
                recorded_balance=account.points_balance,
                ledger_balance=ledger_balance,
            )
        return BalanceReconciliation(
            customer_id=customer_id,
            recorded_balance=account.points_balance,
            ledger_balance=ledger_balance,
            transaction_count=transaction_count,
            consistent=consistent,
        )

    # Internals

    def _require_positive(self, points: int, operation: str, customer_id: str) -> None:
        if points <= 0:
            logger.warning("Non-positive amount rejected", operation=operation,
                           customer_id=customer_id, points=points)
            raise InvalidAmountError(f"Points to {operation} must be positive, got {points}")

    def _record(
        self,
        handle: AtomicHandle,
        account: Account,
        type: TransactionType,
        points: int,
        description: str,
        reference: Optional[str],
        created_at: datetime,
        expires_at: Optional[datetime] = None,
    ) -> Transaction:
        return handle.insert_transaction(Transaction(
            id=uuid4(),
            account_id=account.id,
            type=type,
            points=points,
            description=description,
            reference=reference,
            expires_at=expires_at,
            created_at=created_at,
        ))

    def _debit_expired(
        self,
        handle: AtomicHandle,
        account: Account,
        points: int,
        description: str,
        created_at: datetime,
    ) -> LedgerResult:
        transaction = self._record(handle, account, TransactionType.EXPIRE, -points, description,
                                   None, created_at)
        updated = handle.update_account(account.model_copy(update={
            "points_balance": account.points_balance - points,
            "updated_at": created_at,
        }))
        return LedgerResult(account=updated, transaction=transaction, previous_tier=account.tier)

    def _apply(self, operation: Callable[[AtomicHandle], LedgerResult], event: NotificationEvent) -> LedgerResult:
        result = self.store.run_atomic(operation)
        self._publish(result, event)
        return result

    def _publish(self, result: LedgerResult, event: NotificationEvent) -> None:
        account, transaction = result.account, result.transaction

        logger.info(
            "Loyalty ledger updated",
            customer_id=account.customer_id,
            transaction_type=transaction.type.value,
            points=transaction.points,
            balance=account.points_balance,
            tier=account.tier.value,
        )

        dispatcher = PostCommitDispatcher(self.notifier, self.notification_executor)
        payload = {
            "customer_id": account.customer_id,
            "account_id": str(account.id),
            "transaction_id": str(transaction.id),
            "points": transaction.points,
            "balance": account.points_balance,
            "tier": account.tier.value,
        }
        if transaction.reference:
            payload["reference"] = transaction.reference
        dispatcher.add(event, payload)
        if result.tier_upgraded:
            logger.info("Loyalty tier upgraded", customer_id=account.customer_id,
                        previous_tier=result.previous_tier.value, tier=account.tier.value)
            dispatcher.add(NotificationEvent.TIER_UPGRADED, {**payload, "previous_tier": result.previous_tier.value})
        dispatcher.flush()
