"""
Expiry sweep.

Finds EARN transactions whose ``expires_at`` has passed, groups them by
account and writes one EXPIRE transaction per account for
``min(sum of due points, current balance)``. Points the customer already
redeemed are therefore never expired a second time, and the balance never
goes negative. Due EARN rows are stamped as consumed in the same unit of
work; only rows a sweep stamps itself count toward its expiry, so stale or
overlapping sweeps skip them.

A failure on one account is logged and counted; the sweep carries on with
the rest.
"""

import threading
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import TYPE_CHECKING, Optional
from uuid import UUID

import structlog

from .models import SweepResult, Transaction

if TYPE_CHECKING:
    from .service import LedgerService

logger = structlog.get_logger(__name__)


class ExpirySweeper:
    def __init__(self, service: "LedgerService", max_workers: int = 1):
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.service = service
        self.store = service.store
        self.max_workers = max_workers
        self._stop = threading.Event()

    def stop(self) -> None:
        """Ask a running sweep to finish its current batch and return. Later runs return at once."""
        self._stop.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def run(self, now: Optional[datetime] = None) -> SweepResult:
        now = now or self.service.clock()
        due = self.store.list_expiring_earn_transactions(now)

        by_account: dict[UUID, list[Transaction]] = defaultdict(list)
        for transaction in due:
            by_account[transaction.account_id].append(transaction)
        accounts = list(by_account.items())

        logger.info("Expiry sweep started", now=now.isoformat(),
                    due_transactions=len(due), accounts=len(accounts))

        result = SweepResult()
        executor = ThreadPoolExecutor(max_workers=self.max_workers) if self.max_workers > 1 else None
        try:
            for start in range(0, len(accounts), self.max_workers):
                if self.stopping:
                    result.stopped = True
                    logger.info("Expiry sweep stopped early", processed=result.processed,
                                remaining=len(accounts) - start)
                    break
                batch = accounts[start:start + self.max_workers]
                if executor is not None:
                    outcomes = list(executor.map(lambda item: self._sweep_account(item[0], item[1], now), batch))
                else:
                    outcomes = [self._sweep_account(account_id, txns, now) for account_id, txns in batch]

                for expired_points in outcomes:
                    result.processed += 1
                    if expired_points is None:
                        result.errors += 1
                    elif expired_points > 0:
                        result.expired += 1
                        result.points_expired += expired_points
        finally:
            if executor is not None:
                executor.shutdown(wait=True)

        logger.info(
            "Expiry sweep complete",
            processed=result.processed,
            expired=result.expired,
            errors=result.errors,
            points_expired=result.points_expired,
        )
        return result

    def _sweep_account(self, account_id: UUID, transactions: list[Transaction], now: datetime) -> Optional[int]:
        """Returns the points expired for the account, or None when it failed."""
        try:
            result = self.service.expire_due_points(account_id, transactions, now=now)
        except Exception:
            logger.exception("Expiry failed for account", account_id=str(account_id))
            return None
        return -result.transaction.points if result is not None else 0
