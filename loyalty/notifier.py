"""
Outbound loyalty events.

The ledger never lets a notification failure undo a committed write: events
produced by an operation are queued on a PostCommitDispatcher and only sent
after the store transaction has returned. Anything a notifier raises is
logged and dropped.
"""

from concurrent.futures import Executor, Future
from enum import Enum
from typing import Any, Optional, Protocol

import structlog

logger = structlog.get_logger(__name__)


class NotificationEvent(str, Enum):
    POINTS_EARNED = "loyalty.points_earned"
    POINTS_REDEEMED = "loyalty.points_redeemed"
    POINTS_ADJUSTED = "loyalty.points_adjusted"
    POINTS_EXPIRED = "loyalty.points_expired"
    TIER_UPGRADED = "loyalty.tier_upgraded"


class Notifier(Protocol):
    def notify(self, event_type: str, payload: dict[str, Any]) -> None:
        ...


class NullNotifier:
    def notify(self, event_type: str, payload: dict[str, Any]) -> None:
        return None


class LoggingNotifier:
    """Writes every event to the log. Useful until an event bus is wired in."""

    def notify(self, event_type: str, payload: dict[str, Any]) -> None:
        logger.info("Loyalty event", event_type=event_type, **payload)


class PostCommitDispatcher:
    def __init__(self, notifier: Notifier, executor: Optional[Executor] = None):
        self.notifier = notifier
        self.executor = executor
        self._pending: list[tuple[str, dict[str, Any]]] = []

    def add(self, event_type: NotificationEvent, payload: dict[str, Any]) -> None:
        self._pending.append((event_type.value, payload))

    def flush(self) -> int:
        """Send queued events. Returns how many were handed to the notifier without error."""
        events, self._pending = self._pending, []
        delivered = 0
        for event_type, payload in events:
            if self.executor is not None:
                future = self.executor.submit(self.notifier.notify, event_type, payload)
                future.add_done_callback(_log_failure(event_type, payload))
                delivered += 1
                continue
            try:
                self.notifier.notify(event_type, payload)
                delivered += 1
            except Exception:
                logger.exception(
                    "Loyalty notification failed",
                    event_type=event_type,
                    customer_id=payload.get("customer_id"),
                    transaction_id=payload.get("transaction_id"),
                )
        return delivered


def _log_failure(event_type: str, payload: dict[str, Any]):
    def callback(future: Future) -> None:
        exc = future.exception()
        if exc is not None:
            logger.error(
                "Loyalty notification failed",
                event_type=event_type,
                customer_id=payload.get("customer_id"),
                transaction_id=payload.get("transaction_id"),
                error=repr(exc),
            )
    return callback
