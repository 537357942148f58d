from typing import Optional


class LedgerServiceError(Exception):
    pass


class NotFoundError(LedgerServiceError):
    pass


class AccountNotFoundError(NotFoundError):
    pass


class TransactionNotFoundError(NotFoundError):
    pass


class AccountAlreadyExistsError(LedgerServiceError):
    pass


class InvalidAmountError(LedgerServiceError):
    pass


class InvalidPaginationError(LedgerServiceError):
    pass


class InsufficientBalanceError(LedgerServiceError):
    def __init__(self, balance: int, required: int, message: Optional[str] = None):
        self.balance = balance
        self.required = required
        super().__init__(message or f"Insufficient balance: {balance} available, {required} required")


class TransientStoreError(LedgerServiceError):
    """Lock timeout, deadlock or lost connection. The whole operation is safe to retry."""


class NotificationError(Exception):
    """Raised by notifiers. Never propagated past the post-commit dispatcher."""
