from datetime import datetime, timezone
from enum import Enum
from math import ceil
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Tier(str, Enum):
    BRONZE = "BRONZE"
    SILVER = "SILVER"
    GOLD = "GOLD"
    PLATINUM = "PLATINUM"


class TransactionType(str, Enum):
    EARN = "EARN"
    REDEEM = "REDEEM"
    ADJUST = "ADJUST"
    EXPIRE = "EXPIRE"


class Account(BaseModel):
    id: UUID
    customer_id: str
    points_balance: int = 0
    points_earned: int = 0
    points_redeemed: int = 0
    tier: Tier = Tier.BRONZE
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Transaction(BaseModel):
    id: UUID
    account_id: UUID
    type: TransactionType
    points: int
    description: str
    reference: Optional[str] = None
    expires_at: Optional[datetime] = None
    expired_at: Optional[datetime] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class TransactionFilter(BaseModel):
    type: Optional[TransactionType] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    page: int = 1
    limit: int = 20

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit

    def matches(self, transaction: Transaction) -> bool:
        if self.type is not None and transaction.type != self.type:
            return False
        if self.date_from is not None and transaction.created_at < self.date_from:
            return False
        if self.date_to is not None and transaction.created_at > self.date_to:
            return False
        return True


class LedgerResult(BaseModel):
    account: Account
    transaction: Transaction
    previous_tier: Tier

    @property
    def tier_changed(self) -> bool:
        return self.account.tier != self.previous_tier

    @property
    def tier_upgraded(self) -> bool:
        # Tiers are declared lowest first.
        order = list(Tier)
        return order.index(self.account.tier) > order.index(self.previous_tier)


class LedgerOperationResponse(BaseModel):
    account: Account
    transaction: Transaction
    previous_tier: Tier
    tier_changed: bool
    message: str

    @classmethod
    def from_result(cls, result: LedgerResult, message: str) -> "LedgerOperationResponse":
        return cls(
            account=result.account,
            transaction=result.transaction,
            previous_tier=result.previous_tier,
            tier_changed=result.tier_changed,
            message=message,
        )


class TransactionPage(BaseModel):
    items: list[Transaction]
    total: int
    page: int
    limit: int
    total_pages: int

    @classmethod
    def build(cls, items: list[Transaction], total: int, page: int, limit: int) -> "TransactionPage":
        return cls(
            items=items,
            total=total,
            page=page,
            limit=limit,
            total_pages=ceil(total / limit) if total else 0,
        )


class SweepResult(BaseModel):
    processed: int = 0
    expired: int = 0
    errors: int = 0
    points_expired: int = 0
    stopped: bool = False


class LoyaltySummary(BaseModel):
    customer_id: str
    tier: Tier
    points_balance: int
    points_earned: int
    points_redeemed: int
    expiring_points: int
    next_expiry_at: Optional[datetime] = None
    next_tier: Optional[Tier] = None
    points_to_next_tier: Optional[int] = None


class BalanceReconciliation(BaseModel):
    customer_id: str
    recorded_balance: int
    ledger_balance: int
    transaction_count: int
    consistent: bool


class EarnPointsRequest(BaseModel):
    points: int = Field(..., description="Points to credit, must be positive")
    description: str
    reference: Optional[str] = Field(default=None, description="External correlation id, e.g. an order id")
    expires_at: Optional[datetime] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "points": 250,
            "description": "Order #1048",
            "reference": "order-1048",
            "expires_at": "2027-03-01T00:00:00Z"
        }
    })


class RedeemPointsRequest(BaseModel):
    points: int = Field(..., description="Points to debit, must be positive")
    description: str
    reference: Optional[str] = None


class AdjustPointsRequest(BaseModel):
    points: int = Field(..., description="Signed correction, must not be zero")
    description: str
    reference: Optional[str] = None


class ExpirySweepRequest(BaseModel):
    now: Optional[datetime] = None
