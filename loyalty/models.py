from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict, computed_field


class TransactionKind(str, Enum):
    EARN = "earn"
    SPEND = "spend"
    REDEEM = "redeem"
    ADMIN_ADJUST = "admin-adjust"


class CallerRole(str, Enum):
    MEMBER = "member"
    SERVICE = "service"
    ADMIN = "admin"


class Caller(BaseModel):
    """Identity asserted by the upstream credential layer."""
    user_id: str
    role: CallerRole = CallerRole.MEMBER

    @property
    def is_admin(self) -> bool:
        return self.role == CallerRole.ADMIN


class RegisterAccountRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)
    name: Optional[str] = Field(default=None, max_length=100)


class EarnRequest(BaseModel):
    amount: int = Field(..., description="Points to credit; must be positive")
    description: str = Field(default="Points earned", max_length=500)

    model_config = ConfigDict(json_schema_extra={
        "example": {"amount": 100, "description": "Purchase #1042"}
    })


class PurchaseRequest(BaseModel):
    base_points: int = Field(..., description="Points before the tier multiplier")
    description: str = Field(default="Purchase", max_length=500)


class SpendRequest(BaseModel):
    amount: int = Field(..., description="Points to debit; must be positive")
    description: str = Field(default="Points spent", max_length=500)


class RedeemRequest(BaseModel):
    reward_id: int


class AdminAdjustRequest(BaseModel):
    amount: int = Field(..., description="Signed: positive credits, negative debits")
    description: str = Field(..., min_length=1, max_length=500)

    model_config = ConfigDict(json_schema_extra={
        "example": {"amount": -50, "description": "Duplicate purchase credit reversed"}
    })


class TierInfo(BaseModel):
    name: str
    threshold: int
    multiplier: float
    color: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class AccountInfo(BaseModel):
    id: str
    member_id: str
    email: str
    name: Optional[str] = None
    balance: int
    lifetime_points: int
    tier: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class BalanceResponse(BaseModel):
    user_id: str
    balance: int
    lifetime_points: int
    tier: str


class TransactionRecord(BaseModel):
    id: int
    user_id: str
    kind: TransactionKind
    amount: int
    balance_after: int
    description: Optional[str] = None
    admin_id: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class MutationResponse(BalanceResponse):
    transaction: TransactionRecord
    promoted: bool = False


class RewardInfo(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    category: str
    points_cost: int
    active: bool

    model_config = ConfigDict(from_attributes=True)


class RedemptionRecord(BaseModel):
    id: int
    user_id: str
    reward_id: int
    transaction_id: int
    points_spent: int
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class RedeemResponse(BalanceResponse):
    redemption: RedemptionRecord
    transaction: TransactionRecord


class HistoryResponse(BaseModel):
    user_id: str
    entries: list[TransactionRecord]
    total_count: int
    current_balance: int
    total_earned: int
    total_spent: int


class TierProgress(BaseModel):
    user_id: str
    lifetime_points: int
    current_tier: TierInfo
    next_tier: Optional[TierInfo] = None
    points_to_next_tier: Optional[int] = None


class TierCount(BaseModel):
    tier: str
    threshold: int
    accounts: int


class TierDistribution(BaseModel):
    tiers: list[TierCount]
    total_accounts: int


class LoyaltyStats(BaseModel):
    total_accounts: int
    points_in_circulation: int
    lifetime_points_issued: int
    total_redemptions: int


class AccountAudit(BaseModel):
    user_id: str
    cached_balance: int
    ledger_balance: int
    cached_tier: str
    derived_tier: str
    transaction_count: int

    @computed_field
    @property
    def consistent(self) -> bool:
        return self.cached_balance == self.ledger_balance and self.cached_tier == self.derived_tier
