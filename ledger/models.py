from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class EntryType(str, Enum):
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"
    REVERSAL = "REVERSAL"


class EntryStatus(str, Enum):
    POSTED = "POSTED"
    VOID = "VOID"


class RewardStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PAID = "PAID"
    REVERSED = "REVERSED"


# PAID and REVERSED are terminal.
REWARD_TRANSITIONS: dict[RewardStatus, tuple[RewardStatus, ...]] = {
    RewardStatus.PENDING: (RewardStatus.CONFIRMED, RewardStatus.REVERSED),
    RewardStatus.CONFIRMED: (RewardStatus.PAID, RewardStatus.REVERSED),
    RewardStatus.PAID: (),
    RewardStatus.REVERSED: (),
}


class User(BaseModel):
    id: UUID
    email: str
    name: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class LedgerEntry(BaseModel):
    id: UUID
    user_id: UUID
    reward_id: Optional[UUID] = None
    entry_type: EntryType
    amount: Decimal
    currency: str = "INR"
    status: EntryStatus = EntryStatus.POSTED
    reversal_of_entry_id: Optional[UUID] = None
    metadata: dict = Field(default_factory=dict)
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @property
    def is_posted(self) -> bool:
        return self.status == EntryStatus.POSTED


class Reward(BaseModel):
    id: UUID
    idempotency_key: str
    referrer_id: UUID
    referred_id: UUID
    status: RewardStatus
    amount: Decimal
    currency: str = "INR"
    metadata: dict = Field(default_factory=dict)
    created_at: datetime
    confirmed_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    reversed_at: Optional[datetime] = None
    reversal_reason: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)

    def allowed_transitions(self) -> tuple[RewardStatus, ...]:
        return REWARD_TRANSITIONS[self.status]

    def can_transition(self, target: RewardStatus) -> bool:
        return target in self.allowed_transitions()


class IdempotencyRecord(BaseModel):
    key: str
    request_hash: str
    response: dict
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class UserBalance(BaseModel):
    user_id: UUID
    currency: str
    current_balance: Decimal
    posted_entries: int
    total_entries: int
    last_transaction_at: Optional[datetime] = None


class LedgerPage(BaseModel):
    user_id: UUID
    entries: list[LedgerEntry]
    limit: int
    has_more: bool
    next_cursor: Optional[UUID] = None


class CreditResult(BaseModel):
    reward: Reward
    ledger_entry: LedgerEntry
    replayed: bool = False


class RewardResult(BaseModel):
    reward: Reward
    ledger_entry: LedgerEntry


# Request bodies for the HTTP layer.

class CreateUserRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)


class UpdateUserRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)


class CreateRewardRequest(BaseModel):
    idempotency_key: str = Field(..., min_length=1, max_length=255, description="Unique key to prevent duplicates")
    referrer_id: UUID
    referred_id: UUID
    amount: Decimal
    currency: Optional[str] = None
    metadata: dict = Field(default_factory=dict)

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "idempotency_key": "referral-123-signup-2024",
            "referrer_id": "550e8400-e29b-41d4-a716-446655440000",
            "referred_id": "660e8400-e29b-41d4-a716-446655440001",
            "amount": "500.00",
            "currency": "INR",
        }
    })


class ReverseRequest(BaseModel):
    reason: Optional[str] = Field(default=None, min_length=1, max_length=500)
