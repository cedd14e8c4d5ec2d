from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict
from pydantic.alias_generators import to_camel


class Role(str, Enum):
    ADMIN = "admin"
    PLAYER = "player"


class AccountStatus(str, Enum):
    ACTIVE = "active"
    BANNED = "banned"


class TransactionType(str, Enum):
    MANUAL = "manual"
    REQUEST = "request"
    REVERSAL = "reversal"
    RECOVERY = "recovery"
    DAILY_MINT = "daily-mint"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    REVERSED = "reversed"


class Direction(str, Enum):
    SENT = "sent"
    RECEIVED = "received"
    SYSTEM = "system"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class Identity(CamelModel):
    """The authenticated caller of a single request."""

    user_id: UUID
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


class Account(CamelModel):
    id: UUID
    display_name: str
    email: Optional[str] = None
    role: Role = Role.PLAYER
    balance: int = Field(default=0, ge=0)
    status: AccountStatus = AccountStatus.ACTIVE
    verified: bool = False
    ban_reason: Optional[str] = None
    banned_at: Optional[datetime] = None
    verified_at: Optional[datetime] = None
    created_at: datetime

    @property
    def is_banned(self) -> bool:
        return self.status == AccountStatus.BANNED


class Transaction(CamelModel):
    id: UUID
    from_account_id: Optional[UUID] = None
    to_account_id: Optional[UUID] = None
    amount: int = Field(..., gt=0)
    type: TransactionType
    status: TransactionStatus
    reason: Optional[str] = None
    created_at: datetime
    created_by: Optional[UUID] = None
    decided_by: Optional[UUID] = None
    decided_at: Optional[datetime] = None
    decision_reason: Optional[str] = None
    related_transaction_id: Optional[UUID] = None
    reversed_by_transaction_id: Optional[UUID] = None
    idempotency_key: Optional[str] = None

    def can_approve(self) -> bool:
        return self.type == TransactionType.REQUEST and self.status == TransactionStatus.PENDING

    def can_reject(self) -> bool:
        return self.can_approve()

    def can_reverse(self) -> bool:
        return (
            self.type == TransactionType.MANUAL
            and self.status == TransactionStatus.APPROVED
            and self.reversed_by_transaction_id is None
        )


class DailyMintWindow(CamelModel):
    account_id: UUID
    last_claimed_at: Optional[datetime] = None


# Requests

class TransferRequest(CamelModel):
    from_account_id: Optional[UUID] = None
    to_account_id: UUID
    amount: int
    reason: Optional[str] = None
    type: Optional[TransactionType] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "fromAccountId": "550e8400-e29b-41d4-a716-446655440000",
            "toAccountId": "660e8400-e29b-41d4-a716-446655440001",
            "amount": 500,
            "reason": "Tournament payout",
        }
    })


class BulkTransferRequest(CamelModel):
    items: list[TransferRequest]


class DecisionRequest(CamelModel):
    transaction_id: UUID
    reason: Optional[str] = None


class ReverseRequest(CamelModel):
    transaction_id: UUID
    reason: str = Field(..., description="Reason for reversal")


class RecoverChipsRequest(CamelModel):
    banned_user_id: UUID
    verified_user_id: UUID
    reason: str = Field(..., description="Reason for recovery")


class AccountActionRequest(CamelModel):
    user_id: UUID
    reason: Optional[str] = None


class DailyMintRequest(CamelModel):
    amount_per_user: int


# Responses

class TransferResponse(CamelModel):
    transaction: Transaction
    message: str


class BulkTransferFailure(CamelModel):
    index: int
    code: str
    message: str


class BulkTransferReport(CamelModel):
    succeeded: list[Transaction] = Field(default_factory=list)
    failed: list[BulkTransferFailure] = Field(default_factory=list)
    total_amount: int = 0


class RecoveryResponse(CamelModel):
    transaction: Transaction
    recovered_amount: int
    message: str


class MintCredit(CamelModel):
    account_id: UUID
    display_name: str
    transaction_id: UUID
    amount: int


class MintSkip(CamelModel):
    account_id: UUID
    display_name: str
    code: str
    message: str


class MintReport(CamelModel):
    amount_per_user: int
    credited: list[MintCredit] = Field(default_factory=list)
    skipped: list[MintSkip] = Field(default_factory=list)
    total_minted: int = 0


class DailyMintStatus(CamelModel):
    account_id: UUID
    amount: int
    can_claim: bool
    remaining_seconds: int
    last_claimed_at: Optional[datetime] = None
    next_claim_at: Optional[datetime] = None


class TransactionFilters(CamelModel):
    type: Optional[TransactionType] = None
    status: Optional[TransactionStatus] = None
    from_date: Optional[datetime] = None
    to_date: Optional[datetime] = None
    search: Optional[str] = None
    account_id: Optional[UUID] = None


class TransactionView(Transaction):
    from_display_name: Optional[str] = None
    to_display_name: Optional[str] = None
    direction: Optional[Direction] = None


class TransactionPage(CamelModel):
    transactions: list[TransactionView]
    total_count: int
    limit: int
    offset: int
