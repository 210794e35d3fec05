from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict


ZERO = Decimal("0")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Bucket(str, Enum):
    AVAILABLE = "available"
    PENDING = "pending"
    PROCESSING = "processing"
    WITHDRAWN = "withdrawn"


class EntryType(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"
    TRANSFER = "transfer"
    SYNC = "sync"


class EntryStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class EntryCategory(str, Enum):
    COMMISSION = "commission"
    MATURATION = "maturation"
    WITHDRAWAL = "withdrawal"
    WITHDRAWAL_REVERSAL = "withdrawal_reversal"
    SYNC = "sync"


class EarningStatus(str, Enum):
    PENDING = "pending"
    AVAILABLE = "available"
    PROCESSING = "processing"
    WITHDRAWN = "withdrawn"
    CANCELLED = "cancelled"


class WithdrawalStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    REJECTED = "rejected"


class WithdrawalMethod(str, Enum):
    BANK_TRANSFER = "bank_transfer"
    ESEWA = "esewa"
    KHALTI = "khalti"


class WithdrawalAction(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


class KycStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Balance(BaseModel):
    user_id: str
    available: Decimal = ZERO
    pending: Decimal = ZERO
    processing: Decimal = ZERO
    withdrawn: Decimal = ZERO
    total_earnings: Decimal = ZERO
    last_synced_at: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 0

    model_config = ConfigDict(from_attributes=True)

    def bucket_total(self) -> Decimal:
        return self.available + self.pending + self.processing + self.withdrawn

    def is_consistent(self) -> bool:
        buckets = (self.available, self.pending, self.processing, self.withdrawn)
        return all(b >= 0 for b in buckets) and self.bucket_total() == self.total_earnings


class BalanceTransaction(BaseModel):
    id: UUID
    user_id: str
    type: EntryType
    status: EntryStatus
    category: EntryCategory
    amount: Decimal
    description: str
    related_transaction_id: Optional[str] = None
    withdrawal_id: Optional[UUID] = None
    tier: Optional[int] = None
    balance_before: Optional[Decimal] = None
    balance_after: Optional[Decimal] = None
    metadata: dict = Field(default_factory=dict)
    created_at: datetime
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class AffiliateEarning(BaseModel):
    id: UUID
    user_id: str
    referred_user_id: Optional[str] = None
    transaction_id: str
    amount: Decimal
    tier: int
    status: EarningStatus = EarningStatus.PENDING
    description: str
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AccountDetails(BaseModel):
    account_name: Optional[str] = None
    account_number: Optional[str] = None
    bank_name: Optional[str] = None
    branch: Optional[str] = None
    phone_number: Optional[str] = None


class Withdrawal(BaseModel):
    id: UUID
    user_id: str
    amount: Decimal
    method: WithdrawalMethod
    account_details: AccountDetails = Field(default_factory=AccountDetails)
    status: WithdrawalStatus = WithdrawalStatus.PENDING
    rejection_reason: Optional[str] = None
    processed_at: Optional[datetime] = None
    processed_by: Optional[str] = None
    transaction_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class KycRecord(BaseModel):
    user_id: str
    status: KycStatus
    rejection_reason: Optional[str] = None
    verified_at: Optional[datetime] = None


class UserRecord(BaseModel):
    id: str
    name: Optional[str] = None
    email: Optional[str] = None
    referred_by: Optional[str] = None


class CommissionSplit(BaseModel):
    tier1: Decimal
    tier2: Decimal


class PurchaseApproval(BaseModel):
    id: str = Field(..., description="Id of the approved purchase transaction")
    buyer_id: Optional[str] = None
    referrer_id: Optional[str] = None
    tier2_referrer_id: Optional[str] = None
    amount: Decimal
    package_id: Optional[str] = None
    package_title: Optional[str] = None
    approved_at: Optional[datetime] = None
    # Commission amounts frozen on the purchase at checkout, when present
    tier1_commission: Optional[Decimal] = None
    tier2_commission: Optional[Decimal] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "id": "665f1c2e9b1e8a0012ab34cd",
            "buyer_id": "buyer-1",
            "referrer_id": "affiliate-1",
            "amount": 1000,
            "package_id": "pkg-basic",
            "package_title": "Basic Package",
        }
    })


class CommissionResult(BaseModel):
    tier: int
    user_id: Optional[str] = None
    amount: Decimal
    success: bool
    duplicate: bool = False
    entry_id: Optional[UUID] = None
    error: Optional[str] = None


class BackfillResponse(BaseModel):
    purchases: int
    credited: int
    duplicates: int
    failed: int
    results: list[CommissionResult]


class CreateWithdrawalRequest(BaseModel):
    amount: Decimal = Field(..., description="Amount to withdraw from the available balance")
    method: WithdrawalMethod
    account_details: AccountDetails = Field(default_factory=AccountDetails)

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "amount": 500,
            "method": "esewa",
            "account_details": {"phone_number": "9800000000"},
        }
    })


class ResolveWithdrawalRequest(BaseModel):
    action: WithdrawalAction
    approver_id: str
    transaction_id: Optional[str] = Field(default=None, description="External payout reference, required to approve")
    rejection_reason: Optional[str] = Field(default=None, description="Required to reject")


class UserScopeRequest(BaseModel):
    user_id: Optional[str] = None


class MaturationResult(BaseModel):
    user_id: str
    amount: Decimal
    earnings: int
    success: bool = True
    error: Optional[str] = None


class BalanceSummary(BaseModel):
    user_id: str
    currency: str
    available: Decimal
    pending: Decimal
    processing: Decimal
    withdrawn: Decimal
    total: Decimal
    last_synced_at: Optional[datetime] = None
    recent_transactions: list[BalanceTransaction]


class TransactionPage(BaseModel):
    user_id: str
    entries: list[BalanceTransaction]
    total: int
    page: int
    limit: int
    pages: int


class WithdrawalPage(BaseModel):
    withdrawals: list[Withdrawal]
    total: int
    page: int
    limit: int
    pages: int


class SyncResult(BaseModel):
    user_id: str
    success: bool
    changed: bool = False
    balance: Optional[Balance] = None
    error: Optional[str] = None


class SyncResponse(BaseModel):
    synced: int
    results: list[SyncResult]
