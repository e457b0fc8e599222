from pydantic import BaseModel, Field, model_validator
from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from enum import Enum

from app.modules.ledger.money import to_money


class EntryTypeEnum(str, Enum):
    DEBIT = "debit"
    CREDIT = "credit"


class EntryStatusEnum(str, Enum):
    PENDING = "pending"
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    FAILED = "failed"


class EntryKindEnum(str, Enum):
    TRANSACTION = "transaction"
    PAYMENT = "payment"


class TransactionCreate(BaseModel):
    """Post a debit or credit against an account"""
    transaction_type: EntryTypeEnum
    amount: Decimal = Field(..., gt=0)
    description: Optional[str] = Field(None, min_length=1, max_length=500)
    reference: Optional[str] = Field(None, min_length=1, max_length=100)
    category: Optional[str] = Field(None, min_length=1, max_length=50)
    transaction_date: Optional[datetime] = None
    idempotency_key: Optional[str] = Field(None, min_length=1, max_length=255)


class LedgerEntryResponse(BaseModel):
    """Committed ledger entry"""
    id: int
    account_id: int
    kind: EntryKindEnum
    entry_type: EntryTypeEnum
    amount: Decimal
    currency: str
    status: EntryStatusEnum
    balance_after: Optional[Decimal] = None
    description: Optional[str] = None
    reference: Optional[str] = None
    category: Optional[str] = None
    idempotency_key: Optional[str] = None
    occurred_at: datetime
    scheduled_for: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True

    @model_validator(mode="after")
    def quantize_amounts(self):
        self.amount = to_money(self.amount, self.currency)
        if self.balance_after is not None:
            self.balance_after = to_money(self.balance_after, self.currency)
        return self


class PostEntryResponse(BaseModel):
    """Result of posting an entry"""
    entry: LedgerEntryResponse
    balance: Decimal
    replayed: bool = False


class LedgerPageResponse(BaseModel):
    """One page of account history"""
    items: List[LedgerEntryResponse]
    total: int
    limit: int
    offset: int


class BalanceResponse(BaseModel):
    account_id: int
    balance: Decimal
    currency: str


class BalanceCheckResponse(BaseModel):
    account_id: int
    stored: Decimal
    computed: Decimal
    entry_count: int
    ok: bool
