from pydantic import BaseModel, Field, field_validator, model_validator
from typing import List, Optional
from datetime import datetime
from decimal import Decimal
from enum import Enum

from app.modules.ledger.money import to_money
from app.modules.ledger.schemas import LedgerEntryResponse


class AccountTypeEnum(str, Enum):
    SAVINGS = "savings"
    CHEQUE = "cheque"
    CREDIT_CARD = "credit_card"
    LOAN = "loan"
    OTHER = "other"


# Account Creation
class AccountCreateRequest(BaseModel):
    """Request to link a new account"""
    account_type: AccountTypeEnum
    account_number: str = Field(..., min_length=1, max_length=34)
    account_name: str = Field(..., min_length=1, max_length=100)
    institution: str = Field(..., min_length=1, max_length=100)
    opening_balance: Decimal = Field(default=Decimal("0"), ge=0)
    currency: Optional[str] = Field(None, min_length=3, max_length=3)

    @field_validator("currency")
    @classmethod
    def normalise_currency(cls, v):
        """Currency codes are stored upper-case"""
        if v is None:
            return v
        if not v.isalpha():
            raise ValueError("Currency must be a 3-letter code")
        return v.upper()


class AccountUpdate(BaseModel):
    """
    Fields an owner may change.

    Balance, currency and ownership are not updatable here: balance only
    changes through ledger entries and currency is fixed at creation.
    """
    account_type: Optional[AccountTypeEnum] = None
    account_name: Optional[str] = Field(None, min_length=1, max_length=100)
    institution: Optional[str] = Field(None, min_length=1, max_length=100)
    is_active: Optional[bool] = None

    class Config:
        extra = "forbid"


class AccountResponse(BaseModel):
    """Account details"""
    id: int
    user_id: int
    account_type: AccountTypeEnum
    account_number: str
    account_name: str
    institution: str
    balance: Decimal
    currency: str
    is_active: bool
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True

    @model_validator(mode="after")
    def quantize_balance(self):
        self.balance = to_money(self.balance, self.currency)
        return self


class AccountDetailResponse(AccountResponse):
    """Account details with its most recent entries"""
    recent_transactions: List[LedgerEntryResponse] = []


class AccountListResponse(BaseModel):
    results: int
    accounts: List[AccountResponse]
