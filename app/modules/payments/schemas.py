from pydantic import BaseModel, Field
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from app.modules.ledger.schemas import LedgerEntryResponse, PostEntryResponse


class PaymentCreate(BaseModel):
    """
    Pay from an account.

    Without ``scheduled_for`` (or with a date that is not in the future) the
    payment is settled immediately.
    """
    account_id: int
    amount: Decimal = Field(..., gt=0)
    scheduled_for: Optional[datetime] = None
    description: Optional[str] = Field(None, min_length=1, max_length=500)
    reference: Optional[str] = Field(None, min_length=1, max_length=100)
    category: Optional[str] = Field(None, min_length=1, max_length=50)
    idempotency_key: Optional[str] = Field(None, min_length=1, max_length=255)


class PaymentResponse(LedgerEntryResponse):
    """A payment is a ledger entry of kind ``payment``"""


class PaymentResultResponse(PostEntryResponse):
    entry: PaymentResponse


class PaymentListResponse(BaseModel):
    results: int
    payments: List[PaymentResponse]


class PaymentStatsResponse(BaseModel):
    total_paid: Decimal
    payments_count: int
    upcoming_payments: int
    window_days: int
