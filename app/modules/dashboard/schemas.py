from pydantic import BaseModel
from decimal import Decimal
from typing import Dict, List

from app.modules.payments.schemas import PaymentResponse, PaymentStatsResponse


class AccountSummary(BaseModel):
    total: int
    active: int
    inactive: int
    balances: Dict[str, Decimal]  # currency -> sum of active balances


class EntryStatusSummary(BaseModel):
    count: int
    total_amount: Decimal


class DashboardResponse(BaseModel):
    """Read-only overview of accounts, ledger activity and payments"""
    accounts: AccountSummary
    entries: Dict[str, EntryStatusSummary]  # keyed by entry status
    payments: PaymentStatsResponse
    recent_payments: List[PaymentResponse]
