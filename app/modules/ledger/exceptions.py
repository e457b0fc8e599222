"""
Ledger error taxonomy.

    LedgerError
    |
    +-- InvalidAmount           (terminal)
    +-- AccountNotFound         (terminal)
    +-- AccountInactive         (terminal)
    +-- InsufficientFunds       (terminal)
    +-- EntryNotFound           (terminal)
    +-- InvalidEntryState       (terminal)
    +-- IdempotencyKeyReused    (terminal)
    +-- TransientLedgerError    (retryable)
        +-- ConcurrencyConflict
        +-- StorageUnavailable

Terminal errors are surfaced unchanged and never retried. Transient errors
mean nothing was committed by the failed attempt; the engine retries them a
bounded number of times before surfacing them.
"""
from decimal import Decimal
from fastapi import status
from typing import Dict, Optional

from app.core.exceptions import AppError


class LedgerError(AppError):
    """Base class for ledger failures"""


class InvalidAmount(LedgerError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "invalid_amount"

    def __init__(self, amount, reason: str):
        super().__init__(f"Invalid amount {amount}: {reason}")
        self.amount = amount
        self.reason = reason


class AccountNotFound(LedgerError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "account_not_found"

    def __init__(self, account_id: int):
        super().__init__(f"No account found with id {account_id}")
        self.account_id = account_id


class AccountInactive(LedgerError):
    status_code = status.HTTP_409_CONFLICT
    code = "account_inactive"

    def __init__(self, account_id: int):
        super().__init__(f"Account {account_id} is inactive")
        self.account_id = account_id


class InsufficientFunds(LedgerError):
    status_code = status.HTTP_409_CONFLICT
    code = "insufficient_funds"

    def __init__(self, account_id: int, balance: Decimal, amount: Decimal):
        super().__init__("Insufficient funds")
        self.account_id = account_id
        self.balance = balance
        self.amount = amount


class EntryNotFound(LedgerError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "entry_not_found"

    def __init__(self, entry_id: int):
        super().__init__(f"No ledger entry found with id {entry_id}")
        self.entry_id = entry_id


class InvalidEntryState(LedgerError):
    status_code = status.HTTP_409_CONFLICT
    code = "invalid_entry_state"

    def __init__(self, entry_id: int, current: str, action: str):
        super().__init__(f"Cannot {action} entry {entry_id} in status '{current}'")
        self.entry_id = entry_id
        self.current = current


class IdempotencyKeyReused(LedgerError):
    status_code = status.HTTP_409_CONFLICT
    code = "idempotency_key_reused"

    def __init__(self, idempotency_key: str):
        super().__init__(
            f"Idempotency key '{idempotency_key}' was already used for a different request"
        )
        self.idempotency_key = idempotency_key


class TransientLedgerError(LedgerError):
    """Nothing was committed; the whole operation may be retried"""
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    retry_after_seconds = 1

    @property
    def headers(self) -> Optional[Dict[str, str]]:
        return {"Retry-After": str(self.retry_after_seconds)}


class ConcurrencyConflict(TransientLedgerError):
    code = "concurrency_conflict"

    def __init__(self, account_id: int):
        super().__init__(f"Account {account_id} was modified concurrently, please retry")
        self.account_id = account_id


class StorageUnavailable(TransientLedgerError):
    code = "storage_unavailable"

    def __init__(self, detail: str = "Storage is temporarily unavailable, please retry", *, ambiguous: bool = False):
        super().__init__(detail)
        # Set when the failure hit the commit itself and no idempotency key
        # guards a replay: the write may or may not have landed.
        self.ambiguous = ambiguous
