from fastapi import APIRouter, Depends, Header, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession
from datetime import datetime
from decimal import Decimal
from typing import Optional

from app.core.database import get_db
from app.core.dependencies import get_current_active_user, get_ledger, require_admin
from app.modules.accounts.services import AccountService
from app.modules.ledger import schemas
from app.modules.ledger.engine import EntryFilters, LedgerEngine
from app.modules.ledger.exceptions import EntryNotFound
from app.modules.ledger.models import EntryType
from app.modules.users.models import User

router = APIRouter(prefix="/api/v1/accounts", tags=["ledger"])


@router.post(
    "/{account_id}/transactions",
    response_model=schemas.PostEntryResponse,
    status_code=status.HTTP_201_CREATED
)
async def create_transaction(
    account_id: int,
    txn: schemas.TransactionCreate,
    response: Response,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key", max_length=255),
    db: AsyncSession = Depends(get_db),
    ledger: LedgerEngine = Depends(get_ledger),
    current_user: User = Depends(get_current_active_user)
):
    """
    Post a debit or credit against an account.

    - Debits fail with `insufficient_funds` when the balance is too low
    - Supply `Idempotency-Key` (header or body) to make retries safe;
      a replay returns the original entry with status 200
    """
    await AccountService.get_account(db, account_id, current_user)

    result = await ledger.post_entry(
        account_id,
        EntryType(txn.transaction_type.value),
        txn.amount,
        idempotency_key or txn.idempotency_key,
        description=txn.description,
        reference=txn.reference,
        category=txn.category,
        occurred_at=txn.transaction_date,
    )
    if result.replayed:
        response.status_code = status.HTTP_200_OK
        response.headers["Idempotent-Replay"] = "true"
    return {"entry": result.entry, "balance": result.balance, "replayed": result.replayed}


@router.get("/{account_id}/transactions", response_model=schemas.LedgerPageResponse)
async def list_transactions(
    account_id: int,
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    type: Optional[schemas.EntryTypeEnum] = Query(None),
    category: Optional[str] = Query(None, min_length=1),
    min_amount: Optional[Decimal] = Query(None, ge=0),
    max_amount: Optional[Decimal] = Query(None, ge=0),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
    ledger: LedgerEngine = Depends(get_ledger),
    current_user: User = Depends(get_current_active_user)
):
    """Account history, newest first, with total count for pagination"""
    await AccountService.get_account(db, account_id, current_user)

    filters = EntryFilters(
        start_date=start_date,
        end_date=end_date,
        entry_type=EntryType(type.value) if type else None,
        category=category,
        min_amount=min_amount,
        max_amount=max_amount,
    )
    page = await ledger.list_entries(account_id, filters, limit=limit, offset=offset)
    return {"items": page.items, "total": page.total, "limit": page.limit, "offset": page.offset}


@router.get("/{account_id}/transactions/{entry_id}", response_model=schemas.LedgerEntryResponse)
async def get_transaction(
    account_id: int,
    entry_id: int,
    db: AsyncSession = Depends(get_db),
    ledger: LedgerEngine = Depends(get_ledger),
    current_user: User = Depends(get_current_active_user)
):
    """Get a single ledger entry"""
    await AccountService.get_account(db, account_id, current_user)
    entry = await ledger.get_entry(entry_id)
    if entry.account_id != account_id:
        raise EntryNotFound(entry_id)
    return entry


@router.get("/{account_id}/balance", response_model=schemas.BalanceResponse)
async def get_balance(
    account_id: int,
    db: AsyncSession = Depends(get_db),
    ledger: LedgerEngine = Depends(get_ledger),
    current_user: User = Depends(get_current_active_user)
):
    """Current committed balance"""
    account = await AccountService.get_account(db, account_id, current_user)
    balance = await ledger.get_balance(account_id)
    return {"account_id": account_id, "balance": balance, "currency": account.currency}


@router.get("/{account_id}/reconcile", response_model=schemas.BalanceCheckResponse)
async def reconcile_account(
    account_id: int,
    ledger: LedgerEngine = Depends(get_ledger),
    admin: User = Depends(require_admin)
):
    """Compare the stored balance with the sum of completed entries (admin)"""
    check = await ledger.verify_balance(account_id)
    return {
        "account_id": check.account_id,
        "stored": check.stored,
        "computed": check.computed,
        "entry_count": check.entry_count,
        "ok": check.ok,
    }
