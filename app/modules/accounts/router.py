from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional

from app.core.database import get_db
from app.core.dependencies import get_current_active_user, get_ledger
from app.modules.accounts import schemas
from app.modules.accounts.services import AccountService
from app.modules.ledger.engine import LedgerEngine
from app.modules.users.models import User

router = APIRouter(prefix="/api/v1/accounts", tags=["accounts"])


@router.post("", response_model=schemas.AccountResponse, status_code=status.HTTP_201_CREATED)
async def create_account(
    account_data: schemas.AccountCreateRequest,
    user_id: Optional[int] = Query(None, description="Owner (admins only)"),
    db: AsyncSession = Depends(get_db),
    ledger: LedgerEngine = Depends(get_ledger),
    current_user: User = Depends(get_current_active_user)
):
    """
    Link a new account.

    - Account number must be unique per user
    - An opening balance is recorded as the first credit entry
    - Currency defaults to the configured default currency
    """
    owner_id = AccountService.resolve_owner(current_user, user_id)
    return await AccountService.create_account(db, ledger, owner_id, account_data)


@router.get("", response_model=schemas.AccountListResponse)
async def list_accounts(
    user_id: Optional[int] = Query(None, description="Owner (admins only)"),
    include_inactive: bool = Query(False),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user)
):
    """Get all accounts of the current user"""
    owner_id = AccountService.resolve_owner(current_user, user_id)
    accounts = await AccountService.get_user_accounts(db, owner_id, include_inactive)
    return {"results": len(accounts), "accounts": accounts}


@router.get("/{account_id}", response_model=schemas.AccountDetailResponse)
async def get_account(
    account_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user)
):
    """Get account details with its 10 most recent transactions"""
    account, recent = await AccountService.get_account_detail(db, account_id, current_user)
    detail = schemas.AccountDetailResponse.model_validate(account)
    detail.recent_transactions = [schemas.LedgerEntryResponse.model_validate(e) for e in recent]
    return detail


@router.patch("/{account_id}", response_model=schemas.AccountResponse)
async def update_account(
    account_id: int,
    update: schemas.AccountUpdate,
    db: AsyncSession = Depends(get_db),
    ledger: LedgerEngine = Depends(get_ledger),
    current_user: User = Depends(get_current_active_user)
):
    """Update account name, institution, type or active flag"""
    return await AccountService.update_account(db, ledger, account_id, current_user, update)


@router.delete("/{account_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_account(
    account_id: int,
    db: AsyncSession = Depends(get_db),
    ledger: LedgerEngine = Depends(get_ledger),
    current_user: User = Depends(get_current_active_user)
):
    """Deactivate an account; its ledger history is kept"""
    await AccountService.deactivate_account(db, ledger, account_id, current_user)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
