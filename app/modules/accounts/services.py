from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, and_
from fastapi import HTTPException, status
from typing import List, Optional, Tuple
import logging

from app.core.config import settings
from app.modules.accounts.models import Account, AccountType
from app.modules.accounts import schemas
from app.modules.ledger.engine import LedgerEngine
from app.modules.ledger.exceptions import AccountNotFound
from app.modules.ledger.models import LedgerEntry
from app.modules.users.models import User

logger = logging.getLogger(__name__)

RECENT_TRANSACTIONS_LIMIT = 10


class AccountService:
    """Service layer for account management operations"""

    @staticmethod
    def ensure_can_manage(account: Account, user: User) -> None:
        """Only the owner or an admin may act on an account"""
        if account.user_id != user.id and not user.is_admin:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="You are not authorized to access this account"
            )

    @staticmethod
    def resolve_owner(user: User, user_id: Optional[int]) -> int:
        """Owner id for a request; only admins may act for another user"""
        if user_id is None or user_id == user.id:
            return user.id
        if not user.is_admin:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="You are not authorized to manage accounts for this user"
            )
        return user_id

    @staticmethod
    async def get_account(db: AsyncSession, account_id: int, user: User) -> Account:
        """Get specific account the user may act on"""
        account = await db.get(Account, account_id)
        if account is None:
            raise AccountNotFound(account_id)
        AccountService.ensure_can_manage(account, user)
        return account

    @staticmethod
    async def create_account(
        db: AsyncSession,
        ledger: LedgerEngine,
        owner_id: int,
        account_data: schemas.AccountCreateRequest
    ) -> Account:
        """Link a new account, recording any opening balance in the ledger"""
        owner = await db.get(User, owner_id)
        if owner is None or not owner.is_active:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="User not found"
            )

        result = await db.execute(
            select(Account.id).where(
                and_(
                    Account.user_id == owner_id,
                    Account.account_number == account_data.account_number
                )
            )
        )
        if result.scalar_one_or_none() is not None:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="An account with this number already exists for this user"
            )

        account = Account(
            user_id=owner_id,
            account_number=account_data.account_number,
            account_name=account_data.account_name,
            institution=account_data.institution,
            account_type=AccountType(account_data.account_type.value),
            currency=account_data.currency or settings.DEFAULT_CURRENCY,
            is_active=True
        )

        await ledger.open_account(db, account, account_data.opening_balance)
        await db.commit()
        await db.refresh(account)

        logger.info(f"New account created: {account.id} ({account.account_number}) for user {owner_id}")
        return account

    @staticmethod
    async def get_user_accounts(db: AsyncSession, user_id: int, include_inactive: bool = False) -> List[Account]:
        """Get all accounts for a user"""
        query = select(Account).where(Account.user_id == user_id)
        if not include_inactive:
            query = query.where(Account.is_active == True)  # noqa: E712
        result = await db.execute(query.order_by(Account.created_at, Account.id))
        return list(result.scalars().all())

    @staticmethod
    async def get_account_detail(db: AsyncSession, account_id: int, user: User) -> Tuple[Account, List[LedgerEntry]]:
        """Account plus its most recent ledger entries"""
        account = await AccountService.get_account(db, account_id, user)
        result = await db.execute(
            select(LedgerEntry)
            .where(LedgerEntry.account_id == account_id)
            .order_by(LedgerEntry.occurred_at.desc(), LedgerEntry.id.desc())
            .limit(RECENT_TRANSACTIONS_LIMIT)
        )
        return account, list(result.scalars().all())

    @staticmethod
    async def update_account(
        db: AsyncSession,
        ledger: LedgerEngine,
        account_id: int,
        user: User,
        update: schemas.AccountUpdate
    ) -> Account:
        """Apply an allow-listed update under the ledger's account lock"""
        await AccountService.get_account(db, account_id, user)

        update_data = update.model_dump(exclude_unset=True, exclude_none=True)
        if not update_data:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="No valid fields to update"
            )
        if "account_type" in update_data:
            update_data["account_type"] = AccountType(update_data["account_type"])

        account = await ledger.update_account(account_id, update_data)

        logger.info(f"Account updated: {account_id} fields={sorted(update_data)}")
        return account

    @staticmethod
    async def deactivate_account(db: AsyncSession, ledger: LedgerEngine, account_id: int, user: User) -> None:
        """Soft delete: the account and its history stay, new entries are refused"""
        await AccountService.get_account(db, account_id, user)
        await ledger.update_account(account_id, {"is_active": False})

        logger.info(f"Account deactivated: {account_id}")
