from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from fastapi import HTTPException, status
from datetime import datetime, timezone
from typing import List, Optional, Tuple
from redis import asyncio as aioredis
import logging

from app.core.security import (
    get_password_hash,
    verify_password,
    create_access_token,
    decode_token,
    token_ttl_seconds,
    validate_password_strength
)
from app.core.config import settings
from app.modules.accounts.models import Account
from app.modules.ledger.models import LedgerEntry
from app.modules.users.models import User
from app.modules.users import schemas

logger = logging.getLogger(__name__)


class UserService:
    """Service layer for user management operations"""

    @staticmethod
    def ensure_self_or_admin(user_id: int, current_user: User) -> None:
        if current_user.id != user_id and not current_user.is_admin:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="You are not authorized to access this user"
            )

    @staticmethod
    async def register_user(db: AsyncSession, user_data: schemas.UserRegistrationRequest) -> User:
        """Register a new user"""

        # Validate password strength
        is_valid, error_msg = validate_password_strength(user_data.password)
        if not is_valid:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=error_msg
            )

        # Check if email already exists
        result = await db.execute(select(User.id).where(User.email == user_data.email))
        if result.scalar_one_or_none() is not None:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Email already registered"
            )

        user = User(
            email=user_data.email,
            hashed_password=get_password_hash(user_data.password),
            first_name=user_data.first_name,
            last_name=user_data.last_name,
            phone_number=user_data.phone_number,
            is_admin=False,
            is_active=True
        )

        try:
            db.add(user)
            await db.commit()
            await db.refresh(user)
        except IntegrityError:
            # Lost a race with a concurrent registration for the same email
            await db.rollback()
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Email already registered"
            )

        logger.info(f"User registered: {user.id} ({user.email})")
        return user

    @staticmethod
    async def authenticate_user(db: AsyncSession, email: str, password: str) -> Optional[User]:
        """Return the user for valid credentials, otherwise None"""
        result = await db.execute(select(User).where(User.email == email.lower()))
        user = result.scalar_one_or_none()

        if not user or not user.is_active:
            return None

        if not verify_password(password, user.hashed_password):
            logger.warning(f"Failed login attempt for user {user.id}")
            return None

        user.last_login_at = datetime.now(timezone.utc)
        await db.commit()

        logger.info(f"User logged in: {user.id}")
        return user

    @staticmethod
    def create_tokens(user_id: int) -> dict:
        """Create an access token"""
        access_token = create_access_token(data={"sub": str(user_id)})

        return {
            "access_token": access_token,
            "token_type": "bearer",
            "expires_in": settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60
        }

    @staticmethod
    async def logout_user(redis: aioredis.Redis, token: str, user_id: Optional[int] = None):
        """Logout user by blacklisting token for the rest of its lifetime"""
        payload = decode_token(token)
        await redis.setex(f"blacklist:{token}", token_ttl_seconds(payload), "1")
        logger.info(f"User logged out: {user_id or payload.get('sub')}")

    @staticmethod
    async def change_password(
        db: AsyncSession,
        redis: aioredis.Redis,
        user: User,
        token: str,
        data: schemas.PasswordChangeRequest
    ) -> dict:
        """
        Replace the password after checking the current one.

        Tokens issued before the change stop working; the token used for this
        request is revoked right away and a fresh one is returned.
        """
        if not verify_password(data.current_password, user.hashed_password):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Your current password is wrong"
            )

        is_valid, error_msg = validate_password_strength(data.new_password)
        if not is_valid:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=error_msg
            )

        user.hashed_password = get_password_hash(data.new_password)
        user.password_changed_at = datetime.now(timezone.utc)
        await db.commit()

        await UserService.logout_user(redis, token, user.id)
        logger.info(f"Password changed for user {user.id}")
        return UserService.create_tokens(user.id)

    @staticmethod
    async def list_users(db: AsyncSession, include_inactive: bool = False) -> List[User]:
        query = select(User)
        if not include_inactive:
            query = query.where(User.is_active == True)  # noqa: E712
        result = await db.execute(query.order_by(User.id))
        return list(result.scalars().all())

    @staticmethod
    async def get_user(db: AsyncSession, user_id: int, current_user: User) -> User:
        UserService.ensure_self_or_admin(user_id, current_user)
        user = await db.get(User, user_id)
        if not user:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="User not found"
            )
        return user

    @staticmethod
    async def update_profile(
        db: AsyncSession,
        user_id: int,
        current_user: User,
        profile_data: schemas.UserProfileUpdate
    ) -> User:
        """Update user profile"""
        user = await UserService.get_user(db, user_id, current_user)

        update_data = profile_data.model_dump(exclude_unset=True, exclude_none=True)
        if not update_data:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="No valid fields to update"
            )

        for field, value in update_data.items():
            setattr(user, field, value)

        await db.commit()
        await db.refresh(user)

        logger.info(f"User profile updated: {user_id} fields={sorted(update_data)}")
        return user

    @staticmethod
    async def deactivate_user(db: AsyncSession, user_id: int, current_user: User) -> None:
        """Soft delete; the user's accounts and history are kept"""
        user = await UserService.get_user(db, user_id, current_user)
        user.is_active = False
        await db.commit()

        logger.info(f"User deactivated: {user_id} by {current_user.id}")

    @staticmethod
    async def list_user_transactions(
        db: AsyncSession,
        user_id: int,
        current_user: User,
        limit: int,
        offset: int
    ) -> Tuple[List[Tuple[LedgerEntry, str, str, str]], int]:
        """
        Entries across every account of the user, newest first.

        Each row carries the entry plus its account's name, number and
        institution; the total ignores the page window.
        """
        await UserService.get_user(db, user_id, current_user)

        total = await db.scalar(
            select(func.count(LedgerEntry.id)).where(LedgerEntry.user_id == user_id)
        )
        result = await db.execute(
            select(LedgerEntry, Account.account_name, Account.account_number, Account.institution)
            .join(Account, Account.id == LedgerEntry.account_id)
            .where(LedgerEntry.user_id == user_id)
            .order_by(LedgerEntry.occurred_at.desc(), LedgerEntry.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return [tuple(row) for row in result.all()], total or 0
