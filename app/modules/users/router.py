from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession
from redis import asyncio as aioredis

from app.core.database import get_db, get_redis
from app.core.dependencies import get_current_active_user, get_current_token, require_admin
from app.modules.users.models import User
from app.modules.users import schemas, services

auth_router = APIRouter(prefix="/api/v1/auth", tags=["auth"])
router = APIRouter(prefix="/api/v1/users", tags=["users"])


@auth_router.post("/register", response_model=schemas.RegistrationResponse, status_code=status.HTTP_201_CREATED)
async def register_user(
    user_data: schemas.UserRegistrationRequest,
    db: AsyncSession = Depends(get_db)
):
    """
    Register a new user.

    - Email must be unique
    - Password needs upper and lower case letters, a digit and a symbol
    - Returns the profile and a session token
    """
    user = await services.UserService.register_user(db, user_data)
    return {"user": user, "token": services.UserService.create_tokens(user.id)}


@auth_router.post("/login", response_model=schemas.TokenResponse)
async def login(
    login_data: schemas.UserLoginRequest,
    db: AsyncSession = Depends(get_db)
):
    """Login with email and password"""
    user = await services.UserService.authenticate_user(
        db,
        login_data.email,
        login_data.password
    )

    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect email or password"
        )

    return services.UserService.create_tokens(user.id)


@auth_router.post("/logout", status_code=status.HTTP_200_OK)
async def logout(
    token: str = Depends(get_current_token),
    redis: aioredis.Redis = Depends(get_redis),
    current_user: User = Depends(get_current_active_user)
):
    """Logout current user by revoking the bearer token"""
    await services.UserService.logout_user(redis, token, current_user.id)
    return {"message": "Successfully logged out"}


@auth_router.get("/me", response_model=schemas.UserProfileResponse)
async def get_me(current_user: User = Depends(get_current_active_user)):
    """Get current user's profile"""
    return current_user


@auth_router.post("/change-password", response_model=schemas.TokenResponse)
async def change_password(
    data: schemas.PasswordChangeRequest,
    token: str = Depends(get_current_token),
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis = Depends(get_redis),
    current_user: User = Depends(get_current_active_user)
):
    """
    Change password.

    - Older tokens are revoked
    - Returns a fresh token
    """
    return await services.UserService.change_password(db, redis, current_user, token, data)


@router.get("", response_model=schemas.UserListResponse)
async def list_users(
    include_inactive: bool = Query(False),
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(require_admin)
):
    """List users (admin)"""
    users = await services.UserService.list_users(db, include_inactive)
    return {"results": len(users), "users": users}


@router.get("/{user_id}", response_model=schemas.UserProfileResponse)
async def get_user(
    user_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user)
):
    """Get a user profile (self or admin)"""
    return await services.UserService.get_user(db, user_id, current_user)


@router.get("/{user_id}/transactions", response_model=schemas.UserTransactionListResponse)
async def list_user_transactions(
    user_id: int,
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user)
):
    """Transactions across all of a user's accounts, newest first (self or admin)"""
    rows, total = await services.UserService.list_user_transactions(db, user_id, current_user, limit, offset)
    items = [
        schemas.UserTransactionResponse(
            **schemas.LedgerEntryResponse.model_validate(entry).model_dump(),
            account_name=account_name,
            account_number=account_number,
            institution=institution
        )
        for entry, account_name, account_number, institution in rows
    ]
    return {"items": items, "total": total, "limit": limit, "offset": offset}


@router.patch("/{user_id}", response_model=schemas.UserProfileResponse)
async def update_user(
    user_id: int,
    profile_data: schemas.UserProfileUpdate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user)
):
    """
    Update profile information.

    - Only first name, last name and phone number can be changed
    - Email, password and roles are not updatable here
    """
    return await services.UserService.update_profile(db, user_id, current_user, profile_data)


@router.delete("/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_user(
    user_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user)
):
    """Deactivate a user (self or admin)"""
    await services.UserService.deactivate_user(db, user_id, current_user)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
