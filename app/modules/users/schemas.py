from pydantic import BaseModel, EmailStr, Field, field_validator
from typing import List, Optional
from datetime import datetime

from app.modules.ledger.schemas import LedgerEntryResponse


# User Registration
class UserRegistrationRequest(BaseModel):
    """User registration request"""
    email: EmailStr
    password: str = Field(..., min_length=8)
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    phone_number: Optional[str] = Field(None, min_length=10, max_length=20)

    @field_validator("email")
    @classmethod
    def normalise_email(cls, v):
        return v.lower()


# User Login
class UserLoginRequest(BaseModel):
    """User login request"""
    email: EmailStr
    password: str


class TokenResponse(BaseModel):
    """JWT token response"""
    access_token: str
    token_type: str = "bearer"
    expires_in: int


# User Profile
class UserProfileResponse(BaseModel):
    """User profile response"""
    id: int
    email: str
    first_name: str
    last_name: str
    phone_number: Optional[str] = None
    is_admin: bool
    is_active: bool
    last_login_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class RegistrationResponse(BaseModel):
    """New user together with a session token"""
    user: UserProfileResponse
    token: TokenResponse


class UserListResponse(BaseModel):
    results: int
    users: List[UserProfileResponse]


class UserProfileUpdate(BaseModel):
    """Update user profile; only these fields are writable"""
    first_name: Optional[str] = Field(None, min_length=1, max_length=100)
    last_name: Optional[str] = Field(None, min_length=1, max_length=100)
    phone_number: Optional[str] = Field(None, min_length=10, max_length=20)

    class Config:
        extra = "forbid"


# Password Management
class PasswordChangeRequest(BaseModel):
    """Change password (authenticated)"""
    current_password: str
    new_password: str = Field(..., min_length=8)


# Transaction history across all of a user's accounts
class UserTransactionResponse(LedgerEntryResponse):
    account_name: str
    account_number: str
    institution: str


class UserTransactionListResponse(BaseModel):
    items: List[UserTransactionResponse]
    total: int
    limit: int
    offset: int
