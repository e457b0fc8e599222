from sqlalchemy import Column, Integer, String, Numeric, ForeignKey, DateTime, Boolean, UniqueConstraint, Enum as SQLEnum
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from app.core.database import Base
import enum


class AccountType(str, enum.Enum):
    """Account type enumeration"""
    SAVINGS = "savings"
    CHEQUE = "cheque"
    CREDIT_CARD = "credit_card"
    LOAN = "loan"
    OTHER = "other"


class Account(Base):
    """Linked bank or credit instrument.

    ``balance`` is written only by the ledger engine and always equals the
    signed sum of the account's completed ledger entries.
    """
    __tablename__ = "accounts"
    __table_args__ = (
        UniqueConstraint("user_id", "account_number", name="uq_accounts_user_account_number"),
    )

    # Primary Key
    id = Column(Integer, primary_key=True, index=True)

    # Foreign Key
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    # Account Identifiers
    account_number = Column(String(34), nullable=False)
    account_name = Column(String(100), nullable=False)
    institution = Column(String(100), nullable=False)

    # Account Configuration
    account_type = Column(SQLEnum(AccountType), default=AccountType.OTHER, nullable=False)
    currency = Column(String(3), default="ZAR", nullable=False)  # Fixed at creation

    # Balance (using Numeric for precision with money)
    balance = Column(Numeric(19, 4), default=0, nullable=False)

    # Optimistic concurrency counter, bumped on every row update
    version = Column(Integer, default=1, nullable=False)

    # Status
    is_active = Column(Boolean, default=True, nullable=False)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    # Relationships
    user = relationship("User", back_populates="accounts")

    __mapper_args__ = {"version_id_col": version, "eager_defaults": True}

    def __repr__(self):
        return f"<Account(id={self.id}, account_number={self.account_number}, type={self.account_type})>"
