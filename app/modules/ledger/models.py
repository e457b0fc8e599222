from sqlalchemy import Column, Integer, String, Numeric, ForeignKey, DateTime, Text, Index, UniqueConstraint, Enum as SQLEnum
from sqlalchemy.sql import func
from decimal import Decimal
from app.core.database import Base
import enum


class EntryType(str, enum.Enum):
    """Direction of a ledger entry"""
    DEBIT = "debit"
    CREDIT = "credit"


class EntryStatus(str, enum.Enum):
    """Ledger entry status; only COMPLETED entries affect balance"""
    PENDING = "pending"
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    FAILED = "failed"


class EntryKind(str, enum.Enum):
    """Discriminant between plain transactions and payments"""
    TRANSACTION = "transaction"
    PAYMENT = "payment"


class LedgerEntry(Base):
    """Append-only record of a single balance-affecting event on one account"""
    __tablename__ = "ledger_entries"
    __table_args__ = (
        UniqueConstraint("account_id", "idempotency_key", name="uq_ledger_entries_account_idempotency_key"),
        Index("ix_ledger_entries_account_occurred", "account_id", "occurred_at", "id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    kind = Column(SQLEnum(EntryKind), default=EntryKind.TRANSACTION, nullable=False, index=True)
    entry_type = Column(SQLEnum(EntryType), nullable=False)
    amount = Column(Numeric(19, 4), nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(SQLEnum(EntryStatus), default=EntryStatus.COMPLETED, nullable=False, index=True)

    # Balance right after this entry was applied (completed entries only)
    balance_after = Column(Numeric(19, 4), nullable=True)

    description = Column(Text, nullable=True)
    reference = Column(String(100), nullable=True)
    category = Column(String(50), nullable=True, index=True)
    idempotency_key = Column(String(255), nullable=True)

    occurred_at = Column(DateTime(timezone=True), nullable=False)
    scheduled_for = Column(DateTime(timezone=True), nullable=True)  # Payments only
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __mapper_args__ = {"eager_defaults": True}

    @property
    def signed_amount(self) -> Decimal:
        """Effect of this entry on the account balance"""
        if self.status != EntryStatus.COMPLETED:
            return Decimal("0")
        amount = Decimal(self.amount)
        return -amount if self.entry_type == EntryType.DEBIT else amount

    def __repr__(self):
        return (
            f"<LedgerEntry(id={self.id}, account_id={self.account_id}, "
            f"type={self.entry_type}, amount={self.amount}, status={self.status})>"
        )
