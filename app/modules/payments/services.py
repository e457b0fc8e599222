from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, case, and_
from datetime import timedelta
from decimal import Decimal
from typing import List, Optional
import logging

from app.core.config import settings
from app.modules.accounts.models import Account
from app.modules.accounts.services import AccountService
from app.modules.ledger.engine import LedgerEngine, PostResult, utcnow
from app.modules.ledger.exceptions import EntryNotFound
from app.modules.ledger.models import EntryKind, EntryStatus, LedgerEntry
from app.modules.ledger.money import to_money
from app.modules.payments import schemas
from app.modules.users.models import User

logger = logging.getLogger(__name__)

PAYMENT_LIST_LIMIT = 50


class PaymentService:
    """Payments are debit ledger entries of kind ``payment``"""

    @staticmethod
    async def schedule_payment(
        db: AsyncSession,
        ledger: LedgerEngine,
        user: User,
        data: schemas.PaymentCreate,
        idempotency_key: Optional[str] = None
    ) -> PostResult:
        """Schedule a payment, or settle it now when it is due"""
        await AccountService.get_account(db, data.account_id, user)

        result = await ledger.schedule_payment(
            data.account_id,
            data.amount,
            data.scheduled_for,
            idempotency_key or data.idempotency_key,
            description=data.description,
            reference=data.reference,
            category=data.category,
        )
        logger.info(
            f"Payment {result.entry.id} created by user {user.id}: "
            f"status={result.entry.status.value} replayed={result.replayed}"
        )
        return result

    @staticmethod
    async def get_payment(db: AsyncSession, payment_id: int, user: User) -> LedgerEntry:
        """Load a payment the user may act on"""
        payment = await db.get(LedgerEntry, payment_id)
        if payment is None or payment.kind != EntryKind.PAYMENT:
            raise EntryNotFound(payment_id)
        account = await db.get(Account, payment.account_id)
        AccountService.ensure_can_manage(account, user)
        return payment

    @staticmethod
    async def settle_payment(db: AsyncSession, ledger: LedgerEngine, payment_id: int, user: User) -> PostResult:
        await PaymentService.get_payment(db, payment_id, user)
        return await ledger.settle_payment(payment_id)

    @staticmethod
    async def cancel_payment(db: AsyncSession, ledger: LedgerEngine, payment_id: int, user: User) -> LedgerEntry:
        await PaymentService.get_payment(db, payment_id, user)
        return await ledger.cancel_payment(payment_id)

    @staticmethod
    async def list_payments(
        db: AsyncSession,
        user_id: int,
        status: Optional[EntryStatus] = None,
        limit: int = PAYMENT_LIST_LIMIT
    ) -> List[LedgerEntry]:
        """Most recent payments of a user, newest first"""
        query = select(LedgerEntry).where(
            LedgerEntry.user_id == user_id,
            LedgerEntry.kind == EntryKind.PAYMENT
        )
        if status is not None:
            query = query.where(LedgerEntry.status == EntryStatus(status))

        when = func.coalesce(LedgerEntry.scheduled_for, LedgerEntry.occurred_at)
        result = await db.execute(
            query.order_by(when.desc(), LedgerEntry.id.desc()).limit(limit)
        )
        return list(result.scalars().all())

    @staticmethod
    async def payment_stats(db: AsyncSession, user_id: Optional[int] = None) -> dict:
        """
        Totals over a user's payments (all users when ``user_id`` is None).

        ``upcoming_payments`` counts scheduled payments due within the
        configured window.
        """
        now = utcnow()
        window_days = settings.UPCOMING_PAYMENTS_WINDOW_DAYS
        completed = LedgerEntry.status == EntryStatus.COMPLETED
        upcoming = and_(
            LedgerEntry.status == EntryStatus.SCHEDULED,
            LedgerEntry.scheduled_for >= now,
            LedgerEntry.scheduled_for <= now + timedelta(days=window_days)
        )

        query = select(
            func.coalesce(func.sum(case((completed, LedgerEntry.amount), else_=0)), 0),
            func.count(case((completed, 1))),
            func.count(case((upcoming, 1)))
        ).where(LedgerEntry.kind == EntryKind.PAYMENT)
        if user_id is not None:
            query = query.where(LedgerEntry.user_id == user_id)

        total_paid, payments_count, upcoming_payments = (await db.execute(query)).one()

        return {
            "total_paid": to_money(Decimal(str(total_paid)), settings.DEFAULT_CURRENCY),
            "payments_count": payments_count,
            "upcoming_payments": upcoming_payments,
            "window_days": window_days
        }
