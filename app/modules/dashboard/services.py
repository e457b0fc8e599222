from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, case
from decimal import Decimal
from typing import Optional
import logging

from app.core.config import settings
from app.modules.accounts.models import Account
from app.modules.ledger.models import EntryKind, EntryStatus, LedgerEntry
from app.modules.ledger.money import to_money
from app.modules.payments.services import PaymentService
from app.modules.users.models import User

logger = logging.getLogger(__name__)


class DashboardService:
    """Read-only reporting; nothing here writes"""

    @staticmethod
    def scope(user: User) -> Optional[int]:
        """User id to report on, or None for an admin's global view"""
        return None if user.is_admin else user.id

    @staticmethod
    async def account_summary(db: AsyncSession, user_id: Optional[int]) -> dict:
        active = Account.is_active == True  # noqa: E712
        query = select(
            func.count(Account.id),
            func.count(case((active, 1)))
        )
        if user_id is not None:
            query = query.where(Account.user_id == user_id)
        total, active_count = (await db.execute(query)).one()

        balances_query = (
            select(Account.currency, func.coalesce(func.sum(Account.balance), 0))
            .where(active)
            .group_by(Account.currency)
            .order_by(Account.currency)
        )
        if user_id is not None:
            balances_query = balances_query.where(Account.user_id == user_id)
        rows = (await db.execute(balances_query)).all()

        return {
            "total": total,
            "active": active_count,
            "inactive": total - active_count,
            "balances": {
                currency: to_money(Decimal(str(amount)), currency) for currency, amount in rows
            }
        }

    @staticmethod
    async def entry_summary(db: AsyncSession, user_id: Optional[int]) -> dict:
        query = (
            select(
                LedgerEntry.status,
                func.count(LedgerEntry.id),
                func.coalesce(func.sum(LedgerEntry.amount), 0)
            )
            .group_by(LedgerEntry.status)
        )
        if user_id is not None:
            query = query.where(LedgerEntry.user_id == user_id)
        rows = (await db.execute(query)).all()

        summary = {
            entry_status.value: {"count": 0, "total_amount": Decimal("0.00")}
            for entry_status in EntryStatus
        }
        for entry_status, count, amount in rows:
            summary[EntryStatus(entry_status).value] = {
                "count": count,
                "total_amount": to_money(Decimal(str(amount)), settings.DEFAULT_CURRENCY)
            }
        return summary

    @staticmethod
    async def recent_payments(db: AsyncSession, user_id: Optional[int], limit: int):
        query = select(LedgerEntry).where(
            LedgerEntry.kind == EntryKind.PAYMENT,
            LedgerEntry.status == EntryStatus.COMPLETED
        )
        if user_id is not None:
            query = query.where(LedgerEntry.user_id == user_id)
        result = await db.execute(
            query.order_by(LedgerEntry.occurred_at.desc(), LedgerEntry.id.desc()).limit(limit)
        )
        return list(result.scalars().all())

    @staticmethod
    async def get_dashboard(db: AsyncSession, user: User) -> dict:
        """
        Overview for ``user`` (admins see every user).

        All reads go through the one request session so they share a
        transaction.
        """
        user_id = DashboardService.scope(user)

        dashboard = {
            "accounts": await DashboardService.account_summary(db, user_id),
            "entries": await DashboardService.entry_summary(db, user_id),
            "payments": await PaymentService.payment_stats(db, user_id),
            "recent_payments": await DashboardService.recent_payments(
                db, user_id, settings.RECENT_ITEMS_LIMIT
            )
        }
        logger.debug(f"Dashboard built for user {user.id} (scope={user_id or 'all'})")
        return dashboard
