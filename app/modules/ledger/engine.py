"""
Ledger engine: the only writer of account balances.

Every balance mutation runs as one unit of work under account-scoped
exclusive access:

1. an in-process ``asyncio.Lock`` per account, so calls against the same
   account are serialized in arrival order and calls against different
   accounts never wait on each other;
2. ``SELECT ... FOR UPDATE`` on the account row, which extends the same
   guarantee across processes on databases that support row locks;
3. the account ``version`` column, checked by the ORM on every UPDATE, which
   turns any write that slipped past the first two into ``ConcurrencyConflict``.

Inside the unit the engine reads the balance, checks funds, appends the
ledger row and writes the new balance, then commits once. Domain errors abort
before anything is written. Transient storage failures are retried with
exponential backoff; domain errors never are.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional, TypeVar

from sqlalchemy import and_, case, func, or_, select
from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from app.core.config import Settings
from app.core.database import Database
from app.modules.accounts.models import Account
from app.modules.ledger.exceptions import (
    AccountInactive,
    AccountNotFound,
    ConcurrencyConflict,
    EntryNotFound,
    IdempotencyKeyReused,
    InsufficientFunds,
    InvalidEntryState,
    StorageUnavailable,
    TransientLedgerError,
)
from app.modules.ledger.models import EntryKind, EntryStatus, EntryType, LedgerEntry
from app.modules.ledger.money import AmountLike, parse_amount, to_money, validate_amount

logger = logging.getLogger(__name__)

T = TypeVar("T")

OPENING_BALANCE_CATEGORY = "opening_balance"

# Entries an idempotent retry may hand back
REPLAYABLE_STATUSES = (EntryStatus.COMPLETED, EntryStatus.SCHEDULED, EntryStatus.PENDING)

# Account fields writable outside the ledger; balance and currency are not among them
ACCOUNT_SETTINGS_FIELDS = frozenset({"account_name", "institution", "account_type", "is_active"})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalise ``value`` to an aware UTC datetime (naive input is taken as UTC)"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class EntryFilters:
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    entry_type: Optional[EntryType] = None
    category: Optional[str] = None
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None
    status: Optional[EntryStatus] = None
    kind: Optional[EntryKind] = None

    def conditions(self) -> list:
        clauses = []
        if self.start_date is not None:
            clauses.append(LedgerEntry.occurred_at >= as_utc(self.start_date))
        if self.end_date is not None:
            clauses.append(LedgerEntry.occurred_at <= as_utc(self.end_date))
        if self.entry_type is not None:
            clauses.append(LedgerEntry.entry_type == EntryType(self.entry_type))
        if self.category:
            clauses.append(LedgerEntry.category == self.category)
        if self.min_amount is not None:
            clauses.append(LedgerEntry.amount >= self.min_amount)
        if self.max_amount is not None:
            clauses.append(LedgerEntry.amount <= self.max_amount)
        if self.status is not None:
            clauses.append(LedgerEntry.status == EntryStatus(self.status))
        if self.kind is not None:
            clauses.append(LedgerEntry.kind == EntryKind(self.kind))
        return clauses


@dataclass
class EntryPage:
    items: List[LedgerEntry]
    total: int
    limit: int
    offset: int


@dataclass
class PostResult:
    entry: LedgerEntry
    balance: Decimal
    replayed: bool = False


@dataclass
class BalanceCheck:
    account_id: int
    stored: Decimal
    computed: Decimal
    entry_count: int

    @property
    def ok(self) -> bool:
        return self.stored == self.computed


@dataclass
class AccountLocks:
    """Per-account asyncio locks, released from memory once nobody uses them"""

    _locks: Dict[int, asyncio.Lock] = field(default_factory=dict)
    _holders: Dict[int, int] = field(default_factory=dict)

    @asynccontextmanager
    async def hold(self, account_id: int) -> AsyncIterator[None]:
        lock = self._locks.get(account_id)
        if lock is None:
            lock = self._locks[account_id] = asyncio.Lock()
        self._holders[account_id] = self._holders.get(account_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[account_id] -= 1
            if self._holders[account_id] == 0:
                del self._holders[account_id]
                del self._locks[account_id]

    def __len__(self) -> int:
        return len(self._locks)


@contextmanager
def storage_errors(account_id: Optional[int] = None, ambiguous: bool = False):
    """Translate driver-level failures into ledger errors"""
    try:
        yield
    except StaleDataError as exc:
        raise ConcurrencyConflict(account_id) from exc
    except IntegrityError:
        raise
    except PoolTimeoutError as exc:
        raise StorageUnavailable(ambiguous=ambiguous) from exc
    except DBAPIError as exc:
        if isinstance(exc, (OperationalError, InterfaceError)) or exc.connection_invalidated:
            raise StorageUnavailable(ambiguous=ambiguous) from exc
        raise


class LedgerEngine:
    """Posts ledger entries and answers balance and history queries"""

    def __init__(self, database: Database, settings: Settings, locks: Optional[AccountLocks] = None):
        self.database = database
        self.max_retries = settings.LEDGER_MAX_RETRIES
        self.retry_backoff = settings.LEDGER_RETRY_BACKOFF_SECONDS
        self.default_page_size = settings.LEDGER_DEFAULT_PAGE_SIZE
        self.max_page_size = settings.LEDGER_MAX_PAGE_SIZE
        self.locks = locks if locks is not None else AccountLocks()

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def post_entry(
        self,
        account_id: int,
        entry_type: EntryType,
        amount: AmountLike,
        idempotency_key: Optional[str] = None,
        *,
        description: Optional[str] = None,
        reference: Optional[str] = None,
        category: Optional[str] = None,
        occurred_at: Optional[datetime] = None,
        kind: EntryKind = EntryKind.TRANSACTION,
    ) -> PostResult:
        """
        Append a completed entry and apply it to the account balance.

        Raises InvalidAmount, AccountNotFound, AccountInactive or
        InsufficientFunds without changing anything. If ``idempotency_key``
        matches an entry already stored for this account, that entry is
        returned with ``replayed=True`` and nothing is written; a key held by
        a cancelled payment raises InvalidEntryState instead.
        """
        entry_type = EntryType(entry_type)
        parse_amount(amount)

        async def attempt() -> PostResult:
            return await self._post_once(
                account_id, entry_type, amount, idempotency_key,
                description=description, reference=reference, category=category,
                occurred_at=as_utc(occurred_at), kind=kind,
            )

        async with self.locks.hold(account_id):
            return await self._with_retries(attempt, f"post_entry account={account_id}")

    async def open_account(self, session: AsyncSession, account: Account, opening_balance: Optional[AmountLike]) -> Account:
        """
        Persist a new account inside the caller's transaction, recording any
        opening balance as its first credit entry.

        The account is not visible to anyone else until the caller commits,
        so no lock is needed here.
        """
        account.balance = Decimal("0")
        session.add(account)
        await session.flush()

        if opening_balance is not None and Decimal(opening_balance) != 0:
            value = validate_amount(opening_balance, account.currency)
            entry = LedgerEntry(
                account_id=account.id,
                user_id=account.user_id,
                kind=EntryKind.TRANSACTION,
                entry_type=EntryType.CREDIT,
                amount=value,
                currency=account.currency,
                status=EntryStatus.COMPLETED,
                balance_after=value,
                description="Opening balance",
                category=OPENING_BALANCE_CATEGORY,
                occurred_at=utcnow(),
            )
            account.balance = value
            session.add(entry)
            await session.flush()

        return account

    async def schedule_payment(
        self,
        account_id: int,
        amount: AmountLike,
        scheduled_for: Optional[datetime] = None,
        idempotency_key: Optional[str] = None,
        *,
        description: Optional[str] = None,
        reference: Optional[str] = None,
        category: Optional[str] = None,
    ) -> PostResult:
        """
        Record an outgoing payment.

        A payment due now (or with no date) is settled immediately like any
        other debit. A future payment is stored as ``scheduled`` and has no
        effect on the balance until ``settle_payment`` runs.
        """
        scheduled_for = as_utc(scheduled_for)
        if scheduled_for is None or scheduled_for <= utcnow():
            return await self.post_entry(
                account_id, EntryType.DEBIT, amount, idempotency_key,
                description=description, reference=reference, category=category,
                kind=EntryKind.PAYMENT,
            )

        parse_amount(amount)

        async def attempt() -> PostResult:
            try:
                return await insert()
            except IntegrityError:
                if idempotency_key is None:
                    raise
                return await self._replay_after_conflict(
                    account_id, idempotency_key, EntryType.DEBIT, amount, EntryKind.PAYMENT
                )

        async def insert() -> PostResult:
            async with self.database.session() as session:
                with storage_errors(account_id):
                    account = await self._lock_account(session, account_id)
                    replay = await self._replay(session, account, idempotency_key, EntryType.DEBIT, amount, EntryKind.PAYMENT)
                    if replay is not None:
                        return replay
                    if not account.is_active:
                        raise AccountInactive(account_id)
                    value = validate_amount(amount, account.currency)

                    entry = LedgerEntry(
                        account_id=account.id,
                        user_id=account.user_id,
                        kind=EntryKind.PAYMENT,
                        entry_type=EntryType.DEBIT,
                        amount=value,
                        currency=account.currency,
                        status=EntryStatus.SCHEDULED,
                        description=description,
                        reference=reference,
                        category=category,
                        idempotency_key=idempotency_key,
                        occurred_at=utcnow(),
                        scheduled_for=scheduled_for,
                    )
                    session.add(entry)
                    await session.flush()
                    balance = to_money(account.balance, account.currency)

                await self._commit(session, account_id, idempotency_key)
                logger.info(
                    f"Payment {entry.id} scheduled for {scheduled_for.isoformat()} "
                    f"on account {account_id}: {value} {account.currency}"
                )
                return PostResult(entry=entry, balance=balance)

        async with self.locks.hold(account_id):
            return await self._with_retries(attempt, f"schedule_payment account={account_id}")

    async def settle_payment(self, entry_id: int) -> PostResult:
        """Apply a scheduled or pending payment to its account balance"""
        account_id = await self._entry_account_id(entry_id)

        async def attempt() -> PostResult:
            async with self.database.session() as session:
                with storage_errors(account_id):
                    account = await self._lock_account(session, account_id)
                    entry = await self._lock_payment(session, entry_id)
                    if entry.status not in (EntryStatus.SCHEDULED, EntryStatus.PENDING):
                        raise InvalidEntryState(entry_id, entry.status.value, "settle")
                    if not account.is_active:
                        raise AccountInactive(account_id)

                    amount = Decimal(entry.amount)
                    balance = Decimal(account.balance)
                    if balance < amount:
                        raise InsufficientFunds(account_id, balance, amount)

                    new_balance = balance - amount
                    entry.status = EntryStatus.COMPLETED
                    entry.balance_after = new_balance
                    entry.occurred_at = utcnow()
                    account.balance = new_balance
                    await session.flush()

                await self._commit(session, account_id, entry.idempotency_key)
                logger.info(f"Payment {entry_id} settled on account {account_id}, balance {new_balance}")
                return PostResult(entry=entry, balance=to_money(new_balance, account.currency))

        async with self.locks.hold(account_id):
            return await self._with_retries(attempt, f"settle_payment entry={entry_id}")

    async def cancel_payment(self, entry_id: int) -> LedgerEntry:
        """Mark a scheduled or pending payment as failed; terminal, no balance effect"""
        account_id = await self._entry_account_id(entry_id)

        async def attempt() -> LedgerEntry:
            async with self.database.session() as session:
                with storage_errors(account_id):
                    entry = await self._lock_payment(session, entry_id)
                    if entry.status not in (EntryStatus.SCHEDULED, EntryStatus.PENDING):
                        raise InvalidEntryState(entry_id, entry.status.value, "cancel")
                    entry.status = EntryStatus.FAILED
                    await session.flush()
                await self._commit(session, account_id, entry.idempotency_key)
                logger.info(f"Payment {entry_id} on account {account_id} cancelled")
                return entry

        async with self.locks.hold(account_id):
            return await self._with_retries(attempt, f"cancel_payment entry={entry_id}")

    async def update_account(self, account_id: int, changes: Dict[str, object]) -> Account:
        """
        Change account settings (name, institution, type, active flag).

        Runs under the same account lock as balance writes, so it never races
        a posting; a version clash with another process is retried like any
        other ``ConcurrencyConflict``.
        """
        unknown = set(changes) - ACCOUNT_SETTINGS_FIELDS
        if unknown:
            raise ValueError(f"Account fields not updatable: {sorted(unknown)}")

        async def attempt() -> Account:
            async with self.database.session() as session:
                with storage_errors(account_id):
                    account = await self._lock_account(session, account_id)
                    for name, value in changes.items():
                        setattr(account, name, value)
                    await session.flush()
                # Reapplying the same settings is harmless, so a failed commit may be retried
                with storage_errors(account_id):
                    await session.commit()
            return account

        async with self.locks.hold(account_id):
            return await self._with_retries(attempt, f"update_account account={account_id}")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_balance(self, account_id: int) -> Decimal:
        """Last committed balance of the account"""
        async def attempt() -> Decimal:
            async with self.database.session() as session:
                with storage_errors(account_id):
                    result = await session.execute(
                        select(Account.balance, Account.currency).where(Account.id == account_id)
                    )
                    row = result.one_or_none()
            if row is None:
                raise AccountNotFound(account_id)
            return to_money(row.balance, row.currency)

        return await self._with_retries(attempt, f"get_balance account={account_id}")

    async def get_entry(self, entry_id: int) -> LedgerEntry:
        async with self.database.session() as session:
            entry = await session.get(LedgerEntry, entry_id)
        if entry is None:
            raise EntryNotFound(entry_id)
        return entry

    async def list_entries(
        self,
        account_id: int,
        filters: Optional[EntryFilters] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> EntryPage:
        """
        One page of the account's entries, newest first.

        Ordered by ``occurred_at`` descending, then ``id`` descending so
        entries sharing a timestamp keep a stable order. ``total`` counts
        every entry matching the filters regardless of the page window.
        """
        filters = filters or EntryFilters()
        limit = self._page_size(limit)
        offset = max(offset, 0)

        async with self.database.session() as session:
            with storage_errors(account_id):
                exists = await session.scalar(select(Account.id).where(Account.id == account_id))
                if exists is None:
                    raise AccountNotFound(account_id)

                where = and_(LedgerEntry.account_id == account_id, *filters.conditions())
                total = await session.scalar(select(func.count(LedgerEntry.id)).where(where))
                result = await session.execute(
                    select(LedgerEntry)
                    .where(where)
                    .order_by(LedgerEntry.occurred_at.desc(), LedgerEntry.id.desc())
                    .limit(limit)
                    .offset(offset)
                )
                items = list(result.scalars().all())

        return EntryPage(items=items, total=total or 0, limit=limit, offset=offset)

    async def iter_entries(
        self,
        account_id: int,
        filters: Optional[EntryFilters] = None,
        page_size: Optional[int] = None,
    ) -> AsyncIterator[LedgerEntry]:
        """
        Lazily walk every matching entry in ``list_entries`` order.

        Pages are keyed on the last ``(occurred_at, id)`` seen rather than an
        offset, so entries posted mid-walk neither repeat nor shift the window.
        Each call starts again from the newest entry.
        """
        filters = filters or EntryFilters()
        page_size = self._page_size(page_size)
        cursor: Optional[tuple] = None
        while True:
            async with self.database.session() as session:
                with storage_errors(account_id):
                    if cursor is None:
                        exists = await session.scalar(select(Account.id).where(Account.id == account_id))
                        if exists is None:
                            raise AccountNotFound(account_id)

                    query = select(LedgerEntry).where(
                        LedgerEntry.account_id == account_id, *filters.conditions()
                    )
                    if cursor is not None:
                        last_at, last_id = cursor
                        query = query.where(
                            or_(
                                LedgerEntry.occurred_at < last_at,
                                and_(LedgerEntry.occurred_at == last_at, LedgerEntry.id < last_id),
                            )
                        )
                    result = await session.execute(
                        query.order_by(LedgerEntry.occurred_at.desc(), LedgerEntry.id.desc()).limit(page_size)
                    )
                    items = list(result.scalars().all())

            for entry in items:
                yield entry
            if len(items) < page_size:
                return
            cursor = (items[-1].occurred_at, items[-1].id)

    async def verify_balance(self, account_id: int) -> BalanceCheck:
        """Compare the stored balance with the signed sum of completed entries"""
        signed = case(
            (LedgerEntry.entry_type == EntryType.DEBIT, -LedgerEntry.amount),
            else_=LedgerEntry.amount,
        )
        async with self.database.session() as session:
            with storage_errors(account_id):
                account = await session.get(Account, account_id)
                if account is None:
                    raise AccountNotFound(account_id)
                result = await session.execute(
                    select(func.coalesce(func.sum(signed), 0), func.count(LedgerEntry.id)).where(
                        LedgerEntry.account_id == account_id,
                        LedgerEntry.status == EntryStatus.COMPLETED,
                    )
                )
                computed, count = result.one()

        check = BalanceCheck(
            account_id=account_id,
            stored=to_money(account.balance, account.currency),
            computed=to_money(computed, account.currency),
            entry_count=count,
        )
        if not check.ok:
            logger.error(
                f"Balance mismatch on account {account_id}: stored {check.stored}, ledger {check.computed}"
            )
        return check

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _post_once(
        self,
        account_id: int,
        entry_type: EntryType,
        amount: AmountLike,
        idempotency_key: Optional[str],
        **details,
    ) -> PostResult:
        try:
            return await self._apply_entry(account_id, entry_type, amount, idempotency_key, **details)
        except IntegrityError:
            # Another writer stored the same key first
            if idempotency_key is None:
                raise
            return await self._replay_after_conflict(
                account_id, idempotency_key, entry_type, amount, details["kind"]
            )

    async def _apply_entry(
        self,
        account_id: int,
        entry_type: EntryType,
        amount: AmountLike,
        idempotency_key: Optional[str],
        *,
        description: Optional[str],
        reference: Optional[str],
        category: Optional[str],
        occurred_at: Optional[datetime],
        kind: EntryKind,
    ) -> PostResult:
        async with self.database.session() as session:
            with storage_errors(account_id):
                account = await self._lock_account(session, account_id)

                replay = await self._replay(session, account, idempotency_key, entry_type, amount, kind)
                if replay is not None:
                    return replay

                if not account.is_active:
                    raise AccountInactive(account_id)
                value = validate_amount(amount, account.currency)

                balance = Decimal(account.balance)
                if entry_type == EntryType.DEBIT:
                    if balance < value:
                        raise InsufficientFunds(account_id, balance, value)
                    new_balance = balance - value
                else:
                    new_balance = balance + value

                entry = LedgerEntry(
                    account_id=account.id,
                    user_id=account.user_id,
                    kind=kind,
                    entry_type=entry_type,
                    amount=value,
                    currency=account.currency,
                    status=EntryStatus.COMPLETED,
                    balance_after=new_balance,
                    description=description,
                    reference=reference,
                    category=category,
                    idempotency_key=idempotency_key,
                    occurred_at=occurred_at or utcnow(),
                )
                account.balance = new_balance
                session.add(entry)
                await session.flush()

            await self._commit(session, account_id, idempotency_key)

        logger.info(
            f"Ledger entry {entry.id} committed: account={account_id} {entry_type.value} "
            f"{value} {account.currency} balance={new_balance}"
        )
        return PostResult(entry=entry, balance=to_money(new_balance, account.currency))

    async def _commit(self, session: AsyncSession, account_id: int, idempotency_key: Optional[str]) -> None:
        # Without a key a failed commit cannot be told apart from a lost
        # acknowledgement, so it must not be replayed blindly.
        with storage_errors(account_id, ambiguous=idempotency_key is None):
            await session.commit()

    async def _lock_account(self, session: AsyncSession, account_id: int) -> Account:
        result = await session.execute(
            select(Account).where(Account.id == account_id).with_for_update()
        )
        account = result.scalar_one_or_none()
        if account is None:
            raise AccountNotFound(account_id)
        return account

    async def _lock_payment(self, session: AsyncSession, entry_id: int) -> LedgerEntry:
        result = await session.execute(
            select(LedgerEntry)
            .where(LedgerEntry.id == entry_id, LedgerEntry.kind == EntryKind.PAYMENT)
            .with_for_update()
        )
        entry = result.scalar_one_or_none()
        if entry is None:
            raise EntryNotFound(entry_id)
        return entry

    async def _entry_account_id(self, entry_id: int) -> int:
        async with self.database.session() as session:
            with storage_errors():
                account_id = await session.scalar(
                    select(LedgerEntry.account_id).where(
                        LedgerEntry.id == entry_id, LedgerEntry.kind == EntryKind.PAYMENT
                    )
                )
        if account_id is None:
            raise EntryNotFound(entry_id)
        return account_id

    async def _replay(
        self,
        session: AsyncSession,
        account: Account,
        idempotency_key: Optional[str],
        entry_type: EntryType,
        amount: AmountLike,
        kind: EntryKind,
    ) -> Optional[PostResult]:
        if idempotency_key is None:
            return None
        result = await session.execute(
            select(LedgerEntry).where(
                LedgerEntry.account_id == account.id,
                LedgerEntry.idempotency_key == idempotency_key,
            )
        )
        existing = result.scalar_one_or_none()
        if existing is None:
            return None
        self._check_same_request(existing, idempotency_key, entry_type, amount, kind)
        if existing.status not in REPLAYABLE_STATUSES:
            # The key stays bound to the cancelled entry; a new attempt needs a new key
            raise InvalidEntryState(existing.id, existing.status.value, "replay")
        logger.info(f"Idempotent replay of entry {existing.id} for key '{idempotency_key}'")
        return PostResult(entry=existing, balance=to_money(account.balance, account.currency), replayed=True)

    async def _replay_after_conflict(
        self,
        account_id: int,
        idempotency_key: str,
        entry_type: EntryType,
        amount: AmountLike,
        kind: EntryKind,
    ) -> PostResult:
        async with self.database.session() as session:
            with storage_errors(account_id):
                account = await session.get(Account, account_id)
                replay = None
                if account is not None:
                    replay = await self._replay(session, account, idempotency_key, entry_type, amount, kind)
        if replay is None:
            raise ConcurrencyConflict(account_id)
        return replay

    @staticmethod
    def _check_same_request(
        existing: LedgerEntry,
        idempotency_key: str,
        entry_type: EntryType,
        amount: AmountLike,
        kind: EntryKind,
    ) -> None:
        same = (
            existing.entry_type == entry_type
            and existing.kind == kind
            and Decimal(existing.amount) == Decimal(amount)
        )
        if not same:
            raise IdempotencyKeyReused(idempotency_key)

    def _page_size(self, limit: Optional[int]) -> int:
        if limit is None:
            return self.default_page_size
        return max(1, min(limit, self.max_page_size))

    async def _with_retries(self, operation: Callable[[], Awaitable[T]], description: str) -> T:
        attempt = 0
        while True:
            try:
                return await operation()
            except TransientLedgerError as exc:
                if getattr(exc, "ambiguous", False):
                    logger.error(f"{description}: outcome unknown after storage failure, not retrying")
                    raise
                if attempt >= self.max_retries:
                    logger.error(f"{description}: giving up after {attempt + 1} attempts ({exc.code})")
                    raise
                attempt += 1
                delay = self.retry_backoff * (2 ** (attempt - 1))
                logger.warning(
                    f"{description}: {exc.code} on attempt {attempt}, retrying in {delay:.3f}s"
                )
                await asyncio.sleep(delay)
