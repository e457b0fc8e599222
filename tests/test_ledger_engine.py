"""
Unit tests for the ledger engine
"""
import asyncio
import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from app.modules.accounts.models import Account
from app.modules.ledger.engine import EntryFilters, storage_errors
from app.modules.ledger.exceptions import (
    AccountInactive,
    AccountNotFound,
    ConcurrencyConflict,
    IdempotencyKeyReused,
    InsufficientFunds,
    InvalidAmount,
    StorageUnavailable,
)
from app.modules.ledger.models import EntryStatus, EntryType, LedgerEntry


async def ledger_snapshot(database, account_id):
    """Balance, version and every ledger row of an account"""
    async with database.session() as session:
        account = await session.get(Account, account_id)
        result = await session.execute(
            select(LedgerEntry).where(LedgerEntry.account_id == account_id).order_by(LedgerEntry.id)
        )
        rows = [
            (e.id, e.entry_type, e.amount, e.status, e.balance_after, e.idempotency_key)
            for e in result.scalars().all()
        ]
        return account.balance, account.version, rows


class TestPostEntry:
    """Tests for posting debits and credits"""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_scenario_debit_overdraft_credit(self, ledger, test_account):
        """100.00 ZAR: debit 60, refused debit 60, credit 25"""
        first = await ledger.post_entry(test_account.id, EntryType.DEBIT, Decimal("60.00"))
        assert first.entry.status == EntryStatus.COMPLETED
        assert first.balance == Decimal("40.00")

        with pytest.raises(InsufficientFunds):
            await ledger.post_entry(test_account.id, EntryType.DEBIT, Decimal("60.00"))
        assert await ledger.get_balance(test_account.id) == Decimal("40.00")

        third = await ledger.post_entry(test_account.id, EntryType.CREDIT, Decimal("25.00"))
        assert third.balance == Decimal("65.00")
        assert await ledger.get_balance(test_account.id) == Decimal("65.00")

        page = await ledger.list_entries(test_account.id)
        # The opening balance is the oldest entry
        assert [(e.entry_type, e.amount) for e in page.items] == [
            (EntryType.CREDIT, Decimal("25.00")),
            (EntryType.DEBIT, Decimal("60.00")),
            (EntryType.CREDIT, Decimal("100.00")),
        ]
        assert page.items[1].id == first.entry.id
        assert page.items[2].category == "opening_balance"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_balance_matches_ledger(self, ledger, test_account):
        """Stored balance equals the signed sum of completed entries"""
        for entry_type, amount in [
            (EntryType.CREDIT, "12.34"),
            (EntryType.DEBIT, "50.00"),
            (EntryType.CREDIT, "0.01"),
            (EntryType.DEBIT, "62.35"),
        ]:
            await ledger.post_entry(test_account.id, entry_type, Decimal(amount))

        check = await ledger.verify_balance(test_account.id)
        assert check.ok
        assert check.stored == Decimal("0.00")
        assert check.entry_count == 5

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_entry_records_balance_after(self, ledger, test_account):
        result = await ledger.post_entry(
            test_account.id, EntryType.DEBIT, "30.50",
            description="Groceries", category="food", reference="INV-1"
        )
        entry = result.entry
        assert entry.balance_after == Decimal("69.50")
        assert entry.currency == "ZAR"
        assert entry.category == "food"
        assert entry.user_id == test_account.user_id

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_insufficient_funds_changes_nothing(self, database, ledger, test_account):
        before = await ledger_snapshot(database, test_account.id)

        with pytest.raises(InsufficientFunds) as exc_info:
            await ledger.post_entry(test_account.id, EntryType.DEBIT, Decimal("100.01"), "key-1")

        assert exc_info.value.code == "insufficient_funds"
        assert exc_info.value.status_code == 409
        assert await ledger_snapshot(database, test_account.id) == before

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_debit_of_entire_balance(self, ledger, test_account):
        result = await ledger.post_entry(test_account.id, EntryType.DEBIT, Decimal("100.00"))
        assert result.balance == Decimal("0.00")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_account_not_found(self, ledger):
        with pytest.raises(AccountNotFound):
            await ledger.post_entry(9999, EntryType.CREDIT, Decimal("1.00"))

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_account_inactive(self, database, ledger, make_account):
        account = await make_account("50.00", is_active=False)
        before = await ledger_snapshot(database, account.id)

        with pytest.raises(AccountInactive):
            await ledger.post_entry(account.id, EntryType.CREDIT, Decimal("1.00"))

        assert await ledger_snapshot(database, account.id) == before


class TestAmountValidation:
    """Amounts must be positive decimals within the currency precision"""

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", ["0", "-5.00", "10.001", "abc", "NaN", "Infinity", 10.5, True])
    async def test_invalid_amounts(self, ledger, test_account, amount):
        with pytest.raises(InvalidAmount) as exc_info:
            await ledger.post_entry(test_account.id, EntryType.CREDIT, amount)
        assert exc_info.value.status_code == 422
        assert await ledger.get_balance(test_account.id) == Decimal("100.00")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_zero_decimal_currency(self, ledger, make_account):
        account = await make_account("1000", currency="JPY")

        with pytest.raises(InvalidAmount):
            await ledger.post_entry(account.id, EntryType.DEBIT, Decimal("100.5"))

        result = await ledger.post_entry(account.id, EntryType.DEBIT, Decimal("100"))
        assert result.balance == Decimal("900")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_three_decimal_currency(self, ledger, make_account):
        account = await make_account("1.000", currency="KWD")
        result = await ledger.post_entry(account.id, EntryType.DEBIT, Decimal("0.125"))
        assert result.balance == Decimal("0.875")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_integer_and_string_amounts(self, ledger, test_account):
        await ledger.post_entry(test_account.id, EntryType.CREDIT, 5)
        result = await ledger.post_entry(test_account.id, EntryType.CREDIT, "0.50")
        assert result.balance == Decimal("105.50")


class TestConcurrency:
    """Account-scoped exclusive access"""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_no_double_spend(self, database, ledger, test_account):
        """N debits of the whole balance: exactly one succeeds"""
        attempts = 8
        results = await asyncio.gather(
            *[
                ledger.post_entry(test_account.id, EntryType.DEBIT, Decimal("100.00"))
                for _ in range(attempts)
            ],
            return_exceptions=True
        )

        successes = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, InsufficientFunds)]
        assert len(successes) == 1
        assert len(failures) == attempts - 1
        assert await ledger.get_balance(test_account.id) == Decimal("0.00")
        assert (await ledger.verify_balance(test_account.id)).ok

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_two_concurrent_debits_of_sixty(self, ledger, test_account):
        results = await asyncio.gather(
            ledger.post_entry(test_account.id, EntryType.DEBIT, Decimal("60.00")),
            ledger.post_entry(test_account.id, EntryType.DEBIT, Decimal("60.00")),
            return_exceptions=True
        )
        assert sum(1 for r in results if isinstance(r, InsufficientFunds)) == 1
        assert await ledger.get_balance(test_account.id) == Decimal("40.00")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_concurrent_credits_all_apply(self, ledger, test_account):
        await asyncio.gather(
            *[ledger.post_entry(test_account.id, EntryType.CREDIT, Decimal("1.00")) for _ in range(10)]
        )
        assert await ledger.get_balance(test_account.id) == Decimal("110.00")
        assert (await ledger.verify_balance(test_account.id)).ok

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_other_accounts_do_not_wait(self, ledger, make_account):
        busy = await make_account("10.00")
        free = await make_account("10.00")

        async with ledger.locks.hold(busy.id):
            result = await asyncio.wait_for(
                ledger.post_entry(free.id, EntryType.CREDIT, Decimal("5.00")),
                timeout=5
            )
        assert result.balance == Decimal("15.00")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_lock_registry_is_released(self, ledger, test_account):
        await asyncio.gather(
            *[ledger.post_entry(test_account.id, EntryType.CREDIT, Decimal("1.00")) for _ in range(3)]
        )
        assert len(ledger.locks) == 0


class TestIdempotency:
    """Retries with the same key never double-post"""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_same_key_returns_original(self, database, ledger, test_account):
        first = await ledger.post_entry(test_account.id, EntryType.DEBIT, Decimal("10.00"), "retry-1")
        second = await ledger.post_entry(test_account.id, EntryType.DEBIT, Decimal("10.00"), "retry-1")

        assert not first.replayed
        assert second.replayed
        assert second.entry.id == first.entry.id
        assert second.balance == Decimal("90.00")

        async with database.session() as session:
            count = await session.scalar(
                select(func.count(LedgerEntry.id)).where(LedgerEntry.idempotency_key == "retry-1")
            )
        assert count == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_concurrent_same_key(self, ledger, test_account):
        results = await asyncio.gather(
            *[
                ledger.post_entry(test_account.id, EntryType.DEBIT, Decimal("10.00"), "burst")
                for _ in range(5)
            ]
        )
        assert len({r.entry.id for r in results}) == 1
        assert sum(1 for r in results if not r.replayed) == 1
        assert await ledger.get_balance(test_account.id) == Decimal("90.00")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_key_reused_for_different_request(self, ledger, test_account):
        await ledger.post_entry(test_account.id, EntryType.DEBIT, Decimal("10.00"), "once")

        with pytest.raises(IdempotencyKeyReused):
            await ledger.post_entry(test_account.id, EntryType.DEBIT, Decimal("11.00"), "once")
        with pytest.raises(IdempotencyKeyReused):
            await ledger.post_entry(test_account.id, EntryType.CREDIT, Decimal("10.00"), "once")

        assert await ledger.get_balance(test_account.id) == Decimal("90.00")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_keys_are_scoped_per_account(self, ledger, make_account):
        a = await make_account("50.00")
        b = await make_account("50.00")

        first = await ledger.post_entry(a.id, EntryType.DEBIT, Decimal("5.00"), "shared")
        second = await ledger.post_entry(b.id, EntryType.DEBIT, Decimal("5.00"), "shared")

        assert not second.replayed
        assert first.entry.id != second.entry.id

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_replay_after_failed_attempt(self, ledger, test_account):
        """A refused debit stores nothing, so the key stays free"""
        with pytest.raises(InsufficientFunds):
            await ledger.post_entry(test_account.id, EntryType.DEBIT, Decimal("150.00"), "later")

        await ledger.post_entry(test_account.id, EntryType.CREDIT, Decimal("100.00"))
        result = await ledger.post_entry(test_account.id, EntryType.DEBIT, Decimal("150.00"), "later")
        assert not result.replayed
        assert result.balance == Decimal("50.00")


class TestRetryPolicy:
    """Transient failures are retried, domain errors are not"""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transient_conflict_is_retried(self, ledger, test_account, monkeypatch):
        ledger.retry_backoff = 0
        real_apply = ledger._apply_entry
        calls = {"n": 0}

        async def flaky_apply(*args, **kwargs):
            calls["n"] += 1
            if calls["n"] == 1:
                raise ConcurrencyConflict(test_account.id)
            return await real_apply(*args, **kwargs)

        monkeypatch.setattr(ledger, "_apply_entry", flaky_apply)

        result = await ledger.post_entry(test_account.id, EntryType.DEBIT, Decimal("10.00"), "k")
        assert calls["n"] == 2
        assert result.balance == Decimal("90.00")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self, ledger, test_account, monkeypatch):
        ledger.retry_backoff = 0
        calls = {"n": 0}

        async def broken_apply(*args, **kwargs):
            calls["n"] += 1
            raise StorageUnavailable()

        monkeypatch.setattr(ledger, "_apply_entry", broken_apply)

        with pytest.raises(StorageUnavailable) as exc_info:
            await ledger.post_entry(test_account.id, EntryType.CREDIT, Decimal("1.00"), "k")

        assert calls["n"] == ledger.max_retries + 1
        assert exc_info.value.status_code == 503
        assert exc_info.value.headers == {"Retry-After": "1"}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_domain_errors_are_not_retried(self, ledger, test_account, monkeypatch):
        real_apply = ledger._apply_entry
        calls = {"n": 0}

        async def counting_apply(*args, **kwargs):
            calls["n"] += 1
            return await real_apply(*args, **kwargs)

        monkeypatch.setattr(ledger, "_apply_entry", counting_apply)

        with pytest.raises(InsufficientFunds):
            await ledger.post_entry(test_account.id, EntryType.DEBIT, Decimal("500.00"))
        assert calls["n"] == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_ambiguous_commit_is_not_retried(self, ledger, test_account, monkeypatch):
        calls = {"n": 0}

        async def lost_ack(*args, **kwargs):
            calls["n"] += 1
            raise StorageUnavailable(ambiguous=True)

        monkeypatch.setattr(ledger, "_apply_entry", lost_ack)

        with pytest.raises(StorageUnavailable):
            await ledger.post_entry(test_account.id, EntryType.CREDIT, Decimal("1.00"))
        assert calls["n"] == 1


class TestStorageErrors:
    """Driver failures map onto the ledger taxonomy"""

    @pytest.mark.unit
    def test_stale_row_is_a_conflict(self):
        with pytest.raises(ConcurrencyConflict) as exc_info:
            with storage_errors(account_id=7):
                raise StaleDataError("version mismatch")
        assert exc_info.value.account_id == 7

    @pytest.mark.unit
    def test_lost_connection_is_unavailable(self):
        with pytest.raises(StorageUnavailable) as exc_info:
            with storage_errors(account_id=7, ambiguous=True):
                raise OperationalError("COMMIT", {}, Exception("server closed the connection"))
        assert exc_info.value.ambiguous is True
        assert exc_info.value.code == "storage_unavailable"

    @pytest.mark.unit
    def test_domain_errors_pass_through(self):
        with pytest.raises(InsufficientFunds):
            with storage_errors(account_id=7):
                raise InsufficientFunds(7, Decimal("1"), Decimal("2"))


class TestListEntries:
    """History ordering, filters and pagination"""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_ties_broken_by_id(self, ledger, test_account):
        moment = datetime(2020, 1, 15, 12, 0, tzinfo=timezone.utc)
        first = await ledger.post_entry(test_account.id, EntryType.CREDIT, "1.00", occurred_at=moment)
        second = await ledger.post_entry(test_account.id, EntryType.CREDIT, "2.00", occurred_at=moment)

        page = await ledger.list_entries(
            test_account.id, EntryFilters(end_date=moment + timedelta(seconds=1))
        )
        assert [e.id for e in page.items] == [second.entry.id, first.entry.id]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_non_increasing_occurred_at(self, ledger, test_account):
        base = datetime(2020, 2, 1, tzinfo=timezone.utc)
        for offset in [3, 1, 2, 1, 0]:
            await ledger.post_entry(
                test_account.id, EntryType.CREDIT, "1.00", occurred_at=base + timedelta(days=offset)
            )

        page = await ledger.list_entries(test_account.id)
        stamps = [(e.occurred_at.replace(tzinfo=None), e.id) for e in page.items]
        assert stamps == sorted(stamps, reverse=True)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_pagination_total_is_independent_of_window(self, ledger, test_account):
        for _ in range(7):
            await ledger.post_entry(test_account.id, EntryType.CREDIT, Decimal("1.00"))

        first_page = await ledger.list_entries(test_account.id, limit=3, offset=0)
        last_page = await ledger.list_entries(test_account.id, limit=3, offset=6)

        assert first_page.total == last_page.total == 8
        assert len(first_page.items) == 3
        assert len(last_page.items) == 2
        assert last_page.items[-1].category == "opening_balance"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_filters(self, ledger, test_account):
        await ledger.post_entry(test_account.id, EntryType.DEBIT, "5.00", category="food")
        await ledger.post_entry(test_account.id, EntryType.DEBIT, "50.00", category="rent")
        await ledger.post_entry(test_account.id, EntryType.CREDIT, "20.00", category="food")

        debits = await ledger.list_entries(test_account.id, EntryFilters(entry_type=EntryType.DEBIT))
        assert debits.total == 2

        food = await ledger.list_entries(test_account.id, EntryFilters(category="food"))
        assert {e.amount for e in food.items} == {Decimal("5.00"), Decimal("20.00")}

        mid = await ledger.list_entries(
            test_account.id, EntryFilters(min_amount=Decimal("10"), max_amount=Decimal("60"))
        )
        assert sorted(e.amount for e in mid.items) == [Decimal("20.00"), Decimal("50.00")]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_iter_entries_is_restartable(self, ledger, test_account):
        for _ in range(5):
            await ledger.post_entry(test_account.id, EntryType.CREDIT, Decimal("1.00"))

        first_pass = [e.id async for e in ledger.iter_entries(test_account.id, page_size=2)]
        second_pass = [e.id async for e in ledger.iter_entries(test_account.id, page_size=2)]
        page = await ledger.list_entries(test_account.id, limit=100)

        assert first_pass == second_pass == [e.id for e in page.items]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_iter_entries_with_posting_mid_walk(self, ledger, test_account):
        for _ in range(3):
            await ledger.post_entry(test_account.id, EntryType.CREDIT, Decimal("1.00"))
        before = [e.id for e in (await ledger.list_entries(test_account.id, limit=100)).items]

        seen = []
        async for entry in ledger.iter_entries(test_account.id, page_size=1):
            seen.append(entry.id)
            if len(seen) == 1:
                await ledger.post_entry(test_account.id, EntryType.CREDIT, Decimal("2.00"))

        assert len(seen) == len(set(seen))
        assert seen == before

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_iter_entries_applies_filters(self, ledger, test_account):
        await ledger.post_entry(test_account.id, EntryType.DEBIT, Decimal("1.00"))
        await ledger.post_entry(test_account.id, EntryType.DEBIT, Decimal("2.00"))
        await ledger.post_entry(test_account.id, EntryType.CREDIT, Decimal("3.00"))

        debits = [
            e.amount
            async for e in ledger.iter_entries(
                test_account.id, EntryFilters(entry_type=EntryType.DEBIT), page_size=1
            )
        ]
        assert debits == [Decimal("2.00"), Decimal("1.00")]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_page_size_is_capped(self, ledger, test_account):
        page = await ledger.list_entries(test_account.id, limit=10_000)
        assert page.limit == ledger.max_page_size

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_account(self, ledger):
        with pytest.raises(AccountNotFound):
            await ledger.list_entries(4242)
        with pytest.raises(AccountNotFound):
            await ledger.get_balance(4242)
