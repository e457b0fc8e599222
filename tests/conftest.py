"""
Test configuration and fixtures for Debt Manager backend tests.
"""
import os

# Cheap hashing for tests; must be set before the app reads its settings
os.environ.setdefault("BCRYPT_ROUNDS", "4")

import pytest
from typing import AsyncGenerator, Dict, Optional
from decimal import Decimal

from httpx import AsyncClient, ASGITransport

from app.core.config import settings
from app.core.database import Database
from app.core.security import create_access_token, get_password_hash
from app.modules.accounts.models import Account, AccountType
from app.modules.ledger.engine import LedgerEngine
from app.modules.users.models import User
from main import app

TEST_PASSWORD = "TestPassword123!"


# ============================================================
# Infrastructure Fixtures
# ============================================================

class FakeRedis:
    """In-memory stand-in for the few redis calls the API makes"""

    def __init__(self):
        self.store: Dict[str, str] = {}
        self.ttls: Dict[str, int] = {}

    async def get(self, key: str) -> Optional[str]:
        return self.store.get(key)

    async def setex(self, key: str, ttl: int, value: str) -> bool:
        self.store[key] = value
        self.ttls[key] = ttl
        return True

    async def close(self) -> None:
        self.store.clear()


@pytest.fixture
async def database(tmp_path) -> AsyncGenerator[Database, None]:
    """File-backed SQLite database, fresh for every test"""
    db = Database.from_url(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await db.create_all()
    yield db
    await db.dispose()


@pytest.fixture
async def db_session(database):
    """Session for arranging and inspecting test data"""
    async with database.session() as session:
        yield session


@pytest.fixture
def ledger(database) -> LedgerEngine:
    return LedgerEngine(database, settings)


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
async def client(database, ledger, fake_redis) -> AsyncGenerator[AsyncClient, None]:
    """Test client wired to the test database, ledger and redis"""
    app.state.database = database
    app.state.ledger = ledger
    app.state.redis = fake_redis

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.state.database = None
    app.state.ledger = None
    app.state.redis = None


# ============================================================
# User Fixtures
# ============================================================

async def create_user(database: Database, email: str, is_admin: bool = False, is_active: bool = True) -> User:
    async with database.session() as session:
        user = User(
            email=email,
            hashed_password=get_password_hash(TEST_PASSWORD),
            first_name="Test",
            last_name="User",
            phone_number="+27821234567",
            is_admin=is_admin,
            is_active=is_active
        )
        session.add(user)
        await session.commit()
        await session.refresh(user)
        return user


def headers_for(user: User) -> Dict[str, str]:
    token = create_access_token(data={"sub": str(user.id)})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
async def test_user(database) -> User:
    return await create_user(database, "test@debtmanager.dev")


@pytest.fixture
async def other_user(database) -> User:
    return await create_user(database, "other@debtmanager.dev")


@pytest.fixture
async def admin_user(database) -> User:
    return await create_user(database, "admin@debtmanager.dev", is_admin=True)


@pytest.fixture
def auth_headers(test_user) -> Dict[str, str]:
    """Generate auth headers for test user"""
    return headers_for(test_user)


@pytest.fixture
def other_headers(other_user) -> Dict[str, str]:
    return headers_for(other_user)


@pytest.fixture
def admin_headers(admin_user) -> Dict[str, str]:
    return headers_for(admin_user)


# ============================================================
# Account Fixtures
# ============================================================

@pytest.fixture
def make_account(database, ledger, test_user):
    """Factory for accounts opened through the ledger engine"""
    counter = {"n": 0}

    async def _make(
        balance: str = "100.00",
        currency: str = "ZAR",
        user: Optional[User] = None,
        is_active: bool = True
    ) -> Account:
        counter["n"] += 1
        owner = user or test_user
        async with database.session() as session:
            account = Account(
                user_id=owner.id,
                account_number=f"100000000{counter['n']:03d}",
                account_name=f"Account {counter['n']}",
                institution="Test Bank",
                account_type=AccountType.CHEQUE,
                currency=currency,
                is_active=is_active
            )
            await ledger.open_account(session, account, Decimal(balance))
            await session.commit()
            await session.refresh(account)
            return account

    return _make


@pytest.fixture
async def test_account(make_account) -> Account:
    """Active ZAR account holding 100.00"""
    return await make_account("100.00")
