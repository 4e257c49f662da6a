"""
Test configuration and fixtures for the Money Buddy ledger tests.
"""
import pytest
from typing import AsyncGenerator, List
from decimal import Decimal

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool
from httpx import AsyncClient, ASGITransport

from app.core.database import Base, get_db
from app.core.money import to_cents
from app.modules.accounts.ledger import LedgerStore
from app.modules.accounts.models import AccountType
from app.modules.notifications.services import get_notifier
from app.modules.payments.processor import (
    ProcessorOutcome, ProcessorRequest, ProcessorResult, get_payment_processor
)
from main import app


# ============================================================
# Database Fixtures
# ============================================================

# Use SQLite for testing (in-memory)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture
async def test_engine():
    """Create test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False
    )


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for each test"""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
async def ledger(db_session) -> LedgerStore:
    return LedgerStore(db_session)


@pytest.fixture
async def system_accounts(ledger):
    """Fee-collection, escrow and interest-expense accounts"""
    return await ledger.ensure_system_accounts()


@pytest.fixture
def fee_account(system_accounts):
    return system_accounts[AccountType.FEE_COLLECTION]


# ============================================================
# Collaborator doubles
# ============================================================

class RecordingNotifier:
    """Notification sink that keeps every event"""

    def __init__(self):
        self.events = []

    async def notify(self, event):
        self.events.append(event)

    def of_type(self, notification_type) -> List:
        return [e for e in self.events if e.type == notification_type]


class FailingNotifier:
    async def notify(self, event):
        raise RuntimeError("notification backend down")


class ScriptedProcessor:
    """Payment processor returning preset outcomes and recording requests"""

    def __init__(self, capture=ProcessorOutcome.SUCCESS, payout=ProcessorOutcome.SUCCESS):
        self.capture_outcome = capture
        self.payout_outcome = payout
        self.requests: List[ProcessorRequest] = []

    async def capture(self, request: ProcessorRequest) -> ProcessorResult:
        self.requests.append(request)
        return ProcessorResult(self.capture_outcome, reference=f"cap_{request.idempotency_key}", detail={"test": True})

    async def payout(self, request: ProcessorRequest) -> ProcessorResult:
        self.requests.append(request)
        return ProcessorResult(self.payout_outcome, reference=f"po_{request.idempotency_key}", detail={"test": True})


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def processor():
    return ScriptedProcessor()


# ============================================================
# User / Wallet Fixtures
# ============================================================

@pytest.fixture
def make_wallet(db_session, ledger, system_accounts):
    """Factory: create a user with a wallet holding `balance`"""
    from app.modules.users.models import User

    async def _make(email: str, balance: str = "0.00", full_name: str = "Test User"):
        user = User(email=email, full_name=full_name)
        db_session.add(user)
        await db_session.flush()
        wallet = await ledger.open_wallet(user.id)
        cents = to_cents(Decimal(balance))
        if cents:
            await ledger.atomic_adjust(wallet.id, cents)
        await db_session.commit()
        return await ledger.get_account(wallet.id)

    return _make


@pytest.fixture
async def alice(make_wallet):
    return await make_wallet("alice@moneybuddy.app", "100.00", "Alice Sender")


@pytest.fixture
async def bob(make_wallet):
    return await make_wallet("bob@moneybuddy.app", "0.00", "Bob Recipient")


# ============================================================
# API Fixtures
# ============================================================

@pytest.fixture
async def client(db_session, notifier, processor) -> AsyncGenerator[AsyncClient, None]:
    """Create test client with database and collaborator overrides"""

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_payment_processor] = lambda: processor

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


def auth_headers_for(account) -> dict:
    from app.core.security import create_access_token

    token = create_access_token(data={"sub": str(account.user_id)})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def alice_headers(alice):
    return auth_headers_for(alice)


@pytest.fixture
def internal_headers():
    from app.core.config import settings
    return {"X-Internal-Token": settings.INTERNAL_API_TOKEN}


@pytest.fixture
def failing_notifier():
    return FailingNotifier()


@pytest.fixture
def headers_for():
    return auth_headers_for
