"""
Concurrency tests against a file-backed database with independent sessions
"""
import asyncio
import pytest
from decimal import Decimal

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from app.core.database import Base
from app.core.exceptions import InsufficientFunds
from app.modules.accounts.ledger import LedgerStore
from app.modules.accounts.models import AccountType
from app.modules.transactions.models import Transaction, TransactionType
from app.modules.transactions.services import TransferService
from app.modules.users.models import User


@pytest.fixture
async def file_engine(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}",
        connect_args={"timeout": 15},
        poolclass=NullPool
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def file_sessions(file_engine):
    return async_sessionmaker(file_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


async def open_funded_wallet(session: AsyncSession, email: str, cents: int) -> int:
    ledger = LedgerStore(session)
    await ledger.ensure_system_accounts()
    session.add(User(email=email, full_name=email.split("@")[0]))
    await session.flush()
    user_id = await session.scalar(select(User.id).where(User.email == email))
    wallet = await ledger.open_wallet(user_id)
    if cents:
        await ledger.atomic_adjust(wallet.id, cents)
    await session.commit()
    return wallet.id


class TestConcurrentDebits:

    @pytest.mark.integration
    async def test_scenario_d_parallel_withdrawals(self, file_sessions, processor, notifier):
        """Two $60 withdrawals against $100: exactly one succeeds"""
        async with file_sessions() as setup:
            wallet_id = await open_funded_wallet(setup, "racer@moneybuddy.app", 10000)

        async def withdraw(key):
            async with file_sessions() as session:
                ledger = LedgerStore(session, max_attempts=10, retry_backoff=0.01)
                service = TransferService(session, processor=processor, notifier=notifier, ledger=ledger)
                return await service.withdraw(wallet_id, "60.00", "standard", idempotency_key=key)

        results = await asyncio.gather(withdraw("race-a"), withdraw("race-b"), return_exceptions=True)

        failures = [r for r in results if isinstance(r, Exception)]
        assert len(failures) == 1
        assert isinstance(failures[0], InsufficientFunds)

        async with file_sessions() as check:
            assert await LedgerStore(check).get_balance(wallet_id) == Decimal("40.00")
            count = await check.scalar(
                select(func.count(Transaction.id)).where(Transaction.transaction_type == TransactionType.WITHDRAWAL)
            )
            assert count == 1

    @pytest.mark.integration
    async def test_opposite_transfers_conserve_money(self, file_sessions, processor, notifier):
        async with file_sessions() as setup:
            first = await open_funded_wallet(setup, "first@moneybuddy.app", 10000)
            second = await open_funded_wallet(setup, "second@moneybuddy.app", 10000)
            fee_id = (await LedgerStore(setup).get_system_account(AccountType.FEE_COLLECTION)).id

        async def send(sender, recipient, key):
            async with file_sessions() as session:
                ledger = LedgerStore(session, max_attempts=10, retry_backoff=0.01)
                service = TransferService(session, processor=processor, notifier=notifier, ledger=ledger)
                return await service.transfer(sender, recipient, "10.00", idempotency_key=key)

        results = await asyncio.gather(
            *[send(first, second, f"fwd-{i}") for i in range(3)],
            *[send(second, first, f"back-{i}") for i in range(3)],
        )
        assert len(results) == 6

        async with file_sessions() as check:
            ledger = LedgerStore(check)
            balances = [await ledger.get_balance(a) for a in (first, second, fee_id)]

        assert balances == [Decimal("99.40"), Decimal("99.40"), Decimal("1.20")]
        assert sum(balances) == Decimal("200.00")

    @pytest.mark.integration
    async def test_same_key_in_parallel_moves_money_once(self, file_sessions, processor, notifier):
        async with file_sessions() as setup:
            sender = await open_funded_wallet(setup, "dup@moneybuddy.app", 10000)
            recipient = await open_funded_wallet(setup, "dest@moneybuddy.app", 0)

        async def send():
            async with file_sessions() as session:
                ledger = LedgerStore(session, max_attempts=10, retry_backoff=0.01)
                service = TransferService(session, processor=processor, notifier=notifier, ledger=ledger)
                txn = await service.transfer(sender, recipient, "10.00", idempotency_key="same-key")
                return txn.id

        ids = await asyncio.gather(send(), send())

        assert ids[0] == ids[1]
        async with file_sessions() as check:
            assert await LedgerStore(check).get_balance(recipient) == Decimal("10.00")
