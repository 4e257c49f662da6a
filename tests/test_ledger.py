"""
Unit tests for the ledger store
"""
import pytest
from decimal import Decimal

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError, OperationalError

from app.core.exceptions import (
    AccountNotFound, InsufficientFunds, InvalidTransactionState,
    ConcurrentModification, PersistenceFailure, TransactionNotFound
)
from app.modules.accounts.ledger import LedgerStore
from app.modules.accounts.models import Account, AccountType
from app.modules.transactions.details import DepositDetails, load_details
from app.modules.transactions.models import Transaction, TransactionType, TransactionStatus


class TestAtomicAdjust:

    @pytest.mark.unit
    async def test_credit_and_debit(self, ledger, alice):
        assert await ledger.atomic_adjust(alice.id, 2500) == 12500
        assert await ledger.atomic_adjust(alice.id, -12500) == 0
        assert await ledger.get_balance(alice.id) == Decimal("0.00")

    @pytest.mark.unit
    async def test_overdraft_rejected_with_shortfall(self, ledger, alice):
        with pytest.raises(InsufficientFunds) as exc_info:
            await ledger.atomic_adjust(alice.id, -10001)

        detail = exc_info.value.detail
        assert detail["required"] == "100.01"
        assert detail["available"] == "100.00"
        assert detail["shortfall"] == "0.01"
        assert await ledger.get_balance(alice.id) == Decimal("100.00")

    @pytest.mark.unit
    async def test_expected_min_balance(self, ledger, alice):
        with pytest.raises(InsufficientFunds):
            await ledger.atomic_adjust(alice.id, -9000, expected_min_balance_cents=2000)
        assert await ledger.atomic_adjust(alice.id, -8000, expected_min_balance_cents=2000) == 2000

    @pytest.mark.unit
    async def test_unknown_account(self, ledger, system_accounts):
        with pytest.raises(AccountNotFound):
            await ledger.atomic_adjust(9999, -100)
        with pytest.raises(AccountNotFound):
            await ledger.get_balance(9999)

    @pytest.mark.unit
    async def test_version_increments(self, ledger, alice):
        before = (await ledger.get_account(alice.id)).version
        await ledger.atomic_adjust(alice.id, 100)
        await ledger.atomic_adjust(alice.id, -100)
        assert (await ledger.get_account(alice.id)).version == before + 2

    @pytest.mark.unit
    async def test_interest_account_runs_negative(self, ledger, alice, system_accounts):
        interest = system_accounts[AccountType.INTEREST_EXPENSE]
        assert interest.allow_negative is True
        assert alice.allow_negative is False

        assert await ledger.atomic_adjust(interest.id, -247, expected_min_balance_cents=None) == -247
        assert await ledger.get_balance(interest.id) == Decimal("-2.47")


class TestUnitOfWork:

    @pytest.mark.unit
    async def test_failure_rolls_back_every_adjustment(self, ledger, alice, bob):
        async def work():
            await ledger.atomic_adjust(bob.id, 5000)
            await ledger.atomic_adjust(alice.id, -20000)

        with pytest.raises(InsufficientFunds):
            await ledger.atomic(work)

        assert await ledger.get_balance(alice.id) == Decimal("100.00")
        assert await ledger.get_balance(bob.id) == Decimal("0.00")

    @pytest.mark.unit
    async def test_operational_errors_retried_then_surfaced(self, db_session, alice):
        ledger = LedgerStore(db_session, max_attempts=3, retry_backoff=0)
        calls = []

        async def work():
            calls.append(1)
            raise OperationalError("UPDATE accounts", {}, Exception("database is locked"))

        with pytest.raises(ConcurrentModification):
            await ledger.atomic(work)
        assert len(calls) == 3

    @pytest.mark.unit
    async def test_operational_error_then_success(self, db_session, alice):
        ledger = LedgerStore(db_session, max_attempts=3, retry_backoff=0)
        calls = []

        async def work():
            calls.append(1)
            if len(calls) == 1:
                raise OperationalError("UPDATE accounts", {}, Exception("deadlock detected"))
            return await ledger.atomic_adjust(alice.id, 100)

        assert await ledger.atomic(work) == 10100
        assert len(calls) == 2

    @pytest.mark.unit
    async def test_integrity_error_passes_through(self, ledger, alice):
        async def work():
            raise IntegrityError("INSERT INTO transactions", {}, Exception("UNIQUE constraint failed"))

        with pytest.raises(IntegrityError):
            await ledger.atomic(work)

    @pytest.mark.unit
    async def test_other_storage_errors_become_persistence_failure(self, ledger, alice):
        from sqlalchemy.exc import DatabaseError

        async def work():
            raise DatabaseError("INSERT", {}, Exception("disk I/O error"))

        with pytest.raises(PersistenceFailure) as exc_info:
            await ledger.atomic(work)
        assert "disk" not in exc_info.value.message


class TestTransactionRecords:

    async def _record(self, ledger, account_id, **overrides):
        fields = dict(
            account_id=account_id,
            transaction_type=TransactionType.DEPOSIT,
            amount_cents=1000,
            details=DepositDetails(method_ref="pm_card"),
        )
        fields.update(overrides)
        txn = await ledger.record_transaction(**fields)
        await ledger.db.commit()
        return txn

    @pytest.mark.unit
    async def test_reference_code_format(self, ledger, alice):
        txn = await self._record(ledger, alice.id)

        assert txn.reference_code.startswith("TXN-")
        assert len(txn.reference_code) == 16
        assert txn.status == TransactionStatus.COMPLETED
        assert txn.completed_at is not None

    @pytest.mark.unit
    async def test_details_are_typed(self, ledger, alice):
        txn = await self._record(ledger, alice.id)
        details = load_details(txn.details)

        assert isinstance(details, DepositDetails)
        assert details.method_ref == "pm_card"
        assert details.version == txn.details_version == 1

    @pytest.mark.unit
    async def test_duplicate_idempotency_key_rejected(self, ledger, alice):
        await self._record(ledger, alice.id, idempotency_key="dup-key")

        with pytest.raises(IntegrityError):
            await ledger.atomic(lambda: ledger.record_transaction(
                account_id=alice.id,
                transaction_type=TransactionType.DEPOSIT,
                amount_cents=1000,
                idempotency_key="dup-key",
                details=DepositDetails(method_ref="pm_card")
            ))

        found = await ledger.find_by_idempotency_key("dup-key")
        assert found is not None

    @pytest.mark.unit
    async def test_pending_transitions_once(self, ledger, alice):
        txn = await self._record(ledger, alice.id, status=TransactionStatus.PENDING, external_reference="ref_1")

        completed = await ledger.atomic(lambda: ledger.transition_status(txn, TransactionStatus.COMPLETED))
        assert completed.status == TransactionStatus.COMPLETED

        with pytest.raises(InvalidTransactionState):
            await ledger.atomic(lambda: ledger.transition_status(completed, TransactionStatus.FAILED))

    @pytest.mark.unit
    async def test_annotate_merges_processor_detail(self, ledger, alice):
        txn = await self._record(ledger, alice.id)

        await ledger.atomic(lambda: ledger.annotate_transaction(txn, {"charge_id": "ch_1"}))
        await ledger.atomic(lambda: ledger.annotate_transaction(txn, {"receipt": "r_1"}))

        reloaded = await ledger.get_transaction(txn.id)
        assert reloaded.details["processor"] == {"charge_id": "ch_1", "receipt": "r_1"}
        assert reloaded.amount_cents == 1000

    @pytest.mark.unit
    async def test_list_includes_both_sides(self, ledger, alice, bob):
        await self._record(ledger, alice.id)
        await self._record(ledger, bob.id, counterpart_account_id=alice.id)
        await self._record(ledger, bob.id)

        assert len(await ledger.list_transactions(alice.id)) == 2
        assert len(await ledger.list_transactions(bob.id)) == 2

    @pytest.mark.unit
    async def test_missing_transaction(self, ledger, system_accounts):
        with pytest.raises(TransactionNotFound):
            await ledger.get_transaction(12345)


class TestAccounts:

    @pytest.mark.unit
    async def test_system_accounts_provisioned_once(self, ledger, db_session, system_accounts):
        again = await ledger.ensure_system_accounts()
        assert {a.id for a in again.values()} == {a.id for a in system_accounts.values()}

        count = await db_session.scalar(
            select(func.count(Account.id)).where(Account.account_type == AccountType.FEE_COLLECTION)
        )
        assert count == 1

    @pytest.mark.unit
    async def test_open_wallet_is_idempotent(self, ledger, alice):
        wallet = await ledger.open_wallet(alice.user_id)
        assert wallet.id == alice.id

    @pytest.mark.unit
    async def test_find_wallet_by_email_ignores_case(self, ledger, bob):
        wallet = await ledger.find_wallet_by_email("  BOB@MoneyBuddy.app ")
        assert wallet.id == bob.id
        assert await ledger.find_wallet_by_email("nobody@moneybuddy.app") is None
