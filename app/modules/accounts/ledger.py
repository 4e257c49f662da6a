"""
Ledger store.

The only component allowed to change account balances. Callers group
adjustments and transaction records into one unit of work with `atomic`;
nothing is visible to other sessions until that unit commits.
"""
import asyncio
import logging
import uuid
from decimal import Decimal
from typing import Awaitable, Callable, Dict, List, Optional, TypeVar

from sqlalchemy import select, update, or_, and_
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import utcnow
from app.core.config import settings
from app.core.exceptions import (
    LedgerError, AccountNotFound, TransactionNotFound, InsufficientFunds,
    InvalidTransactionState, ConcurrentModification, PersistenceFailure
)
from app.core.money import from_cents
from app.modules.accounts.models import Account, AccountType, AccountStatusEnum, SYSTEM_ACCOUNT_TYPES, OVERDRAFT_ACCOUNT_TYPES
from app.modules.transactions.details import dump_details
from app.modules.transactions.models import Transaction, TransactionType, TransactionStatus
from app.modules.users.models import User

logger = logging.getLogger(__name__)

T = TypeVar("T")

_ALLOWED_TRANSITIONS = {
    TransactionStatus.PENDING: {TransactionStatus.COMPLETED, TransactionStatus.FAILED},
}


class LedgerStore:
    """Repository over accounts and the append-only transaction log."""

    def __init__(
        self,
        db: AsyncSession,
        max_attempts: Optional[int] = None,
        retry_backoff: Optional[float] = None
    ):
        self.db = db
        self.max_attempts = max_attempts or settings.LEDGER_MAX_ATTEMPTS
        self.retry_backoff = settings.LEDGER_RETRY_BACKOFF_SECONDS if retry_backoff is None else retry_backoff

    @staticmethod
    def generate_reference() -> str:
        """Generate a human-readable transaction reference"""
        return f"TXN-{uuid.uuid4().hex[:12].upper()}"

    # ============================================================
    # Unit of work
    # ============================================================

    async def atomic(self, work: Callable[[], Awaitable[T]], operation: str = "ledger") -> T:
        """
        Run `work` and commit it as one database transaction.

        Lock timeouts, deadlocks and serialization failures are retried with
        a linear backoff; `work` must therefore re-read whatever it needs.
        Integrity errors are re-raised untouched so callers can resolve
        idempotency races.
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                result = await work()
                await self.db.commit()
                return result
            except (LedgerError, IntegrityError):
                await self.db.rollback()
                raise
            except OperationalError as exc:
                await self.db.rollback()
                logger.warning(
                    f"{operation}: storage contention on attempt {attempt}/{self.max_attempts}: {exc.orig!r}"
                )
                if attempt == self.max_attempts:
                    raise ConcurrentModification(attempts=attempt) from exc
                await asyncio.sleep(self.retry_backoff * attempt)
            except SQLAlchemyError as exc:
                await self.db.rollback()
                logger.error(f"{operation}: ledger write failed: {exc!r}")
                raise PersistenceFailure() from exc
            except Exception:
                await self.db.rollback()
                raise
        raise ConcurrentModification(attempts=self.max_attempts)

    # ============================================================
    # Accounts
    # ============================================================

    async def get_account(self, account_id: int) -> Account:
        result = await self.db.execute(
            select(Account)
            .where(Account.id == account_id)
            .execution_options(populate_existing=True)
        )
        account = result.scalar_one_or_none()
        if account is None:
            raise AccountNotFound(account_id=account_id)
        return account

    async def get_balance(self, account_id: int) -> Decimal:
        result = await self.db.execute(select(Account.balance_cents).where(Account.id == account_id))
        cents = result.scalar_one_or_none()
        if cents is None:
            raise AccountNotFound(account_id=account_id)
        return from_cents(cents)

    async def get_user_wallet(self, user_id: int) -> Optional[Account]:
        result = await self.db.execute(
            select(Account)
            .where(
                and_(
                    Account.user_id == user_id,
                    Account.account_type == AccountType.WALLET,
                    Account.account_status == AccountStatusEnum.ACTIVE
                )
            )
            .order_by(Account.id)
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def find_wallet_by_email(self, email: str) -> Optional[Account]:
        """Resolve a recipient email to their active wallet"""
        result = await self.db.execute(
            select(Account)
            .join(User, User.id == Account.user_id)
            .where(
                and_(
                    User.email == email.strip().lower(),
                    Account.account_type == AccountType.WALLET,
                    Account.account_status == AccountStatusEnum.ACTIVE
                )
            )
            .order_by(Account.id)
        )
        return result.scalars().first()

    async def owner_email(self, account_id: int) -> Optional[str]:
        result = await self.db.execute(
            select(User.email).join(Account, Account.user_id == User.id).where(Account.id == account_id)
        )
        return result.scalar_one_or_none()

    async def open_wallet(self, user_id: int, currency: Optional[str] = None) -> Account:
        """Create the user's wallet, or return the existing one"""
        existing = await self.get_user_wallet(user_id)
        if existing is not None:
            return existing

        wallet = Account(
            user_id=user_id,
            account_type=AccountType.WALLET,
            currency=currency or settings.DEFAULT_CURRENCY,
            balance_cents=0,
            version=0,
            allow_negative=False,
            account_status=AccountStatusEnum.ACTIVE
        )
        self.db.add(wallet)
        await self.db.flush()
        return wallet

    async def get_system_account(self, account_type: AccountType) -> Account:
        result = await self.db.execute(
            select(Account).where(Account.account_type == account_type).order_by(Account.id)
        )
        account = result.scalars().first()
        if account is None:
            raise AccountNotFound(f"System account {account_type.value} is not provisioned")
        return account

    async def ensure_system_accounts(self) -> Dict[AccountType, Account]:
        """Provision the fee-collection, escrow and interest-expense accounts if missing"""
        async def work():
            accounts = {}
            for account_type in SYSTEM_ACCOUNT_TYPES:
                result = await self.db.execute(select(Account).where(Account.account_type == account_type))
                account = result.scalars().first()
                if account is None:
                    account = Account(
                        account_type=account_type,
                        currency=settings.DEFAULT_CURRENCY,
                        balance_cents=0,
                        version=0,
                        allow_negative=account_type in OVERDRAFT_ACCOUNT_TYPES
                    )
                    self.db.add(account)
                    await self.db.flush()
                    logger.info(f"Provisioned system account {account_type.value} (id={account.id})")
                accounts[account_type] = account
            return accounts

        return await self.atomic(work, operation="ensure_system_accounts")

    async def lock_accounts(self, *account_ids: int) -> Dict[int, Account]:
        """
        Row-lock the given accounts in ascending id order.

        A fixed order keeps two transfers moving money in opposite directions
        between the same accounts from deadlocking.
        """
        ids = sorted(set(account_ids))
        result = await self.db.execute(
            select(Account)
            .where(Account.id.in_(ids))
            .order_by(Account.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        accounts = {account.id: account for account in result.scalars().all()}
        for account_id in ids:
            if account_id not in accounts:
                raise AccountNotFound(account_id=account_id)
        return accounts

    async def atomic_adjust(
        self,
        account_id: int,
        delta_cents: int,
        expected_min_balance_cents: Optional[int] = 0
    ) -> int:
        """
        Add `delta_cents` to the balance in a single conditional UPDATE.

        Debits only apply when the resulting balance stays at or above
        `expected_min_balance_cents`, so two concurrent debits can never both
        pass against the same stale balance. `None` lifts the floor, for
        accounts allowed to run negative. Returns the new balance.
        """
        stmt = update(Account).where(Account.id == account_id)
        if delta_cents < 0 and expected_min_balance_cents is not None:
            stmt = stmt.where(Account.balance_cents + delta_cents >= expected_min_balance_cents)
        stmt = (
            stmt.values(
                balance_cents=Account.balance_cents + delta_cents,
                version=Account.version + 1
            )
            .returning(Account.balance_cents)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        new_balance = result.scalar_one_or_none()
        if new_balance is not None:
            return new_balance

        current = await self.db.execute(select(Account.balance_cents).where(Account.id == account_id))
        available = current.scalar_one_or_none()
        if available is None:
            raise AccountNotFound(account_id=account_id)

        required = -delta_cents + expected_min_balance_cents
        raise InsufficientFunds(
            f"Insufficient balance. Need ${from_cents(required)} but only have ${from_cents(available)}",
            account_id=account_id,
            required=from_cents(required),
            available=from_cents(available),
            shortfall=from_cents(required - available)
        )

    # ============================================================
    # Transactions
    # ============================================================

    async def record_transaction(
        self,
        *,
        account_id: int,
        transaction_type: TransactionType,
        amount_cents: int,
        details,
        status: TransactionStatus = TransactionStatus.COMPLETED,
        fee_cents: int = 0,
        currency: Optional[str] = None,
        counterpart_account_id: Optional[int] = None,
        counterpart_email: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        external_reference: Optional[str] = None,
        parent_transaction_id: Optional[int] = None,
        description: Optional[str] = None,
        failure_reason: Optional[str] = None
    ) -> Transaction:
        now = utcnow()
        txn = Transaction(
            reference_code=self.generate_reference(),
            account_id=account_id,
            counterpart_account_id=counterpart_account_id,
            counterpart_email=counterpart_email,
            transaction_type=transaction_type,
            status=status,
            amount_cents=amount_cents,
            fee_cents=fee_cents,
            currency=currency or settings.DEFAULT_CURRENCY,
            idempotency_key=idempotency_key,
            external_reference=external_reference,
            parent_transaction_id=parent_transaction_id,
            details=dump_details(details),
            details_version=details.version,
            description=description,
            failure_reason=failure_reason,
            created_at=now,
            completed_at=now if status == TransactionStatus.COMPLETED else None,
            failed_at=now if status == TransactionStatus.FAILED else None
        )
        self.db.add(txn)
        await self.db.flush()
        return txn

    async def transition_status(
        self,
        txn: Transaction,
        new_status: TransactionStatus,
        reason: Optional[str] = None
    ) -> Transaction:
        """
        Move a transaction out of `pending`.

        The UPDATE is conditioned on the current status so two reconcilers
        racing on the same record cannot both win.
        """
        current = TransactionStatus(txn.status)
        if new_status not in _ALLOWED_TRANSITIONS.get(current, set()):
            raise InvalidTransactionState(
                transaction_id=txn.id, current=current.value, requested=new_status.value
            )

        now = utcnow()
        values = {"status": new_status}
        if new_status == TransactionStatus.COMPLETED:
            values["completed_at"] = now
        else:
            values["failed_at"] = now
            values["failure_reason"] = reason

        result = await self.db.execute(
            update(Transaction)
            .where(and_(Transaction.id == txn.id, Transaction.status == current))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InvalidTransactionState(
                "Transaction was resolved concurrently",
                transaction_id=txn.id, requested=new_status.value
            )
        return await self.get_transaction(txn.id)

    async def annotate_transaction(
        self,
        txn: Transaction,
        processor_detail: Dict,
        external_reference: Optional[str] = None
    ) -> Transaction:
        """
        Merge processor detail into a transaction without touching amounts.

        The processor reference can be attached once, for records created
        before the processor had answered.
        """
        details = dict(txn.details or {})
        processor = dict(details.get("processor") or {})
        processor.update(processor_detail)
        details["processor"] = processor
        txn.details = details
        if external_reference and txn.external_reference is None:
            txn.external_reference = external_reference
        await self.db.flush()
        return txn

    async def get_transaction(self, transaction_id: int) -> Transaction:
        result = await self.db.execute(
            select(Transaction)
            .where(Transaction.id == transaction_id)
            .execution_options(populate_existing=True)
        )
        txn = result.scalar_one_or_none()
        if txn is None:
            raise TransactionNotFound(transaction_id=transaction_id)
        return txn

    async def find_by_idempotency_key(self, key: str) -> Optional[Transaction]:
        result = await self.db.execute(
            select(Transaction)
            .where(Transaction.idempotency_key == key)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def find_by_external_reference(self, reference: str) -> Optional[Transaction]:
        result = await self.db.execute(
            select(Transaction)
            .where(Transaction.external_reference == reference)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_transactions(self, account_id: int, limit: int = 50, offset: int = 0) -> List[Transaction]:
        """Transactions where the account is either side, newest first"""
        result = await self.db.execute(
            select(Transaction)
            .where(
                or_(
                    Transaction.account_id == account_id,
                    Transaction.counterpart_account_id == account_id
                )
            )
            .order_by(Transaction.created_at.desc(), Transaction.id.desc())
            .offset(offset)
            .limit(limit)
        )
        return list(result.scalars().all())
