"""
Savings locks.

Principal moves wallet -> savings escrow when the lock is created. At term the
owner withdraws principal plus projected interest; before term they can break
the lock and receive the current value minus the early-withdrawal penalty,
which goes to the fee-collection account. Interest is paid out of the
interest-expense system account, so every release moves existing money.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Union

from dateutil.relativedelta import relativedelta
from sqlalchemy import select, update, and_

from app.core.clock import utcnow, as_utc
from app.core.exceptions import (
    InvalidAmount, LockNotFound, LockNotMatured, LockAlreadyMatured, LockAlreadyResolved
)
from app.core.money import parse_amount, to_cents, from_cents
from app.modules.accounts.models import AccountType
from app.modules.fees.engine import (
    rate_for_term, projected_interest, accrued_interest, compute_early_withdrawal_penalty
)
from app.modules.notifications.models import NotificationType, NotificationPriority
from app.modules.notifications.schemas import NotificationEvent
from app.modules.savings.models import SavingsLock, SavingsLockState
from app.modules.transactions.details import SavingsDetails
from app.modules.transactions.models import TransactionType, TransactionStatus
from app.modules.transactions.services import OrchestratedService, TransferStage

logger = logging.getLogger(__name__)

_RESOLVED_STATES = (SavingsLockState.WITHDRAWN, SavingsLockState.BROKEN_EARLY)


def check_maturity(lock: SavingsLock, now: datetime) -> SavingsLockState:
    """State the lock is in at `now`; an active lock matures once `now >= unlocks_at`"""
    if lock.state != SavingsLockState.ACTIVE:
        return lock.state
    if as_utc(now) >= as_utc(lock.unlocks_at):
        return SavingsLockState.MATURED
    return SavingsLockState.ACTIVE


def elapsed_days(lock: SavingsLock, now: datetime) -> int:
    days = (as_utc(now) - as_utc(lock.locked_at)).days
    return max(0, min(days, lock.duration_days))


@dataclass(frozen=True)
class LockValuation:
    principal: Decimal
    accrued_interest: Decimal
    current_value: Decimal
    projected_interest: Decimal
    maturity_value: Decimal
    days_elapsed: int
    days_remaining: int


def value_lock(lock: SavingsLock, now: datetime) -> LockValuation:
    """Current and at-term value of a lock"""
    principal = from_cents(lock.principal_cents)
    days = elapsed_days(lock, now)
    accrued = accrued_interest(principal, days, lock.interest_rate)
    projected = projected_interest(principal, lock.term_months, lock.interest_rate)
    remaining = (as_utc(lock.unlocks_at) - as_utc(now)).days
    return LockValuation(
        principal=principal,
        accrued_interest=accrued,
        current_value=principal + accrued,
        projected_interest=projected,
        maturity_value=principal + projected,
        days_elapsed=days,
        days_remaining=max(0, remaining)
    )


class SavingsService(OrchestratedService):
    """Create, mature, withdraw and break savings locks"""

    async def get_lock(self, lock_id: int, owner_account_id: Optional[int] = None) -> SavingsLock:
        result = await self.db.execute(
            select(SavingsLock)
            .where(SavingsLock.id == lock_id)
            .execution_options(populate_existing=True)
        )
        lock = result.scalar_one_or_none()
        if lock is None or (owner_account_id is not None and lock.owner_account_id != owner_account_id):
            raise LockNotFound(lock_id=lock_id)
        return lock

    async def list_locks(self, owner_account_id: int) -> List[SavingsLock]:
        result = await self.db.execute(
            select(SavingsLock)
            .where(SavingsLock.owner_account_id == owner_account_id)
            .order_by(SavingsLock.locked_at.desc(), SavingsLock.id.desc())
        )
        return list(result.scalars().all())

    # ============================================================
    # Create
    # ============================================================

    async def create_lock(
        self,
        owner_account_id: int,
        amount: Union[Decimal, str, int],
        term_months: int,
        idempotency_key: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> SavingsLock:
        """
        Lock `amount` from the wallet for `term_months`.

        The rate comes from the fixed term table; other terms are rejected.
        """
        amount = parse_amount(amount)
        if amount <= 0:
            raise InvalidAmount(amount=amount)
        rate = rate_for_term(term_months)

        now = now or utcnow()
        unlocks_at = now + relativedelta(months=term_months)
        key = self.caller_key(owner_account_id, idempotency_key)
        principal_cents = to_cents(amount)

        replayed = await self._find_replay(key, TransactionType.SAVINGS, owner_account_id, principal_cents)
        if replayed is not None:
            return await self._lock_for_transaction(replayed.id)

        escrow = await self.ledger.get_system_account(AccountType.SAVINGS_ESCROW)
        self._stage("savings_lock", key, TransferStage.VALIDATED, owner=owner_account_id, term=term_months)

        async def work():
            accounts = await self.ledger.lock_accounts(owner_account_id, escrow.id)
            await self.ledger.atomic_adjust(owner_account_id, -principal_cents)
            self._stage("savings_lock", key, TransferStage.DEBITED, cents=principal_cents)
            await self.ledger.atomic_adjust(escrow.id, principal_cents)
            self._stage("savings_lock", key, TransferStage.CREDITED, escrow=escrow.id)

            lock = SavingsLock(
                owner_account_id=owner_account_id,
                principal_cents=principal_cents,
                currency=accounts[owner_account_id].currency,
                interest_rate_bps=int(rate * 10000),
                term_months=term_months,
                duration_days=(unlocks_at - now).days,
                locked_at=now,
                unlocks_at=unlocks_at,
                state=SavingsLockState.ACTIVE
            )
            self.db.add(lock)
            await self.db.flush()

            txn = await self.ledger.record_transaction(
                account_id=owner_account_id,
                transaction_type=TransactionType.SAVINGS,
                amount_cents=principal_cents,
                status=TransactionStatus.COMPLETED,
                currency=lock.currency,
                counterpart_account_id=escrow.id,
                idempotency_key=key,
                details=SavingsDetails(lock_id=lock.id, phase="lock", principal=amount),
                description=f"Savings lock for {term_months} months"
            )
            lock.transaction_id = txn.id
            await self.db.flush()
            self._stage("savings_lock", key, TransferStage.RECORDED, txn=txn.reference_code)
            return lock

        lock, replayed = await self._run_idempotent(
            work, "savings_lock", key,
            lambda existing: self._check_replay(existing, TransactionType.SAVINGS, owner_account_id, principal_cents)
        )
        if replayed:
            return await self._lock_for_transaction(lock.id)

        logger.info(
            f"Savings lock {lock.id}: ${amount} from account {owner_account_id} "
            f"for {term_months} months at {rate * 100}%"
        )
        return lock

    async def _lock_for_transaction(self, transaction_id: int) -> SavingsLock:
        result = await self.db.execute(select(SavingsLock).where(SavingsLock.transaction_id == transaction_id))
        lock = result.scalar_one_or_none()
        if lock is None:
            raise LockNotFound(transaction_id=transaction_id)
        return lock

    # ============================================================
    # Resolve
    # ============================================================

    async def break_lock(
        self,
        lock_id: int,
        owner_account_id: Optional[int] = None,
        now: Optional[datetime] = None
    ) -> SavingsLock:
        """
        Break an active lock before its term.

        Pays current value (principal + interest accrued so far) minus 5% of
        the original principal; the penalty goes to the fee-collection account.
        """
        now = now or utcnow()
        lock = await self.get_lock(lock_id, owner_account_id)
        if lock.state in _RESOLVED_STATES:
            raise LockAlreadyResolved(lock_id=lock_id, state=lock.state.value)
        if check_maturity(lock, now) == SavingsLockState.MATURED:
            raise LockAlreadyMatured(lock_id=lock_id, unlocks_at=as_utc(lock.unlocks_at).isoformat())

        valuation = value_lock(lock, now)
        penalty = compute_early_withdrawal_penalty(valuation.principal, valuation.current_value)
        net_cents = to_cents(penalty.net_amount)
        penalty_cents = to_cents(penalty.penalty)
        interest_cents = to_cents(valuation.accrued_interest)
        escrow = await self.ledger.get_system_account(AccountType.SAVINGS_ESCROW)
        fee_account = await self.ledger.get_system_account(AccountType.FEE_COLLECTION)
        interest_account = await self.ledger.get_system_account(AccountType.INTEREST_EXPENSE)
        key = self.system_key("savings-break", lock.id)

        async def work():
            await self.ledger.lock_accounts(lock.owner_account_id, escrow.id, fee_account.id, interest_account.id)
            await self._flip_state(lock.id, (SavingsLockState.ACTIVE,), SavingsLockState.BROKEN_EARLY, now)
            await self.ledger.atomic_adjust(escrow.id, -lock.principal_cents)
            if interest_cents:
                await self.ledger.atomic_adjust(interest_account.id, -interest_cents, expected_min_balance_cents=None)
            self._stage("savings_break", key, TransferStage.DEBITED, escrow=escrow.id, interest_cents=interest_cents)
            await self.ledger.atomic_adjust(lock.owner_account_id, net_cents)
            await self.ledger.atomic_adjust(fee_account.id, penalty_cents)
            self._stage("savings_break", key, TransferStage.CREDITED, net_cents=net_cents, penalty_cents=penalty_cents)
            txn = await self.ledger.record_transaction(
                account_id=lock.owner_account_id,
                transaction_type=TransactionType.SAVINGS,
                amount_cents=net_cents,
                fee_cents=penalty_cents,
                status=TransactionStatus.COMPLETED,
                currency=lock.currency,
                counterpart_account_id=escrow.id,
                idempotency_key=key,
                parent_transaction_id=lock.transaction_id,
                details=SavingsDetails(
                    lock_id=lock.id,
                    phase="break",
                    principal=valuation.principal,
                    interest=valuation.accrued_interest,
                    penalty=penalty.penalty
                ),
                description="Savings lock broken early"
            )
            await self._record_release(lock.id, txn.id, valuation.accrued_interest, penalty_cents)
            self._stage("savings_break", key, TransferStage.RECORDED, txn=txn.reference_code)
            return await self.get_lock(lock.id)

        broken = await self.ledger.atomic(work, operation="savings_break")
        logger.info(
            f"Savings lock {broken.id} broken at day {valuation.days_elapsed}: "
            f"penalty ${penalty.penalty}, net ${penalty.net_amount} to account {broken.owner_account_id}"
        )
        await self._notify_owner(
            broken,
            NotificationType.TRANSACTION_COMPLETED,
            "Savings lock closed early",
            f"${penalty.net_amount} was returned to your wallet after a ${penalty.penalty} early-withdrawal penalty."
        )
        await self._notify_fee_collected(
            "early_withdrawal", penalty.penalty, valuation.principal, broken.release_transaction_id
        )
        return broken

    async def withdraw_matured(
        self,
        lock_id: int,
        owner_account_id: Optional[int] = None,
        now: Optional[datetime] = None
    ) -> SavingsLock:
        """Pay principal plus projected interest once the term has elapsed"""
        now = now or utcnow()
        lock = await self.get_lock(lock_id, owner_account_id)
        if lock.state in _RESOLVED_STATES:
            raise LockAlreadyResolved(lock_id=lock_id, state=lock.state.value)
        if check_maturity(lock, now) == SavingsLockState.ACTIVE:
            raise LockNotMatured(lock_id=lock_id, unlocks_at=as_utc(lock.unlocks_at).isoformat())

        valuation = value_lock(lock, now)
        interest_cents = to_cents(valuation.projected_interest)
        escrow = await self.ledger.get_system_account(AccountType.SAVINGS_ESCROW)
        interest_account = await self.ledger.get_system_account(AccountType.INTEREST_EXPENSE)
        key = self.system_key("savings-release", lock.id)

        async def work():
            await self.ledger.lock_accounts(lock.owner_account_id, escrow.id, interest_account.id)
            await self._flip_state(
                lock.id, (SavingsLockState.ACTIVE, SavingsLockState.MATURED), SavingsLockState.WITHDRAWN, now
            )
            await self.ledger.atomic_adjust(escrow.id, -lock.principal_cents)
            if interest_cents:
                await self.ledger.atomic_adjust(interest_account.id, -interest_cents, expected_min_balance_cents=None)
            await self.ledger.atomic_adjust(lock.owner_account_id, lock.principal_cents + interest_cents)
            self._stage("savings_release", key, TransferStage.CREDITED, interest_cents=interest_cents)
            txn = await self.ledger.record_transaction(
                account_id=lock.owner_account_id,
                transaction_type=TransactionType.SAVINGS,
                amount_cents=lock.principal_cents + interest_cents,
                status=TransactionStatus.COMPLETED,
                currency=lock.currency,
                counterpart_account_id=escrow.id,
                idempotency_key=key,
                parent_transaction_id=lock.transaction_id,
                details=SavingsDetails(
                    lock_id=lock.id,
                    phase="release",
                    principal=valuation.principal,
                    interest=valuation.projected_interest
                ),
                description="Savings lock withdrawn at term"
            )
            await self._record_release(lock.id, txn.id, valuation.projected_interest, 0)
            return await self.get_lock(lock.id)

        withdrawn = await self.ledger.atomic(work, operation="savings_release")
        logger.info(
            f"Savings lock {withdrawn.id} withdrawn: ${valuation.maturity_value} "
            f"(interest ${valuation.projected_interest}) to account {withdrawn.owner_account_id}"
        )
        await self._notify_owner(
            withdrawn,
            NotificationType.TRANSACTION_COMPLETED,
            "Savings withdrawn",
            f"${valuation.maturity_value} including ${valuation.projected_interest} interest is in your wallet."
        )
        return withdrawn

    async def mature_due(self, now: Optional[datetime] = None) -> List[SavingsLock]:
        """Mark every active lock past its term as matured and tell the owner"""
        now = now or utcnow()
        result = await self.db.execute(
            select(SavingsLock.id)
            .where(and_(SavingsLock.state == SavingsLockState.ACTIVE, SavingsLock.unlocks_at <= now))
            .order_by(SavingsLock.id)
        )
        matured = []
        for lock_id in result.scalars().all():
            async def work(lock_id=lock_id):
                changed = await self.db.execute(
                    update(SavingsLock)
                    .where(and_(SavingsLock.id == lock_id, SavingsLock.state == SavingsLockState.ACTIVE))
                    .values(state=SavingsLockState.MATURED, matured_at=now)
                    .execution_options(synchronize_session=False)
                )
                return changed.rowcount == 1

            if not await self.ledger.atomic(work, operation="savings_mature"):
                continue
            lock = await self.get_lock(lock_id)
            matured.append(lock)
            valuation = value_lock(lock, now)
            await self._notify_owner(
                lock,
                NotificationType.LOCKED_ACCOUNT_MATURITY,
                "Your savings lock has matured",
                f"${valuation.maturity_value} is ready to withdraw.",
                priority=NotificationPriority.HIGH
            )
        if matured:
            logger.info(f"Matured {len(matured)} savings lock(s)")
        return matured

    async def _flip_state(self, lock_id: int, from_states, target: SavingsLockState, now: datetime) -> None:
        result = await self.db.execute(
            update(SavingsLock)
            .where(and_(SavingsLock.id == lock_id, SavingsLock.state.in_(from_states)))
            .values(state=target, resolved_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            current = await self.get_lock(lock_id)
            raise LockAlreadyResolved(lock_id=lock_id, state=current.state.value)

    async def _record_release(self, lock_id: int, transaction_id: int, interest: Decimal, penalty_cents: int) -> None:
        await self.db.execute(
            update(SavingsLock)
            .where(SavingsLock.id == lock_id)
            .values(
                release_transaction_id=transaction_id,
                interest_paid_cents=to_cents(interest),
                penalty_cents=penalty_cents
            )
            .execution_options(synchronize_session=False)
        )

    async def _notify_owner(
        self,
        lock: SavingsLock,
        notification_type: NotificationType,
        title: str,
        message: str,
        priority: NotificationPriority = NotificationPriority.NORMAL
    ) -> None:
        owner = await self.ledger.get_account(lock.owner_account_id)
        if owner.user_id is None:
            return
        await self._notify(NotificationEvent(
            user_id=owner.user_id,
            type=notification_type,
            title=title,
            message=message,
            priority=priority,
            related_entity_type="savings_lock",
            related_entity_id=lock.id
        ))
