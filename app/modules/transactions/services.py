"""
Transfer orchestrator.

Deposits, withdrawals and peer transfers run as one logical operation each:
validate, compute fees, move balances and record the transaction inside a
single ledger unit of work, then notify. A step failing after money moved is
compensated before the error reaches the caller.
"""
import logging
import uuid
from decimal import Decimal
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Tuple, TypeVar, Union

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    InvalidAmount, SelfTransferNotAllowed, RecipientNotFound, IdempotencyConflict, InvalidIdempotencyKey,
    InvalidTransactionState, ProcessorFailure, PersistenceFailure, ConcurrentModification,
    TransactionNotFound
)
from app.core.money import parse_amount, to_cents, from_cents
from app.modules.accounts.ledger import LedgerStore
from app.modules.accounts.models import AccountType
from app.modules.fees.engine import (
    WithdrawalMethod, compute_transaction_fee, withdrawal_fee, parse_withdrawal_method
)
from app.modules.notifications.models import NotificationType, NotificationPriority
from app.modules.notifications.schemas import NotificationEvent
from app.modules.notifications.services import NotificationSink
from app.modules.payments.processor import (
    PaymentProcessor, ProcessorOutcome, ProcessorRequest, ProcessorResult, SandboxPaymentProcessor
)
from app.modules.transactions.details import DepositDetails, WithdrawalDetails, TransferDetails
from app.modules.transactions.models import Transaction, TransactionType, TransactionStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")

MIN_DEPOSIT = Decimal("1.00")
MAX_DEPOSIT = Decimal("10000.00")
MIN_WITHDRAWAL = Decimal("1.00")
MAX_IDEMPOTENCY_KEY_LENGTH = 128


class TransferStage(str, Enum):
    VALIDATED = "validated"
    FEE_COMPUTED = "fee_computed"
    DEBITED = "debited"
    CREDITED = "credited"
    RECORDED = "recorded"
    COMPLETED = "completed"
    FAILED = "failed"


class OrchestratedService:
    """
    Shared plumbing for services that move money through the ledger.

    Subclasses get idempotent unit-of-work execution, stage logging and
    notification dispatch that never fails the operation.
    """

    def __init__(
        self,
        db: AsyncSession,
        notifier: Optional[NotificationSink] = None,
        ledger: Optional[LedgerStore] = None
    ):
        self.db = db
        self.ledger = ledger or LedgerStore(db)
        self.notifier = notifier

    @staticmethod
    def caller_key(account_id: int, idempotency_key: Optional[str] = None) -> str:
        """
        Scope a caller-supplied key to the account it acts on.

        Two wallets may use the same key independently, and no caller key can
        take the shape of a system key. A missing key gets a random one.
        """
        if idempotency_key is None:
            idempotency_key = uuid.uuid4().hex
        elif not 0 < len(idempotency_key) <= MAX_IDEMPOTENCY_KEY_LENGTH:
            raise InvalidIdempotencyKey(length=len(idempotency_key))
        return f"acct-{account_id}:{idempotency_key}"

    @staticmethod
    def system_key(operation: str, entity_id: int) -> str:
        """Key for a settlement the service triggers itself (claims, refunds, releases)"""
        return f"system:{operation}-{entity_id}"

    @staticmethod
    def _stage(operation: str, key: str, stage: TransferStage, **context) -> None:
        extra = " ".join(f"{k}={v}" for k, v in context.items())
        logger.debug(f"{operation}[{key}] -> {stage.value} {extra}".rstrip())

    @staticmethod
    def _check_replay(
        existing: Transaction,
        transaction_type: TransactionType,
        account_id: int,
        amount_cents: int,
        counterpart_account_id: Optional[int] = None
    ) -> Transaction:
        """Return the original transaction for a replayed key, or reject a reused key"""
        same_request = (
            existing.transaction_type == transaction_type
            and existing.account_id == account_id
            and existing.amount_cents == amount_cents
            and (counterpart_account_id is None or existing.counterpart_account_id == counterpart_account_id)
        )
        if not same_request:
            raise IdempotencyConflict(idempotency_key=existing.idempotency_key)
        logger.info(f"Replayed idempotency key {existing.idempotency_key} -> {existing.reference_code}")
        return existing

    async def _find_replay(self, key: str, *args, **kwargs) -> Optional[Transaction]:
        existing = await self.ledger.find_by_idempotency_key(key)
        if existing is None:
            return None
        return self._check_replay(existing, *args, **kwargs)

    async def _run_idempotent(
        self,
        work: Callable[[], Awaitable[T]],
        operation: str,
        key: str,
        replay: Callable[[Transaction], T]
    ) -> Tuple[T, bool]:
        """
        Run a unit of work keyed by `key`.

        A concurrent request that committed the same key first makes our
        insert fail on the unique index; the winner's result is returned
        instead. Returns (result, replayed).
        """
        try:
            return await self.ledger.atomic(work, operation=operation), False
        except IntegrityError as exc:
            existing = await self.ledger.find_by_idempotency_key(key)
            if existing is None:
                logger.error(f"{operation}[{key}]: integrity error without a winning record: {exc.orig!r}")
                raise PersistenceFailure() from exc
            return replay(existing), True

    async def _notify(self, event: NotificationEvent) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.notify(event)
        except Exception as e:
            logger.warning(f"Notification {event.type.value} for user {event.user_id} failed: {str(e)}")

    async def _notify_fee_collected(
        self,
        fee_type: str,
        fee: Decimal,
        original_amount: Decimal,
        transaction_id: int
    ) -> None:
        """Tell the platform admin a transfer fee or early-withdrawal penalty was collected"""
        if settings.FEE_ADMIN_USER_ID is None or fee <= 0:
            return
        rate = "2%" if fee_type == "transaction" else "5%"
        title = "Transaction Fee Collected" if fee_type == "transaction" else "Early Withdrawal Fee Collected"
        await self._notify(NotificationEvent(
            user_id=settings.FEE_ADMIN_USER_ID,
            type=NotificationType.FEE_COLLECTED,
            title=title,
            message=f"{rate} fee of ${fee} collected from ${original_amount}.",
            priority=NotificationPriority.LOW,
            related_entity_type="transaction",
            related_entity_id=transaction_id,
            data={"fee_type": fee_type, "amount": str(fee), "original_amount": str(original_amount)}
        ))

class TransferService(OrchestratedService):
    """Deposits, withdrawals, peer transfers and processor reconciliation"""

    def __init__(
        self,
        db: AsyncSession,
        processor: Optional[PaymentProcessor] = None,
        notifier: Optional[NotificationSink] = None,
        ledger: Optional[LedgerStore] = None
    ):
        super().__init__(db, notifier=notifier, ledger=ledger)
        self.processor = processor or SandboxPaymentProcessor()

    # ============================================================
    # Deposit
    # ============================================================

    async def deposit(
        self,
        account_id: int,
        amount: Union[Decimal, str, int],
        method_ref: str,
        idempotency_key: Optional[str] = None
    ) -> Transaction:
        """
        Capture funds from an external payment method and credit the wallet.

        - No fee
        - Amount must be between $1.00 and $10,000.00
        - A pending capture is recorded without crediting; reconciliation
          credits it once the processor confirms
        """
        amount = parse_amount(amount)
        if amount < MIN_DEPOSIT or amount > MAX_DEPOSIT:
            raise InvalidAmount(
                f"Deposit amount must be between ${MIN_DEPOSIT} and ${MAX_DEPOSIT}", amount=amount
            )
        key = self.caller_key(account_id, idempotency_key)
        amount_cents = to_cents(amount)

        replayed = await self._find_replay(key, TransactionType.DEPOSIT, account_id, amount_cents)
        if replayed is not None:
            return replayed

        account = await self.ledger.get_account(account_id)
        self._stage("deposit", key, TransferStage.VALIDATED, account=account_id, amount=amount)
        self._stage("deposit", key, TransferStage.FEE_COMPUTED, fee=Decimal("0.00"))

        result = await self.processor.capture(ProcessorRequest(
            kind="capture",
            account_id=account_id,
            amount=amount,
            currency=account.currency,
            idempotency_key=key,
            method_ref=method_ref
        ))

        if result.outcome == ProcessorOutcome.FAILURE:
            self._stage("deposit", key, TransferStage.FAILED, reason="capture_failed")
            raise ProcessorFailure(
                "Payment capture failed", reference=result.reference, processor=result.detail
            )

        details = DepositDetails(method_ref=method_ref, processor=dict(result.detail))

        if result.outcome == ProcessorOutcome.PENDING:
            async def record_pending():
                return await self.ledger.record_transaction(
                    account_id=account_id,
                    transaction_type=TransactionType.DEPOSIT,
                    amount_cents=amount_cents,
                    status=TransactionStatus.PENDING,
                    currency=account.currency,
                    idempotency_key=key,
                    external_reference=result.reference,
                    details=details,
                    description="Deposit awaiting processor confirmation"
                )

            txn, _ = await self._run_idempotent(
                record_pending, "deposit", key,
                lambda existing: self._check_replay(existing, TransactionType.DEPOSIT, account_id, amount_cents)
            )
            logger.info(f"Deposit {txn.reference_code} pending processor confirmation ({result.reference})")
            return txn

        txn = await self._settle_deposit(account_id, amount_cents, account.currency, key, result, details)
        await self._notify_deposit(account.user_id, txn)
        return txn

    async def _settle_deposit(
        self,
        account_id: int,
        amount_cents: int,
        currency: str,
        key: str,
        result: ProcessorResult,
        details: DepositDetails
    ) -> Transaction:
        """
        Credit a captured deposit and record it, retrying storage failures.

        The capture already happened, so the credit must not be dropped; the
        processor reference guards against crediting it twice.
        """
        async def work():
            if result.reference:
                existing = await self.ledger.find_by_external_reference(result.reference)
                if existing is not None:
                    return existing
            await self.ledger.atomic_adjust(account_id, amount_cents)
            self._stage("deposit", key, TransferStage.CREDITED, cents=amount_cents)
            txn = await self.ledger.record_transaction(
                account_id=account_id,
                transaction_type=TransactionType.DEPOSIT,
                amount_cents=amount_cents,
                status=TransactionStatus.COMPLETED,
                currency=currency,
                idempotency_key=key,
                external_reference=result.reference,
                details=details,
                description="Deposit"
            )
            self._stage("deposit", key, TransferStage.RECORDED, txn=txn.reference_code)
            return txn

        attempts = settings.DEPOSIT_SETTLE_ATTEMPTS
        for attempt in range(1, attempts + 1):
            try:
                txn, _ = await self._run_idempotent(
                    work, "deposit", key,
                    lambda existing: self._check_replay(existing, TransactionType.DEPOSIT, account_id, amount_cents)
                )
                self._stage("deposit", key, TransferStage.COMPLETED)
                logger.info(f"Deposit {txn.reference_code}: ${from_cents(amount_cents)} to account {account_id}")
                return txn
            except (PersistenceFailure, ConcurrentModification):
                if attempt == attempts:
                    logger.error(
                        f"Deposit {key}: captured {result.reference} but could not credit account "
                        f"{account_id} after {attempts} attempts"
                    )
                    raise
                logger.warning(f"Deposit {key}: settlement attempt {attempt}/{attempts} failed, retrying")

    async def _notify_deposit(self, user_id: Optional[int], txn: Transaction) -> None:
        if user_id is None:
            return
        await self._notify(NotificationEvent(
            user_id=user_id,
            type=NotificationType.TRANSACTION_COMPLETED,
            title="Deposit received",
            message=f"${from_cents(txn.amount_cents)} was added to your wallet.",
            related_entity_type="transaction",
            related_entity_id=txn.id,
            data={"reference": txn.reference_code, "amount": str(from_cents(txn.amount_cents))}
        ))

    # ============================================================
    # Withdrawal
    # ============================================================

    async def withdraw(
        self,
        account_id: int,
        amount: Union[Decimal, str, int],
        method: Union[WithdrawalMethod, str] = WithdrawalMethod.STANDARD,
        idempotency_key: Optional[str] = None
    ) -> Transaction:
        """
        Debit the wallet and pay out through the processor.

        `amount + fee(method)` is debited and the fee credited to the platform
        in one unit, recorded as pending. The processor answer then completes
        the record, leaves it pending, or triggers a compensating re-credit.
        """
        amount = parse_amount(amount)
        if amount < MIN_WITHDRAWAL:
            raise InvalidAmount(f"Minimum withdrawal is ${MIN_WITHDRAWAL}", amount=amount)
        method = parse_withdrawal_method(method)

        key = self.caller_key(account_id, idempotency_key)
        fee = withdrawal_fee(method)
        amount_cents = to_cents(amount)
        fee_cents = to_cents(fee)
        self._stage("withdrawal", key, TransferStage.VALIDATED, account=account_id, amount=amount)

        replayed = await self._find_replay(key, TransactionType.WITHDRAWAL, account_id, amount_cents)
        if replayed is not None:
            return replayed

        fee_account = await self.ledger.get_system_account(AccountType.FEE_COLLECTION)
        self._stage("withdrawal", key, TransferStage.FEE_COMPUTED, fee=fee, method=method.value)

        async def debit():
            accounts = await self.ledger.lock_accounts(account_id, fee_account.id)
            await self.ledger.atomic_adjust(account_id, -(amount_cents + fee_cents))
            self._stage("withdrawal", key, TransferStage.DEBITED, cents=amount_cents + fee_cents)
            if fee_cents:
                await self.ledger.atomic_adjust(fee_account.id, fee_cents)
                self._stage("withdrawal", key, TransferStage.CREDITED, fee_cents=fee_cents)
            txn = await self.ledger.record_transaction(
                account_id=account_id,
                transaction_type=TransactionType.WITHDRAWAL,
                amount_cents=amount_cents,
                fee_cents=fee_cents,
                status=TransactionStatus.PENDING,
                currency=accounts[account_id].currency,
                idempotency_key=key,
                details=WithdrawalDetails(method=method, fee_account_id=fee_account.id),
                description=f"{method.value.capitalize()} withdrawal"
            )
            self._stage("withdrawal", key, TransferStage.RECORDED, txn=txn.reference_code)
            return txn

        txn, replayed = await self._run_idempotent(
            debit, "withdrawal", key,
            lambda existing: self._check_replay(existing, TransactionType.WITHDRAWAL, account_id, amount_cents)
        )
        if replayed:
            return txn

        try:
            result = await self.processor.payout(ProcessorRequest(
                kind="payout",
                account_id=account_id,
                amount=amount,
                currency=txn.currency,
                idempotency_key=key,
                method=method.value
            ))
        except Exception as e:
            logger.error(f"Withdrawal {txn.reference_code}: payout call raised, leaving pending: {str(e)}")
            result = ProcessorResult(ProcessorOutcome.PENDING, detail={"error": "payout_call_failed"})

        if result.outcome == ProcessorOutcome.FAILURE:
            await self._compensate_withdrawal(txn, reason="Payout rejected by processor", result=result)
            raise ProcessorFailure(
                "Payout failed; the withdrawal was reversed",
                transaction_id=txn.id, reference=result.reference, processor=result.detail
            )

        async def annotate():
            current = await self.ledger.get_transaction(txn.id)
            await self.ledger.annotate_transaction(current, dict(result.detail), external_reference=result.reference)
            if result.outcome == ProcessorOutcome.SUCCESS:
                current = await self.ledger.transition_status(current, TransactionStatus.COMPLETED)
            return current

        txn = await self.ledger.atomic(annotate, operation="withdrawal")
        if txn.status == TransactionStatus.COMPLETED:
            self._stage("withdrawal", key, TransferStage.COMPLETED)
            logger.info(f"Withdrawal {txn.reference_code} completed: ${amount} from account {account_id}")
            await self._notify_withdrawal(account_id, txn)
        else:
            logger.info(f"Withdrawal {txn.reference_code} pending settlement ({result.reference})")
        return txn

    async def _compensate_withdrawal(
        self,
        txn: Transaction,
        reason: str,
        result: Optional[ProcessorResult] = None
    ) -> Transaction:
        """Re-credit amount and fee, reverse the fee credit, mark the record failed"""
        fee_account_id = (txn.details or {}).get("fee_account_id")

        async def work():
            current = await self.ledger.get_transaction(txn.id)
            ids = [current.account_id] + ([fee_account_id] if fee_account_id else [])
            await self.ledger.lock_accounts(*ids)
            current = await self.ledger.transition_status(current, TransactionStatus.FAILED, reason=reason)
            await self.ledger.atomic_adjust(current.account_id, current.amount_cents + current.fee_cents)
            if current.fee_cents and fee_account_id:
                await self.ledger.atomic_adjust(fee_account_id, -current.fee_cents)
            if result is not None:
                await self.ledger.annotate_transaction(
                    current, dict(result.detail), external_reference=result.reference
                )
            return current

        failed = await self.ledger.atomic(work, operation="withdrawal_compensation")
        self._stage("withdrawal", failed.idempotency_key or str(failed.id), TransferStage.FAILED, reason=reason)
        logger.warning(
            f"Withdrawal {failed.reference_code} compensated: "
            f"${from_cents(failed.amount_cents + failed.fee_cents)} returned to account {failed.account_id}"
        )
        return failed

    async def _notify_withdrawal(self, account_id: int, txn: Transaction) -> None:
        account = await self.ledger.get_account(account_id)
        if account.user_id is None:
            return
        await self._notify(NotificationEvent(
            user_id=account.user_id,
            type=NotificationType.TRANSACTION_COMPLETED,
            title="Withdrawal completed",
            message=f"${from_cents(txn.amount_cents)} was sent to your bank.",
            related_entity_type="transaction",
            related_entity_id=txn.id,
            data={"reference": txn.reference_code, "fee": str(from_cents(txn.fee_cents))}
        ))

    # ============================================================
    # Peer transfer
    # ============================================================

    async def transfer(
        self,
        from_account_id: int,
        to_account_id: int,
        amount: Union[Decimal, str, int],
        idempotency_key: Optional[str] = None,
        description: Optional[str] = None
    ) -> Transaction:
        """
        Move money between two wallets with the 2% platform fee.

        Sender pays amount + fee, recipient receives the full amount and the
        fee goes to the fee-collection account; all three adjustments and
        the record commit together.
        """
        if from_account_id == to_account_id:
            raise SelfTransferNotAllowed(account_id=from_account_id)
        quote = compute_transaction_fee(parse_amount(amount))
        key = self.caller_key(from_account_id, idempotency_key)
        amount_cents = to_cents(quote.amount)
        fee_cents = to_cents(quote.fee)

        replayed = await self._find_replay(
            key, TransactionType.TRANSFER, from_account_id, amount_cents, counterpart_account_id=to_account_id
        )
        if replayed is not None:
            return replayed

        recipient = await self.ledger.get_account(to_account_id)
        if recipient.account_type != AccountType.WALLET:
            raise RecipientNotFound(account_id=to_account_id)
        recipient_email = await self.ledger.owner_email(to_account_id)
        fee_account = await self.ledger.get_system_account(AccountType.FEE_COLLECTION)
        self._stage("transfer", key, TransferStage.VALIDATED, sender=from_account_id, recipient=to_account_id)
        self._stage("transfer", key, TransferStage.FEE_COMPUTED, fee=quote.fee)

        async def work():
            accounts = await self.ledger.lock_accounts(from_account_id, to_account_id, fee_account.id)
            await self.ledger.atomic_adjust(from_account_id, -(amount_cents + fee_cents))
            self._stage("transfer", key, TransferStage.DEBITED, cents=amount_cents + fee_cents)
            await self.ledger.atomic_adjust(to_account_id, amount_cents)
            await self.ledger.atomic_adjust(fee_account.id, fee_cents)
            self._stage("transfer", key, TransferStage.CREDITED, recipient_cents=amount_cents, fee_cents=fee_cents)
            txn = await self.ledger.record_transaction(
                account_id=from_account_id,
                transaction_type=TransactionType.TRANSFER,
                amount_cents=amount_cents,
                fee_cents=fee_cents,
                status=TransactionStatus.COMPLETED,
                currency=accounts[from_account_id].currency,
                counterpart_account_id=to_account_id,
                counterpart_email=recipient_email,
                idempotency_key=key,
                details=TransferDetails(fee_account_id=fee_account.id, recipient_receives=quote.recipient_receives),
                description=description
            )
            self._stage("transfer", key, TransferStage.RECORDED, txn=txn.reference_code)
            return txn, accounts[from_account_id].user_id

        (txn, sender_user_id), replayed = await self._run_idempotent(
            work, "transfer", key,
            lambda existing: (
                self._check_replay(
                    existing, TransactionType.TRANSFER, from_account_id, amount_cents,
                    counterpart_account_id=to_account_id
                ),
                None
            )
        )
        if replayed:
            return txn

        self._stage("transfer", key, TransferStage.COMPLETED)
        logger.info(
            f"Transfer {txn.reference_code}: ${quote.amount} from {from_account_id} to {to_account_id} "
            f"(fee ${quote.fee})"
        )

        if sender_user_id is not None:
            await self._notify(NotificationEvent(
                user_id=sender_user_id,
                type=NotificationType.TRANSACTION_COMPLETED,
                title="Transfer sent",
                message=f"You sent ${quote.amount} to {recipient_email or 'a recipient'} (fee ${quote.fee}).",
                related_entity_type="transaction",
                related_entity_id=txn.id,
                data={"reference": txn.reference_code, "total_debited": str(quote.total_debited)}
            ))
        if recipient.user_id is not None:
            await self._notify(NotificationEvent(
                user_id=recipient.user_id,
                type=NotificationType.TRANSACTION_COMPLETED,
                title="Money received",
                message=f"You received ${quote.amount}.",
                related_entity_type="transaction",
                related_entity_id=txn.id,
                data={"reference": txn.reference_code}
            ))
        await self._notify_fee_collected("transaction", quote.fee, quote.amount, txn.id)
        return txn

    async def transfer_to_email(
        self,
        from_account_id: int,
        recipient_email: str,
        amount: Union[Decimal, str, int],
        idempotency_key: Optional[str] = None,
        description: Optional[str] = None
    ) -> Transaction:
        """Resolve the recipient's wallet by email, then transfer"""
        recipient = await self.ledger.find_wallet_by_email(recipient_email)
        if recipient is None:
            raise RecipientNotFound(email=recipient_email)
        return await self.transfer(from_account_id, recipient.id, amount, idempotency_key, description)

    # ============================================================
    # Reconciliation
    # ============================================================

    async def reconcile(self, processor_reference: str, outcome: Union[ProcessorOutcome, str]) -> Transaction:
        """
        Apply an authoritative processor outcome to a pending transaction.

        - Deposit confirmed: credit the wallet and complete
        - Deposit failed: mark failed; nothing had been credited
        - Withdrawal paid: complete
        - Withdrawal failed: compensating re-credit, mark failed
        Replaying the outcome already applied is a no-op.

        `processor_reference` is the processor's own reference or, for calls
        that never returned one (timeouts, transport errors), the idempotency
        key the processor was sent.
        """
        outcome = ProcessorOutcome(outcome)
        txn = await self.ledger.find_by_external_reference(processor_reference)
        if txn is None:
            txn = await self.ledger.find_by_idempotency_key(processor_reference)
        if txn is None:
            raise TransactionNotFound(processor_reference=processor_reference)

        if outcome == ProcessorOutcome.PENDING:
            return txn

        target = TransactionStatus.COMPLETED if outcome == ProcessorOutcome.SUCCESS else TransactionStatus.FAILED
        if txn.status == target:
            logger.info(f"Reconcile {processor_reference}: already {target.value}")
            return txn
        if txn.status != TransactionStatus.PENDING:
            raise InvalidTransactionState(
                transaction_id=txn.id, current=txn.status.value, requested=target.value
            )

        try:
            if txn.transaction_type == TransactionType.DEPOSIT:
                resolved = await self._reconcile_deposit(txn, target)
            elif txn.transaction_type == TransactionType.WITHDRAWAL:
                if target == TransactionStatus.FAILED:
                    resolved = await self._compensate_withdrawal(txn, reason="Payout failed at processor")
                else:
                    resolved = await self.ledger.atomic(
                        lambda: self.ledger.transition_status(txn, TransactionStatus.COMPLETED),
                        operation="reconcile"
                    )
            else:
                raise InvalidTransactionState(
                    "Only deposits and withdrawals settle through the processor",
                    transaction_id=txn.id
                )
        except InvalidTransactionState:
            # Lost a race with another reconciler applying the same outcome
            current = await self.ledger.get_transaction(txn.id)
            if current.status == target:
                return current
            raise

        logger.info(f"Reconciled {resolved.reference_code} ({processor_reference}) -> {resolved.status.value}")
        if resolved.status == TransactionStatus.COMPLETED:
            account = await self.ledger.get_account(resolved.account_id)
            if resolved.transaction_type == TransactionType.DEPOSIT:
                await self._notify_deposit(account.user_id, resolved)
            else:
                await self._notify_withdrawal(resolved.account_id, resolved)
        return resolved

    async def _reconcile_deposit(self, txn: Transaction, target: TransactionStatus) -> Transaction:
        async def work():
            current = await self.ledger.get_transaction(txn.id)
            if target == TransactionStatus.COMPLETED:
                await self.ledger.lock_accounts(current.account_id)
                current = await self.ledger.transition_status(current, TransactionStatus.COMPLETED)
                await self.ledger.atomic_adjust(current.account_id, current.amount_cents)
                return current
            return await self.ledger.transition_status(current, TransactionStatus.FAILED, reason="Capture failed at processor")

        return await self.ledger.atomic(work, operation="reconcile")

    # ============================================================
    # Reads
    # ============================================================

    async def get_transaction(self, transaction_id: int, account_id: int) -> Transaction:
        """Get a transaction visible to `account_id` (either side)"""
        txn = await self.ledger.get_transaction(transaction_id)
        if account_id not in (txn.account_id, txn.counterpart_account_id):
            raise TransactionNotFound(transaction_id=transaction_id)
        return txn

    async def list_transactions(self, account_id: int, limit: int = 50, offset: int = 0) -> List[Transaction]:
        return await self.ledger.list_transactions(account_id, limit=limit, offset=offset)
