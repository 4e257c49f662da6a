"""
Fee engine.

Pure, deterministic computation of transfer fees, withdrawal fees,
early-withdrawal penalties and savings-lock interest. No I/O and no settings
lookups: every result depends only on the arguments.
"""
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Dict, List

from app.core.exceptions import InvalidAmount, UnsupportedLockTerm, UnsupportedWithdrawalMethod
from app.core.money import quantize

TRANSFER_FEE_RATE = Decimal("0.02")
EARLY_WITHDRAWAL_PENALTY_RATE = Decimal("0.05")
DAYS_PER_YEAR = Decimal("365")


class WithdrawalMethod(str, Enum):
    STANDARD = "standard"   # bank transfer, settles asynchronously
    CARD = "card"
    INSTANT = "instant"


WITHDRAWAL_FEES: Dict[WithdrawalMethod, Decimal] = {
    WithdrawalMethod.STANDARD: Decimal("0.00"),
    WithdrawalMethod.CARD: Decimal("1.00"),
    WithdrawalMethod.INSTANT: Decimal("1.50"),
}


@dataclass(frozen=True)
class LockingOption:
    months: int
    label: str
    interest_rate: Decimal
    description: str


LOCKING_OPTIONS: List[LockingOption] = [
    LockingOption(3, "3 Months", Decimal("0.015"), "Short-term savings"),
    LockingOption(6, "6 Months", Decimal("0.02"), "Medium-term growth"),
    LockingOption(9, "9 Months", Decimal("0.025"), "Extended savings"),
    LockingOption(12, "12 Months", Decimal("0.03"), "Annual commitment"),
    LockingOption(18, "18 Months", Decimal("0.035"), "Long-term growth"),
    LockingOption(24, "24 Months", Decimal("0.04"), "Maximum returns"),
]

_RATE_TABLE: Dict[int, Decimal] = {option.months: option.interest_rate for option in LOCKING_OPTIONS}


@dataclass(frozen=True)
class TransactionFee:
    amount: Decimal
    fee: Decimal
    recipient_receives: Decimal
    admin_receives: Decimal
    total_debited: Decimal


@dataclass(frozen=True)
class EarlyWithdrawalPenalty:
    penalty: Decimal
    net_amount: Decimal
    admin_receives: Decimal


def compute_transaction_fee(amount: Decimal) -> TransactionFee:
    """2% peer-transfer fee, paid by the sender on top of the amount."""
    if amount <= 0:
        raise InvalidAmount(amount=amount)
    fee = quantize(amount * TRANSFER_FEE_RATE)
    return TransactionFee(
        amount=amount,
        fee=fee,
        recipient_receives=amount,
        admin_receives=fee,
        total_debited=amount + fee,
    )


def parse_withdrawal_method(method) -> WithdrawalMethod:
    try:
        return WithdrawalMethod(method)
    except ValueError:
        raise UnsupportedWithdrawalMethod(
            method=str(method), supported=[m.value for m in WithdrawalMethod]
        )


def withdrawal_fee(method: WithdrawalMethod) -> Decimal:
    return WITHDRAWAL_FEES[parse_withdrawal_method(method)]


def compute_early_withdrawal_penalty(locked_principal: Decimal, current_value: Decimal) -> EarlyWithdrawalPenalty:
    """
    5% penalty for breaking a savings lock early.

    The penalty is taken on the original locked principal, not on the
    accrued value. Product owners have not confirmed whether this is policy;
    keep it until they do.
    """
    if locked_principal <= 0:
        raise InvalidAmount(amount=locked_principal)
    penalty = quantize(locked_principal * EARLY_WITHDRAWAL_PENALTY_RATE)
    return EarlyWithdrawalPenalty(
        penalty=penalty,
        net_amount=quantize(current_value) - penalty,
        admin_receives=penalty,
    )


def projected_interest(principal: Decimal, months: int, annual_rate: Decimal) -> Decimal:
    """Simple (non-compounding) interest over a whole number of months."""
    return quantize(principal * annual_rate * Decimal(months) / Decimal(12))


def accrued_interest(principal: Decimal, days: int, annual_rate: Decimal) -> Decimal:
    """Simple interest accrued for the days actually elapsed."""
    if days <= 0:
        return Decimal("0.00")
    return quantize(principal * annual_rate * Decimal(days) / DAYS_PER_YEAR)


def rate_for_term(months: int) -> Decimal:
    try:
        return _RATE_TABLE[months]
    except KeyError:
        raise UnsupportedLockTerm(
            f"Lock term of {months} months is not offered",
            term_months=months,
            supported_terms=sorted(_RATE_TABLE),
        )
