# Fee engine module
from app.modules.fees.engine import (
    WithdrawalMethod, LockingOption, LOCKING_OPTIONS,
    compute_transaction_fee, compute_early_withdrawal_penalty,
    projected_interest, accrued_interest, withdrawal_fee, rate_for_term
)

__all__ = [
    "WithdrawalMethod", "LockingOption", "LOCKING_OPTIONS",
    "compute_transaction_fee", "compute_early_withdrawal_penalty",
    "projected_interest", "accrued_interest", "withdrawal_fee", "rate_for_term"
]
