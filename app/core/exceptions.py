"""
Ledger error taxonomy.

Every error raised by the ledger core derives from LedgerError and carries a
stable code, a user-facing message and an optional detail mapping. Internal
storage errors are never attached here.
"""
from decimal import Decimal
from typing import Any, Dict, Optional

from fastapi import status


class LedgerError(Exception):
    """Base class for ledger-core errors."""

    code = "ledger_error"
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "The operation could not be completed"

    def __init__(self, message: Optional[str] = None, **detail: Any):
        self.message = message or self.default_message
        self.detail: Dict[str, Any] = {
            key: str(value) if isinstance(value, Decimal) else value
            for key, value in detail.items()
        }
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message, "detail": self.detail}


# ============================================================
# Validation errors (raised before any mutation)
# ============================================================

class InvalidAmount(LedgerError):
    code = "invalid_amount"
    default_message = "Amount must be a positive value with at most two decimal places"


class SelfTransferNotAllowed(LedgerError):
    code = "self_transfer_not_allowed"
    default_message = "Cannot transfer to the same account"


class RecipientNotFound(LedgerError):
    code = "recipient_not_found"
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Recipient not found"


class AccountNotFound(LedgerError):
    code = "account_not_found"
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Account not found"


class TransactionNotFound(LedgerError):
    code = "transaction_not_found"
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Transaction not found"


class UnsupportedLockTerm(LedgerError):
    code = "unsupported_lock_term"
    default_message = "Unsupported savings lock term"


class UnsupportedWithdrawalMethod(LedgerError):
    code = "unsupported_withdrawal_method"
    default_message = "Unsupported withdrawal method"


class InvalidIdempotencyKey(LedgerError):
    code = "invalid_idempotency_key"
    default_message = "Idempotency key must be 1 to 128 characters"


class IdempotencyConflict(LedgerError):
    code = "idempotency_conflict"
    status_code = status.HTTP_409_CONFLICT
    default_message = "Idempotency key was already used for a different request"


class InsufficientFunds(LedgerError):
    code = "insufficient_funds"
    status_code = status.HTTP_409_CONFLICT
    default_message = "Insufficient funds"


# ============================================================
# Geofence errors
# ============================================================

class GeofenceNotFound(LedgerError):
    code = "geofence_not_found"
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Geofence not found"


class InvalidGeofence(LedgerError):
    code = "invalid_geofence"
    default_message = "Invalid geofence parameters"


class GeofenceNotEligible(LedgerError):
    code = "geofence_not_eligible"
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "Geofence cannot be claimed"


class AlreadyClaimed(LedgerError):
    code = "already_claimed"
    status_code = status.HTTP_409_CONFLICT
    default_message = "Geofence has already been claimed"


class NotGeofenceOwner(LedgerError):
    code = "not_geofence_owner"
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "Only the creator can cancel this geofence"


# ============================================================
# Savings lock errors
# ============================================================

class LockNotFound(LedgerError):
    code = "lock_not_found"
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Savings lock not found"


class LockNotMatured(LedgerError):
    code = "lock_not_matured"
    status_code = status.HTTP_409_CONFLICT
    default_message = "Savings lock has not reached its term"


class LockAlreadyMatured(LedgerError):
    code = "lock_already_matured"
    status_code = status.HTTP_409_CONFLICT
    default_message = "Savings lock has reached its term; withdraw it instead"


class LockAlreadyResolved(LedgerError):
    code = "lock_already_resolved"
    status_code = status.HTTP_409_CONFLICT
    default_message = "Savings lock has already been withdrawn or broken"


# ============================================================
# Post-mutation and infrastructure errors
# ============================================================

class InvalidTransactionState(LedgerError):
    code = "invalid_transaction_state"
    status_code = status.HTTP_409_CONFLICT
    default_message = "Transaction cannot move to the requested status"


class ProcessorFailure(LedgerError):
    code = "processor_failure"
    status_code = status.HTTP_502_BAD_GATEWAY
    default_message = "The payment processor rejected the request"


class PersistenceFailure(LedgerError):
    code = "persistence_failure"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_message = "The ledger could not record the operation; no funds were moved"


class ConcurrentModification(LedgerError):
    code = "concurrent_modification"
    status_code = status.HTTP_409_CONFLICT
    default_message = "The account is busy; please retry"
