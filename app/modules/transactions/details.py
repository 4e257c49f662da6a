"""
Typed transaction details.

Each transaction type carries its own versioned payload, stored as JSON and
discriminated by `kind`. Processor-specific data goes in the open `processor`
mapping, the only part that may grow after a transaction completes.
"""
from decimal import Decimal
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

from app.modules.fees.engine import WithdrawalMethod

DETAILS_VERSION = 1


class _Details(BaseModel):
    version: int = DETAILS_VERSION
    processor: Dict[str, Any] = Field(default_factory=dict)


class DepositDetails(_Details):
    kind: Literal["deposit"] = "deposit"
    method_ref: str


class WithdrawalDetails(_Details):
    kind: Literal["withdrawal"] = "withdrawal"
    method: WithdrawalMethod
    fee_account_id: int


class TransferDetails(_Details):
    kind: Literal["transfer"] = "transfer"
    fee_account_id: int
    recipient_receives: Decimal


class GeofenceDetails(_Details):
    kind: Literal["geofence"] = "geofence"
    geofence_id: int
    phase: Literal["reserve", "claim"]
    escrow_account_id: int


class SavingsDetails(_Details):
    kind: Literal["savings"] = "savings"
    lock_id: int
    phase: Literal["lock", "release", "break"]
    principal: Decimal
    interest: Decimal = Decimal("0.00")
    penalty: Decimal = Decimal("0.00")


class RefundDetails(_Details):
    kind: Literal["refund"] = "refund"
    reason: str
    geofence_id: Optional[int] = None


TransactionDetails = Annotated[
    Union[DepositDetails, WithdrawalDetails, TransferDetails, GeofenceDetails, SavingsDetails, RefundDetails],
    Field(discriminator="kind"),
]

_details_adapter = TypeAdapter(TransactionDetails)


def dump_details(details: _Details) -> Dict[str, Any]:
    return details.model_dump(mode="json")


def load_details(raw: Dict[str, Any]) -> TransactionDetails:
    return _details_adapter.validate_python(raw)
