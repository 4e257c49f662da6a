"""
Payment processor client.

Deposits are captured and withdrawals paid out through an external processor.
Every call resolves to one of three outcomes; an outcome that cannot be known
(timeouts, transport errors, processor 5xx) is reported as pending and
settled later through reconciliation.
"""
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Protocol

import httpx

from app.core.config import settings

logger = logging.getLogger(__name__)


class ProcessorOutcome(str, Enum):
    SUCCESS = "success"
    PENDING = "pending"
    FAILURE = "failure"


@dataclass(frozen=True)
class ProcessorRequest:
    kind: str                       # "capture" | "payout"
    account_id: int
    amount: Decimal
    currency: str
    idempotency_key: str
    method: Optional[str] = None    # payout method
    method_ref: Optional[str] = None  # saved payment method / card token


@dataclass(frozen=True)
class ProcessorResult:
    outcome: ProcessorOutcome
    reference: Optional[str] = None
    detail: Dict[str, Any] = field(default_factory=dict)


class PaymentProcessor(Protocol):
    async def capture(self, request: ProcessorRequest) -> ProcessorResult:
        ...

    async def payout(self, request: ProcessorRequest) -> ProcessorResult:
        ...


class SandboxPaymentProcessor:
    """
    Deterministic in-process processor for development.

    Captures always succeed. Standard (bank) payouts settle asynchronously
    and report pending; card and instant payouts succeed immediately.
    """

    async def capture(self, request: ProcessorRequest) -> ProcessorResult:
        return ProcessorResult(
            outcome=ProcessorOutcome.SUCCESS,
            reference=f"sbx_cap_{request.idempotency_key}",
            detail={"provider": "sandbox", "method_ref": request.method_ref}
        )

    async def payout(self, request: ProcessorRequest) -> ProcessorResult:
        outcome = ProcessorOutcome.PENDING if request.method == "standard" else ProcessorOutcome.SUCCESS
        return ProcessorResult(
            outcome=outcome,
            reference=f"sbx_po_{request.idempotency_key}",
            detail={"provider": "sandbox", "method": request.method}
        )


_STATUS_OUTCOMES = {
    "succeeded": ProcessorOutcome.SUCCESS,
    "paid": ProcessorOutcome.SUCCESS,
    "completed": ProcessorOutcome.SUCCESS,
    "pending": ProcessorOutcome.PENDING,
    "processing": ProcessorOutcome.PENDING,
    "in_transit": ProcessorOutcome.PENDING,
    "failed": ProcessorOutcome.FAILURE,
    "canceled": ProcessorOutcome.FAILURE,
}


class HttpPaymentProcessor:
    """
    JSON-over-HTTP processor client.

    POSTs to `/captures` and `/payouts` with a bearer API key and forwards the
    idempotency key so the processor can dedupe retries.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._client = client

    async def capture(self, request: ProcessorRequest) -> ProcessorResult:
        return await self._post("/captures", request)

    async def payout(self, request: ProcessorRequest) -> ProcessorResult:
        return await self._post("/payouts", request)

    async def _post(self, path: str, request: ProcessorRequest) -> ProcessorResult:
        payload = {
            "account_id": request.account_id,
            "amount": str(request.amount),
            "currency": request.currency,
            "method": request.method,
            "method_ref": request.method_ref,
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Idempotency-Key": request.idempotency_key,
        }

        client = self._client or httpx.AsyncClient(timeout=self.timeout)
        try:
            response = await client.post(f"{self.base_url}{path}", json=payload, headers=headers)
        except httpx.TimeoutException:
            logger.warning(f"Processor {request.kind} timed out for key {request.idempotency_key}")
            return ProcessorResult(ProcessorOutcome.PENDING, detail={"error": "timeout"})
        except httpx.HTTPError as e:
            logger.warning(f"Processor {request.kind} transport error for key {request.idempotency_key}: {str(e)}")
            return ProcessorResult(ProcessorOutcome.PENDING, detail={"error": "transport"})
        finally:
            if self._client is None:
                await client.aclose()

        if response.status_code >= 500:
            logger.warning(f"Processor {request.kind} returned {response.status_code}; outcome unknown")
            return ProcessorResult(ProcessorOutcome.PENDING, detail={"http_status": response.status_code})

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        if response.status_code >= 400:
            return ProcessorResult(
                ProcessorOutcome.FAILURE,
                reference=body.get("id"),
                detail={"http_status": response.status_code, "error": body.get("error", response.text[:200])}
            )

        outcome = _STATUS_OUTCOMES.get(str(body.get("status", "pending")).lower(), ProcessorOutcome.PENDING)
        return ProcessorResult(
            outcome,
            reference=body.get("id"),
            detail={"status": body.get("status")}
        )


def get_payment_processor() -> PaymentProcessor:
    """FastAPI dependency selecting the configured processor"""
    if settings.PAYMENT_PROCESSOR == "sandbox":
        return SandboxPaymentProcessor()
    if settings.PAYMENT_PROCESSOR == "http":
        return HttpPaymentProcessor(
            settings.PAYMENT_PROCESSOR_URL,
            settings.PAYMENT_PROCESSOR_API_KEY,
            timeout=settings.PAYMENT_PROCESSOR_TIMEOUT_SECONDS
        )
    raise ValueError(f"Unknown payment processor: {settings.PAYMENT_PROCESSOR}")
