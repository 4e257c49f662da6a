# Payment processor collaborator
from app.modules.payments.processor import (
    PaymentProcessor, ProcessorOutcome, ProcessorRequest, ProcessorResult,
    SandboxPaymentProcessor, HttpPaymentProcessor, get_payment_processor
)

__all__ = [
    "PaymentProcessor", "ProcessorOutcome", "ProcessorRequest", "ProcessorResult",
    "SandboxPaymentProcessor", "HttpPaymentProcessor", "get_payment_processor"
]
