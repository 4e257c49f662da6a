from pydantic import BaseModel, Field

from app.modules.payments.processor import ProcessorOutcome


class ReconcileRequest(BaseModel):
    processor_reference: str = Field(..., min_length=1, max_length=255)
    outcome: ProcessorOutcome
