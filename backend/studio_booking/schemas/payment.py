from pydantic import BaseModel, Field


class PaymentResolved(BaseModel):
    reference: str = Field(..., min_length=1, max_length=64)
    succeeded: bool
