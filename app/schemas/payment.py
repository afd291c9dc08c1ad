import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from retry_service.models import AttemptState, FailureType


class PaymentCreate(BaseModel):
    payment_external_key: str = Field(min_length=1, max_length=128)
    transaction_external_key: str = Field(min_length=1, max_length=128)
    amount: Decimal = Field(gt=0, max_digits=12, decimal_places=2)
    currency: str = Field(min_length=3, max_length=3)
    properties: dict[str, str] = Field(default_factory=dict)


class PaymentAttemptResponse(BaseModel):
    id: uuid.UUID
    payment_id: uuid.UUID
    payment_external_key: str
    transaction_external_key: str
    attempt_number: int
    state_name: AttemptState
    amount: Decimal
    currency: str
    failure_type: FailureType | None
    error_message: str | None
    retry_due_at: datetime | None
    created_date: datetime
    updated_date: datetime

    model_config = {"from_attributes": True}


class PaymentResponse(BaseModel):
    payment_id: uuid.UUID
    payment_external_key: str
    state: AttemptState  # state of the latest attempt
    next_retry_at: datetime | None
    attempts: list[PaymentAttemptResponse]
