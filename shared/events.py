"""
Pydantic event schemas published by the retry scheduler.
All events extend EventBase which carries correlation/tracing metadata.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class EventBase(BaseModel):
    event_id: uuid.UUID = Field(default_factory=uuid.uuid4)
    event_version: int = 1
    correlation_id: str  # payment external key, or X-Request-ID from the HTTP layer
    occurred_at: datetime = Field(default_factory=_utcnow)

    model_config = {"extra": "ignore"}


class PaymentRetryCompletedEvent(EventBase):
    payment_id: uuid.UUID
    payment_external_key: str
    transaction_external_key: str
    success: bool
    final_state: str  # "SUCCESS" | "ABORTED"
    attempt_count: int
    amount: Decimal
    currency: str
    failure_type: str | None = None
    error_message: str | None = None
