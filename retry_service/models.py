"""
ORM model for the append-only payment attempt history.

Rows are never deleted; each row changes state exactly once (PENDING to one
of SUCCESS, RETRIED, ABORTED).
"""

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import JSON, DateTime, Integer, Numeric, String, Text, UniqueConstraint
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column

from retry_service.database import Base


class AttemptState(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    RETRIED = "RETRIED"
    ABORTED = "ABORTED"

    @property
    def is_terminal(self) -> bool:
        return self in (AttemptState.SUCCESS, AttemptState.ABORTED)


class FailureType(str, Enum):
    BUSINESS = "business"  # gateway declined the payment
    PLUGIN = "plugin"  # technical failure executing the attempt


class PaymentAttempt(Base):
    __tablename__ = "payment_attempts"
    __table_args__ = (
        UniqueConstraint(
            "payment_external_key", "attempt_number", name="uq_payment_attempts_key_number"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    payment_id: Mapped[uuid.UUID] = mapped_column(nullable=False, index=True)
    payment_external_key: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    transaction_external_key: Mapped[str] = mapped_column(String(128), nullable=False)
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)
    state_name: Mapped[AttemptState] = mapped_column(
        SAEnum(AttemptState, name="attemptstate"), default=AttemptState.PENDING, nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    properties: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    failure_type: Mapped[FailureType | None] = mapped_column(
        SAEnum(FailureType, name="failuretype"), nullable=True
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    retry_due_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)
    created_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    def next_attempt(self) -> "PaymentAttempt":
        """Build (but do not persist) the PENDING attempt that retries this one."""
        return PaymentAttempt(
            id=uuid.uuid4(),
            payment_id=self.payment_id,
            payment_external_key=self.payment_external_key,
            transaction_external_key=self.transaction_external_key,
            attempt_number=self.attempt_number + 1,
            state_name=AttemptState.PENDING,
            amount=self.amount,
            currency=self.currency,
            properties=dict(self.properties or {}),
        )
