"""
Attempt store — the only shared mutable resource of the retry scheduler.

Guarantees:
  - Creation is unique per (payment_external_key, attempt_number)
  - State transitions are a single conditional UPDATE (compare-and-set),
    so concurrent workers or scheduler instances cannot both complete
    the same attempt
  - Every timestamp comes from the injected clock
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased

from retry_service.clock import Clock
from retry_service.exceptions import AttemptNotFoundError, DuplicateKeyError, StaleStateError
from retry_service.models import AttemptState, PaymentAttempt

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DueRetry:
    """A payment whose latest RETRIED attempt is due for its next attempt."""

    payment_id: uuid.UUID
    due_date: datetime
    attempt: PaymentAttempt


class AttemptStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], clock: Clock) -> None:
        self._session_factory = session_factory
        self._clock = clock

    async def create(self, attempt: PaymentAttempt) -> PaymentAttempt:
        now = self._clock.now()
        attempt.created_date = now
        attempt.updated_date = now
        if attempt.id is None:
            attempt.id = uuid.uuid4()

        async with self._session_factory() as db:
            db.add(attempt)
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                raise DuplicateKeyError(attempt.payment_external_key, attempt.attempt_number)

        logger.debug(
            "Payment attempt created",
            extra={
                "attempt_id": str(attempt.id),
                "payment_external_key": attempt.payment_external_key,
                "attempt_number": attempt.attempt_number,
            },
        )
        return attempt

    async def get(self, attempt_id: uuid.UUID) -> PaymentAttempt:
        async with self._session_factory() as db:
            attempt = await db.get(PaymentAttempt, attempt_id)
        if attempt is None:
            raise AttemptNotFoundError(f"No payment attempt {attempt_id}")
        return attempt

    async def transition(
        self,
        attempt_id: uuid.UUID,
        from_state: AttemptState,
        to_state: AttemptState,
        **changes,
    ) -> PaymentAttempt:
        """
        Move an attempt from `from_state` to `to_state` atomically.

        Extra column values (failure_type, error_message, retry_due_at) are
        written by the same statement. Raises StaleStateError when the row
        is not in `from_state` anymore.
        """
        stmt = (
            update(PaymentAttempt)
            .where(PaymentAttempt.id == attempt_id, PaymentAttempt.state_name == from_state)
            .values(state_name=to_state, updated_date=self._clock.now(), **changes)
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as db:
            result = await db.execute(stmt)
            matched = result.rowcount
            await db.commit()

        if matched != 1:
            raise StaleStateError(attempt_id, from_state)
        return await self.get(attempt_id)

    async def list_by_external_key(self, payment_external_key: str) -> list[PaymentAttempt]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(PaymentAttempt)
                .where(PaymentAttempt.payment_external_key == payment_external_key)
                .order_by(PaymentAttempt.created_date, PaymentAttempt.attempt_number)
            )
            return list(result.scalars().all())

    async def list_due_for_retry(self, as_of: datetime, limit: int | None = None) -> list[DueRetry]:
        """RETRIED attempts due at `as_of` that have no later attempt yet."""
        later = aliased(PaymentAttempt)
        has_later_attempt = (
            select(later.id)
            .where(
                later.payment_id == PaymentAttempt.payment_id,
                later.attempt_number > PaymentAttempt.attempt_number,
            )
            .exists()
        )
        stmt = (
            select(PaymentAttempt)
            .where(
                PaymentAttempt.state_name == AttemptState.RETRIED,
                PaymentAttempt.retry_due_at.is_not(None),
                PaymentAttempt.retry_due_at <= as_of,
                ~has_later_attempt,
            )
            .order_by(PaymentAttempt.retry_due_at, PaymentAttempt.created_date)
        )
        if limit is not None:
            stmt = stmt.limit(limit)

        async with self._session_factory() as db:
            result = await db.execute(stmt)
            attempts = result.scalars().all()

        return [
            DueRetry(payment_id=a.payment_id, due_date=a.retry_due_at, attempt=a) for a in attempts
        ]

    async def list_stale_pending(
        self, older_than: datetime, limit: int | None = None
    ) -> list[PaymentAttempt]:
        """PENDING attempts last touched at or before `older_than`, oldest first."""
        stmt = (
            select(PaymentAttempt)
            .where(
                PaymentAttempt.state_name == AttemptState.PENDING,
                PaymentAttempt.updated_date <= older_than,
            )
            .order_by(PaymentAttempt.updated_date, PaymentAttempt.attempt_number)
        )
        if limit is not None:
            stmt = stmt.limit(limit)

        async with self._session_factory() as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())
