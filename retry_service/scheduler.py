"""
Payment retry scheduler.

Each payment is a sequence of attempts. When an attempt completes the
scheduler decides, from the retry policy, whether the sequence ends
(SUCCESS or ABORTED) or the attempt becomes RETRIED with a due date. The
background trigger later calls fire_due_retries, which creates the next
attempt and executes it against the gateway.

All coordination goes through the attempt store: unique attempt numbers
and compare-and-set transitions keep two workers (or two scheduler
processes) from running the same payment twice. An attempt whose outcome
never made it to the store (the process died, or the database failed
mid-write) stays PENDING until its lease expires; the next poll then
completes it as a plugin failure so the sequence carries on.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal

from opentelemetry import trace

from retry_service.clock import Clock
from retry_service.exceptions import (
    AlreadyCompletedError,
    AttemptNotFoundError,
    DuplicateKeyError,
    PaymentFailedError,
    StaleStateError,
)
from retry_service.gateway import GatewayResult, Outcome, PaymentGateway
from retry_service.metrics import (
    ATTEMPT_OUTCOMES,
    ATTEMPT_TRANSITIONS,
    PENDING_RECOVERED,
    POLL_DURATION,
    RETRIES_FIRED,
    STALE_TRANSITIONS,
)
from retry_service.models import AttemptState, PaymentAttempt
from retry_service.policy import RetryPolicy
from retry_service.publisher import EventPublisher
from retry_service.store import AttemptStore, DueRetry
from shared.events import PaymentRetryCompletedEvent

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass(frozen=True)
class RetryDecision:
    attempt: PaymentAttempt
    state: AttemptState
    due_date: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal


class RetryScheduler:
    def __init__(
        self,
        store: AttemptStore,
        gateway: PaymentGateway,
        policy: RetryPolicy,
        clock: Clock,
        publisher: EventPublisher | None = None,
        max_concurrent_retries: int = 10,
        batch_size: int | None = None,
        pending_lease: timedelta = timedelta(hours=1),
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._policy = policy
        self._clock = clock
        self._publisher = publisher
        self._batch_size = batch_size
        self._pending_lease = pending_lease
        self._worker_slots = asyncio.Semaphore(max_concurrent_retries)

    # ------------------------------------------------------------------
    # Caller-facing API
    # ------------------------------------------------------------------

    async def submit_payment(
        self,
        payment_external_key: str,
        transaction_external_key: str,
        amount: Decimal,
        currency: str,
        properties: dict | None = None,
        payment_id: uuid.UUID | None = None,
    ) -> PaymentAttempt:
        """
        Create and execute the first attempt of a payment.

        Returns the SUCCESS attempt. On failure raises PaymentFailedError
        after the retry has been scheduled (or the sequence aborted).
        Raises DuplicateKeyError if the external key was already submitted.
        """
        attempt = PaymentAttempt(
            id=uuid.uuid4(),
            payment_id=payment_id or uuid.uuid4(),
            payment_external_key=payment_external_key,
            transaction_external_key=transaction_external_key,
            attempt_number=1,
            state_name=AttemptState.PENDING,
            amount=Decimal(amount),
            currency=currency,
            properties=dict(properties or {}),
        )

        with tracer.start_as_current_span(
            "payment.submit",
            attributes={"payment.external_key": payment_external_key, "payment.currency": currency},
        ):
            attempt = await self._store.create(attempt)
            logger.info(
                "Payment submitted",
                extra={
                    "payment_id": str(attempt.payment_id),
                    "payment_external_key": payment_external_key,
                    "amount": float(attempt.amount),
                    "currency": currency,
                },
            )
            decision = await self._execute_and_record(attempt)

        if decision.state == AttemptState.SUCCESS:
            return decision.attempt
        raise PaymentFailedError(decision.attempt, decision)

    async def get_attempts(self, payment_external_key: str) -> list[PaymentAttempt]:
        return await self._store.list_by_external_key(payment_external_key)

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    async def record_outcome(
        self,
        payment_external_key: str,
        attempt_id: uuid.UUID,
        outcome: Outcome | GatewayResult,
    ) -> RetryDecision:
        """
        Complete a PENDING attempt with the gateway outcome.

        Raises AlreadyCompletedError when the attempt is no longer PENDING
        (nothing is changed), StaleStateError when a concurrent completion
        won the compare-and-set.
        """
        result = outcome if isinstance(outcome, GatewayResult) else GatewayResult(outcome)

        attempt = await self._store.get(attempt_id)
        if attempt.payment_external_key != payment_external_key:
            raise AttemptNotFoundError(
                f"Attempt {attempt_id} does not belong to payment {payment_external_key!r}"
            )
        if attempt.state_name != AttemptState.PENDING:
            raise AlreadyCompletedError(attempt.id, attempt.state_name)

        ATTEMPT_OUTCOMES.labels(result.outcome.value).inc()
        log_extra = {
            "attempt_id": str(attempt.id),
            "payment_id": str(attempt.payment_id),
            "payment_external_key": payment_external_key,
            "attempt_number": attempt.attempt_number,
        }

        try:
            if result.success:
                updated = await self._store.transition(
                    attempt.id, AttemptState.PENDING, AttemptState.SUCCESS
                )
                decision = RetryDecision(updated, AttemptState.SUCCESS)
                logger.info("Payment attempt succeeded", extra=log_extra)
            else:
                decision = await self._record_failure(attempt, result, log_extra)
        except StaleStateError:
            STALE_TRANSITIONS.inc()
            logger.warning("Attempt completed concurrently — dropping outcome", extra=log_extra)
            raise

        ATTEMPT_TRANSITIONS.labels(decision.state.value).inc()
        if decision.is_terminal:
            await self._publish_completion(decision)
        return decision

    async def _record_failure(
        self, attempt: PaymentAttempt, result: GatewayResult, log_extra: dict
    ) -> RetryDecision:
        failure_type = result.outcome.failure_type
        attempt_index = attempt.attempt_number - 1

        delay = None
        if attempt_index < self._policy.max_attempts(failure_type):
            delay = self._policy.next_delay(failure_type, attempt_index)

        if delay is None:
            updated = await self._store.transition(
                attempt.id,
                AttemptState.PENDING,
                AttemptState.ABORTED,
                failure_type=failure_type,
                error_message=result.error_message,
            )
            logger.error(
                "Payment retries exhausted — aborting",
                extra={**log_extra, "failure_type": failure_type.value, "error": result.error_message},
            )
            return RetryDecision(updated, AttemptState.ABORTED)

        due_date = self._clock.now() + delay
        updated = await self._store.transition(
            attempt.id,
            AttemptState.PENDING,
            AttemptState.RETRIED,
            failure_type=failure_type,
            error_message=result.error_message,
            retry_due_at=due_date,
        )
        logger.warning(
            "Payment attempt failed, retry scheduled",
            extra={
                **log_extra,
                "failure_type": failure_type.value,
                "error": result.error_message,
                "retry_due_at": due_date.isoformat(),
            },
        )
        return RetryDecision(updated, AttemptState.RETRIED, due_date)

    # ------------------------------------------------------------------
    # Background trigger entry point
    # ------------------------------------------------------------------

    async def fire_due_retries(self, as_of: datetime | None = None) -> int:
        """
        Create and execute the next attempt of every payment due at `as_of`.

        PENDING attempts older than the lease are completed first, as plugin
        failures, so their payments get a due date again. Waits for all
        dispatched gateway calls before returning. Returns the number of
        retry attempts created.
        """
        as_of = as_of or self._clock.now()
        start = time.perf_counter()

        stale = await self._store.list_stale_pending(
            as_of - self._pending_lease, limit=self._batch_size
        )
        if stale:
            await asyncio.gather(*(self._recover_one(attempt) for attempt in stale))

        due = await self._store.list_due_for_retry(as_of, limit=self._batch_size)
        fired = sum(await asyncio.gather(*(self._fire_one(item) for item in due)))

        POLL_DURATION.observe(time.perf_counter() - start)
        if due or stale:
            logger.info(
                "Retry cycle complete",
                extra={
                    "as_of": as_of.isoformat(),
                    "recovered": len(stale),
                    "due": len(due),
                    "fired": fired,
                },
            )
        return fired

    async def _recover_one(self, attempt: PaymentAttempt) -> None:
        log_extra = {
            "attempt_id": str(attempt.id),
            "payment_id": str(attempt.payment_id),
            "payment_external_key": attempt.payment_external_key,
            "attempt_number": attempt.attempt_number,
            "pending_since": attempt.updated_date.isoformat(),
        }
        result = GatewayResult(
            Outcome.PLUGIN_EXCEPTION, "Attempt outcome was not recorded before its lease expired"
        )

        async with self._worker_slots:
            with tracer.start_as_current_span(
                "payment.attempt.recover",
                attributes={
                    "payment.id": str(attempt.payment_id),
                    "payment.attempt_number": attempt.attempt_number,
                },
            ):
                logger.warning("Recovering stale PENDING attempt", extra=log_extra)
                try:
                    await self.record_outcome(attempt.payment_external_key, attempt.id, result)
                except (StaleStateError, AlreadyCompletedError):
                    PENDING_RECOVERED.labels("raced").inc()
                    logger.info("Stale attempt completed elsewhere — skipping", extra=log_extra)
                    return
                except Exception:
                    PENDING_RECOVERED.labels("error").inc()
                    logger.exception("Could not recover stale attempt — left for next poll", extra=log_extra)
                    return

        PENDING_RECOVERED.labels("recovered").inc()

    async def _fire_one(self, due: DueRetry) -> bool:
        previous = due.attempt
        log_extra = {
            "payment_id": str(due.payment_id),
            "payment_external_key": previous.payment_external_key,
            "attempt_number": previous.attempt_number + 1,
            "due_date": due.due_date.isoformat(),
        }

        async with self._worker_slots:
            with tracer.start_as_current_span(
                "payment.retry.fire",
                attributes={
                    "payment.id": str(due.payment_id),
                    "payment.attempt_number": previous.attempt_number + 1,
                },
            ):
                try:
                    attempt = await self._store.create(previous.next_attempt())
                except DuplicateKeyError:
                    RETRIES_FIRED.labels("duplicate").inc()
                    logger.info("Retry already created by another worker — skipping", extra=log_extra)
                    return False
                except Exception:
                    RETRIES_FIRED.labels("error").inc()
                    logger.exception("Could not create retry attempt — left for next poll", extra=log_extra)
                    return False

                logger.info("Firing payment retry", extra={**log_extra, "attempt_id": str(attempt.id)})
                try:
                    await self._execute_and_record(attempt)
                except (StaleStateError, AlreadyCompletedError) as exc:
                    logger.warning(
                        "Retry outcome dropped",
                        extra={**log_extra, "attempt_id": str(attempt.id), "error": str(exc)},
                    )
                except Exception:
                    RETRIES_FIRED.labels("error").inc()
                    logger.exception(
                        "Unexpected error recording retry outcome — attempt stays PENDING until its lease expires",
                        extra={**log_extra, "attempt_id": str(attempt.id)},
                    )
                    return True

        RETRIES_FIRED.labels("executed").inc()
        return True

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _execute_and_record(self, attempt: PaymentAttempt) -> RetryDecision:
        try:
            result = await self._gateway.execute(
                attempt.payment_id,
                attempt.transaction_external_key,
                attempt.amount,
                attempt.currency,
                attempt.properties,
            )
        except Exception as exc:
            # Anything the gateway raises is retried as a plugin failure
            logger.warning(
                "Gateway raised — accounting as plugin failure",
                extra={"attempt_id": str(attempt.id), "error": repr(exc)},
            )
            result = GatewayResult(Outcome.PLUGIN_EXCEPTION, str(exc) or type(exc).__name__)

        return await self.record_outcome(attempt.payment_external_key, attempt.id, result)

    async def _publish_completion(self, decision: RetryDecision) -> None:
        if self._publisher is None:
            return
        attempt = decision.attempt
        event = PaymentRetryCompletedEvent(
            correlation_id=attempt.payment_external_key,
            payment_id=attempt.payment_id,
            payment_external_key=attempt.payment_external_key,
            transaction_external_key=attempt.transaction_external_key,
            success=decision.state == AttemptState.SUCCESS,
            final_state=decision.state.value,
            attempt_count=attempt.attempt_number,
            amount=attempt.amount,
            currency=attempt.currency,
            failure_type=attempt.failure_type.value if attempt.failure_type else None,
            error_message=attempt.error_message,
        )
        try:
            await self._publisher.publish(event)
        except Exception:
            # The transition is already durable; downstream consumers can
            # rebuild from the attempt history.
            logger.exception(
                "Failed to publish retry completion event",
                extra={"payment_id": str(attempt.payment_id), "final_state": decision.state.value},
            )
