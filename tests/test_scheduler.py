"""Tests for the retry scheduler state machine and due-retry firing."""

import asyncio
import uuid
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from prometheus_client import REGISTRY

from retry_service.exceptions import (
    AlreadyCompletedError,
    AttemptNotFoundError,
    DuplicateKeyError,
    PaymentFailedError,
)
from retry_service.gateway import GatewayResult, Outcome
from retry_service.models import AttemptState, FailureType, PaymentAttempt
from retry_service.policy import RetryPolicy
from retry_service.scheduler import RetryScheduler
from retry_service.store import AttemptStore

START = datetime(2026, 1, 15, 12, 0, 0)  # matches the clock fixture
RETRY_DAYS = (1, 3, 5)
PLUGIN_MAX = 3


def _set_failure(gateway, failure_type):
    if failure_type == FailureType.BUSINESS:
        gateway.make_next_payment_fail_with_error()
    else:
        gateway.make_next_payment_fail_with_exception()


async def _submit(scheduler, key=None, **kwargs):
    key = key or f"pay-{uuid.uuid4()}"
    return await scheduler.submit_payment(
        payment_external_key=key,
        transaction_external_key=f"{key}-txn",
        amount=kwargs.pop("amount", Decimal("10.00")),
        currency=kwargs.pop("currency", "USD"),
        properties=kwargs.pop("properties", {"invoice_id": "inv-1"}),
        **kwargs,
    )


async def _submit_failing(scheduler, gateway, failure_type, key=None):
    _set_failure(gateway, failure_type)
    with pytest.raises(PaymentFailedError) as exc_info:
        await _submit(scheduler, key)
    return exc_info.value


# ---------------------------------------------------------------------------
# Submission
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_successful_submission_records_one_success_attempt(scheduler, gateway, publisher):
    attempt = await _submit(scheduler, "pay-ok")

    assert attempt.state_name == AttemptState.SUCCESS
    assert attempt.attempt_number == 1
    attempts = await scheduler.get_attempts("pay-ok")
    assert [a.state_name for a in attempts] == [AttemptState.SUCCESS]
    assert gateway.calls[0]["transaction_external_key"] == "pay-ok-txn"
    assert gateway.calls[0]["properties"] == {"invoice_id": "inv-1"}

    assert len(publisher.events) == 1
    event = publisher.events[0]
    assert event.success is True
    assert event.final_state == "SUCCESS"
    assert event.attempt_count == 1


@pytest.mark.asyncio
async def test_failed_submission_raises_after_scheduling_retry(scheduler, gateway, publisher):
    error = await _submit_failing(scheduler, gateway, FailureType.BUSINESS, "pay-declined")

    assert error.decision.state == AttemptState.RETRIED
    assert error.decision.due_date == START + timedelta(days=1)
    assert error.attempt.failure_type == FailureType.BUSINESS
    assert error.attempt.error_message == "Insufficient funds"

    attempts = await scheduler.get_attempts("pay-declined")
    assert len(attempts) == 1
    assert attempts[0].retry_due_at == START + timedelta(days=1)
    assert publisher.events == []


@pytest.mark.asyncio
async def test_duplicate_submission_is_rejected(scheduler):
    await _submit(scheduler, "pay-dup")

    with pytest.raises(DuplicateKeyError):
        await _submit(scheduler, "pay-dup")

    assert len(await scheduler.get_attempts("pay-dup")) == 1


@pytest.mark.asyncio
async def test_get_attempts_for_unknown_key_is_empty(scheduler):
    assert await scheduler.get_attempts("missing") == []


# ---------------------------------------------------------------------------
# Retry sequences
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "failure_type,max_tries,last_success",
    [
        (FailureType.PLUGIN, 1, True),
        (FailureType.PLUGIN, PLUGIN_MAX, True),
        (FailureType.PLUGIN, PLUGIN_MAX, False),
        (FailureType.BUSINESS, 1, True),
        (FailureType.BUSINESS, len(RETRY_DAYS), True),
        (FailureType.BUSINESS, len(RETRY_DAYS), False),
    ],
    ids=[
        "plugin-one-successful-retry",
        "plugin-last-retry-success",
        "plugin-aborted",
        "payment-one-successful-retry",
        "payment-last-retry-success",
        "payment-aborted",
    ],
)
async def test_retry_sequence(scheduler, gateway, store, clock, failure_type, max_tries, last_success):
    key = f"pay-{failure_type.value}"
    await _submit_failing(scheduler, gateway, failure_type, key)
    assert len(await store.list_by_external_key(key)) == 1

    for cur_failure in range(max_tries):
        if cur_failure < max_tries - 1 or not last_success:
            _set_failure(gateway, failure_type)

        if failure_type == FailureType.BUSINESS:
            clock.add_days(RETRY_DAYS[cur_failure] + 1)
        else:
            clock.add_days(1)

        assert await scheduler.fire_due_retries() == 1

        attempts = await store.list_by_external_key(key)
        completed = [a for a in attempts if a.state_name != AttemptState.PENDING]
        assert len(completed) == cur_failure + 2

    attempts = await store.list_by_external_key(key)
    assert len(attempts) == max_tries + 1
    assert [a.attempt_number for a in attempts] == list(range(1, max_tries + 2))
    assert all(a.state_name == AttemptState.RETRIED for a in attempts[:-1])
    expected_last = AttemptState.SUCCESS if last_success else AttemptState.ABORTED
    assert attempts[-1].state_name == expected_last
    assert {a.transaction_external_key for a in attempts} == {f"{key}-txn"}

    # The sequence is over: nothing else ever fires.
    clock.add_days(365)
    assert await scheduler.fire_due_retries() == 0


@pytest.mark.asyncio
async def test_business_schedule_scenario(scheduler, gateway, store, clock):
    await _submit_failing(scheduler, gateway, FailureType.BUSINESS, "pay-scenario")

    clock.add_days(2)
    gateway.make_next_payment_fail_with_error()
    assert await scheduler.fire_due_retries() == 1

    attempts = await store.list_by_external_key("pay-scenario")
    assert [a.state_name for a in attempts] == [AttemptState.RETRIED, AttemptState.RETRIED]

    clock.add_days(4)
    assert await scheduler.fire_due_retries() == 1

    attempts = await store.list_by_external_key("pay-scenario")
    assert [a.state_name for a in attempts] == [
        AttemptState.RETRIED,
        AttemptState.RETRIED,
        AttemptState.SUCCESS,
    ]


@pytest.mark.asyncio
async def test_all_business_retries_failing_aborts_after_four_attempts(
    scheduler, gateway, store, clock, publisher
):
    await _submit_failing(scheduler, gateway, FailureType.BUSINESS, "pay-abort")

    for days in RETRY_DAYS:
        gateway.make_next_payment_fail_with_error()
        clock.add_days(days)
        assert await scheduler.fire_due_retries() == 1

    attempts = await store.list_by_external_key("pay-abort")
    assert len(attempts) == 4
    assert attempts[-1].state_name == AttemptState.ABORTED
    assert attempts[-1].retry_due_at is None

    assert len(publisher.events) == 1
    assert publisher.events[0].final_state == "ABORTED"
    assert publisher.events[0].attempt_count == 4
    assert publisher.events[0].failure_type == "business"


@pytest.mark.asyncio
async def test_single_plugin_retry_scenario(store, gateway, clock):
    policy = RetryPolicy(payment_failure_retry_days=RETRY_DAYS, plugin_failure_retry_max_attempts=1)
    scheduler = RetryScheduler(store, gateway, policy, clock)

    error = await _submit_failing(scheduler, gateway, FailureType.PLUGIN, "pay-plugin")
    assert error.decision.due_date == START + timedelta(days=1)

    clock.add_days(1)
    assert await scheduler.fire_due_retries() == 1

    attempts = await store.list_by_external_key("pay-plugin")
    assert [a.state_name for a in attempts] == [AttemptState.RETRIED, AttemptState.SUCCESS]
    assert attempts[0].failure_type == FailureType.PLUGIN


@pytest.mark.asyncio
async def test_business_due_dates_follow_completion_time(scheduler, gateway, store, clock):
    await _submit_failing(scheduler, gateway, FailureType.BUSINESS, "pay-dates")

    completions = [START]
    for days in RETRY_DAYS[:-1]:
        clock.add_days(days + 1)
        completions.append(clock.now())
        gateway.make_next_payment_fail_with_error()
        await scheduler.fire_due_retries()

    attempts = await store.list_by_external_key("pay-dates")
    for n, attempt in enumerate(attempts):
        assert attempt.created_date == completions[n]
        assert attempt.retry_due_at == completions[n] + timedelta(days=RETRY_DAYS[n])


@pytest.mark.asyncio
async def test_retry_not_fired_before_due_date(scheduler, gateway, store, clock):
    await _submit_failing(scheduler, gateway, FailureType.BUSINESS, "pay-early")

    clock.add_seconds(23 * 3600)
    assert await scheduler.fire_due_retries() == 0
    assert len(await store.list_by_external_key("pay-early")) == 1

    clock.add_seconds(3600)
    assert await scheduler.fire_due_retries() == 1


@pytest.mark.asyncio
async def test_mixed_failure_types_follow_the_latest_failure_type(scheduler, gateway, store, clock):
    await _submit_failing(scheduler, gateway, FailureType.BUSINESS, "pay-mixed")

    clock.add_days(1)
    gateway.make_next_payment_fail_with_exception()
    await scheduler.fire_due_retries()

    attempts = await store.list_by_external_key("pay-mixed")
    assert attempts[1].failure_type == FailureType.PLUGIN
    assert attempts[1].retry_due_at == clock.now() + timedelta(days=1)


# ---------------------------------------------------------------------------
# Edge policies
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_zero_plugin_attempts_aborts_immediately(store, gateway, clock, publisher):
    policy = RetryPolicy(payment_failure_retry_days=RETRY_DAYS, plugin_failure_retry_max_attempts=0)
    scheduler = RetryScheduler(store, gateway, policy, clock, publisher=publisher)

    error = await _submit_failing(scheduler, gateway, FailureType.PLUGIN, "pay-zero")

    assert error.decision.state == AttemptState.ABORTED
    assert error.decision.due_date is None
    clock.add_days(30)
    assert await scheduler.fire_due_retries() == 0
    assert len(await store.list_by_external_key("pay-zero")) == 1
    assert publisher.events[0].final_state == "ABORTED"


@pytest.mark.asyncio
async def test_empty_business_schedule_aborts_immediately(store, gateway, clock):
    policy = RetryPolicy(payment_failure_retry_days=[], plugin_failure_retry_max_attempts=2)
    scheduler = RetryScheduler(store, gateway, policy, clock)

    error = await _submit_failing(scheduler, gateway, FailureType.BUSINESS, "pay-empty")

    assert error.decision.state == AttemptState.ABORTED


@pytest.mark.asyncio
async def test_unexpected_gateway_error_counts_as_plugin_failure(store, clock, policy):
    class ExplodingGateway:
        async def execute(self, payment_id, transaction_external_key, amount, currency, properties):
            raise RuntimeError("connection reset by peer")

    scheduler = RetryScheduler(store, ExplodingGateway(), policy, clock)

    with pytest.raises(PaymentFailedError) as exc_info:
        await _submit(scheduler, "pay-boom")
    error = exc_info.value

    assert error.decision.state == AttemptState.RETRIED
    assert error.attempt.failure_type == FailureType.PLUGIN
    assert error.attempt.error_message == "connection reset by peer"


@pytest.mark.asyncio
async def test_gateway_reported_plugin_exception_counts_as_plugin_failure(store, clock, policy):
    class FlakyGateway:
        async def execute(self, payment_id, transaction_external_key, amount, currency, properties):
            return GatewayResult(Outcome.PLUGIN_EXCEPTION, "processor timeout")

    scheduler = RetryScheduler(store, FlakyGateway(), policy, clock)

    with pytest.raises(PaymentFailedError) as exc_info:
        await _submit(scheduler, "pay-flaky")

    assert exc_info.value.attempt.failure_type == FailureType.PLUGIN
    assert exc_info.value.decision.due_date == START + timedelta(days=1)


# ---------------------------------------------------------------------------
# record_outcome idempotence
# ---------------------------------------------------------------------------


async def _pending_attempt(store, key="pay-manual"):
    return await store.create(
        PaymentAttempt(
            id=uuid.uuid4(),
            payment_id=uuid.uuid4(),
            payment_external_key=key,
            transaction_external_key=f"{key}-txn",
            attempt_number=1,
            state_name=AttemptState.PENDING,
            amount=Decimal("25.00"),
            currency="EUR",
            properties={},
        )
    )


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "outcome,expected_state",
    [
        (Outcome.SUCCESS, AttemptState.SUCCESS),
        (Outcome.BUSINESS_FAILURE, AttemptState.RETRIED),
        (Outcome.PLUGIN_EXCEPTION, AttemptState.RETRIED),
    ],
)
async def test_duplicate_record_outcome_is_a_no_op(scheduler, store, clock, outcome, expected_state):
    attempt = await _pending_attempt(store)

    decision = await scheduler.record_outcome("pay-manual", attempt.id, outcome)
    assert decision.state == expected_state
    before = await store.get(attempt.id)

    clock.add_days(2)
    with pytest.raises(AlreadyCompletedError) as exc_info:
        await scheduler.record_outcome("pay-manual", attempt.id, outcome)

    assert exc_info.value.state == expected_state
    after = await store.get(attempt.id)
    assert after.state_name == before.state_name
    assert after.retry_due_at == before.retry_due_at
    assert after.updated_date == before.updated_date
    assert len(await store.list_by_external_key("pay-manual")) == 1


@pytest.mark.asyncio
async def test_record_outcome_rejects_foreign_external_key(scheduler, store):
    attempt = await _pending_attempt(store)

    with pytest.raises(AttemptNotFoundError):
        await scheduler.record_outcome("someone-else", attempt.id, Outcome.SUCCESS)

    assert (await store.get(attempt.id)).state_name == AttemptState.PENDING


# ---------------------------------------------------------------------------
# fire_due_retries
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_clock_jump_fires_once_per_payment(scheduler, gateway, store, clock):
    keys = [f"pay-jump-{i}" for i in range(3)]
    for key in keys:
        await _submit_failing(scheduler, gateway, FailureType.BUSINESS, key)

    clock.add_days(30)
    for _ in keys:
        gateway.make_next_payment_fail_with_error()
    assert await scheduler.fire_due_retries() == 3

    for key in keys:
        attempts = await store.list_by_external_key(key)
        assert [a.attempt_number for a in attempts] == [1, 2]

    # Attempt 2 failures are due three days after the jump, not before.
    assert await scheduler.fire_due_retries() == 0


@pytest.mark.asyncio
async def test_concurrent_scheduler_instances_fire_each_retry_once(store, gateway, policy, clock):
    first = RetryScheduler(store, gateway, policy, clock)
    second = RetryScheduler(store, gateway, policy, clock)
    await _submit_failing(first, gateway, FailureType.BUSINESS, "pay-shared")

    clock.add_days(2)
    fired = await asyncio.gather(first.fire_due_retries(), second.fire_due_retries())

    assert sum(fired) == 1
    attempts = await store.list_by_external_key("pay-shared")
    assert [a.state_name for a in attempts] == [AttemptState.RETRIED, AttemptState.SUCCESS]


class _FailingCreateStore(AttemptStore):
    """Store whose retry-attempt creation fails for one payment."""

    def __init__(self, session_factory, clock, broken_key):
        super().__init__(session_factory, clock)
        self.broken_key = broken_key
        self.broken = True

    async def create(self, attempt):
        if self.broken and attempt.payment_external_key == self.broken_key and attempt.attempt_number > 1:
            raise RuntimeError("database connection lost")
        return await super().create(attempt)


@pytest.mark.asyncio
async def test_one_payment_failure_does_not_block_others(session_factory, gateway, policy, clock):
    store = _FailingCreateStore(session_factory, clock, broken_key="pay-broken")
    scheduler = RetryScheduler(store, gateway, policy, clock)
    await _submit_failing(scheduler, gateway, FailureType.BUSINESS, "pay-broken")
    await _submit_failing(scheduler, gateway, FailureType.BUSINESS, "pay-healthy")

    clock.add_days(2)
    assert await scheduler.fire_due_retries() == 1

    assert len(await store.list_by_external_key("pay-broken")) == 1
    healthy = await store.list_by_external_key("pay-healthy")
    assert healthy[-1].state_name == AttemptState.SUCCESS

    # Left for the next poll, which picks it up once the store recovers.
    store.broken = False
    assert await scheduler.fire_due_retries() == 1
    broken = await store.list_by_external_key("pay-broken")
    assert [a.state_name for a in broken] == [AttemptState.RETRIED, AttemptState.SUCCESS]


class _FailingTransitionStore(AttemptStore):
    """Store that loses its database connection whenever an outcome is written."""

    def __init__(self, session_factory, clock):
        super().__init__(session_factory, clock)
        self.broken = False

    async def transition(self, attempt_id, from_state, to_state, **changes):
        if self.broken:
            raise RuntimeError("database connection lost")
        return await super().transition(attempt_id, from_state, to_state, **changes)


@pytest.mark.asyncio
async def test_unrecorded_retry_outcome_is_recovered_after_lease(session_factory, gateway, policy, clock):
    store = _FailingTransitionStore(session_factory, clock)
    scheduler = RetryScheduler(store, gateway, policy, clock, pending_lease=timedelta(hours=1))
    await _submit_failing(scheduler, gateway, FailureType.BUSINESS, "pay-lost")

    store.broken = True
    clock.add_days(2)
    assert await scheduler.fire_due_retries() == 1
    attempts = await store.list_by_external_key("pay-lost")
    assert [a.state_name for a in attempts] == [AttemptState.RETRIED, AttemptState.PENDING]

    # Still within the lease: the attempt may be in flight elsewhere.
    store.broken = False
    clock.add_seconds(30 * 60)
    assert await scheduler.fire_due_retries() == 0
    assert (await store.list_by_external_key("pay-lost"))[-1].state_name == AttemptState.PENDING

    clock.add_seconds(30 * 60)
    assert await scheduler.fire_due_retries() == 0
    recovered = (await store.list_by_external_key("pay-lost"))[-1]
    assert recovered.state_name == AttemptState.RETRIED
    assert recovered.failure_type == FailureType.PLUGIN
    assert recovered.retry_due_at == clock.now() + timedelta(days=1)

    clock.add_days(1)
    assert await scheduler.fire_due_retries() == 1
    attempts = await store.list_by_external_key("pay-lost")
    assert [a.state_name for a in attempts] == [
        AttemptState.RETRIED,
        AttemptState.RETRIED,
        AttemptState.SUCCESS,
    ]


@pytest.mark.asyncio
async def test_unrecorded_first_attempt_is_recovered_after_lease(session_factory, gateway, policy, clock):
    store = _FailingTransitionStore(session_factory, clock)
    scheduler = RetryScheduler(store, gateway, policy, clock, pending_lease=timedelta(hours=1))

    store.broken = True
    with pytest.raises(RuntimeError):
        await _submit(scheduler, "pay-lost-first")
    store.broken = False

    clock.add_seconds(3600)
    assert await scheduler.fire_due_retries() == 0
    clock.add_days(1)
    assert await scheduler.fire_due_retries() == 1

    attempts = await store.list_by_external_key("pay-lost-first")
    assert [a.state_name for a in attempts] == [AttemptState.RETRIED, AttemptState.SUCCESS]
    assert attempts[0].failure_type == FailureType.PLUGIN


@pytest.mark.asyncio
async def test_stale_attempt_recovery_aborts_when_plugin_retries_are_exhausted(store, gateway, clock, publisher):
    policy = RetryPolicy(payment_failure_retry_days=RETRY_DAYS, plugin_failure_retry_max_attempts=0)
    scheduler = RetryScheduler(store, gateway, policy, clock, publisher=publisher)
    attempt = await _pending_attempt(store, "pay-stuck")

    clock.add_days(1)
    assert await scheduler.fire_due_retries() == 0

    assert (await store.get(attempt.id)).state_name == AttemptState.ABORTED
    assert publisher.events[0].final_state == "ABORTED"


@pytest.mark.asyncio
async def test_stale_attempt_recovered_by_one_instance_only(store, gateway, policy, clock):
    first = RetryScheduler(store, gateway, policy, clock)
    second = RetryScheduler(store, gateway, policy, clock)
    attempt = await _pending_attempt(store, "pay-stuck-shared")

    clock.add_days(1)
    await asyncio.gather(first.fire_due_retries(), second.fire_due_retries())

    attempts = await store.list_by_external_key("pay-stuck-shared")
    assert [a.id for a in attempts] == [attempt.id]
    assert attempts[0].state_name == AttemptState.RETRIED
    assert attempts[0].retry_due_at == clock.now() + timedelta(days=1)


@pytest.mark.asyncio
async def test_empty_poll_is_timed(scheduler):
    before = REGISTRY.get_sample_value("payment_retry_poll_duration_seconds_count") or 0.0

    assert await scheduler.fire_due_retries() == 0

    assert REGISTRY.get_sample_value("payment_retry_poll_duration_seconds_count") == before + 1


@pytest.mark.asyncio
async def test_publisher_failure_does_not_undo_transition(store, gateway, policy, clock):
    class BrokenPublisher:
        async def publish(self, event):
            raise ConnectionError("kafka down")

    scheduler = RetryScheduler(store, gateway, policy, clock, publisher=BrokenPublisher())

    attempt = await _submit(scheduler, "pay-nokafka")

    assert attempt.state_name == AttemptState.SUCCESS
    assert (await store.get(attempt.id)).state_name == AttemptState.SUCCESS
