"""
Payment execution gateway:
  - Outcome / GatewayResult: what one attempt against the plugin returned
  - Mock gateway with random latency, declines and timeouts, plus
    scriptable "fail the next payment" controls for tests
  - Circuit breaker wrapper (fail fast when the plugin is consistently down)

A gateway either returns a GatewayResult or raises. Anything raised is
accounted as a plugin failure by the scheduler.
"""

import asyncio
import logging
import random
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Protocol

from retry_service.clock import Clock
from retry_service.exceptions import GatewayUnavailableError
from retry_service.metrics import CIRCUIT_STATE
from retry_service.models import FailureType

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------


class Outcome(str, Enum):
    SUCCESS = "success"
    BUSINESS_FAILURE = "business_failure"
    PLUGIN_EXCEPTION = "plugin_exception"

    @property
    def failure_type(self) -> FailureType | None:
        if self == Outcome.BUSINESS_FAILURE:
            return FailureType.BUSINESS
        if self == Outcome.PLUGIN_EXCEPTION:
            return FailureType.PLUGIN
        return None


@dataclass
class GatewayResult:
    outcome: Outcome
    error_message: str | None = None

    @property
    def success(self) -> bool:
        return self.outcome == Outcome.SUCCESS


class PaymentGateway(Protocol):
    async def execute(
        self,
        payment_id: uuid.UUID,
        transaction_external_key: str,
        amount: Decimal,
        currency: str,
        properties: dict,
    ) -> GatewayResult: ...


# ---------------------------------------------------------------------------
# Circuit breaker
# ---------------------------------------------------------------------------


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


_STATE_GAUGE_VALUES = {
    CircuitState.CLOSED: 0,
    CircuitState.HALF_OPEN: 1,
    CircuitState.OPEN: 2,
}


@dataclass
class CircuitBreaker:
    failure_threshold: int
    recovery_timeout: float
    clock: Clock

    _failures: int = field(default=0, init=False, repr=False)
    _last_failure_time: datetime | None = field(default=None, init=False, repr=False)
    _state: CircuitState = field(default=CircuitState.CLOSED, init=False, repr=False)

    @property
    def state(self) -> CircuitState:
        if (
            self._state == CircuitState.OPEN
            and self._last_failure_time is not None
            and (self.clock.now() - self._last_failure_time).total_seconds() >= self.recovery_timeout
        ):
            self._state = CircuitState.HALF_OPEN
            CIRCUIT_STATE.set(_STATE_GAUGE_VALUES[CircuitState.HALF_OPEN])
            logger.info("Circuit breaker transitioned to HALF_OPEN")
        return self._state

    def allow_request(self) -> bool:
        return self.state in (CircuitState.CLOSED, CircuitState.HALF_OPEN)

    def record_success(self) -> None:
        self._failures = 0
        self._state = CircuitState.CLOSED
        CIRCUIT_STATE.set(_STATE_GAUGE_VALUES[CircuitState.CLOSED])
        logger.debug("Circuit breaker: success recorded, state=CLOSED")

    def record_failure(self) -> None:
        self._failures += 1
        self._last_failure_time = self.clock.now()
        if self._state == CircuitState.HALF_OPEN or (
            self._failures >= self.failure_threshold and self._state != CircuitState.OPEN
        ):
            self._state = CircuitState.OPEN
            CIRCUIT_STATE.set(_STATE_GAUGE_VALUES[CircuitState.OPEN])
            logger.warning(
                "Circuit breaker OPENED after %d consecutive failures",
                self._failures,
            )


class CircuitBreakerGateway:
    """Wraps a gateway; plugin failures trip the breaker, declines do not."""

    def __init__(self, inner: PaymentGateway, breaker: CircuitBreaker) -> None:
        self._inner = inner
        self._breaker = breaker

    async def execute(self, payment_id, transaction_external_key, amount, currency, properties):
        if not self._breaker.allow_request():
            logger.warning(
                "Circuit breaker OPEN — rejecting attempt without calling gateway",
                extra={"payment_id": str(payment_id)},
            )
            raise GatewayUnavailableError("Payment gateway unavailable (circuit breaker open)")

        try:
            result = await self._inner.execute(
                payment_id, transaction_external_key, amount, currency, properties
            )
        except Exception:
            self._breaker.record_failure()
            raise

        if result.outcome == Outcome.PLUGIN_EXCEPTION:
            self._breaker.record_failure()
        else:
            self._breaker.record_success()
        return result


# ---------------------------------------------------------------------------
# Mock gateway
# ---------------------------------------------------------------------------


_FAIL_WITH_ERROR = "error"
_FAIL_WITH_EXCEPTION = "exception"


class MockPaymentGateway:
    """
    Simulates a payment plugin:
      - Adds random latency between min and max configured values.
      - Times out if latency exceeds the configured timeout.
      - Has a configured probability of declining the payment outright.
    Scripted failures queued with make_next_payment_fail_with_* win over
    the random behaviour, one per call.
    """

    def __init__(
        self,
        min_latency: float = 0.0,
        max_latency: float = 0.0,
        timeout: float | None = None,
        decline_rate: float = 0.0,
    ) -> None:
        self.min_latency = min_latency
        self.max_latency = max_latency
        self.timeout = timeout
        self.decline_rate = decline_rate
        self.calls: list[dict] = []
        self._scripted: deque[str] = deque()

    @classmethod
    def from_settings(cls, settings) -> "MockPaymentGateway":
        return cls(
            min_latency=settings.payment_min_latency,
            max_latency=settings.payment_max_latency,
            timeout=settings.payment_timeout,
            decline_rate=settings.payment_decline_rate,
        )

    def make_next_payment_fail_with_error(self) -> None:
        self._scripted.append(_FAIL_WITH_ERROR)

    def make_next_payment_fail_with_exception(self) -> None:
        self._scripted.append(_FAIL_WITH_EXCEPTION)

    def clear(self) -> None:
        self._scripted.clear()
        self.calls.clear()

    async def execute(self, payment_id, transaction_external_key, amount, currency, properties):
        self.calls.append(
            {
                "payment_id": payment_id,
                "transaction_external_key": transaction_external_key,
                "amount": amount,
                "currency": currency,
                "properties": properties,
            }
        )

        if self._scripted:
            mode = self._scripted.popleft()
            if mode == _FAIL_WITH_EXCEPTION:
                raise GatewayUnavailableError("Simulated plugin failure")
            return GatewayResult(Outcome.BUSINESS_FAILURE, "Insufficient funds")

        processing_time = random.uniform(self.min_latency, self.max_latency)
        logger.debug(
            "Calling payment gateway",
            extra={"payment_id": str(payment_id), "simulated_latency_s": round(processing_time, 2)},
        )
        if processing_time > 0:
            try:
                await asyncio.wait_for(asyncio.sleep(processing_time), timeout=self.timeout)
            except asyncio.TimeoutError:
                raise GatewayUnavailableError(f"Gateway did not respond within {self.timeout}s")

        if self.decline_rate and random.random() < self.decline_rate:
            return GatewayResult(Outcome.BUSINESS_FAILURE, "Insufficient funds")
        return GatewayResult(Outcome.SUCCESS)
