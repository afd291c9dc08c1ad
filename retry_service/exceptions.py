"""
Error taxonomy for the retry scheduler.

Callers branch on these types, never on message text.
"""


class PaymentRetryError(Exception):
    """Base class for retry scheduler errors."""


class ConfigurationError(PaymentRetryError):
    """Invalid retry policy configuration — rejected at startup."""


class DuplicateKeyError(PaymentRetryError):
    """An attempt with the same (payment_external_key, attempt_number) already exists."""

    def __init__(self, payment_external_key: str, attempt_number: int) -> None:
        super().__init__(
            f"Attempt {attempt_number} already recorded for payment {payment_external_key!r}"
        )
        self.payment_external_key = payment_external_key
        self.attempt_number = attempt_number


class StaleStateError(PaymentRetryError):
    """Compare-and-set transition found the attempt in another state."""

    def __init__(self, attempt_id, expected_state) -> None:
        super().__init__(f"Attempt {attempt_id} is no longer in state {expected_state}")
        self.attempt_id = attempt_id
        self.expected_state = expected_state


class AlreadyCompletedError(PaymentRetryError):
    """Outcome reported for an attempt that has already left PENDING."""

    def __init__(self, attempt_id, state) -> None:
        super().__init__(f"Attempt {attempt_id} already completed with state {state}")
        self.attempt_id = attempt_id
        self.state = state


class AttemptNotFoundError(PaymentRetryError):
    """No attempt with the given id (or it belongs to another payment)."""


class GatewayUnavailableError(PaymentRetryError):
    """The gateway could not execute the attempt — transient, safe to retry."""


class PaymentFailedError(PaymentRetryError):
    """
    The submitted payment failed on its first attempt.

    The retry (if any) is already scheduled when this is raised; `decision`
    tells the caller whether the sequence was RETRIED or ABORTED.
    """

    def __init__(self, attempt, decision) -> None:
        super().__init__(
            f"Payment {attempt.payment_external_key!r} failed: "
            f"{attempt.error_message or attempt.failure_type}"
        )
        self.attempt = attempt
        self.decision = decision
