"""
Retry policy: pure mapping from (failure type, attempt index) to the delay
before the next attempt.

Business declines follow a positional list of day offsets. Plugin failures
use one fixed delay, bounded by a separate max-attempts setting.
"""

from dataclasses import dataclass
from datetime import timedelta

from retry_service.exceptions import ConfigurationError
from retry_service.models import FailureType


@dataclass(frozen=True)
class RetryPolicy:
    payment_failure_retry_days: tuple[int, ...]
    plugin_failure_retry_max_attempts: int
    plugin_failure_retry_delay: timedelta = timedelta(days=1)

    def __post_init__(self) -> None:
        # Lists from config are normalised so the policy stays hashable.
        object.__setattr__(self, "payment_failure_retry_days", tuple(self.payment_failure_retry_days))
        if self.plugin_failure_retry_max_attempts < 0:
            raise ConfigurationError(
                f"plugin_failure_retry_max_attempts must be >= 0, "
                f"got {self.plugin_failure_retry_max_attempts}"
            )
        if any(day < 0 for day in self.payment_failure_retry_days):
            raise ConfigurationError(
                f"payment_failure_retry_days must not contain negative offsets: "
                f"{list(self.payment_failure_retry_days)}"
            )
        if self.plugin_failure_retry_delay < timedelta(0):
            raise ConfigurationError("plugin_failure_retry_delay must not be negative")

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            payment_failure_retry_days=tuple(settings.payment_failure_retry_days),
            plugin_failure_retry_max_attempts=settings.plugin_failure_retry_max_attempts,
            plugin_failure_retry_delay=timedelta(seconds=settings.plugin_failure_retry_delay_seconds),
        )

    def max_attempts(self, failure_type: FailureType) -> int:
        if failure_type == FailureType.BUSINESS:
            return len(self.payment_failure_retry_days)
        return self.plugin_failure_retry_max_attempts

    def next_delay(self, failure_type: FailureType, attempt_index: int) -> timedelta | None:
        """
        Delay before retrying after the attempt at `attempt_index` (0-based) failed.

        Returns None when no further retry applies; callers abort the sequence.
        """
        if attempt_index < 0 or attempt_index >= self.max_attempts(failure_type):
            return None
        if failure_type == FailureType.BUSINESS:
            return timedelta(days=self.payment_failure_retry_days[attempt_index])
        return self.plugin_failure_retry_delay
