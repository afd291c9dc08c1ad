from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "postgresql+asyncpg://postgres:postgres@db:5432/payments"
    log_level: str = "INFO"

    # Kafka
    kafka_bootstrap_servers: str = "kafka:9092"
    kafka_completed_topic: str = "payment.completed"

    # Retry policy
    plugin_failure_retry_max_attempts: int = 8
    plugin_failure_retry_delay_seconds: int = 86400
    payment_failure_retry_days: list[int] = [8, 8, 8]  # JSON list in env, e.g. "[1,3,5]"

    # Background trigger
    retry_poll_interval_seconds: float = 10.0
    retry_batch_size: int = 100
    max_concurrent_retries: int = 10
    # PENDING attempts untouched for this long are completed as plugin failures
    pending_attempt_lease_seconds: int = 3600

    # Mock payment gateway
    payment_min_latency: float = 1.0
    payment_max_latency: float = 5.0
    payment_timeout: float = 4.0
    payment_decline_rate: float = 0.15

    # Circuit breaker
    circuit_breaker_failure_threshold: int = 5
    circuit_breaker_recovery_timeout: float = 30.0

    # Observability
    otlp_endpoint: str = "http://jaeger:4318/v1/traces"
    metrics_port: int = 8001

    model_config = {"env_file": ".env"}

    @field_validator(
        "plugin_failure_retry_max_attempts",
        "plugin_failure_retry_delay_seconds",
    )
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("payment_failure_retry_days")
    @classmethod
    def _non_negative_days(cls, value: list[int]) -> list[int]:
        if any(day < 0 for day in value):
            raise ValueError("retry day offsets must not be negative")
        return value

    @field_validator(
        "retry_poll_interval_seconds",
        "retry_batch_size",
        "max_concurrent_retries",
        "pending_attempt_lease_seconds",
    )
    @classmethod
    def _positive(cls, value):
        if value <= 0:
            raise ValueError("must be positive")
        return value


settings = Settings()
