"""
Retry worker entry point.
Starts the AIOKafka producer and the background retry trigger, then runs
until interrupted. Several workers may run against the same database.
"""

import asyncio
import logging
import signal
from datetime import timedelta

import prometheus_client
from aiokafka import AIOKafkaProducer
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from retry_service.clock import Clock, SystemClock
from retry_service.config import Settings, settings
from retry_service.database import AsyncSessionLocal
from retry_service.gateway import CircuitBreaker, CircuitBreakerGateway, MockPaymentGateway
from retry_service.policy import RetryPolicy
from retry_service.publisher import EventPublisher, KafkaEventPublisher
from retry_service.scheduler import RetryScheduler
from retry_service.store import AttemptStore
from retry_service.trigger import RetryTrigger
from retry_service.utils.logging import setup_logging
from shared.tracing import setup_tracing

logger = logging.getLogger(__name__)


def build_scheduler(
    config: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    clock: Clock,
    publisher: EventPublisher | None = None,
) -> RetryScheduler:
    """Wire the scheduler from configuration. Invalid policy settings fail here, at startup."""
    breaker = CircuitBreaker(
        failure_threshold=config.circuit_breaker_failure_threshold,
        recovery_timeout=config.circuit_breaker_recovery_timeout,
        clock=clock,
    )
    return RetryScheduler(
        store=AttemptStore(session_factory, clock),
        gateway=CircuitBreakerGateway(MockPaymentGateway.from_settings(config), breaker),
        policy=RetryPolicy.from_settings(config),
        clock=clock,
        publisher=publisher,
        max_concurrent_retries=config.max_concurrent_retries,
        batch_size=config.retry_batch_size,
        pending_lease=timedelta(seconds=config.pending_attempt_lease_seconds),
    )


async def main() -> None:
    setup_logging(settings.log_level, service_name="retry-service")
    prometheus_client.start_http_server(settings.metrics_port)
    tracer_provider = setup_tracing("retry-service", settings.otlp_endpoint)

    producer = AIOKafkaProducer(
        bootstrap_servers=settings.kafka_bootstrap_servers,
        enable_idempotence=True,
    )
    clock = SystemClock()
    scheduler = build_scheduler(
        settings,
        AsyncSessionLocal,
        clock,
        publisher=KafkaEventPublisher(producer, settings.kafka_completed_topic),
    )
    trigger = RetryTrigger(scheduler, clock, settings.retry_poll_interval_seconds)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await producer.start()
    await trigger.start()
    logger.info(
        "Retry service started",
        extra={
            "bootstrap_servers": settings.kafka_bootstrap_servers,
            "poll_interval_s": settings.retry_poll_interval_seconds,
            "payment_failure_retry_days": settings.payment_failure_retry_days,
            "plugin_failure_retry_max_attempts": settings.plugin_failure_retry_max_attempts,
            "metrics_port": settings.metrics_port,
        },
    )

    try:
        await stop.wait()
    finally:
        await trigger.stop()
        await producer.stop()
        if tracer_provider is not None:
            tracer_provider.shutdown()
        logger.info("Retry service stopped")


if __name__ == "__main__":
    asyncio.run(main())
