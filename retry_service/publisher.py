"""
Publishes terminal retry outcomes so downstream services (notifications,
invoice reconciliation) learn when a payment finally succeeded or was
given up on.
"""

import logging
from typing import Protocol

from aiokafka import AIOKafkaProducer
from opentelemetry.propagate import inject

from shared.events import PaymentRetryCompletedEvent

logger = logging.getLogger(__name__)


class EventPublisher(Protocol):
    async def publish(self, event: PaymentRetryCompletedEvent) -> None: ...


class KafkaEventPublisher:
    def __init__(self, producer: AIOKafkaProducer, topic: str) -> None:
        self._producer = producer
        self._topic = topic

    async def publish(self, event: PaymentRetryCompletedEvent) -> None:
        # Propagate trace context into the downstream Kafka message
        outgoing_headers: dict[str, str] = {}
        inject(outgoing_headers)
        kafka_headers = [(k, v.encode()) for k, v in outgoing_headers.items()]

        await self._producer.send_and_wait(
            self._topic,
            key=str(event.payment_id).encode(),
            value=event.model_dump_json().encode(),
            headers=kafka_headers,
        )

        logger.info(
            "Published %s event",
            self._topic,
            extra={
                "payment_id": str(event.payment_id),
                "correlation_id": event.correlation_id,
                "final_state": event.final_state,
            },
        )
