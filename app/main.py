import logging
from contextlib import asynccontextmanager

from aiokafka import AIOKafkaProducer
from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from prometheus_client import make_asgi_app

from app.middleware.metrics import MetricsMiddleware
from app.middleware.request_id import RequestIDMiddleware
from app.routers import payments
from retry_service.clock import SystemClock
from retry_service.config import settings
from retry_service.database import AsyncSessionLocal, create_tables, engine
from retry_service.main import build_scheduler
from retry_service.publisher import KafkaEventPublisher
from retry_service.utils.logging import setup_logging
from shared.tracing import setup_tracing

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(settings.log_level, service_name="payments-api")
    tracer_provider = setup_tracing("payments-api", settings.otlp_endpoint)

    logger.info("Starting up — creating database tables")
    await create_tables(engine)
    SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)

    producer = AIOKafkaProducer(
        bootstrap_servers=settings.kafka_bootstrap_servers,
        enable_idempotence=True,
    )
    await producer.start()
    app.state.kafka_producer = producer
    # Submission only runs first attempts; due retries are fired by retry_service workers.
    app.state.scheduler = build_scheduler(
        settings,
        AsyncSessionLocal,
        SystemClock(),
        publisher=KafkaEventPublisher(producer, settings.kafka_completed_topic),
    )
    logger.info("Startup complete")

    yield

    await producer.stop()
    await engine.dispose()
    if tracer_provider is not None:
        tracer_provider.shutdown()
    logger.info("Shutting down")


app = FastAPI(
    title="Payment Retry Platform",
    description="Payment submission with scheduled retries",
    version="1.0.0",
    lifespan=lifespan,
)

FastAPIInstrumentor.instrument_app(app)
app.add_middleware(MetricsMiddleware)
app.add_middleware(RequestIDMiddleware)
app.include_router(payments.router, prefix="/payments", tags=["payments"])

# Expose Prometheus metrics at /metrics
metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)


@app.get("/health", tags=["health"])
async def health():
    return {"status": "ok"}
