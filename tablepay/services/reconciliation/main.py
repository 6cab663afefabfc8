"""Reconciliation service process: webhook + poll proxy + outbox publisher."""

from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import FastAPI

from tablepay.common.config import settings
from tablepay.common.db import SessionLocal
from tablepay.common.events import KafkaBus
from tablepay.common.logging import configure_logging
from tablepay.common.outbox import OutboxPublisher
from tablepay.common.startup import log_startup_config
from tablepay.common.tracing import instrument_app, setup_tracing
from tablepay.services.orders.changefeed import LocalChangeFeed, RedisChangeFeed
from tablepay.services.orders.models import OutboxEvent
from tablepay.services.orders.store import OrderStore
from tablepay.services.provider.client import MercadoPagoClient
from tablepay.services.reconciliation.api import create_app
from tablepay.services.reconciliation.service import ReconciliationService
from tablepay.services.reconciliation.webhook import WebhookAuditLog, WebhookIngestion

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings,
    [
        "postgres_dsn",
        "kafka_bootstrap_servers",
        "redis_url",
        "provider_url",
        "mercadopago_access_token",
        "confirmed_order_status",
        "realtime_backend",
    ],
)

redis_client = aioredis.Redis.from_url(settings.redis_url) if settings.realtime_backend == "redis" else None
change_feed = RedisChangeFeed(redis_client) if redis_client is not None else LocalChangeFeed()
store = OrderStore(SessionLocal, change_feed)
provider = MercadoPagoClient()
reconciler = ReconciliationService(store)
ingestion = WebhookIngestion(
    provider,
    reconciler,
    WebhookAuditLog(SessionLocal),
    webhook_secret=settings.mercadopago_webhook_secret,
)
kafka = KafkaBus()
publisher = OutboxPublisher(SessionLocal, OutboxEvent, kafka, settings.service_name)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run the outbox publisher with app lifecycle."""

    publisher.start()
    yield
    await publisher.stop()
    await kafka.close()
    await provider.close()
    if redis_client is not None:
        await redis_client.aclose()


app = create_app(store, reconciler, provider, ingestion, lifespan=lifespan)
instrument_app(app)
