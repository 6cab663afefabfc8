"""Order events sent downstream through the outbox, and the Kafka producer."""

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from aiokafka import AIOKafkaProducer
from pydantic import BaseModel, Field

from tablepay.common.config import settings


PAYMENT_CONFIRMED_TOPIC = "orders.payment_confirmed"
PAYMENT_FAILED_TOPIC = "orders.payment_failed"

EVENT_TOPICS = {
    "order.payment_confirmed": PAYMENT_CONFIRMED_TOPIC,
    "order.payment_failed": PAYMENT_FAILED_TOPIC,
    "order.payment_expired": PAYMENT_FAILED_TOPIC,
}


class EventEnvelope(BaseModel):
    """Canonical event shape sent across Kafka topics."""

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: str
    aggregate_id: str
    occurred_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    trace_id: str
    payload: dict[str, Any]

    def encode(self) -> bytes:
        return json.dumps(self.model_dump()).encode("utf-8")


@dataclass(frozen=True)
class OrderEvent:
    """One downstream request recorded in the outbox with the winning write."""

    event_type: str
    payload: dict[str, Any]

    @property
    def topic(self) -> str:
        return EVENT_TOPICS[self.event_type]

    def envelope(self, order_id: str, trace_id: str = "") -> EventEnvelope:
        return EventEnvelope(
            event_type=self.event_type,
            aggregate_id=order_id,
            trace_id=trace_id,
            payload=self.payload,
        )


class KafkaBus:
    """Producer started on first publish. Messages are keyed by order id so
    events for one order stay on one partition."""

    def __init__(self, bootstrap_servers: str | None = None) -> None:
        self.bootstrap_servers = bootstrap_servers or settings.kafka_bootstrap_servers
        self._producer: AIOKafkaProducer | None = None

    async def _started(self) -> AIOKafkaProducer:
        if self._producer is None:
            producer = AIOKafkaProducer(bootstrap_servers=self.bootstrap_servers)
            await producer.start()
            self._producer = producer
        return self._producer

    async def publish(self, topic: str, event: EventEnvelope) -> None:
        producer = await self._started()
        await producer.send_and_wait(topic, event.encode(), key=event.aggregate_id.encode("utf-8"))

    async def close(self) -> None:
        if self._producer is not None:
            await self._producer.stop()
            self._producer = None
