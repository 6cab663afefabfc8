"""Outbox publisher drains side effects written by reconciliation."""

import asyncio
import json
from decimal import Decimal

from sqlalchemy import select

from tablepay.common.events import PAYMENT_CONFIRMED_TOPIC, PAYMENT_FAILED_TOPIC, OrderEvent
from tablepay.common.outbox import OutboxPublisher
from tablepay.services.orders.models import OutboxEvent
from tablepay.services.reconciliation.schemas import ClaimSource, PaymentClaim


class FakeBus:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.sent = []

    async def publish(self, topic, event):
        if self.fail:
            raise ConnectionError("kafka down")
        self.sent.append((topic, event))


def approved():
    return PaymentClaim(
        external_payment_id="pay-1", provider_status="approved", amount=Decimal("25.00"), source=ClaimSource.WEBHOOK
    )


async def test_confirmed_payment_is_published_once(session_factory, reconciler, order):
    await reconciler.reconcile(order.order_id, approved())
    bus = FakeBus()
    publisher = OutboxPublisher(session_factory, OutboxEvent, bus, "tablepay")

    assert await publisher.publish_batch() == 1
    assert await publisher.publish_batch() == 0

    topic, event = bus.sent[0]
    assert topic == PAYMENT_CONFIRMED_TOPIC
    assert event.event_type == "order.payment_confirmed"
    assert event.aggregate_id == order.order_id
    assert event.payload["route_to_kitchen"] is True
    with session_factory() as db:
        row = db.execute(select(OutboxEvent)).scalar_one()
    assert row.status == "SENT"
    assert row.attempts == 1


async def test_failed_publish_is_requeued(session_factory, reconciler, order):
    await reconciler.reconcile(order.order_id, approved())
    publisher = OutboxPublisher(session_factory, OutboxEvent, FakeBus(fail=True), "tablepay")

    assert await publisher.publish_batch() == 0

    with session_factory() as db:
        row = db.execute(select(OutboxEvent)).scalar_one()
    assert row.status == "PENDING"
    assert "kafka down" in row.last_error


def test_expiry_events_share_the_failure_topic():
    event = OrderEvent("order.payment_expired", {"reason": "payment_timeout"})

    envelope = event.envelope("order-1", trace_id="req-7")

    assert event.topic == PAYMENT_FAILED_TOPIC
    assert envelope.aggregate_id == "order-1"
    assert json.loads(envelope.encode())["payload"] == {"reason": "payment_timeout"}


async def test_row_is_parked_after_max_attempts(session_factory, reconciler, order):
    await reconciler.reconcile(order.order_id, approved())
    publisher = OutboxPublisher(session_factory, OutboxEvent, FakeBus(fail=True), "tablepay", max_attempts=2)

    await publisher.publish_batch()
    await publisher.publish_batch()
    assert await publisher.publish_batch() == 0

    with session_factory() as db:
        row = db.execute(select(OutboxEvent)).scalar_one()
    assert row.status == "FAILED"
    assert row.attempts == 2


async def test_stop_waits_for_the_batch_in_flight(session_factory, reconciler, order):
    await reconciler.reconcile(order.order_id, approved())
    entered = asyncio.Event()
    finished = []

    class SlowBus(FakeBus):
        async def publish(self, topic, event):
            entered.set()
            try:
                await asyncio.sleep(10)
            finally:
                finished.append(topic)

    publisher = OutboxPublisher(session_factory, OutboxEvent, SlowBus(), "tablepay")
    task = publisher.start(interval_seconds=0.01)
    await asyncio.wait_for(entered.wait(), timeout=2)

    await publisher.stop()

    assert task.done()
    assert finished == [PAYMENT_CONFIRMED_TOPIC]
