"""Background publisher for the transactional outbox.

Side-effect requests are inserted in the same transaction as the order write
that caused them. `OutboxPublisher` moves them from `outbox_events` to Kafka
afterwards: rows are claimed with `FOR UPDATE SKIP LOCKED` so several
publishers can share the table, and a row stuck in PROCESSING longer than the
stale timeout is claimed again. Delivery is at least once.
"""

import asyncio
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, or_, select, update

from tablepay.common.events import EventEnvelope
from tablepay.common.logging import logger
from tablepay.common.metrics import outbox_oldest_pending_age_seconds, outbox_pending_total

IN_FLIGHT_STATUSES = ("PENDING", "PROCESSING")


class OutboxPublisher:
    def __init__(
        self,
        session_factory,
        outbox_model,
        bus,
        service_name: str,
        batch_size: int = 100,
        stale_after_seconds: int = 30,
        max_attempts: int = 10,
    ) -> None:
        self.session_factory = session_factory
        self.table = outbox_model.__table__
        self.bus = bus
        self.service_name = service_name
        self.batch_size = batch_size
        self.stale_after = timedelta(seconds=stale_after_seconds)
        # Rows that failed this many publishes are parked as FAILED.
        self.max_attempts = max_attempts
        self._task: asyncio.Task | None = None

    def _claim(self, db) -> list:
        table = self.table
        now = datetime.now(timezone.utc)
        claimable = (
            select(table.c.id)
            .where(
                or_(
                    table.c.status == "PENDING",
                    (table.c.status == "PROCESSING") & (table.c.sent_at < now - self.stale_after),
                )
            )
            .order_by(table.c.created_at)
            .limit(self.batch_size)
            .with_for_update(skip_locked=True)
            .cte("claimable")
        )
        return db.execute(
            update(table)
            .where(table.c.id.in_(select(claimable.c.id)))
            .values(status="PROCESSING", sent_at=now, attempts=table.c.attempts + 1)
            .returning(table.c.id, table.c.topic, table.c.payload, table.c.attempts)
        ).all()

    def _settle(self, row, error: str | None = None) -> None:
        if error is None:
            values = {"status": "SENT", "sent_at": datetime.now(timezone.utc), "last_error": None}
        elif row.attempts >= self.max_attempts:
            logger.error("outbox row parked id=%s topic=%s attempts=%s", row.id, row.topic, row.attempts)
            values = {"status": "FAILED", "last_error": error}
        else:
            values = {"status": "PENDING", "sent_at": None, "last_error": error}
        with self.session_factory() as db:
            db.execute(
                update(self.table).where(self.table.c.id == row.id, self.table.c.status == "PROCESSING").values(**values)
            )
            db.commit()

    def refresh_backlog_metrics(self) -> None:
        in_flight = self.table.c.status.in_(IN_FLIGHT_STATUSES)
        with self.session_factory() as db:
            count, oldest = db.execute(
                select(func.count(), func.min(self.table.c.created_at)).select_from(self.table).where(in_flight)
            ).one()
        age = 0.0
        if oldest is not None:
            if oldest.tzinfo is None:
                oldest = oldest.replace(tzinfo=timezone.utc)
            age = max(0.0, (datetime.now(timezone.utc) - oldest).total_seconds())
        outbox_pending_total.labels(service=self.service_name).set(float(count))
        outbox_oldest_pending_age_seconds.labels(service=self.service_name).set(age)

    async def publish_batch(self) -> int:
        """Publish one claimed batch; returns how many rows were delivered."""

        with self.session_factory() as db:
            rows = self._claim(db)
            db.commit()
        delivered = 0
        for row in rows:
            try:
                await self.bus.publish(row.topic, EventEnvelope(**row.payload))
            except Exception as exc:
                logger.exception("outbox publish failed id=%s topic=%s", row.id, row.topic)
                self._settle(row, error=str(exc))
                continue
            self._settle(row)
            delivered += 1
        self.refresh_backlog_metrics()
        return delivered

    async def run_forever(self, interval_seconds: float = 0.5) -> None:
        while True:
            try:
                await self.publish_batch()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("outbox_loop_error error=%s", exc)
            await asyncio.sleep(interval_seconds)

    def start(self, interval_seconds: float = 0.5) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run_forever(interval_seconds), name="outbox-publisher")
        return self._task

    async def stop(self) -> None:
        """Cancel the loop and wait for it, so no batch is in flight when the bus closes."""

        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
