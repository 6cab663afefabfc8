"""Order state store.

All writes are atomic on a single `orders` row. The compare-and-set is a
conditional UPDATE guarded by `(payment_status, state_version)`, so it holds
across processes without any in-process lock.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from tablepay.common.events import OrderEvent
from tablepay.common.logging import logger
from tablepay.common.state_machine import is_terminal_payment
from tablepay.services.orders.changefeed import ChangeCallback, OrderChange, Subscription, publish_safely
from tablepay.services.orders.models import Order, OrderTimeline, OutboxEvent


@dataclass(frozen=True)
class OrderSnapshot:
    """Transient copy of the order fields reconciliation cares about."""

    order_id: str
    status: str
    payment_status: str
    external_payment_id: str | None
    total_amount: Decimal
    state_version: int
    created_at: datetime | None = None
    payment_confirmed_at: datetime | None = None
    payment_expires_at: datetime | None = None

    @property
    def payment_is_terminal(self) -> bool:
        return is_terminal_payment(self.payment_status)

    @classmethod
    def from_row(cls, order: Order) -> "OrderSnapshot":
        return cls(
            order_id=order.order_id,
            status=order.status,
            payment_status=order.payment_status,
            external_payment_id=order.mercadopago_payment_id,
            total_amount=order.total_amount,
            state_version=order.state_version,
            created_at=order.created_at,
            payment_confirmed_at=order.payment_confirmed_at,
            payment_expires_at=order.payment_expires_at,
        )


@dataclass
class PaymentWrite:
    """Everything that accompanies one payment status compare-and-set."""

    expected_version: int
    from_status: str
    reason: str
    source: str
    external_payment_id: str | None = None
    payment_method: str | None = None
    trace_id: str = ""
    timestamps: dict[str, datetime] = field(default_factory=dict)
    side_effects: list[OrderEvent] = field(default_factory=list)


class OrderStore:
    """Read, conditional-update and change-notification primitives for orders."""

    def __init__(self, session_factory, change_feed) -> None:
        self.session_factory = session_factory
        self.change_feed = change_feed

    def create_order(
        self,
        total_amount: Decimal,
        *,
        order_id: str | None = None,
        status: str = "pending_payment",
        external_payment_id: str | None = None,
        payment_expires_at: datetime | None = None,
    ) -> OrderSnapshot:
        """Insert a new order awaiting payment (used by the ordering flow and fixtures)."""

        with self.session_factory() as db:
            order = Order(
                total_amount=total_amount,
                status=status,
                payment_status="pending",
                mercadopago_payment_id=external_payment_id,
                payment_expires_at=payment_expires_at,
                state_version=0,
            )
            if order_id is not None:
                order.order_id = order_id
            db.add(order)
            db.commit()
            db.refresh(order)
            return OrderSnapshot.from_row(order)

    def get_order_snapshot(self, order_id: str) -> OrderSnapshot | None:
        with self.session_factory() as db:
            order = db.get(Order, order_id)
            if order is None:
                return None
            return OrderSnapshot.from_row(order)

    def find_order_id_by_payment(self, external_payment_id: str) -> str | None:
        with self.session_factory() as db:
            return db.execute(
                select(Order.order_id).where(Order.mercadopago_payment_id == external_payment_id)
            ).scalar_one_or_none()

    def attach_external_payment_id_if_absent(self, order_id: str, external_payment_id: str) -> bool:
        """First-writer-wins attach of the provider payment id.

        Returns False when another id is already stored or when the id already
        belongs to a different order.
        """

        with self.session_factory() as db:
            try:
                result = db.execute(
                    update(Order)
                    .where(Order.order_id == order_id, Order.mercadopago_payment_id.is_(None))
                    .values(mercadopago_payment_id=external_payment_id)
                    .execution_options(synchronize_session=False)
                )
                db.commit()
            except IntegrityError:
                db.rollback()
                logger.warning(
                    "payment id already attached to another order order_id=%s payment_id=%s",
                    order_id,
                    external_payment_id,
                )
                return False
            return result.rowcount == 1

    async def compare_and_set_payment_status(
        self,
        order_id: str,
        expected_current: str,
        next_status: str,
        lifecycle_next: str,
        write: PaymentWrite,
    ) -> bool:
        """Apply one payment/lifecycle write iff the row is still as observed.

        Timeline row and outbox side effects are committed in the same
        transaction; the change notification is published only after commit.
        """

        now = datetime.now(timezone.utc)
        values: dict[str, Any] = {
            "payment_status": next_status,
            "status": lifecycle_next,
            "state_version": write.expected_version + 1,
            "updated_at": now,
            **write.timestamps,
        }
        if write.payment_method:
            values["payment_method"] = write.payment_method

        with self.session_factory() as db:
            result = db.execute(
                update(Order)
                .where(
                    Order.order_id == order_id,
                    Order.payment_status == expected_current,
                    Order.state_version == write.expected_version,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                db.rollback()
                return False

            db.add(
                OrderTimeline(
                    order_id=order_id,
                    from_state=write.from_status,
                    to_state=lifecycle_next,
                    from_payment_status=expected_current,
                    to_payment_status=next_status,
                    reason=write.reason,
                    source=write.source,
                    external_payment_id=write.external_payment_id,
                )
            )
            for effect in write.side_effects:
                db.add(
                    OutboxEvent(
                        aggregate_type="order",
                        aggregate_id=order_id,
                        event_type=effect.event_type,
                        topic=effect.topic,
                        payload=effect.envelope(order_id, write.trace_id).model_dump(),
                    )
                )
            db.commit()

        await publish_safely(
            self.change_feed,
            OrderChange(
                order_id=order_id,
                payment_status=next_status,
                lifecycle_status=lifecycle_next,
                state_version=write.expected_version + 1,
            ),
        )
        return True

    async def subscribe(self, order_id: str, callback: ChangeCallback) -> Subscription:
        return await self.change_feed.subscribe(order_id, callback)
