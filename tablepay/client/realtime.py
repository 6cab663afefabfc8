"""Real-time payment screen updates.

Subscribes to an order's change feed while its payment screen is open. The
first terminal change settles the screen: it stops the polling loop for the
payment and reports through the same callbacks the loop would have used.
"""

import asyncio
from typing import Awaitable, Callable

from tablepay.client.polling import PaymentPoller, PollCallbacks, _invoke, result_from_change
from tablepay.common.logging import logger
from tablepay.common.state_machine import is_terminal_payment
from tablepay.services.orders.changefeed import OrderChange, Subscription
from tablepay.services.reconciliation.schemas import OrderResponse

FetchOrder = Callable[[str], Awaitable[OrderResponse]]


class PaymentChangeListener:
    """Bridges order changes to a `PaymentPoller`.

    `feed` is anything with `async subscribe(order_id, callback)`: the order
    store, a `LocalChangeFeed` or a `RedisChangeFeed`.
    """

    def __init__(self, feed, poller: PaymentPoller, *, fetch_order: FetchOrder | None = None) -> None:
        self.feed = feed
        self.poller = poller
        self.fetch_order = fetch_order
        self._closing: set[asyncio.Task] = set()

    async def listen(
        self,
        order_id: str,
        payment_id: str,
        callbacks: PollCallbacks | None = None,
    ) -> Subscription:
        """Watch `order_id` until its payment settles or the caller unsubscribes.

        `callbacks` are used only when no polling loop was ever started for
        `payment_id`; otherwise the loop's own callbacks fire.
        """

        callbacks = callbacks or PollCallbacks()
        settled = False
        subscription: Subscription | None = None

        async def on_change(change: OrderChange) -> None:
            nonlocal settled
            if settled or change.order_id != order_id or not is_terminal_payment(change.payment_status):
                return
            settled = True
            logger.info(
                "realtime settle order_id=%s payment_id=%s payment_status=%s",
                order_id,
                payment_id,
                change.payment_status,
            )
            handled = await self.poller.settle_externally(payment_id, change)
            if not handled:
                callback = callbacks.on_success if change.payment_status == "confirmed" else callbacks.on_failure
                await _invoke(callback, result_from_change(change))
            if subscription is not None:
                self._close_later(subscription)

        subscription = await self.feed.subscribe(order_id, on_change)

        # A change published before we subscribed is lost; read current state once.
        if self.fetch_order is not None and not settled:
            try:
                order = await self.fetch_order(order_id)
            except Exception as exc:
                logger.warning("realtime resync failed order_id=%s error=%s", order_id, exc)
            else:
                await on_change(
                    OrderChange(
                        order_id=order.order_id,
                        payment_status=order.payment_status,
                        lifecycle_status=order.status,
                        state_version=order.state_version,
                    )
                )
        return subscription

    def _close_later(self, subscription: Subscription) -> None:
        # The callback may run inside the feed's delivery task; close from outside it.
        task = asyncio.create_task(subscription.unsubscribe())
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    async def aclose(self) -> None:
        if self._closing:
            await asyncio.gather(*self._closing, return_exceptions=True)
