"""Per-order change notifications.

Every committed payment write publishes one `OrderChange` on the order's
channel. Subscribers are payment screens waiting on that order; delivery is
best-effort and carries no correctness guarantee.
"""

import asyncio
import inspect
from collections import defaultdict
from typing import Awaitable, Callable

from pydantic import BaseModel

from tablepay.common.logging import logger
from tablepay.common.metrics import change_feed_publish_failures_total


class OrderChange(BaseModel):
    """Payload emitted after each committed write to an order."""

    order_id: str
    payment_status: str
    lifecycle_status: str
    state_version: int


ChangeCallback = Callable[[OrderChange], Awaitable[None] | None]


def channel_for(order_id: str) -> str:
    return f"orders:{order_id}:changes"


async def _dispatch(callback: ChangeCallback, change: OrderChange) -> None:
    try:
        result = callback(change)
        if inspect.isawaitable(result):
            await result
    except Exception as exc:
        logger.exception("change_callback_failed order_id=%s error=%s", change.order_id, exc)


class Subscription:
    """Handle returned by `subscribe`; `unsubscribe` is idempotent."""

    def __init__(self, order_id: str, closer: Callable[[], Awaitable[None]]) -> None:
        self.order_id = order_id
        self._closer = closer
        self.closed = False

    async def unsubscribe(self) -> None:
        if self.closed:
            return
        self.closed = True
        await self._closer()


class LocalChangeFeed:
    """In-process fan-out used by single-process deployments and tests."""

    backend = "local"

    def __init__(self) -> None:
        self._subscribers: dict[str, list[ChangeCallback]] = defaultdict(list)

    async def publish(self, change: OrderChange) -> None:
        for callback in list(self._subscribers.get(change.order_id, [])):
            await _dispatch(callback, change)

    async def subscribe(self, order_id: str, callback: ChangeCallback) -> Subscription:
        self._subscribers[order_id].append(callback)

        async def close() -> None:
            callbacks = self._subscribers.get(order_id, [])
            if callback in callbacks:
                callbacks.remove(callback)
            if not callbacks:
                self._subscribers.pop(order_id, None)

        return Subscription(order_id, close)

    def subscriber_count(self, order_id: str) -> int:
        return len(self._subscribers.get(order_id, []))


class RedisChangeFeed:
    """Redis pub/sub feed so webhook, poll proxy and listeners can live in different processes."""

    backend = "redis"

    def __init__(self, redis_client) -> None:
        self.redis = redis_client

    async def publish(self, change: OrderChange) -> None:
        await self.redis.publish(channel_for(change.order_id), change.model_dump_json())

    async def subscribe(self, order_id: str, callback: ChangeCallback) -> Subscription:
        channel = channel_for(order_id)
        pubsub = self.redis.pubsub()
        await pubsub.subscribe(channel)
        task = asyncio.create_task(self._pump(pubsub, channel, callback))

        async def close() -> None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            finally:
                try:
                    await pubsub.unsubscribe(channel)
                except Exception as exc:
                    logger.warning("change_unsubscribe_failed channel=%s error=%s", channel, exc)
                finally:
                    await pubsub.aclose()

        return Subscription(order_id, close)

    async def _pump(self, pubsub, channel: str, callback: ChangeCallback) -> None:
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    change = OrderChange.model_validate_json(message["data"])
                except ValueError as exc:
                    logger.warning("change_message_invalid channel=%s error=%s", channel, exc)
                    continue
                await _dispatch(callback, change)
        except Exception as exc:
            # Lost connection: the subscriber falls back to polling until it closes.
            logger.error("change_feed_listen_failed channel=%s error=%s", channel, exc)


async def publish_safely(feed, change: OrderChange) -> None:
    """Publish without letting feed outages leak into the committed write path."""

    try:
        await feed.publish(change)
    except Exception as exc:
        change_feed_publish_failures_total.labels(backend=getattr(feed, "backend", "unknown")).inc()
        logger.warning("change_publish_failed order_id=%s error=%s", change.order_id, exc)
