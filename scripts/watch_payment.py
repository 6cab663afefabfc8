"""Watch one payment the way a payment screen does.

Polls the status proxy and, with `--redis-url`, listens on the order's change
feed at the same time. Exits on the first terminal outcome or on timeout.
"""

import argparse
import asyncio
from dataclasses import replace

import redis.asyncio as aioredis

from tablepay.client.polling import PaymentPoller, PollCallbacks, PollPolicy
from tablepay.client.proxy import ProxyStatusSource
from tablepay.client.realtime import PaymentChangeListener
from tablepay.common.config import settings
from tablepay.common.logging import configure_logging
from tablepay.services.orders.changefeed import RedisChangeFeed


async def watch(base_url: str, order_id: str, payment_id: str, redis_url: str | None, timeout: float) -> str:
    """Run poller plus listener until one reports; return the outcome label."""

    source = ProxyStatusSource(base_url)
    expire = source.expire if settings.poll_expire_on_timeout else None
    policy = replace(PollPolicy.from_settings(), timeout_seconds=timeout)
    poller = PaymentPoller(source.check, policy, expire=expire)
    done = asyncio.Event()
    outcome = {"label": "unknown"}

    def report(label: str):
        def _callback(*args) -> None:
            outcome["label"] = label
            print(f"{label}: {args[0] if args else ''}")
            done.set()

        return _callback

    callbacks = PollCallbacks(
        on_success=report("success"),
        on_failure=report("failure"),
        on_timeout=report("timeout"),
        on_error=report("error"),
        on_status_change=lambda status: print(f"provider status: {status}"),
    )

    redis_client = None
    listener = None
    subscription = None
    if redis_url:
        redis_client = aioredis.Redis.from_url(redis_url)
        listener = PaymentChangeListener(RedisChangeFeed(redis_client), poller, fetch_order=source.order)

    try:
        poller.start(payment_id, order_id, callbacks)
        if listener is not None:
            subscription = await listener.listen(order_id, payment_id, callbacks)
        await done.wait()
    finally:
        await poller.stop_all()
        if subscription is not None:
            await subscription.unsubscribe()
        if listener is not None:
            await listener.aclose()
        if redis_client is not None:
            await redis_client.aclose()
        await source.close()
    return outcome["label"]


def main() -> None:
    """Parse CLI args and watch the payment."""

    parser = argparse.ArgumentParser(description="Watch a payment until it settles.")
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--order-id", required=True)
    parser.add_argument("--payment-id", required=True)
    parser.add_argument("--redis-url", default=None, help="Also listen on the Redis change feed")
    parser.add_argument("--timeout", type=float, default=settings.poll_timeout_seconds)
    args = parser.parse_args()

    configure_logging()
    label = asyncio.run(watch(args.base_url, args.order_id, args.payment_id, args.redis_url, args.timeout))
    raise SystemExit(0 if label == "success" else 1)


if __name__ == "__main__":
    main()
