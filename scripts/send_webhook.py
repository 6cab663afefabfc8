"""Send a Mercado Pago style payment webhook to the reconciliation service.

Useful for duplicate-delivery and webhook-vs-poll race testing: `--copies`
fires the same notification concurrently.
"""

import argparse
import asyncio
import hashlib
import hmac
import time
from collections import Counter
from uuid import uuid4

import httpx

from tablepay.services.reconciliation.webhook import signature_manifest


def sign(secret: str, payment_id: str, request_id: str) -> str:
    """Build an `x-signature` header the way the provider does."""

    ts = str(int(time.time() * 1000))
    digest = hmac.new(
        secret.encode("utf-8"),
        signature_manifest(payment_id, request_id, ts).encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return f"ts={ts},v1={digest}"


async def send(base_url: str, payment_id: str, copies: int, secret: str | None) -> Counter:
    """Deliver `copies` identical notifications at once and tally the outcomes."""

    payload = {
        "id": str(uuid4()),
        "type": "payment",
        "action": "payment.updated",
        "data": {"id": payment_id},
    }
    request_id = str(uuid4())
    headers = {"x-request-id": request_id}
    if secret:
        headers["x-signature"] = sign(secret, payment_id, request_id)

    async with httpx.AsyncClient(timeout=10.0) as client:
        responses = await asyncio.gather(
            *[client.post(f"{base_url}/webhooks/mercadopago", json=payload, headers=headers) for _ in range(copies)],
            return_exceptions=True,
        )

    outcomes = Counter()
    for resp in responses:
        if isinstance(resp, Exception):
            outcomes[f"error:{type(resp).__name__}"] += 1
        elif resp.status_code == 200:
            outcomes[resp.json().get("outcome", "unknown")] += 1
        else:
            outcomes[f"http_{resp.status_code}"] += 1
    return outcomes


def main() -> None:
    """Parse CLI args and send the webhook."""

    parser = argparse.ArgumentParser(description="Send a payment webhook to the reconciliation service.")
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--payment-id", required=True)
    parser.add_argument("--copies", type=int, default=1, help="Concurrent duplicate deliveries")
    parser.add_argument("--secret", default=None, help="Webhook secret used to sign the request")
    args = parser.parse_args()

    if args.copies < 1:
        raise SystemExit("--copies must be at least 1")

    outcomes = asyncio.run(send(args.base_url.rstrip("/"), args.payment_id, args.copies, args.secret))
    for outcome, count in sorted(outcomes.items()):
        print(f"{outcome}: {count}")


if __name__ == "__main__":
    main()
