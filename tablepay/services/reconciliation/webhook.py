"""Mercado Pago webhook ingestion.

Translates a provider notification into a `PaymentClaim`. The push payload is
only used to learn the payment id; status, amount and order reference always
come from a fresh fetch of the payment.
"""

import hashlib
import hmac

from sqlalchemy.exc import SQLAlchemyError

from tablepay.common.logging import log_context, logger
from tablepay.common.metrics import webhook_requests_total
from tablepay.services.orders.models import PaymentWebhook
from tablepay.services.provider.client import ProviderPaymentNotFound
from tablepay.services.reconciliation.schemas import ClaimSource, PaymentClaim, WebhookEvent, WebhookResponse
from tablepay.services.reconciliation.service import OrderNotFound


class MalformedWebhook(ValueError):
    """Payload cannot be processed and redelivery will not help."""


class InvalidSignature(ValueError):
    pass


def parse_signature_header(header: str) -> dict[str, str]:
    """Split `ts=...,v1=...` into its parts."""

    parts = {}
    for chunk in header.split(","):
        key, sep, value = chunk.strip().partition("=")
        if sep:
            parts[key.strip()] = value.strip()
    return parts


def signature_manifest(data_id: str, request_id: str | None, ts: str) -> str:
    # Alphanumeric ids are signed lowercased.
    manifest = f"id:{data_id.lower()};"
    if request_id:
        manifest += f"request-id:{request_id};"
    return manifest + f"ts:{ts};"


def verify_signature(secret: str, data_id: str, x_signature: str | None, x_request_id: str | None) -> bool:
    if not x_signature:
        return False
    parts = parse_signature_header(x_signature)
    ts, v1 = parts.get("ts"), parts.get("v1")
    if not ts or not v1:
        return False
    expected = hmac.new(
        secret.encode("utf-8"),
        signature_manifest(data_id, x_request_id, ts).encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return hmac.compare_digest(expected, v1)


class WebhookAuditLog:
    """Persists one `payment_webhooks` row per delivery."""

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def record(
        self,
        event: WebhookEvent,
        outcome: str,
        *,
        order_id: str | None = None,
        provider_status: str | None = None,
        raw: dict | None = None,
    ) -> None:
        try:
            with self.session_factory() as db:
                db.add(
                    PaymentWebhook(
                        event_id=event.id,
                        webhook_type=event.type,
                        webhook_action=event.action,
                        mercadopago_payment_id=event.payment_id,
                        order_id=order_id,
                        provider_status=provider_status,
                        outcome=outcome,
                        webhook_data=raw if raw is not None else event.model_dump(),
                    )
                )
                db.commit()
        except SQLAlchemyError as exc:
            # The audit row never decides the delivery outcome.
            logger.error("webhook audit write failed event_id=%s error=%s", event.id, exc)


class WebhookIngestion:
    """Boundary adapter between provider webhooks and reconciliation."""

    def __init__(self, provider, reconciler, audit: WebhookAuditLog, webhook_secret: str = "") -> None:
        self.provider = provider
        self.reconciler = reconciler
        self.audit = audit
        self.webhook_secret = webhook_secret

    def check_signature(self, event: WebhookEvent, x_signature: str | None, x_request_id: str | None) -> None:
        if not self.webhook_secret:
            return
        if event.payment_id is None or not verify_signature(
            self.webhook_secret, event.payment_id, x_signature, x_request_id
        ):
            raise InvalidSignature("invalid webhook signature")

    def _finish(
        self,
        event: WebhookEvent,
        outcome: str,
        raw: dict | None,
        *,
        order_id: str | None = None,
        provider_status: str | None = None,
        payment_status: str | None = None,
        lifecycle_status: str | None = None,
    ) -> WebhookResponse:
        webhook_requests_total.labels(outcome=outcome).inc()
        logger.info(
            "webhook_processed event_id=%s type=%s payment_id=%s order_id=%s provider_status=%s outcome=%s",
            event.id,
            event.type,
            event.payment_id,
            order_id,
            provider_status,
            outcome,
        )
        self.audit.record(event, outcome, order_id=order_id, provider_status=provider_status, raw=raw)
        return WebhookResponse(
            outcome=outcome,
            order_id=order_id,
            payment_status=payment_status,
            lifecycle_status=lifecycle_status,
        )

    async def handle(
        self,
        event: WebhookEvent,
        raw: dict | None = None,
        *,
        x_signature: str | None = None,
        x_request_id: str | None = None,
    ) -> WebhookResponse:
        """Process one delivery.

        Returns a response for every handled outcome. Raises `MalformedWebhook`
        for unusable payloads and `InvalidSignature` for unsigned ones; provider
        and store outages propagate so the caller can ask for redelivery.
        """

        with log_context(event_id=event.id or ""):
            return await self._handle(event, raw, x_signature, x_request_id)

    async def _handle(
        self, event: WebhookEvent, raw: dict | None, x_signature: str | None, x_request_id: str | None
    ) -> WebhookResponse:
        if event.type != "payment":
            return self._finish(event, "ignored", raw)

        payment_id = event.payment_id
        if payment_id is None:
            self._finish(event, "malformed", raw)
            raise MalformedWebhook("payment webhook without data.id")
        try:
            self.check_signature(event, x_signature, x_request_id)
        except InvalidSignature:
            self._finish(event, "invalid_signature", raw)
            raise

        with log_context(payment_id=payment_id):
            try:
                payment = await self.provider.get_payment(payment_id)
            except ProviderPaymentNotFound:
                return self._finish(event, "payment_not_found", raw)
            except Exception:
                self._finish(event, "provider_error", raw)
                raise

            order_id = payment.order_reference
            if order_id is None:
                logger.error("no order reference on payment payment_id=%s", payment_id)
                return self._finish(event, "no_order_reference", raw, provider_status=payment.status)

            claim = PaymentClaim.from_provider(payment, ClaimSource.WEBHOOK, event_id=event.id)
            with log_context(order_id=order_id):
                try:
                    result = await self.reconciler.reconcile(order_id, claim)
                except OrderNotFound:
                    logger.error("webhook for unknown order order_id=%s payment_id=%s", order_id, payment_id)
                    return self._finish(
                        event, "order_not_found", raw, order_id=order_id, provider_status=payment.status
                    )
                except Exception:
                    self._finish(event, "store_error", raw, order_id=order_id, provider_status=payment.status)
                    raise

        outcome = "processed" if result.applied else result.outcome.value
        return self._finish(
            event,
            outcome,
            raw,
            order_id=order_id,
            provider_status=payment.status,
            payment_status=result.final_payment_status,
            lifecycle_status=result.final_lifecycle_status,
        )
