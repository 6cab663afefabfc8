"""HTTP surface for payment reconciliation.

Routes are bound to explicitly constructed services so the same app can run
against Postgres/Redis in production and SQLite/in-process feeds in tests.
"""

from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Header, HTTPException, Query, Request
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from tablepay.common.logging import logger, trace_id_ctx
from tablepay.common.metrics import metrics_response, observe_http_request
from tablepay.services.orders.store import OrderStore
from tablepay.services.provider.client import ProviderError, ProviderPaymentNotFound, ProviderUnavailable
from tablepay.services.reconciliation.schemas import (
    ClaimSource,
    OrderResponse,
    PaymentClaim,
    PaymentStatusResponse,
    ReconcileResult,
    WebhookEvent,
    WebhookResponse,
)
from tablepay.services.reconciliation.service import ConcurrentUpdateError, OrderNotFound, ReconciliationService
from tablepay.services.reconciliation.webhook import InvalidSignature, MalformedWebhook, WebhookIngestion


def create_app(
    store: OrderStore,
    reconciler: ReconciliationService,
    provider,
    ingestion: WebhookIngestion,
    lifespan=None,
) -> FastAPI:
    app = FastAPI(title="TablePay Reconciliation", lifespan=lifespan)

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        """Bind a request id for logs and outbox events, and record HTTP metrics."""

        request_id = request.headers.get("x-request-id") or str(uuid4())
        trace_id_ctx.set(request_id)
        started = perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers["x-request-id"] = request_id
            return response
        finally:
            # Templated path once routing has matched, raw path otherwise.
            route = getattr(request.scope.get("route"), "path", None) or request.url.path
            observe_http_request(route, request.method, status_code, perf_counter() - started)

    @app.post("/webhooks/mercadopago", response_model=WebhookResponse)
    async def mercadopago_webhook(
        request: Request,
        x_signature: str | None = Header(default=None),
        x_request_id: str | None = Header(default=None),
    ):
        """Provider push notification.

        200 for every handled outcome (including ignored types, unknown
        orders and duplicates), 400 for malformed or unsigned payloads, 503
        when the provider or store is unavailable so the provider redelivers.
        """

        try:
            raw = await request.json()
            event = WebhookEvent.model_validate(raw)
        except (ValueError, ValidationError) as exc:
            logger.warning("invalid webhook payload: %s", exc)
            raise HTTPException(status_code=400, detail="invalid payload") from exc

        try:
            return await ingestion.handle(event, raw, x_signature=x_signature, x_request_id=x_request_id)
        except InvalidSignature as exc:
            raise HTTPException(status_code=400, detail="invalid signature") from exc
        except MalformedWebhook as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except (ProviderUnavailable, ConcurrentUpdateError, SQLAlchemyError) as exc:
            logger.error("webhook deferred for redelivery event_id=%s error=%s", event.id, exc)
            raise HTTPException(status_code=503, detail="temporarily unavailable") from exc
        except ProviderError as exc:
            logger.error("provider error while handling webhook event_id=%s error=%s", event.id, exc)
            raise HTTPException(status_code=502, detail="provider error") from exc

    @app.get("/payments/{payment_id}/status", response_model=PaymentStatusResponse)
    async def payment_status(payment_id: str, order_id: str = Query(min_length=1)):
        """Poll proxy: fetch provider status and reconcile it like a webhook would."""

        try:
            payment = await provider.get_payment(payment_id)
        except ProviderPaymentNotFound as exc:
            raise HTTPException(status_code=404, detail="payment not found") from exc
        except ProviderUnavailable as exc:
            raise HTTPException(status_code=503, detail="provider unavailable") from exc
        except ProviderError as exc:
            raise HTTPException(status_code=502, detail="provider error") from exc

        reference = payment.order_reference
        if reference is not None and reference != order_id:
            logger.warning(
                "poll for payment of another order payment_id=%s order_id=%s reference=%s",
                payment_id,
                order_id,
                reference,
            )
            raise HTTPException(status_code=409, detail="payment belongs to another order")

        claim = PaymentClaim.from_provider(payment, ClaimSource.POLL)
        result = await _reconcile_or_http(order_id, claim)
        return PaymentStatusResponse(
            order_id=order_id,
            payment_id=payment_id,
            provider_status=payment.status,
            outcome=result.outcome,
            applied=result.applied,
            pending=result.pending,
            payment_status=result.final_payment_status,
            lifecycle_status=result.final_lifecycle_status,
        )

    async def _reconcile_or_http(order_id: str, claim: PaymentClaim) -> ReconcileResult:
        try:
            return await reconciler.reconcile(order_id, claim)
        except OrderNotFound as exc:
            raise HTTPException(status_code=404, detail="order not found") from exc
        except (ConcurrentUpdateError, SQLAlchemyError) as exc:
            logger.error("reconcile failed order_id=%s error=%s", order_id, exc)
            raise HTTPException(status_code=503, detail="temporarily unavailable") from exc

    @app.post("/orders/{order_id}/payment/expire", response_model=ReconcileResult)
    async def expire_payment(order_id: str):
        """Client reports its payment screen timed out; expire unless already settled."""

        try:
            return await reconciler.expire(order_id, reason="client_poll_timeout")
        except OrderNotFound as exc:
            raise HTTPException(status_code=404, detail="order not found") from exc
        except (ConcurrentUpdateError, SQLAlchemyError) as exc:
            raise HTTPException(status_code=503, detail="temporarily unavailable") from exc

    @app.get("/orders/{order_id}", response_model=OrderResponse)
    def get_order(order_id: str):
        """Fetch current payment view of one order."""

        snapshot = store.get_order_snapshot(order_id)
        if snapshot is None:
            raise HTTPException(status_code=404, detail="order not found")
        return OrderResponse(
            order_id=snapshot.order_id,
            status=snapshot.status,
            payment_status=snapshot.payment_status,
            external_payment_id=snapshot.external_payment_id,
            state_version=snapshot.state_version,
        )

    @app.get("/metrics")
    def metrics():
        """Prometheus scrape endpoint."""

        return metrics_response()

    @app.get("/health")
    def health():
        """Container health probe endpoint."""

        return {"ok": True}

    return app
