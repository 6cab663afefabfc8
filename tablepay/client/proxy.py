"""HTTP client for the reconciliation service's client-facing routes."""

import httpx

from tablepay.client.polling import PollCheckError
from tablepay.common.config import settings
from tablepay.common.logging import trace_id_ctx
from tablepay.services.reconciliation.schemas import OrderResponse, PaymentStatusResponse, ReconcileResult

# Retrying cannot fix these: unknown payment/order or a payment of another order.
PERMANENT_STATUS_CODES = {400, 404, 409, 422}


class ProxyStatusSource:
    """Talks to the status proxy instead of the provider.

    The provider token never leaves the server; every status the client sees
    has already been reconciled into the order store.
    """

    def __init__(
        self,
        base_url: str | None = None,
        *,
        timeout_seconds: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = (base_url or settings.api_base_url).rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout_seconds,
                transport=self._transport,
            )
        return self._client

    def _headers(self) -> dict[str, str]:
        trace_id = trace_id_ctx.get()
        return {"x-request-id": trace_id} if trace_id else {}

    async def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            resp = await self._http().request(method, path, headers=self._headers(), **kwargs)
        except httpx.TransportError as exc:
            raise PollCheckError(f"{method} {path} failed: {exc}") from exc
        if resp.status_code >= 400:
            raise PollCheckError(
                f"{method} {path} returned {resp.status_code}: {resp.text}",
                retryable=resp.status_code not in PERMANENT_STATUS_CODES,
            )
        return resp

    async def _fetch(self, model, method: str, path: str, **kwargs):
        resp = await self._send(method, path, **kwargs)
        try:
            return model.model_validate(resp.json())
        except ValueError as exc:
            # A proxy or captive portal answering 200 with HTML is an outage too.
            raise PollCheckError(f"{method} {path} returned an unreadable body: {exc}") from exc

    async def check(self, payment_id: str, order_id: str) -> PaymentStatusResponse:
        return await self._fetch(
            PaymentStatusResponse, "GET", f"/payments/{payment_id}/status", params={"order_id": order_id}
        )

    async def expire(self, order_id: str) -> ReconcileResult:
        return await self._fetch(ReconcileResult, "POST", f"/orders/{order_id}/payment/expire")

    async def order(self, order_id: str) -> OrderResponse:
        return await self._fetch(OrderResponse, "GET", f"/orders/{order_id}")

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
