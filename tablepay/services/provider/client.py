"""Mercado Pago status client with retries for transient failures."""

import asyncio

import httpx

from tablepay.common.config import settings
from tablepay.common.logging import logger
from tablepay.common.metrics import provider_requests_total, retries_total
from tablepay.services.provider.schemas import ProviderPayment


class ProviderError(Exception):
    """Provider rejected the request in a way retrying will not fix."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ProviderUnavailable(ProviderError):
    """Provider unreachable or failing; safe to retry later."""


class ProviderPaymentNotFound(ProviderError):
    """No payment with this id exists at the provider."""


def _is_transient(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


class MercadoPagoClient:
    """Fetches canonical payment status by id. Holds no per-payment state."""

    def __init__(
        self,
        base_url: str | None = None,
        access_token: str | None = None,
        *,
        max_retries: int | None = None,
        backoff_seconds: float | None = None,
        timeout_seconds: float | None = None,
        mock_payments: bool | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = (base_url or settings.provider_url).rstrip("/")
        self.access_token = access_token if access_token is not None else settings.mercadopago_access_token
        self.max_retries = max_retries if max_retries is not None else settings.provider_max_retries
        self.backoff_seconds = backoff_seconds if backoff_seconds is not None else settings.provider_backoff_seconds
        self.timeout_seconds = timeout_seconds or settings.provider_timeout_seconds
        self.mock_payments = mock_payments if mock_payments is not None else settings.provider_mock_payments
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout_seconds,
                transport=self._transport,
                headers={"Authorization": f"Bearer {self.access_token}"},
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def get_payment(self, payment_id: str) -> ProviderPayment:
        """Return the provider's current view of `payment_id`."""

        if self.mock_payments and payment_id.startswith("mock_"):
            return ProviderPayment(id=payment_id, status="approved", status_detail="accredited")

        last_error = "unknown"
        for attempt in range(1, self.max_retries + 1):
            try:
                resp = await self._http().get(f"/v1/payments/{payment_id}")
            except httpx.TransportError as exc:
                last_error = f"{type(exc).__name__}: {exc}"
                provider_requests_total.labels(status_code="transport_error").inc()
            else:
                provider_requests_total.labels(status_code=str(resp.status_code)).inc()
                if resp.status_code == 200:
                    return ProviderPayment.model_validate(resp.json())
                if resp.status_code == 404:
                    raise ProviderPaymentNotFound(f"payment {payment_id} not found", status_code=404)
                if not _is_transient(resp.status_code):
                    raise ProviderError(
                        f"provider rejected status fetch for {payment_id}: {resp.text}",
                        status_code=resp.status_code,
                    )
                last_error = f"HTTP {resp.status_code}"

            if attempt == self.max_retries:
                break
            retries_total.labels(service=settings.service_name, dependency="mercadopago").inc()
            # Exponential backoff: base, 2*base, 4*base...
            backoff_seconds = self.backoff_seconds * 2 ** (attempt - 1)
            logger.warning(
                "provider fetch failed payment_id=%s attempt=%s error=%s backoff_s=%s",
                payment_id,
                attempt,
                last_error,
                backoff_seconds,
            )
            await asyncio.sleep(backoff_seconds)

        raise ProviderUnavailable(f"provider unavailable for {payment_id}: {last_error}")
