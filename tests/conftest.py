"""Shared fixtures: in-memory SQLite order store, in-process change feed,
fake provider and a FastAPI test client wired to them."""

from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool

from tablepay.common.db import Base, build_engine, build_session_factory
from tablepay.services.orders import models  # noqa: F401  registers tables
from tablepay.services.orders.changefeed import LocalChangeFeed
from tablepay.services.orders.store import OrderStore
from tablepay.services.provider.client import ProviderPaymentNotFound
from tablepay.services.provider.schemas import ProviderPayment
from tablepay.services.reconciliation.api import create_app
from tablepay.services.reconciliation.service import ReconciliationService
from tablepay.services.reconciliation.webhook import WebhookAuditLog, WebhookIngestion


class FakeProvider:
    """Provider double: payments by id, optional error to raise per id."""

    def __init__(self) -> None:
        self.payments: dict[str, ProviderPayment] = {}
        self.errors: dict[str, Exception] = {}
        self.calls: list[str] = []

    def set_payment(self, payment_id: str, status: str, order_id: str | None, amount: str = "25.00") -> None:
        self.payments[payment_id] = ProviderPayment(
            id=payment_id,
            status=status,
            transaction_amount=Decimal(amount),
            payment_type_id="credit_card",
            external_reference=order_id,
            metadata={"order_id": order_id} if order_id else {},
        )

    async def get_payment(self, payment_id: str) -> ProviderPayment:
        self.calls.append(payment_id)
        if payment_id in self.errors:
            raise self.errors[payment_id]
        if payment_id not in self.payments:
            raise ProviderPaymentNotFound(f"payment {payment_id} not found", status_code=404)
        return self.payments[payment_id]

    async def close(self) -> None:
        pass


@pytest.fixture
def session_factory():
    engine = build_engine("sqlite://", poolclass=StaticPool)
    Base.metadata.create_all(engine)
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture
def feed():
    return LocalChangeFeed()


@pytest.fixture
def store(session_factory, feed):
    return OrderStore(session_factory, feed)


@pytest.fixture
def reconciler(store):
    return ReconciliationService(store, confirmed_order_status="in_preparation")


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def ingestion(session_factory, provider, reconciler):
    return WebhookIngestion(provider, reconciler, WebhookAuditLog(session_factory))


@pytest.fixture
def order(store):
    return store.create_order(Decimal("25.00"))


@pytest.fixture
def client(store, reconciler, provider, ingestion):
    app = create_app(store, reconciler, provider, ingestion)
    with TestClient(app) as test_client:
        yield test_client
