"""Claim/result value objects and HTTP schemas for reconciliation."""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field, field_validator

from tablepay.common.state_machine import is_terminal_payment
from tablepay.services.provider.schemas import ProviderPayment


class ClaimSource(str, Enum):
    WEBHOOK = "webhook"
    POLL = "poll"


class ReconcileOutcome(str, Enum):
    APPLIED = "applied"
    ALREADY_SETTLED = "already_settled"
    PENDING = "pending"
    MISMATCHED_PAYMENT_ID = "mismatched_payment_id"


class PaymentClaim(BaseModel):
    """Unverified assertion that a payment reached some provider status."""

    external_payment_id: str = Field(min_length=1)
    provider_status: str
    amount: Decimal | None = None
    observed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    source: ClaimSource
    payment_method: str | None = None
    event_id: str | None = None

    @classmethod
    def from_provider(
        cls, payment: ProviderPayment, source: ClaimSource, event_id: str | None = None
    ) -> "PaymentClaim":
        return cls(
            external_payment_id=payment.id,
            provider_status=payment.status,
            amount=payment.amount,
            source=source,
            payment_method=payment.payment_type_id,
            event_id=event_id,
        )


class ReconcileResult(BaseModel):
    """What reconciliation did with one claim and where the order ended up."""

    order_id: str
    outcome: ReconcileOutcome
    applied: bool
    pending: bool
    final_payment_status: str
    final_lifecycle_status: str

    @property
    def terminal(self) -> bool:
        return is_terminal_payment(self.final_payment_status)

    @property
    def confirmed(self) -> bool:
        return self.final_payment_status == "confirmed"


class PaymentStatusResponse(BaseModel):
    """Returned by the poll status proxy."""

    order_id: str
    payment_id: str
    provider_status: str | None
    outcome: ReconcileOutcome
    applied: bool
    pending: bool
    payment_status: str
    lifecycle_status: str

    def to_result(self) -> ReconcileResult:
        return ReconcileResult(
            order_id=self.order_id,
            outcome=self.outcome,
            applied=self.applied,
            pending=self.pending,
            final_payment_status=self.payment_status,
            final_lifecycle_status=self.lifecycle_status,
        )


class OrderResponse(BaseModel):
    """Current payment view of one order."""

    order_id: str
    status: str
    payment_status: str
    external_payment_id: str | None
    state_version: int


class WebhookEvent(BaseModel):
    """Provider notification body; only `type == "payment"` is processed."""

    id: str | None = None
    type: str
    action: str | None = None
    data: dict | None = None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value):
        return None if value is None else str(value)

    @property
    def payment_id(self) -> str | None:
        if not self.data or self.data.get("id") in (None, ""):
            return None
        return str(self.data["id"])


class WebhookResponse(BaseModel):
    success: bool = True
    outcome: str
    order_id: str | None = None
    payment_status: str | None = None
    lifecycle_status: str | None = None
