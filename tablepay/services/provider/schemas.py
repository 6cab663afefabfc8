"""Mercado Pago payment resource as seen by reconciliation."""

from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ProviderPayment(BaseModel):
    """Authoritative payment state fetched from the provider by id."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str
    status: str
    status_detail: str | None = None
    amount: Decimal | None = Field(default=None, alias="transaction_amount")
    payment_type_id: str | None = None
    external_reference: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    date_approved: str | None = None

    @field_validator("id", "external_reference", mode="before")
    @classmethod
    def _coerce_str(cls, value):
        # The provider returns numeric ids.
        if value is None:
            return None
        return str(value)

    @field_validator("metadata", mode="before")
    @classmethod
    def _metadata_dict(cls, value):
        return value or {}

    @property
    def order_reference(self) -> str | None:
        """Order id stamped on the payment at creation time."""

        order_id = self.metadata.get("order_id") or self.external_reference
        return str(order_id) if order_id else None
