"""API schemas for billing endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..billing import Invoice, Subscription, is_valid


class SubscriptionItemRequest(BaseModel):
    price: str = Field(min_length=1)
    quantity: int = Field(default=1, ge=1)


class SubscribeRequest(BaseModel):
    email: str = Field(min_length=3)
    payment_method_id: str = Field(alias="paymentMethodId", min_length=1)
    items: List[SubscriptionItemRequest] = Field(min_length=1)
    jurisdiction: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)

    def subscription_params(self) -> Dict[str, Any]:
        return {"items": [item.model_dump() for item in self.items]}


class CustomerRequest(BaseModel):
    email: str = Field(min_length=3)


class SubscriptionResponse(BaseModel):
    id: str
    customer_id: Optional[str] = Field(alias="customerId", default=None)
    status: str
    started_at: Optional[datetime] = Field(alias="startedAt", default=None)
    ends_at: Optional[datetime] = Field(alias="endsAt", default=None)
    valid: bool

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_subscription(cls, subscription: Subscription) -> "SubscriptionResponse":
        return cls(
            id=subscription.id,
            customer_id=subscription.customer_id,
            status=subscription.status.value,
            started_at=subscription.started_at,
            ends_at=subscription.ends_at,
            valid=is_valid(subscription),
        )


class InvoiceResponse(BaseModel):
    id: str
    number: str
    amount_due: int = Field(alias="amountDue")
    status: str
    created_at: Optional[datetime] = Field(alias="createdAt", default=None)
    updated_at: Optional[datetime] = Field(alias="updatedAt", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_invoice(cls, invoice: Invoice) -> "InvoiceResponse":
        return cls(
            id=invoice.id,
            number=invoice.number,
            amount_due=invoice.amount_due,
            status=invoice.status,
            created_at=invoice.created_at,
            updated_at=invoice.updated_at,
        )


class InvoiceListResponse(BaseModel):
    invoices: List[InvoiceResponse]

    model_config = ConfigDict(populate_by_name=True)
