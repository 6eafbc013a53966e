"""Domain models for provider resources kept by the billing integration.

Each resource keeps the provider's JSON object untouched in ``attributes`` and
adds the fields the application owns itself (jurisdiction, default flag,
scheduled end, last update). Provider fields are read through properties.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field


class SubscriptionStatus(str, Enum):
    """Subscription statuses reported by the provider."""

    ALL = "all"
    ACTIVE = "active"
    TRIALING = "trialing"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    CANCELED = "canceled"
    PAUSED = "paused"


USABLE_SUBSCRIPTION_STATUSES = frozenset(
    {SubscriptionStatus.ALL, SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING}
)

# Payment intent statuses that leave a new subscription in a usable state.
SETTLED_PAYMENT_INTENT_STATUSES = frozenset({"processing", "succeeded"})

# Type specific payment method fields kept in the local store.
PAYMENT_METHOD_INFO_FIELDS: Dict[str, Tuple[str, ...]] = {
    "au_becs_debit": ("bsb_number", "last4"),
    "bacs_debit": ("last4", "sort_code"),
    "card": ("brand", "exp_month", "exp_year", "last4"),
    "fpx": ("bank",),
    "ideal": ("bank", "bic"),
    "p24": ("bank",),
    "sepa_debit": ("bank_code", "branch_code", "country", "last4"),
}


def to_datetime(value: object) -> Optional[datetime]:
    """Convert a provider timestamp (unix seconds or ISO string) to UTC."""

    if value is None or value == "" or value == 0:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        if value.isdigit():
            return datetime.fromtimestamp(int(value), tz=timezone.utc)
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise TypeError("Unsupported timestamp value")


def to_timestamp(value: Optional[datetime]) -> Optional[int]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp())


def reference_id(value: object) -> Optional[str]:
    """Return the id of a reference that may be expanded into an object."""

    if isinstance(value, Mapping):
        value = value.get("id")
    return str(value) if value else None


class ProviderResource(BaseModel):
    """Provider object plus locally owned fields."""

    attributes: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)

    @property
    def id(self) -> str:
        return str(self.attributes.get("id") or "")

    @property
    def created_at(self) -> Optional[datetime]:
        return to_datetime(self.attributes.get("created"))


class Customer(ProviderResource):
    jurisdiction: Optional[str] = None

    @property
    def email(self) -> str:
        return str(self.attributes.get("email") or "")

    @property
    def default_payment_method_id(self) -> Optional[str]:
        settings = self.attributes.get("invoice_settings") or {}
        return reference_id(settings.get("default_payment_method"))


class PaymentMethod(ProviderResource):
    is_default: bool = False

    @property
    def customer_id(self) -> Optional[str]:
        return reference_id(self.attributes.get("customer"))

    @property
    def type(self) -> str:
        return str(self.attributes.get("type") or "")

    @property
    def info(self) -> Dict[str, Any]:
        """Type specific details, e.g. brand and last4 for cards."""

        fields = PAYMENT_METHOD_INFO_FIELDS.get(self.type)
        details = self.attributes.get(self.type)
        if not fields or not isinstance(details, Mapping):
            return {}
        return {name: details.get(name) for name in fields}


class Invoice(ProviderResource):
    updated_at: Optional[datetime] = None

    @property
    def customer_id(self) -> Optional[str]:
        return reference_id(self.attributes.get("customer"))

    @property
    def number(self) -> str:
        return str(self.attributes.get("number") or "")

    @property
    def amount_due(self) -> int:
        return int(self.attributes.get("amount_due") or 0)

    @property
    def status(self) -> str:
        return str(self.attributes.get("status") or "")

    @property
    def payment_intent_status(self) -> Optional[str]:
        intent = self.attributes.get("payment_intent")
        if isinstance(intent, Mapping):
            return intent.get("status")
        return None


class Subscription(ProviderResource):
    ends_at: Optional[datetime] = None

    @property
    def customer_id(self) -> Optional[str]:
        return reference_id(self.attributes.get("customer"))

    @property
    def status(self) -> SubscriptionStatus:
        return SubscriptionStatus(self.attributes.get("status") or SubscriptionStatus.INCOMPLETE.value)

    @property
    def started_at(self) -> Optional[datetime]:
        return to_datetime(self.attributes.get("start_date"))

    @property
    def current_period_end(self) -> Optional[datetime]:
        return to_datetime(self.attributes.get("current_period_end"))

    @property
    def latest_invoice(self) -> Optional[Invoice]:
        """The expanded latest invoice, if the provider returned one."""

        invoice = self.attributes.get("latest_invoice")
        if not isinstance(invoice, Mapping):
            return None
        return Invoice(attributes=dict(invoice))


class TaxRate(ProviderResource):
    @property
    def jurisdiction(self) -> str:
        return str(self.attributes.get("jurisdiction") or "")

    @property
    def percentage(self) -> float:
        return float(self.attributes.get("percentage") or 0)


class Price(ProviderResource):
    @property
    def product_id(self) -> str:
        return reference_id(self.attributes.get("product")) or ""

    @property
    def product(self) -> Dict[str, Any]:
        product = self.attributes.get("product")
        return dict(product) if isinstance(product, Mapping) else {"id": product}

    @property
    def unit_amount(self) -> Optional[int]:
        amount = self.attributes.get("unit_amount")
        return int(amount) if amount is not None else None

    @property
    def currency(self) -> str:
        return str(self.attributes.get("currency") or "")


# Entity kinds accepted by the store.
Resource = Union[Customer, PaymentMethod, Subscription, Invoice]


class WebhookEvent(BaseModel):
    """Verified event pushed by the provider."""

    event_id: str
    event_type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(frozen=True)

    @property
    def data_object(self) -> Dict[str, Any]:
        data = self.payload.get("data") or {}
        obj = data.get("object") if isinstance(data, Mapping) else None
        return dict(obj) if isinstance(obj, Mapping) else {}


class PaymentFailure(BaseModel):
    """A new subscription whose first payment did not go through."""

    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    invoice_id: Optional[str] = None
    status: str
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(frozen=True)


def within_grace(subscription: Optional[Subscription], now: Optional[datetime] = None) -> bool:
    """True while a scheduled cancellation has not yet taken effect."""

    if subscription is None or subscription.ends_at is None:
        return False
    now = now or datetime.now(timezone.utc)
    return now < subscription.ends_at


def is_valid(subscription: Optional[Subscription], now: Optional[datetime] = None) -> bool:
    """Whether the subscription currently grants access.

    A canceled subscription stays valid until ``ends_at``; otherwise the
    provider status decides.
    """

    if subscription is None:
        return False
    if subscription.ends_at is not None:
        return within_grace(subscription, now)
    return subscription.status in USABLE_SUBSCRIPTION_STATUSES


__all__ = [
    "Customer",
    "Invoice",
    "PAYMENT_METHOD_INFO_FIELDS",
    "PaymentFailure",
    "PaymentMethod",
    "Price",
    "ProviderResource",
    "Resource",
    "SETTLED_PAYMENT_INTENT_STATUSES",
    "Subscription",
    "SubscriptionStatus",
    "TaxRate",
    "USABLE_SUBSCRIPTION_STATUSES",
    "WebhookEvent",
    "is_valid",
    "reference_id",
    "to_datetime",
    "to_timestamp",
    "within_grace",
]
