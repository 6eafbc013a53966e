"""Remote operations on provider resources.

Each helper issues one provider call (two for prices) and wraps the JSON
reply in the matching domain model. Locally owned fields are carried over
from the model passed in, so an update never loses a customer's
jurisdiction or a subscription's scheduled end.
"""
from __future__ import annotations

from typing import Any, Dict, Optional

from .client import ProviderAPI
from .models import Customer, Invoice, PaymentMethod, Price, Subscription, TaxRate
from .params import Params

CUSTOMERS = "/v1/customers"
PAYMENT_METHODS = "/v1/payment_methods"
SUBSCRIPTIONS = "/v1/subscriptions"
INVOICES = "/v1/invoices"
TAX_RATES = "/v1/tax_rates"
PRICES = "/v1/prices"
PRODUCTS = "/v1/products"


def endpoint(base: str, resource_id: str = "", *parts: str) -> str:
    path = base
    if resource_id:
        path += "/" + resource_id
    if parts:
        path += "/" + "/".join(parts)
    return path


def create_customer(client: ProviderAPI, params: Params, *, jurisdiction: Optional[str] = None) -> Customer:
    return Customer(attributes=client.post(CUSTOMERS, params), jurisdiction=jurisdiction)


def update_customer(client: ProviderAPI, customer: Customer, params: Params) -> Customer:
    return customer.model_copy(update={"attributes": client.post(endpoint(CUSTOMERS, customer.id), params)})


def attach_payment_method(client: ProviderAPI, payment_method: PaymentMethod, customer: Customer) -> PaymentMethod:
    attributes = client.post(endpoint(PAYMENT_METHODS, payment_method.id, "attach"), {"customer": customer.id})
    return payment_method.model_copy(update={"attributes": attributes})


def detach_payment_method(client: ProviderAPI, payment_method: PaymentMethod) -> PaymentMethod:
    attributes = client.post(endpoint(PAYMENT_METHODS, payment_method.id, "detach"))
    return payment_method.model_copy(update={"attributes": attributes, "is_default": False})


def create_subscription(client: ProviderAPI, params: Params) -> Subscription:
    return Subscription(attributes=client.post(SUBSCRIPTIONS, params))


def retrieve_subscription(client: ProviderAPI, subscription_id: str) -> Subscription:
    return Subscription(attributes=client.get(endpoint(SUBSCRIPTIONS, subscription_id)))


def update_subscription(client: ProviderAPI, subscription: Subscription, params: Params) -> Subscription:
    attributes = client.post(endpoint(SUBSCRIPTIONS, subscription.id), params)
    return subscription.model_copy(update={"attributes": attributes})


def cancel_subscription(client: ProviderAPI, subscription: Subscription) -> Subscription:
    """Cancel at the end of the current period; ``ends_at`` becomes the period end."""

    updated = update_subscription(client, subscription, {"cancel_at_period_end": True})
    return updated.model_copy(update={"ends_at": updated.current_period_end})


def reactivate_subscription(client: ProviderAPI, subscription: Subscription) -> Subscription:
    """Undo a scheduled cancellation; ``ends_at`` is cleared."""

    updated = update_subscription(client, subscription, {"cancel_at_period_end": False})
    return updated.model_copy(update={"ends_at": None})


def retrieve_invoice(client: ProviderAPI, invoice_id: str) -> Invoice:
    return Invoice(attributes=client.get(endpoint(INVOICES, invoice_id)))


def retrieve_upcoming_invoice(client: ProviderAPI, customer: Customer) -> Invoice:
    return Invoice(attributes=client.get(endpoint(INVOICES, "upcoming"), {"customer": customer.id}))


def retrieve_tax_rate(client: ProviderAPI, tax_rate_id: str) -> TaxRate:
    return TaxRate(attributes=client.get(endpoint(TAX_RATES, tax_rate_id)))


def retrieve_price(client: ProviderAPI, price_id: str) -> Price:
    """Fetch a price and embed its product object."""

    attributes: Dict[str, Any] = client.get(endpoint(PRICES, price_id))
    product = attributes.get("product")
    if isinstance(product, str) and product:
        attributes["product"] = client.get(endpoint(PRODUCTS, product))
    return Price(attributes=attributes)


__all__ = [
    "attach_payment_method",
    "cancel_subscription",
    "create_customer",
    "create_subscription",
    "detach_payment_method",
    "endpoint",
    "reactivate_subscription",
    "retrieve_invoice",
    "retrieve_price",
    "retrieve_subscription",
    "retrieve_tax_rate",
    "retrieve_upcoming_invoice",
    "update_customer",
    "update_subscription",
]
