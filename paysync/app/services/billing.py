"""Application wiring for the billing integration."""
from __future__ import annotations

import logging
from functools import lru_cache, partial
from typing import Optional

from ...config import ProviderConfig, load_provider_config
from ..billing import (
    BillingNotifier,
    PaymentFailure,
    PostgresBillingStore,
    Price,
    ProviderClient,
    ReferenceLoadError,
    SubscriptionService,
    TaxRate,
)
from ..billing.repository import connect_factory
from ..billing.resources import retrieve_price, retrieve_tax_rate
from ..billing.models import WebhookEvent
from ..reference import ReferenceTable
from ..reference.loader import price_product, tax_rate_jurisdiction
from ..webhooks import StripeSignatureVerifier, WebhookDispatcher


logger = logging.getLogger("billing")

INVOICE_EVENTS = (
    "invoice.created",
    "invoice.finalized",
    "invoice.paid",
    "invoice.payment_failed",
    "invoice.payment_succeeded",
    "invoice.updated",
    "invoice.voided",
)

SUBSCRIPTION_EVENTS = (
    "customer.subscription.deleted",
    "customer.subscription.updated",
)


class LoggingBillingNotifier(BillingNotifier):
    """Notifier that records billing notifications to the application logger."""

    def notify_payment_failure(self, failure: PaymentFailure) -> None:
        logger.warning(
            "Payment failure for customer %s subscription=%s invoice=%s status=%s",
            failure.customer_id,
            failure.subscription_id,
            failure.invoice_id,
            failure.status,
        )


@lru_cache(maxsize=1)
def get_provider_config() -> ProviderConfig:
    return load_provider_config()


@lru_cache(maxsize=1)
def get_provider_client() -> ProviderClient:
    return ProviderClient(get_provider_config())


@lru_cache(maxsize=1)
def get_billing_store() -> PostgresBillingStore:
    config = get_provider_config()
    return PostgresBillingStore(connect=connect_factory(config.database.connect_kwargs()))


@lru_cache(maxsize=1)
def get_subscription_service() -> SubscriptionService:
    return SubscriptionService(
        store=get_billing_store(),
        client=get_provider_client(),
        notifier=LoggingBillingNotifier(),
    )


@lru_cache(maxsize=1)
def get_tax_rates() -> ReferenceTable[TaxRate]:
    return ReferenceTable(tax_rate_jurisdiction, headroom=get_provider_config().reference_load_headroom)


@lru_cache(maxsize=1)
def get_prices() -> ReferenceTable[Price]:
    return ReferenceTable(price_product, headroom=get_provider_config().reference_load_headroom)


def _log_reference_error(error: ReferenceLoadError) -> None:
    logger.error("Reference %s unavailable: %s", error.reference_id, error.cause)


def load_reference_data(config: Optional[ProviderConfig] = None) -> None:
    """Load the tax rate and price files named in the configuration, if any."""

    config = config or get_provider_config()
    client = get_provider_client()
    if config.tax_rates_file:
        with open(config.tax_rates_file, encoding="utf-8") as handle:
            added = get_tax_rates().reload(handle, partial(retrieve_tax_rate, client), _log_reference_error)
        logger.info("Loaded %d tax rates from %s", added, config.tax_rates_file)
    if config.prices_file:
        with open(config.prices_file, encoding="utf-8") as handle:
            added = get_prices().reload(handle, partial(retrieve_price, client), _log_reference_error)
        logger.info("Loaded %d prices from %s", added, config.prices_file)


def register_default_handlers(dispatcher: WebhookDispatcher, service: SubscriptionService) -> None:
    """Keep stored invoices and subscriptions in step with provider events."""

    def sync_invoice(event: WebhookEvent) -> None:
        invoice_id = event.data_object.get("id")
        if invoice_id:
            service.sync_invoice(str(invoice_id))

    def sync_subscription(event: WebhookEvent) -> None:
        subscription_id = event.data_object.get("id")
        if subscription_id:
            service.sync_subscription(str(subscription_id))

    for event_type in INVOICE_EVENTS:
        dispatcher.handle(event_type, sync_invoice)
    for event_type in SUBSCRIPTION_EVENTS:
        dispatcher.handle(event_type, sync_subscription)


def _log_webhook_error(exc: Exception) -> None:
    logger.error("Webhook delivery failed: %s", exc)


@lru_cache(maxsize=1)
def get_webhook_dispatcher() -> WebhookDispatcher:
    config = get_provider_config()
    dispatcher = WebhookDispatcher(
        StripeSignatureVerifier(config.webhook_secret, config.webhook_tolerance),
        store=get_billing_store(),
        error_handler=_log_webhook_error,
    )
    register_default_handlers(dispatcher, get_subscription_service())
    return dispatcher


__all__ = [
    "LoggingBillingNotifier",
    "get_billing_store",
    "get_prices",
    "get_provider_client",
    "get_provider_config",
    "get_subscription_service",
    "get_tax_rates",
    "get_webhook_dispatcher",
    "load_reference_data",
    "register_default_handlers",
]
