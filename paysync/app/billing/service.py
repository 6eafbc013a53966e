"""Subscription lifecycle coordinated between the provider and the local store."""
from __future__ import annotations

import logging
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import partial
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from .client import ProviderAPI
from .exceptions import PaymentFailureError, WorkflowStepError
from .models import (
    SETTLED_PAYMENT_INTENT_STATUSES,
    Customer,
    Invoice,
    PaymentFailure,
    PaymentMethod,
    Subscription,
    is_valid,
    within_grace,
)
from .params import Params
from .resources import (
    attach_payment_method,
    cancel_subscription,
    create_customer,
    create_subscription,
    detach_payment_method,
    reactivate_subscription,
    retrieve_invoice,
    retrieve_subscription,
    retrieve_upcoming_invoice,
    update_customer,
)
from .store import BillingStore

logger = logging.getLogger(__name__)

LATEST_PAYMENT_INTENT = "latest_invoice.payment_intent"


class BillingNotifier(Protocol):
    """Dispatches billing related notifications to end users."""

    def notify_payment_failure(self, failure: PaymentFailure) -> None:
        ...


class _Saga:
    """Ordered steps with compensations that only run when the caller asks."""

    def __init__(self, name: str) -> None:
        self.name = name
        self.completed: List[str] = []
        self._compensations: List[Tuple[str, Callable[[], None]]] = []

    def run(
        self,
        step: str,
        action: Callable[[], Any],
        compensation: Optional[Callable[[Any], Any]] = None,
    ) -> Any:
        try:
            result = action()
        except Exception as exc:
            logger.warning("%s: step %s failed after %s: %s", self.name, step, self.completed, exc)
            raise WorkflowStepError(step, self.completed, self._compensations, exc) from exc
        self.completed.append(step)
        if compensation is not None:
            self._compensations.append((step, partial(compensation, result)))
        logger.debug("%s: step %s done", self.name, step)
        return result


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


_dataclass_kwargs = {"slots": True} if sys.version_info >= (3, 10) else {}


@dataclass(**_dataclass_kwargs)
class SubscriptionService:
    """Drives a customer's subscription through subscribe, cancel and reactivate."""

    store: BillingStore
    client: ProviderAPI
    notifier: Optional[BillingNotifier] = None
    clock: Callable[[], datetime] = field(default=_utcnow, repr=False)

    def find_customer(self, email: str) -> Optional[Customer]:
        return self.store.lookup_customer(email)

    def customer(self, email: str, jurisdiction: Optional[str] = None) -> Customer:
        """Return the stored customer for ``email``, creating it remotely if needed."""

        existing = self.store.lookup_customer(email)
        if existing is not None:
            if jurisdiction and existing.jurisdiction != jurisdiction:
                existing = existing.model_copy(update={"jurisdiction": jurisdiction})
                self.store.put(existing)
                logger.info("Customer %s moved to jurisdiction %s", existing.id, jurisdiction)
            return existing

        created = create_customer(self.client, {"email": email}, jurisdiction=jurisdiction)
        self.store.put(created)
        logger.info("Created customer %s", created.id)
        return created

    def _restore_default(self, new_default: PaymentMethod, previous: Optional[PaymentMethod]) -> None:
        self.store.remove(new_default)
        if previous is not None:
            self.store.put(previous)

    def _set_remote_default(self, customer: Customer, payment_method_id: str) -> Customer:
        return update_customer(
            self.client,
            customer,
            {"invoice_settings": {"default_payment_method": payment_method_id}},
        )

    def _make_default(self, customer: Customer, payment_method: PaymentMethod) -> PaymentMethod:
        previous = self.store.default_payment_method(customer)
        saga = _Saga("subscribe")

        attached = saga.run(
            "attach_payment_method",
            lambda: attach_payment_method(self.client, payment_method, customer),
            lambda pm: detach_payment_method(self.client, pm),
        )
        saga.run(
            "set_remote_default",
            lambda: self._set_remote_default(customer, attached.id),
            lambda _: self._set_remote_default(customer, previous.id if previous else ""),
        )
        default = attached.model_copy(update={"is_default": True})
        saga.run(
            "store_default",
            lambda: self.store.put(default),
            lambda _: self._restore_default(default, previous),
        )
        return default

    def subscribe(self, customer: Customer, payment_method: PaymentMethod, params: Params) -> Subscription:
        """Make ``payment_method`` the default and start a subscription.

        An existing valid subscription is returned unchanged. A new
        subscription is only stored once its first payment is processing or
        has succeeded; otherwise :class:`PaymentFailureError` is raised and
        nothing about the subscription is persisted.
        """

        default = self._make_default(customer, payment_method)
        logger.info("Payment method %s is now default for %s", default.id, customer.id)

        existing = self.store.subscription(customer)
        if is_valid(existing, self.clock()):
            logger.info("Customer %s already has subscription %s", customer.id, existing.id)
            return existing

        request: Dict[str, Any] = dict(params)
        expand = request.get("expand") or []
        expand = [expand] if isinstance(expand, str) else list(expand)
        if LATEST_PAYMENT_INTENT not in expand:
            expand.insert(0, LATEST_PAYMENT_INTENT)
        request["expand"] = expand
        request["customer"] = customer.id

        subscription = create_subscription(self.client, request)
        invoice = subscription.latest_invoice
        status = invoice.payment_intent_status if invoice is not None else None
        if status not in SETTLED_PAYMENT_INTENT_STATUSES:
            failure = PaymentFailure(
                customer_id=customer.id,
                subscription_id=subscription.id or None,
                invoice_id=invoice.id if invoice is not None else None,
                status=status or "missing",
            )
            logger.warning(
                "Payment for subscription %s of %s is %s", subscription.id, customer.id, failure.status
            )
            if self.notifier is not None:
                self.notifier.notify_payment_failure(failure)
            raise PaymentFailureError(failure, subscription)

        self.store.put(subscription)
        self.store.put(invoice)
        logger.info("Customer %s subscribed with %s", customer.id, subscription.id)
        return subscription

    def resubscribe(self, customer: Customer) -> Optional[Subscription]:
        """Undo a scheduled cancellation; ``None`` when there is nothing to undo."""

        subscription = self.store.subscription(customer)
        if subscription is None or subscription.ends_at is None:
            return None
        reactivated = reactivate_subscription(self.client, subscription)
        self.store.put(reactivated)
        logger.info("Subscription %s reactivated", reactivated.id)
        return reactivated

    def unsubscribe(self, customer: Customer) -> Optional[Subscription]:
        """Schedule cancellation at the end of the current period.

        Returns ``None`` without a valid subscription, and the stored
        subscription untouched when cancellation is already scheduled.
        """

        subscription = self.store.subscription(customer)
        now = self.clock()
        if subscription is None or not is_valid(subscription, now):
            return None
        if within_grace(subscription, now):
            return subscription
        canceled = cancel_subscription(self.client, subscription)
        self.store.put(canceled)
        logger.info("Subscription %s ends at %s", canceled.id, canceled.ends_at)
        return canceled

    def invoices(self, customer: Customer) -> List[Invoice]:
        return self.store.invoices(customer)

    def payment_methods(self, customer: Customer) -> List[PaymentMethod]:
        return self.store.payment_methods(customer)

    def default_payment_method(self, customer: Customer) -> Optional[PaymentMethod]:
        return self.store.default_payment_method(customer)

    def upcoming_invoice(self, customer: Customer) -> Invoice:
        return retrieve_upcoming_invoice(self.client, customer)

    def sync_invoice(self, invoice_id: str) -> Invoice:
        """Refresh a stored invoice from the provider."""

        invoice = retrieve_invoice(self.client, invoice_id)
        self.store.put(invoice)
        logger.info("Invoice %s synced with status %s", invoice.id, invoice.status)
        return invoice

    def sync_subscription(self, subscription_id: str) -> Subscription:
        """Refresh a stored subscription; ``ends_at`` follows ``cancel_at_period_end``."""

        subscription = retrieve_subscription(self.client, subscription_id)
        ends_at = subscription.current_period_end if subscription.attributes.get("cancel_at_period_end") else None
        subscription = subscription.model_copy(update={"ends_at": ends_at})
        self.store.put(subscription)
        logger.info("Subscription %s synced with status %s", subscription.id, subscription.status.value)
        return subscription


__all__ = [
    "BillingNotifier",
    "SubscriptionService",
    "is_valid",
    "within_grace",
]
