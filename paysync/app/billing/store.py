"""Storage contract for provider resources and an in-memory implementation."""
from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Dict, List, Optional, Protocol, Set

from .exceptions import DuplicateEventError, UnknownResourceError
from .models import Customer, Invoice, PaymentMethod, Resource, Subscription


class BillingStore(Protocol):
    """Persistence operations required by the billing service and webhooks.

    Implementations must serialize concurrent writes to one customer's
    payment methods so that at most one of them is the default.
    """

    def lookup_customer(self, email: str) -> Optional[Customer]:
        ...

    def lookup_invoice(self, customer: Customer, number: str) -> Optional[Invoice]:
        ...

    def subscription(self, customer: Customer) -> Optional[Subscription]:
        """Most recently started subscription of the customer."""

    def default_payment_method(self, customer: Customer) -> Optional[PaymentMethod]:
        ...

    def invoices(self, customer: Customer) -> List[Invoice]:
        """Invoices of the customer, newest first."""

    def payment_methods(self, customer: Customer) -> List[PaymentMethod]:
        ...

    def put(self, resource: Resource) -> None:
        """Insert or update ``resource`` by id."""

    def remove(self, resource: Resource) -> None:
        """Delete ``resource``; deleting something absent is not an error."""

    def log_event(self, event_id: str) -> None:
        """Record a webhook event id, raising :class:`DuplicateEventError` if seen."""


def _sort_key(value: Optional[datetime]) -> datetime:
    return value or datetime.min.replace(tzinfo=timezone.utc)


class InMemoryBillingStore:
    """Thread-safe store kept in process memory, for tests and local development."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self.customers: Dict[str, Customer] = {}
        self.invoices_by_id: Dict[str, Invoice] = {}
        self.payment_methods_by_id: Dict[str, PaymentMethod] = {}
        self.subscriptions_by_id: Dict[str, Subscription] = {}
        self.events: Set[str] = set()

    def lookup_customer(self, email: str) -> Optional[Customer]:
        with self._lock:
            for customer in self.customers.values():
                if customer.email == email:
                    return customer
        return None

    def lookup_invoice(self, customer: Customer, number: str) -> Optional[Invoice]:
        with self._lock:
            for invoice in self.invoices_by_id.values():
                if invoice.customer_id == customer.id and invoice.number == number:
                    return invoice
        return None

    def subscription(self, customer: Customer) -> Optional[Subscription]:
        with self._lock:
            owned = [sub for sub in self.subscriptions_by_id.values() if sub.customer_id == customer.id]
        if not owned:
            return None
        return max(owned, key=lambda sub: _sort_key(sub.started_at))

    def default_payment_method(self, customer: Customer) -> Optional[PaymentMethod]:
        for payment_method in self.payment_methods(customer):
            if payment_method.is_default:
                return payment_method
        return None

    def invoices(self, customer: Customer) -> List[Invoice]:
        with self._lock:
            owned = [inv for inv in self.invoices_by_id.values() if inv.customer_id == customer.id]
        return sorted(owned, key=lambda inv: _sort_key(inv.created_at), reverse=True)

    def payment_methods(self, customer: Customer) -> List[PaymentMethod]:
        with self._lock:
            owned = [pm for pm in self.payment_methods_by_id.values() if pm.customer_id == customer.id]
        return sorted(owned, key=lambda pm: _sort_key(pm.created_at), reverse=True)

    def put(self, resource: Resource) -> None:
        with self._lock:
            if isinstance(resource, Customer):
                self.customers[resource.id] = resource
            elif isinstance(resource, Invoice):
                self._put_invoice(resource)
            elif isinstance(resource, PaymentMethod):
                self._put_payment_method(resource)
            elif isinstance(resource, Subscription):
                self.subscriptions_by_id[resource.id] = resource
            else:
                raise UnknownResourceError(f"cannot store {type(resource).__name__}")

    def _put_invoice(self, invoice: Invoice) -> None:
        existing = self.invoices_by_id.get(invoice.id)
        if existing is None:
            updated_at = invoice.updated_at or invoice.created_at
        else:
            updated_at = datetime.now(timezone.utc)
        self.invoices_by_id[invoice.id] = invoice.model_copy(update={"updated_at": updated_at})

    def _put_payment_method(self, payment_method: PaymentMethod) -> None:
        if payment_method.is_default:
            for pm_id, other in list(self.payment_methods_by_id.items()):
                if other.customer_id == payment_method.customer_id and other.is_default:
                    self.payment_methods_by_id[pm_id] = other.model_copy(update={"is_default": False})
        self.payment_methods_by_id[payment_method.id] = payment_method

    def remove(self, resource: Resource) -> None:
        with self._lock:
            if isinstance(resource, Customer):
                self.customers.pop(resource.id, None)
            elif isinstance(resource, Invoice):
                self.invoices_by_id.pop(resource.id, None)
            elif isinstance(resource, PaymentMethod):
                self.payment_methods_by_id.pop(resource.id, None)
            elif isinstance(resource, Subscription):
                self.subscriptions_by_id.pop(resource.id, None)
            else:
                raise UnknownResourceError(f"cannot remove {type(resource).__name__}")

    def log_event(self, event_id: str) -> None:
        with self._lock:
            if event_id in self.events:
                raise DuplicateEventError(event_id)
            self.events.add(event_id)


__all__ = ["BillingStore", "InMemoryBillingStore"]
