"""Payment provider integration: resources, storage and subscription lifecycle."""

from .client import ProviderAPI, ProviderClient
from .exceptions import (
    BillingError,
    DuplicateEventError,
    ParamsTypeError,
    PaymentFailureError,
    ProviderError,
    ReferenceLoadError,
    SignatureInvalidError,
    TransportError,
    UnknownReferenceError,
    UnknownResourceError,
    WorkflowStepError,
)
from .models import (
    Customer,
    Invoice,
    PaymentFailure,
    PaymentMethod,
    Price,
    Resource,
    Subscription,
    SubscriptionStatus,
    TaxRate,
    WebhookEvent,
    is_valid,
    within_grace,
)
from .params import Params, encode_params
from .repository import PostgresBillingStore
from .service import BillingNotifier, SubscriptionService
from .store import BillingStore, InMemoryBillingStore

__all__ = [
    "BillingError",
    "BillingNotifier",
    "BillingStore",
    "Customer",
    "DuplicateEventError",
    "InMemoryBillingStore",
    "Invoice",
    "Params",
    "ParamsTypeError",
    "PaymentFailure",
    "PaymentFailureError",
    "PaymentMethod",
    "PostgresBillingStore",
    "Price",
    "ProviderAPI",
    "ProviderClient",
    "ProviderError",
    "ReferenceLoadError",
    "Resource",
    "SignatureInvalidError",
    "Subscription",
    "SubscriptionService",
    "SubscriptionStatus",
    "TaxRate",
    "TransportError",
    "UnknownReferenceError",
    "UnknownResourceError",
    "WebhookEvent",
    "WorkflowStepError",
    "encode_params",
    "is_valid",
    "within_grace",
]
