"""Provider webhook verification and dispatch."""

from .dispatcher import DispatchResult, EventHandler, WebhookDispatcher
from .verification import DEFAULT_TOLERANCE, StripeSignatureVerifier, WebhookVerifier

__all__ = [
    "DEFAULT_TOLERANCE",
    "DispatchResult",
    "EventHandler",
    "StripeSignatureVerifier",
    "WebhookDispatcher",
    "WebhookVerifier",
]
