"""Signature verification for provider webhook deliveries."""
from __future__ import annotations

import json
from typing import Protocol

import stripe

from ..billing.exceptions import SignatureInvalidError
from ..billing.models import WebhookEvent

DEFAULT_TOLERANCE = 300


class WebhookVerifier(Protocol):
    def verify(self, payload: bytes, signature: str) -> WebhookEvent:
        """Return the verified event or raise :class:`SignatureInvalidError`."""


class StripeSignatureVerifier:
    """Checks the ``Stripe-Signature`` header against the endpoint secret."""

    def __init__(self, secret: str, tolerance: int = DEFAULT_TOLERANCE) -> None:
        self._secret = secret
        self._tolerance = tolerance

    def verify(self, payload: bytes, signature: str) -> WebhookEvent:
        if not self._secret:
            raise SignatureInvalidError("webhook secret is not configured")
        try:
            text = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise SignatureInvalidError("payload is not valid UTF-8") from exc

        try:
            stripe.WebhookSignature.verify_header(text, signature or "", self._secret, self._tolerance)
        except stripe.SignatureVerificationError as exc:
            raise SignatureInvalidError(str(exc)) from exc

        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise SignatureInvalidError("payload is not valid JSON") from exc
        if not isinstance(data, dict) or not data.get("id") or not data.get("type"):
            raise SignatureInvalidError("payload is not an event object")
        return WebhookEvent(event_id=str(data["id"]), event_type=str(data["type"]), payload=data)


__all__ = ["DEFAULT_TOLERANCE", "StripeSignatureVerifier", "WebhookVerifier"]
