"""Errors raised by the billing integration."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple

from .models import PaymentFailure, Subscription


class BillingError(Exception):
    """Base class for billing integration failures."""


class TransportError(BillingError):
    """The provider could not be reached or the response could not be read."""


@dataclass(eq=False)
class ProviderError(BillingError):
    """Structured error returned by the provider for a non-2xx response."""

    status: int
    message: str
    type: Optional[str] = None

    def __post_init__(self) -> None:
        super().__init__(f"provider error {self.status}: {self.message}")


class ParamsTypeError(BillingError, TypeError):
    """A request parameter value cannot be form encoded."""


class UnknownResourceError(BillingError, TypeError):
    """A store operation received an entity it does not know how to persist."""


class DuplicateEventError(BillingError):
    """The webhook event id has already been logged."""

    def __init__(self, event_id: str) -> None:
        super().__init__(f"event {event_id} already logged")
        self.event_id = event_id


class SignatureInvalidError(BillingError):
    """A webhook payload failed signature verification."""


class UnknownReferenceError(BillingError, LookupError):
    """No reference entity is loaded for the requested grouping key."""

    def __init__(self, key: str) -> None:
        super().__init__(f"unknown reference key {key!r}")
        self.key = key


class ReferenceLoadError(BillingError):
    """A single reference id could not be fetched during a bulk load."""

    def __init__(self, reference_id: str, cause: BaseException) -> None:
        super().__init__(f"failed to load {reference_id}: {cause}")
        self.reference_id = reference_id
        self.cause = cause


class PaymentFailureError(BillingError):
    """The payment intent of a new subscription did not reach a usable state."""

    def __init__(self, failure: PaymentFailure, subscription: Optional[Subscription] = None) -> None:
        super().__init__(f"payment for invoice {failure.invoice_id} is {failure.status}")
        self.failure = failure
        self.subscription = subscription

    @property
    def invoice_id(self) -> Optional[str]:
        return self.failure.invoice_id

    @property
    def status(self) -> str:
        return self.failure.status


class WorkflowStepError(BillingError):
    """A workflow step failed after earlier steps had already taken effect.

    Nothing is rolled back automatically. ``completed`` names the steps that
    succeeded, in order, and :meth:`compensate` undoes them in reverse when
    the caller decides to.
    """

    def __init__(
        self,
        step: str,
        completed: Sequence[str],
        compensations: Sequence[Tuple[str, Callable[[], None]]],
        cause: BaseException,
    ) -> None:
        super().__init__(f"step {step!r} failed after {list(completed)}: {cause}")
        self.step = step
        self.completed: List[str] = list(completed)
        self.cause = cause
        self._compensations = list(compensations)

    def compensate(self) -> List[str]:
        """Run compensations newest first; returns the names that ran."""

        undone: List[str] = []
        while self._compensations:
            name, action = self._compensations.pop()
            action()
            undone.append(name)
        return undone


__all__ = [
    "BillingError",
    "DuplicateEventError",
    "ParamsTypeError",
    "PaymentFailureError",
    "ProviderError",
    "ReferenceLoadError",
    "SignatureInvalidError",
    "TransportError",
    "UnknownReferenceError",
    "UnknownResourceError",
    "WorkflowStepError",
]
