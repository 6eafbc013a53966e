"""Routing of verified provider events to registered handlers."""
from __future__ import annotations

import logging
import threading
from enum import Enum
from types import MappingProxyType
from typing import Callable, Mapping, Optional

from ..billing.exceptions import DuplicateEventError, SignatureInvalidError
from ..billing.models import WebhookEvent
from ..billing.store import BillingStore
from .verification import WebhookVerifier

logger = logging.getLogger(__name__)

EventHandler = Callable[[WebhookEvent], None]


class DispatchResult(str, Enum):
    DISPATCHED = "dispatched"
    NO_HANDLER = "no_handler"
    DUPLICATE = "duplicate"
    SIGNATURE_INVALID = "signature_invalid"
    STORE_FAILURE = "store_failure"
    UNREADABLE = "unreadable"

    @property
    def status_code(self) -> int:
        return _STATUS_CODES[self]


_STATUS_CODES = {
    DispatchResult.DISPATCHED: 200,
    DispatchResult.NO_HANDLER: 200,
    DispatchResult.DUPLICATE: 202,
    DispatchResult.SIGNATURE_INVALID: 400,
    DispatchResult.STORE_FAILURE: 500,
    DispatchResult.UNREADABLE: 503,
}


class WebhookDispatcher:
    """Verifies, deduplicates and routes webhook deliveries by event type.

    Handlers may be registered at any time, including while deliveries are
    being dispatched. Each event id is logged before its handler runs, so a
    redelivered event is acknowledged as a duplicate and never handled twice.
    Exceptions raised by a handler propagate to the caller.
    """

    def __init__(
        self,
        verifier: WebhookVerifier,
        store: Optional[BillingStore] = None,
        error_handler: Optional[Callable[[Exception], None]] = None,
    ) -> None:
        self._verifier = verifier
        self._store = store
        self._error_handler = error_handler
        self._lock = threading.Lock()
        self._handlers: Mapping[str, EventHandler] = MappingProxyType({})

    def handle(self, event_type: str, handler: EventHandler) -> None:
        with self._lock:
            handlers = dict(self._handlers)
            handlers[event_type] = handler
            self._handlers = MappingProxyType(handlers)

    def _report(self, exc: Exception) -> None:
        if self._error_handler is not None:
            self._error_handler(exc)

    def dispatch(self, payload: bytes, signature: str) -> DispatchResult:
        try:
            event = self._verifier.verify(payload, signature)
        except SignatureInvalidError as exc:
            logger.warning("Rejected webhook delivery: %s", exc)
            self._report(exc)
            return DispatchResult.SIGNATURE_INVALID

        if self._store is not None:
            try:
                self._store.log_event(event.event_id)
            except DuplicateEventError:
                logger.info("Ignoring duplicate event %s", event.event_id)
                return DispatchResult.DUPLICATE
            except Exception as exc:
                logger.exception("Failed to log event %s", event.event_id)
                self._report(exc)
                return DispatchResult.STORE_FAILURE

        handler = self._handlers.get(event.event_type)
        if handler is None:
            logger.debug("No handler for %s event %s", event.event_type, event.event_id)
            return DispatchResult.NO_HANDLER

        handler(event)
        logger.info("Dispatched %s event %s", event.event_type, event.event_id)
        return DispatchResult.DISPATCHED


__all__ = ["DispatchResult", "EventHandler", "WebhookDispatcher"]
