"""API routes exposing subscription management."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, HTTPException, Query, status

from ..billing import (
    Customer,
    PaymentFailureError,
    PaymentMethod,
    ProviderError,
    TransportError,
    UnknownReferenceError,
    WorkflowStepError,
)
from ..schemas.billing import (
    CustomerRequest,
    InvoiceListResponse,
    InvoiceResponse,
    SubscribeRequest,
    SubscriptionResponse,
)
from ..services.billing import get_subscription_service, get_tax_rates

router = APIRouter(prefix="/api/billing", tags=["billing"])


def _upstream_error(exc: BaseException) -> HTTPException:
    if isinstance(exc, WorkflowStepError):
        exc = exc.cause
    if isinstance(exc, ProviderError):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=exc.message)
    if isinstance(exc, TransportError):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Billing operation failed")


def _require_customer(email: str) -> Customer:
    customer = get_subscription_service().find_customer(email)
    if customer is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown customer")
    return customer


@router.post("/subscriptions", response_model=SubscriptionResponse)
def create_subscription(payload: SubscribeRequest) -> SubscriptionResponse:
    service = get_subscription_service()
    params = payload.subscription_params()

    tax_rates = get_tax_rates()
    if payload.jurisdiction and len(tax_rates):
        try:
            params["default_tax_rates"] = [tax_rates.get(payload.jurisdiction).id]
        except UnknownReferenceError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    try:
        customer = service.customer(payload.email, payload.jurisdiction)
        subscription = service.subscribe(
            customer,
            PaymentMethod(attributes={"id": payload.payment_method_id}),
            params,
        )
    except PaymentFailureError as exc:
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={"invoiceId": exc.invoice_id, "status": exc.status},
        ) from exc
    except (ProviderError, TransportError, WorkflowStepError) as exc:
        raise _upstream_error(exc) from exc
    return SubscriptionResponse.from_subscription(subscription)


@router.post("/subscriptions/cancel", response_model=Optional[SubscriptionResponse])
def cancel_subscription(payload: CustomerRequest) -> Optional[SubscriptionResponse]:
    customer = _require_customer(payload.email)
    try:
        subscription = get_subscription_service().unsubscribe(customer)
    except (ProviderError, TransportError) as exc:
        raise _upstream_error(exc) from exc
    return SubscriptionResponse.from_subscription(subscription) if subscription else None


@router.post("/subscriptions/reactivate", response_model=Optional[SubscriptionResponse])
def reactivate_subscription(payload: CustomerRequest) -> Optional[SubscriptionResponse]:
    customer = _require_customer(payload.email)
    try:
        subscription = get_subscription_service().resubscribe(customer)
    except (ProviderError, TransportError) as exc:
        raise _upstream_error(exc) from exc
    return SubscriptionResponse.from_subscription(subscription) if subscription else None


@router.get("/invoices", response_model=InvoiceListResponse)
def list_invoices(email: str = Query(min_length=3)) -> InvoiceListResponse:
    customer = _require_customer(email)
    invoices = get_subscription_service().invoices(customer)
    return InvoiceListResponse(invoices=[InvoiceResponse.from_invoice(invoice) for invoice in invoices])
