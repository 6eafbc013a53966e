"""Endpoint receiving provider webhook deliveries."""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Header, Request, Response
from fastapi.concurrency import run_in_threadpool
from starlette.requests import ClientDisconnect

from ..webhooks import DispatchResult
from ..services.billing import get_webhook_dispatcher

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])


@router.post("/webhooks/stripe")
async def receive_stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
) -> Response:
    try:
        payload = await request.body()
    except (ClientDisconnect, OSError) as exc:
        logger.warning("Could not read webhook body: %s", exc)
        return Response(status_code=DispatchResult.UNREADABLE.status_code)

    # Blocking: database writes and provider calls.
    dispatcher = get_webhook_dispatcher()
    result = await run_in_threadpool(dispatcher.dispatch, payload, stripe_signature or "")
    return Response(status_code=result.status_code)
