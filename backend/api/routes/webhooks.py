"""
Payment platform webhook endpoint.
"""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from fastapi.responses import JSONResponse

from api.dependencies import get_billing_manager
from api.middleware.rate_limit import WEBHOOK_LIMIT, limiter
from api.schemas.billing import WebhookResponse
from core.exceptions import WebhookSecretNotReadyError, WebhookSignatureError
from services.billing_manager import BillingManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


@router.post("/webhook", response_model=WebhookResponse)
@limiter.limit(WEBHOOK_LIMIT)
async def handle_webhook(
    request: Request,
    manager: Annotated[BillingManager, Depends(get_billing_manager)],
    stripe_signature: Annotated[str | None, Header(alias="Stripe-Signature")] = None,
):
    """
    Receive a signed webhook delivery.

    The raw body is verified against the signing secret before parsing.
    Processing failures that are worth a retry surface as 5xx so the platform
    redelivers; permanent failures are acknowledged with 400.
    """
    body = await request.body()

    try:
        result = await manager.handle_webhook(body, stripe_signature or "")
    except WebhookSecretNotReadyError:
        logger.error("Webhook rejected: signing secret not available yet")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhook verification not ready",
        )
    except WebhookSignatureError as e:
        logger.warning(f"Invalid webhook signature: {e}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid webhook signature",
        )

    return JSONResponse(
        status_code=result.status,
        content=WebhookResponse(message=result.message).model_dump(),
    )
