from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.notifications.service import resolve_effects_dispatcher
from app.domain.payments.webhook import PaymentWebhookProcessor, UnparsableWebhook, UnverifiedWebhookRejected
from app.infra import stripe_client as stripe_infra
from app.infra.db import get_db_session
from app.infra.metrics import metrics
from app.settings import settings

router = APIRouter()
logger = logging.getLogger(__name__)


def _build_processor(http_request: Request) -> PaymentWebhookProcessor:
    app_settings = getattr(http_request.app.state, "app_settings", None) or settings
    return PaymentWebhookProcessor(
        stripe_client=stripe_infra.resolve_client(http_request.app.state),
        effects=resolve_effects_dispatcher(http_request.app.state),
        allow_unverified=app_settings.stripe_webhook_allow_unverified,
    )


@router.post("/v1/payments/stripe/webhook", status_code=status.HTTP_200_OK)
async def stripe_webhook(
    http_request: Request, session: AsyncSession = Depends(get_db_session)
) -> dict[str, Any]:
    payload = await http_request.body()
    signature = http_request.headers.get("Stripe-Signature")
    processor = _build_processor(http_request)
    try:
        result = await processor.process(session, payload, signature)
    except UnverifiedWebhookRejected as exc:
        metrics.record_webhook("rejected_unverified", False)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid Stripe webhook") from exc
    except UnparsableWebhook as exc:
        metrics.record_webhook("unparsable", False)
        logger.warning("stripe_webhook_unparsable", extra={"extra": {"reason": str(exc)}})
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Unrecognized webhook payload") from exc
    return result.as_response()
