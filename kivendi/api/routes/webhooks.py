"""KKiaPay payment callbacks."""
from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends, Header, Request

from kivendi.api.dependencies import get_orchestrator
from kivendi.core.config import settings
from kivendi.core.errors import AuthRequired, ValidationFailed
from kivendi.services.boost_orchestrator import BoostOrchestrator, verify_webhook_signature

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])


@router.post("/kkiapay")
async def kkiapay_webhook(
    request: Request,
    x_kkiapay_signature: str | None = Header(None),
    orchestrator: BoostOrchestrator = Depends(get_orchestrator),
):
    """
    Verify the HMAC signature, then run the verify-and-upsert sequence.
    A verification failure answers 502 so KKiaPay retries the delivery.
    """
    body = await request.body()
    if settings.kkiapay_secret:
        if not verify_webhook_signature(settings.kkiapay_secret, body, x_kkiapay_signature):
            logger.warning("KKiaPay webhook with invalid signature rejected")
            raise AuthRequired("invalid webhook signature", code="invalid_signature")
    elif settings.is_production:
        raise AuthRequired("webhook secret is not configured", code="invalid_signature")
    else:
        logger.warning("KKIAPAY_SECRET not set, accepting unsigned webhook")

    try:
        payload = json.loads(body or b"{}")
    except ValueError:
        raise ValidationFailed("invalid JSON payload")
    if not isinstance(payload, dict):
        raise ValidationFailed("invalid JSON payload")

    return await orchestrator.handle_webhook(payload)
