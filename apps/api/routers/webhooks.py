"""
Payment provider webhooks. Authenticated deliveries are always acknowledged;
malformed payloads and processing errors are logged so providers do not
retry into a loop.
"""

import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from services.webhooks import (
    apply_billing_event,
    parse_revenuecat_event,
    parse_stripe_event,
    verify_revenuecat_authorization,
    verify_stripe_signature,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def _decode(body: bytes, provider: str) -> Optional[dict]:
    try:
        payload = json.loads(body or b"{}")
    except ValueError:
        logger.warning("Ignoring %s webhook with invalid JSON (%s bytes)", provider, len(body or b""))
        return None
    if not isinstance(payload, dict):
        logger.warning("Ignoring %s webhook whose payload is not an object", provider)
        return None
    return payload


@router.post("/revenuecat")
async def revenuecat_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    if not verify_revenuecat_authorization(request.headers.get("authorization")):
        raise HTTPException(status_code=401, detail="Invalid webhook authorization")
    payload = _decode(await request.body(), "revenuecat")
    if payload is None:
        return {"received": True}
    try:
        event = parse_revenuecat_event(payload)
        await apply_billing_event(db, event)
    except Exception:
        logger.exception("RevenueCat webhook processing failed")
    return {"received": True}


@router.post("/stripe")
async def stripe_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    body = await request.body()
    if not verify_stripe_signature(body, request.headers.get("stripe-signature")):
        raise HTTPException(status_code=401, detail="Invalid webhook signature")
    payload = _decode(body, "stripe")
    if payload is None:
        return {"received": True}
    try:
        event = parse_stripe_event(payload)
        await apply_billing_event(db, event)
    except Exception:
        logger.exception("Stripe webhook processing failed")
    return {"received": True}
