"""Payment provider webhook reconciliation.

Provider payloads are normalized into ``BillingEvent`` values, then applied
through the credit ledger in one transaction together with a
``WebhookEvent`` row, so a replayed event changes nothing.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import time
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.account import Account
from models.webhook_event import WebhookEvent
from services.credits import get_or_create_account, grant_credits, set_subscription_state
from services.errors import IdempotencyConflict
from services.identity import Identity, identity_from_key

logger = logging.getLogger(__name__)

REVENUECAT = "revenuecat"
STRIPE = "stripe"

TRIAL_STARTED = "trial_started"
SUBSCRIPTION_STARTED = "subscription_started"
RENEWAL = "renewal"
TRIAL_CONVERTED = "trial_converted"
CANCELLATION = "cancellation"
EXPIRATION = "expiration"
CREDIT_PURCHASE = "credit_purchase"
UNKNOWN = "unknown"

ENTITLEMENT_KINDS = {TRIAL_STARTED, SUBSCRIPTION_STARTED, RENEWAL, TRIAL_CONVERTED, EXPIRATION}


@dataclass(frozen=True)
class BillingEvent:
    provider: str
    event_id: str
    identity: Optional[Identity]
    kind: str
    credits: int = 0
    product_id: Optional[str] = None
    raw_type: str = ""


def _now() -> datetime:
    return datetime.now(timezone.utc)


def verify_revenuecat_authorization(header_value: Optional[str]) -> bool:
    secret = (settings.REVENUECAT_WEBHOOK_AUTH or "").strip()
    if not secret:
        return True
    provided = (header_value or "").strip()
    if provided.lower().startswith("bearer "):
        provided = provided[7:].strip()
    return hmac.compare_digest(provided.encode(), secret.encode())


def verify_stripe_signature(body: bytes, signature_header: Optional[str], now: Optional[float] = None) -> bool:
    """Check a ``Stripe-Signature: t=<ts>,v1=<hex>`` header against the raw body."""
    secret = (settings.STRIPE_WEBHOOK_SECRET or "").strip()
    if not secret:
        return True
    if not signature_header:
        return False

    timestamp = None
    signatures = []
    for part in signature_header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)
    if not timestamp or not signatures:
        return False
    try:
        signed_at = int(timestamp)
    except ValueError:
        return False
    current = time.time() if now is None else now
    if abs(current - signed_at) > int(settings.STRIPE_SIGNATURE_TOLERANCE_SECONDS):
        return False

    payload = timestamp.encode() + b"." + body
    expected = hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()
    return any(hmac.compare_digest(expected, candidate) for candidate in signatures)


def _identity_or_none(value: Any) -> Optional[Identity]:
    try:
        return identity_from_key(value)
    except ValueError:
        return None


def parse_revenuecat_event(payload: Dict[str, Any]) -> BillingEvent:
    event = payload.get("event") or {}
    raw_type = str(event.get("type") or payload.get("type") or "").upper()
    event_id = str(event.get("id") or payload.get("id") or "").strip()
    if not event_id:
        raise ValueError("RevenueCat event is missing an id")
    identity = _identity_or_none(event.get("app_user_id"))
    product_id = event.get("product_id")
    is_trial_period = bool(event.get("is_trial_period")) or str(event.get("period_type") or "").upper() == "TRIAL"
    is_trial_conversion = bool(event.get("is_trial_conversion"))

    credits = 0
    if raw_type == "INITIAL_PURCHASE" and is_trial_period:
        kind, credits = TRIAL_STARTED, settings.TRIAL_CREDITS
    elif raw_type == "INITIAL_PURCHASE":
        kind, credits = SUBSCRIPTION_STARTED, settings.SUBSCRIPTION_CREDITS
    elif raw_type == "TRIAL_STARTED":
        kind, credits = TRIAL_STARTED, settings.TRIAL_CREDITS
    elif raw_type in ("TRIAL_CONVERTED", "CONVERSION_FROM_TRIAL") or (raw_type == "RENEWAL" and is_trial_conversion):
        kind, credits = TRIAL_CONVERTED, settings.TRIAL_CONVERSION_CREDITS
    elif raw_type == "RENEWAL":
        kind, credits = RENEWAL, settings.SUBSCRIPTION_CREDITS
    elif raw_type == "CANCELLATION":
        kind = CANCELLATION
    elif raw_type == "EXPIRATION":
        kind = EXPIRATION
    else:
        kind = UNKNOWN
    return BillingEvent(
        provider=REVENUECAT,
        event_id=event_id,
        identity=identity,
        kind=kind,
        credits=int(credits),
        product_id=product_id,
        raw_type=raw_type,
    )


def parse_stripe_event(payload: Dict[str, Any]) -> BillingEvent:
    raw_type = str(payload.get("type") or "")
    session = (payload.get("data") or {}).get("object") or {}
    metadata = session.get("metadata") or {}
    if raw_type != "checkout.session.completed":
        event_id = str(payload.get("id") or "").strip()
        if not event_id:
            raise ValueError("Stripe event is missing an id")
        return BillingEvent(provider=STRIPE, event_id=event_id, identity=None, kind=UNKNOWN, raw_type=raw_type)

    session_id = str(session.get("id") or "").strip()
    if not session_id:
        raise ValueError("Stripe checkout session is missing an id")
    try:
        credits = int(metadata.get("credits") or 0)
    except (TypeError, ValueError):
        credits = 0
    identity = _identity_or_none(session.get("client_reference_id"))
    kind = CREDIT_PURCHASE if identity is not None and credits > 0 else UNKNOWN
    return BillingEvent(
        provider=STRIPE,
        event_id=session_id,
        identity=identity,
        kind=kind,
        credits=credits,
        product_id=metadata.get("pack_id"),
        raw_type=raw_type,
    )


async def _recorded(db: AsyncSession, event: BillingEvent) -> Optional[WebhookEvent]:
    result = await db.execute(
        select(WebhookEvent).where(
            WebhookEvent.provider == event.provider,
            WebhookEvent.event_id == event.event_id,
        )
    )
    return result.scalar_one_or_none()


async def _apply_to_ledger(db: AsyncSession, event: BillingEvent) -> None:
    identity = event.identity
    grant_key = f"{event.provider}:{event.event_id}"
    reason = f"{event.provider} {event.raw_type}".strip()

    if event.kind == TRIAL_STARTED:
        subscribed = (
            await db.execute(select(Account.is_subscribed).where(Account.identity_key == identity.key))
        ).scalar_one_or_none()
        if subscribed:
            logger.info("Trial start for subscribed %s leaves entitlements unchanged", identity.key)
        else:
            start = _now()
            await set_subscription_state(
                db,
                identity,
                is_subscribed=False,
                is_trial_active=True,
                trial_window=(start, start + timedelta(days=max(int(settings.TRIAL_DAYS), 0))),
                commit=False,
            )
        transaction_type = "trial_grant"
    elif event.kind in (SUBSCRIPTION_STARTED, RENEWAL, TRIAL_CONVERTED):
        await set_subscription_state(db, identity, is_subscribed=True, is_trial_active=False, commit=False)
        transaction_type = "subscription_grant"
    elif event.kind == EXPIRATION:
        await set_subscription_state(db, identity, is_subscribed=False, is_trial_active=False, commit=False)
        return
    elif event.kind == CREDIT_PURCHASE:
        transaction_type = "purchase"
    else:
        # Cancellation keeps access until the provider sends EXPIRATION.
        return

    if event.credits > 0:
        await grant_credits(
            db,
            identity,
            event.credits,
            idempotency_key=grant_key,
            transaction_type=transaction_type,
            provider=event.provider,
            reason=reason,
            reference_id=event.product_id,
            commit=False,
        )


async def propagate_entitlements(db: AsyncSession, identity: Identity) -> int:
    """Copy entitlement flags to every other account created on the same device."""
    result = await db.execute(
        select(Account.id, Account.device_id, Account.is_subscribed, Account.is_trial_active).where(
            Account.identity_key == identity.key
        )
    )
    row = result.one_or_none()
    if row is None or not row[1]:
        return 0
    account_id, device_id, is_subscribed, is_trial_active = row
    updated = await db.execute(
        update(Account)
        .where(Account.device_id == device_id, Account.id != account_id)
        .values(is_subscribed=is_subscribed, is_trial_active=is_trial_active, updated_at=_now())
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return int(updated.rowcount or 0)


async def apply_billing_event(db: AsyncSession, event: BillingEvent) -> Dict[str, Any]:
    """Apply a normalized event exactly once."""
    existing = await _recorded(db, event)
    if existing:
        logger.info("Webhook %s/%s already processed; skipping", event.provider, event.event_id)
        return {"duplicate": True, "outcome": existing.outcome, "kind": event.kind}

    actionable = event.identity is not None and event.kind != UNKNOWN
    if not actionable:
        logger.info("Ignoring %s webhook %s (%s)", event.provider, event.event_id, event.raw_type or "no type")
    else:
        account = await get_or_create_account(db, event.identity)
        if account.is_inert and account.merged_into_identity_key:
            merged = identity_from_key(account.merged_into_identity_key)
            logger.info(
                "Webhook %s/%s targets merged %s; applying to %s",
                event.provider,
                event.event_id,
                event.identity.key,
                merged.key,
            )
            event = replace(event, identity=merged)
            await get_or_create_account(db, merged)

    try:
        db.add(
            WebhookEvent(
                provider=event.provider,
                event_id=event.event_id,
                event_type=event.raw_type or event.kind,
                identity_key=event.identity.key if event.identity else None,
                outcome="applied" if actionable else "ignored",
            )
        )
        await db.flush()
        if actionable:
            await _apply_to_ledger(db, event)
        await db.commit()
    except (IntegrityError, IdempotencyConflict):
        await db.rollback()
        logger.info("Webhook %s/%s applied concurrently; skipping", event.provider, event.event_id)
        return {"duplicate": True, "outcome": "applied", "kind": event.kind}
    except Exception:
        await db.rollback()
        raise

    propagated = 0
    if actionable and event.kind in ENTITLEMENT_KINDS:
        try:
            propagated = await propagate_entitlements(db, event.identity)
        except Exception:
            await db.rollback()
            logger.exception("Entitlement propagation failed for %s", event.identity.key)

    logger.info(
        "Applied %s webhook %s: kind=%s credits=%s identity=%s",
        event.provider,
        event.event_id,
        event.kind,
        event.credits,
        event.identity.key if event.identity else None,
    )
    return {
        "duplicate": False,
        "outcome": "applied" if actionable else "ignored",
        "kind": event.kind,
        "propagated": propagated,
    }
