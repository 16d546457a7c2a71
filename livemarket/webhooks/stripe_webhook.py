import logging
from typing import Annotated

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from livemarket.config import settings
from livemarket.dependencies import get_processor
from livemarket.errors import ConflictError, NotFoundError, PaymentProcessorError, ValidationError
from livemarket.models import get_db
from livemarket.services import escrow as escrow_service
from livemarket.services.payment_processor import PaymentProcessor

router = APIRouter()
logger = logging.getLogger(__name__)

CAPTURABLE_EVENT = "payment_intent.amount_capturable_updated"
DISPUTE_CREATED_EVENT = "charge.dispute.created"


def _handle_capturable(db: Session, processor: PaymentProcessor, intent: dict) -> None:
    hold_ref = intent.get("id")
    if not hold_ref:
        logger.warning("Capturable event without payment intent id")
        return
    if intent.get("metadata", {}).get("type") != "escrow":
        logger.info("Ignoring non-escrow payment intent %s", hold_ref)
        return
    try:
        escrow_service.capture_to_escrow(db, processor, hold_ref)
    except NotFoundError:
        logger.warning("No escrow found for payment intent %s", hold_ref)
    except ValidationError as e:
        logger.warning("Not capturing payment intent %s: %s", hold_ref, e)


def _handle_dispute(db: Session, processor: PaymentProcessor, dispute: dict) -> None:
    hold_ref = dispute.get("payment_intent")
    dispute_ref = dispute.get("id")
    if not hold_ref or not dispute_ref:
        logger.warning("Dispute event without payment intent or dispute id")
        return
    escrow_service.handle_dispute_created(db, hold_ref, dispute_ref)


_HANDLERS = {
    CAPTURABLE_EVENT: _handle_capturable,
    DISPUTE_CREATED_EVENT: _handle_dispute,
}


def _verify_event(payload: bytes, signature: str):
    try:
        return stripe.Webhook.construct_event(payload, signature, settings.STRIPE_WEBHOOK_SECRET)
    except ValueError as e:
        logger.error("Rejected Stripe webhook with malformed body: %s", e)
        raise HTTPException(status_code=400, detail="Malformed webhook payload") from e
    except stripe.SignatureVerificationError as e:
        logger.error("Rejected Stripe webhook with bad signature: %s", e)
        raise HTTPException(status_code=400, detail="Stripe signature verification failed") from e


@router.post("/stripe", summary="Stripe webhook")
async def stripe_webhook(
    request: Request,
    db: Annotated[Session, Depends(get_db)],
    processor: Annotated[PaymentProcessor, Depends(get_processor)],
):
    """
    Stripe sends events here. We handle:
    - payment_intent.amount_capturable_updated: capture the hold into escrow
    - charge.dispute.created: freeze a held escrow as disputed
    Redelivered events are no-ops.
    """
    if not settings.STRIPE_WEBHOOK_SECRET:
        logger.warning("STRIPE_WEBHOOK_SECRET is empty; acknowledging event without processing it")
        return {"received": True}

    event = _verify_event(await request.body(), request.headers.get("stripe-signature", ""))
    event_type = event["type"]
    handler = _HANDLERS.get(event_type)
    if handler is None:
        logger.info("Ignoring Stripe event %s of type %s", event.get("id"), event_type)
        return {"received": True}

    try:
        handler(db, processor, event["data"]["object"])
    except (ConflictError, PaymentProcessorError) as e:
        # Non-2xx makes Stripe redeliver the event.
        logger.error("Stripe event %s (%s) failed, asking for redelivery: %s", event.get("id"), event_type, e)
        raise HTTPException(status_code=500, detail="Event processing failed") from e

    return {"received": True}
