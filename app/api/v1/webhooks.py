"""Stripe webhooks endpoint."""

import logging

import stripe
from fastapi import APIRouter, HTTPException, Request, status

from app.config import get_settings
from app.deps import DbSession
from app.services.stripe_service import stripe_service
from app.services.voice_billing import update_overage_charge_status_paid

router = APIRouter()
logger = logging.getLogger(__name__)
settings = get_settings()


@router.post("/stripe")
async def stripe_webhook(request: Request, db: DbSession) -> dict:
    """Handle Stripe webhook events.

    ``invoice.paid`` confirms payment of the voice overage lines on the
    invoice. Other events are acknowledged and ignored.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    if not sig_header:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing Stripe signature",
        )

    try:
        event = stripe.Webhook.construct_event(
            payload, sig_header, settings.stripe_webhook_secret
        )
    except ValueError:
        logger.error("Invalid webhook payload")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid payload",
        )
    except stripe.SignatureVerificationError:
        logger.error("Invalid webhook signature")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid signature",
        )

    logger.info("Received Stripe webhook: %s", event.type)

    match event.type:
        case "invoice.paid":
            invoice = event.data.object
            paid_at = stripe_service.paid_at(invoice)
            confirmed = 0
            for item_id in stripe_service.overage_item_ids(invoice):
                result = await update_overage_charge_status_paid(
                    db, item_id, invoice.get("id"), paid_at=paid_at
                )
                if result.success:
                    confirmed += 1
                else:
                    logger.warning("Paid overage item %s: %s", item_id, result.error)
            logger.info("Invoice %s confirmed %d voice overage charges", invoice.get("id"), confirmed)

        case _:
            logger.debug("Unhandled event type: %s", event.type)

    return {"status": "ok"}
