"""Stripe billing service for voice overage."""

import logging
from datetime import datetime, timezone
from typing import Any

import stripe

from app.config import get_settings
from app.schemas.voice_minutes import PendingOverageBilling

logger = logging.getLogger(__name__)

OVERAGE_ITEM_TYPE = "voice_overage"


class StripeService:
    """Service for Stripe billing operations."""

    def __init__(self) -> None:
        self.settings = get_settings()
        stripe.api_key = self.settings.stripe_secret_key
        stripe.max_network_retries = self.settings.stripe_max_network_retries

    def create_overage_invoice_item(self, pending: PendingOverageBilling) -> str:
        """Add a period's overage as a pending invoice item on the customer.

        Stripe folds pending items into the customer's next subscription
        invoice. The idempotency key is derived from the period so a retried
        billing run never creates a second item.

        Args:
            pending: Closed period with unbilled overage

        Returns:
            Stripe invoice item ID, used as the period's billing reference

        Raises:
            stripe.StripeError: If Stripe rejects the request
        """
        if not pending.stripe_customer_id:
            raise ValueError(f"Tenant {pending.tenant_id} has no Stripe customer")

        params: dict[str, Any] = {
            "customer": pending.stripe_customer_id,
            "amount": pending.overage_charge_minor_units,
            "currency": self.settings.voice_currency,
            "description": (
                f"Voice minutes overage {pending.period_start:%Y-%m}: "
                f"{pending.overage_minutes} min"
            ),
            "metadata": {
                "type": OVERAGE_ITEM_TYPE,
                "tenant_id": str(pending.tenant_id),
                "usage_id": str(pending.usage_id),
                "period_start": pending.period_start.isoformat(),
                "overage_minutes": str(pending.overage_minutes),
            },
        }
        if pending.stripe_subscription_id:
            params["subscription"] = pending.stripe_subscription_id

        item = stripe.InvoiceItem.create(
            **params,
            idempotency_key=f"voice-overage-{pending.usage_id}",
        )
        logger.info(
            "Created Stripe invoice item %s for tenant %s (%d minor units)",
            item.id,
            pending.tenant_id,
            pending.overage_charge_minor_units,
        )
        return item.id

    @staticmethod
    def overage_item_ids(invoice: Any) -> list[str]:
        """Invoice item IDs of the voice overage lines on a Stripe invoice."""
        item_ids = []
        for line in invoice.get("lines", {}).get("data", []):
            metadata = line.get("metadata") or {}
            if metadata.get("type") != OVERAGE_ITEM_TYPE:
                continue

            # Newer API versions nest the item under ``parent``
            parent = line.get("parent") or {}
            details = parent.get("invoice_item_details") or {}
            item_id = details.get("invoice_item") or line.get("invoice_item")
            if not item_id and str(line.get("id", "")).startswith("ii_"):
                item_id = line["id"]

            if item_id:
                item_ids.append(item_id)
            else:
                logger.warning(
                    "Overage line %s on invoice %s has no item id",
                    line.get("id"),
                    invoice.get("id"),
                )
        return item_ids

    @staticmethod
    def paid_at(invoice: Any) -> datetime | None:
        transitions = invoice.get("status_transitions") or {}
        timestamp = transitions.get("paid_at")
        if not timestamp:
            return None
        return datetime.fromtimestamp(timestamp, tz=timezone.utc)


# Global instance
stripe_service = StripeService()
