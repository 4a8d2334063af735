"""Overage billing reconciliation against Stripe."""

import asyncio
import logging
from datetime import date, datetime
from uuid import UUID

import stripe
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.core.locks import tenant_locks
from app.models.tenant import Tenant
from app.models.voice_minute_transaction import VoiceMinuteTransaction
from app.models.voice_minute_usage import VoiceMinuteUsage
from app.schemas.voice_minutes import (
    MarkBilledResult,
    OverageBillingItem,
    OverageBillingReport,
    PaymentStatusResult,
    PendingOverageBilling,
    VoiceErrorCode,
)
from app.services.stripe_service import stripe_service
from app.services.voice_ledger import to_major_units, utcnow

logger = logging.getLogger(__name__)


async def get_tenants_pending_overage_billing(
    db: AsyncSession,
    as_of: datetime | None = None,
) -> list[PendingOverageBilling]:
    """Closed periods with overage charges that were never invoiced.

    A period is closed once its exclusive ``period_end`` is on or before
    the ``as_of`` date, so the open period is never returned.
    """
    as_of_date = (as_of or utcnow()).date()

    result = await db.execute(
        select(VoiceMinuteUsage, Tenant)
        .join(Tenant, Tenant.id == VoiceMinuteUsage.tenant_id)
        .where(VoiceMinuteUsage.period_end <= as_of_date)
        .where(VoiceMinuteUsage.overage_charge_minor_units > 0)
        .where(VoiceMinuteUsage.is_billed.is_(False))
        .order_by(VoiceMinuteUsage.period_start, VoiceMinuteUsage.tenant_id)
    )

    return [
        PendingOverageBilling(
            tenant_id=tenant.id,
            tenant_name=tenant.name,
            stripe_customer_id=tenant.stripe_customer_id,
            stripe_subscription_id=tenant.stripe_subscription_id,
            usage_id=period.id,
            period_start=period.period_start,
            period_end=period.period_end,
            overage_minutes=period.overage_minutes_used,
            overage_charge_minor_units=period.overage_charge_minor_units,
            overage_charge_amount=to_major_units(period.overage_charge_minor_units),
        )
        for period, tenant in result.all()
    ]


async def mark_overage_as_billed(
    db: AsyncSession,
    tenant_id: UUID,
    period_start: date,
    billing_reference_id: str,
    as_of: datetime | None = None,
) -> MarkBilledResult:
    """Record that a closed period's overage was accepted by Stripe.

    A period that is missing, still open at ``as_of`` or already billed
    yields ``USAGE_NOT_FOUND`` so repeated calls never bill twice and the
    open period keeps recording.
    """
    as_of_date = (as_of or utcnow()).date()

    async with tenant_locks.hold(tenant_id):
        result = await db.execute(
            select(VoiceMinuteUsage)
            .where(VoiceMinuteUsage.tenant_id == tenant_id)
            .where(VoiceMinuteUsage.period_start == period_start)
            .where(VoiceMinuteUsage.period_end <= as_of_date)
            .where(VoiceMinuteUsage.is_billed.is_(False))
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        period = result.scalar_one_or_none()
        if period is None:
            await db.commit()
            return MarkBilledResult.fail(
                VoiceErrorCode.USAGE_NOT_FOUND,
                f"No closed unbilled voice period starting {period_start} for tenant {tenant_id}",
            )

        period.is_billed = True
        period.billing_reference_id = billing_reference_id
        period.billed_at = utcnow()

        stamped = await db.execute(
            update(VoiceMinuteTransaction)
            .where(VoiceMinuteTransaction.usage_id == period.id)
            .where(VoiceMinuteTransaction.minutes_to_overage > 0)
            .values(billing_reference_id=billing_reference_id)
            .execution_options(synchronize_session=False)
        )
        usage_id = period.id
        await db.commit()

    logger.info(
        "Marked voice period %s of tenant %s as billed (%s, %d transactions)",
        period_start,
        tenant_id,
        billing_reference_id,
        stamped.rowcount,
    )
    return MarkBilledResult(
        usage_id=usage_id,
        billing_reference_id=billing_reference_id,
        transactions_billed=stamped.rowcount,
    )


async def update_overage_charge_status_paid(
    db: AsyncSession,
    billing_reference_id: str,
    paid_reference_id: str,
    paid_at: datetime | None = None,
) -> PaymentStatusResult:
    """Record payment of a billed period. Blocking state is left alone."""
    result = await db.execute(
        select(VoiceMinuteUsage.tenant_id)
        .where(VoiceMinuteUsage.billing_reference_id == billing_reference_id)
    )
    tenant_id = result.scalar_one_or_none()
    if tenant_id is None:
        return PaymentStatusResult.fail(
            VoiceErrorCode.USAGE_NOT_FOUND,
            f"No voice period billed as {billing_reference_id}",
        )

    paid_at = paid_at or utcnow()
    async with tenant_locks.hold(tenant_id):
        result = await db.execute(
            select(VoiceMinuteUsage)
            .where(VoiceMinuteUsage.billing_reference_id == billing_reference_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        period = result.scalar_one()
        period.paid_reference_id = paid_reference_id
        period.paid_at = paid_at
        usage_id = period.id
        await db.commit()

    logger.info("Voice overage %s paid by %s", billing_reference_id, paid_reference_id)
    return PaymentStatusResult(
        usage_id=usage_id,
        tenant_id=tenant_id,
        paid_reference_id=paid_reference_id,
        paid_at=paid_at,
    )


async def process_overage_billing(
    db: AsyncSession,
    as_of: datetime | None = None,
) -> OverageBillingReport:
    """Invoice every pending overage period through Stripe.

    Stripe is called without holding any tenant lock; only the local
    ``mark_overage_as_billed`` write is locked. Failures are collected per
    period and never stop the run.
    """
    settings = get_settings()
    pending = await get_tenants_pending_overage_billing(db, as_of=as_of)
    report = OverageBillingReport(
        processed_at=utcnow(),
        tenants_with_overage=len({p.tenant_id for p in pending}),
    )

    for item in pending:
        if not item.stripe_customer_id:
            error = f"Tenant {item.tenant_id} ({item.tenant_name}) has no Stripe customer"
            logger.warning(error)
            report.errors.append(error)
            report.results.append(
                OverageBillingItem(
                    success=False,
                    tenant_id=item.tenant_id,
                    period_start=item.period_start,
                    charge_minor_units=item.overage_charge_minor_units,
                    error=error,
                )
            )
            continue

        try:
            invoice_item_id = await asyncio.to_thread(
                stripe_service.create_overage_invoice_item, item
            )
        except stripe.StripeError as e:
            error = f"Stripe error for tenant {item.tenant_id}: {e}"
            logger.error(error)
            report.errors.append(error)
            report.results.append(
                OverageBillingItem(
                    success=False,
                    tenant_id=item.tenant_id,
                    period_start=item.period_start,
                    charge_minor_units=item.overage_charge_minor_units,
                    error=error,
                )
            )
            continue

        marked = await mark_overage_as_billed(
            db, item.tenant_id, item.period_start, invoice_item_id, as_of=as_of
        )
        if not marked.success:
            # Another run billed it first; the idempotency key kept Stripe in sync
            logger.info("Voice period %s already billed, skipping", item.usage_id)

        report.results.append(
            OverageBillingItem(
                success=marked.success,
                tenant_id=item.tenant_id,
                period_start=item.period_start,
                charge_minor_units=item.overage_charge_minor_units,
                invoice_item_id=invoice_item_id,
                transactions_billed=marked.transactions_billed,
                error=marked.error,
            )
        )
        if marked.success:
            report.tenants_processed += 1
            report.total_overage_minutes += item.overage_minutes
            report.total_charge_minor_units += item.overage_charge_minor_units

        if settings.voice_billing_pause_seconds:
            await asyncio.sleep(settings.voice_billing_pause_seconds)

    logger.info(
        "Voice overage billing: %d/%d periods billed, %d errors",
        report.tenants_processed,
        len(pending),
        len(report.errors),
    )
    return report
