"""Read-only voice minute reports: summary, overage preview and billing history."""

from datetime import datetime
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.voice_minute_limit import OveragePolicy, VoiceMinuteLimit
from app.models.voice_minute_usage import VoiceMinuteUsage
from app.schemas.voice_minutes import (
    BillingHistory,
    BillingHistoryItem,
    CallerContext,
    MinuteUsageSummary,
    OveragePreview,
    VoiceErrorCode,
)
from app.services.voice_ledger import (
    current_period_bounds,
    default_policy,
    get_current_period,
    get_policy,
    get_tenant,
    policy_snapshot,
    tenant_error,
    to_major_units,
    usage_snapshot,
    utcnow,
)


def _access_error(tenant_id: UUID, caller: CallerContext) -> tuple[VoiceErrorCode, str] | None:
    if caller.tenant_id != tenant_id:
        return VoiceErrorCode.ACCESS_DENIED, "Access denied"
    return None


def period_days(now: datetime) -> tuple[int, int]:
    """``(days_elapsed, days_total)`` of the calendar period containing ``now``.

    ``days_elapsed`` counts full days, so it is 0 on the first day.
    """
    start, end = current_period_bounds(now)
    return (now.date() - start).days, (end - start).days


def projected_charge(policy: VoiceMinuteLimit, projected_minutes: int) -> int:
    match policy.policy:
        case OveragePolicy.CHARGE:
            return min(
                projected_minutes * policy.overage_price_minor_units,
                policy.max_overage_charge_minor_units,
            )
        case OveragePolicy.BLOCK | OveragePolicy.NOTIFY_ONLY:
            return 0
        case _:
            raise ValueError(f"Unhandled overage policy: {policy.policy}")


async def _load(db: AsyncSession, tenant_id: UUID, now: datetime):
    policy = await get_policy(db, tenant_id) or default_policy(tenant_id)
    period = await get_current_period(db, tenant_id, policy, now=now)
    return policy, period


async def get_minute_usage_summary(
    db: AsyncSession,
    tenant_id: UUID,
    caller: CallerContext,
    now: datetime | None = None,
) -> MinuteUsageSummary:
    """Current period snapshot with the policy and calendar position."""
    denied = _access_error(tenant_id, caller) or tenant_error(await get_tenant(db, tenant_id))
    if denied:
        return MinuteUsageSummary.fail(*denied)

    now = now or utcnow()
    policy, period = await _load(db, tenant_id, now)
    elapsed, total = period_days(now)

    return MinuteUsageSummary(
        policy=policy_snapshot(policy),
        usage=usage_snapshot(period),
        days_total=total,
        days_elapsed=elapsed,
        days_remaining=total - elapsed,
    )


async def get_current_overage_preview(
    db: AsyncSession,
    tenant_id: UUID,
    caller: CallerContext,
    now: datetime | None = None,
) -> OveragePreview:
    """Linear end-of-period overage projection. Advisory only."""
    denied = _access_error(tenant_id, caller) or tenant_error(await get_tenant(db, tenant_id))
    if denied:
        return OveragePreview.fail(*denied)

    now = now or utcnow()
    policy, period = await _load(db, tenant_id, now)
    elapsed, total = period_days(now)

    current = period.overage_minutes_used
    if elapsed > 0:
        projected = max(current, round(current / elapsed * total))
    else:
        projected = 0
    charge = projected_charge(policy, projected)

    return OveragePreview(
        period_start=period.period_start,
        period_end=period.period_end,
        overage_policy=policy.policy,
        overage_price_minor_units=policy.overage_price_minor_units,
        current_overage_minutes=current,
        current_overage_charge_minor_units=period.overage_charge_minor_units,
        current_overage_charge_amount=to_major_units(period.overage_charge_minor_units),
        days_elapsed=elapsed,
        days_total=total,
        projected_overage_minutes=projected,
        projected_charge_minor_units=charge,
        projected_charge_amount=to_major_units(charge),
    )


async def get_voice_billing_history(
    db: AsyncSession,
    tenant_id: UUID,
    caller: CallerContext,
    limit: int = 12,
    offset: int = 0,
    now: datetime | None = None,
) -> BillingHistory:
    """Closed periods of the tenant, newest first."""
    denied = _access_error(tenant_id, caller)
    if denied:
        return BillingHistory.fail(*denied)
    if limit < 1 or offset < 0:
        return BillingHistory.fail(
            VoiceErrorCode.INVALID_INPUT,
            "limit must be positive and offset non-negative",
        )

    today = (now or utcnow()).date()
    closed = (
        (VoiceMinuteUsage.tenant_id == tenant_id)
        & (VoiceMinuteUsage.period_end <= today)
    )

    total = await db.scalar(select(func.count(VoiceMinuteUsage.id)).where(closed))
    result = await db.execute(
        select(VoiceMinuteUsage)
        .where(closed)
        .order_by(VoiceMinuteUsage.period_start.desc())
        .limit(limit)
        .offset(offset)
    )

    items = [
        BillingHistoryItem(
            usage_id=p.id,
            period_start=p.period_start,
            period_end=p.period_end,
            included_minutes=p.included_minutes,
            included_minutes_used=p.included_minutes_used,
            overage_minutes_used=p.overage_minutes_used,
            total_minutes_used=p.total_minutes_used,
            overage_charge_minor_units=p.overage_charge_minor_units,
            overage_charge_amount=to_major_units(p.overage_charge_minor_units),
            total_calls=p.total_calls,
            is_billed=p.is_billed,
            billing_reference_id=p.billing_reference_id,
            paid_at=p.paid_at,
        )
        for p in result.scalars().all()
    ]
    return BillingHistory(items=items, total=total or 0, limit=limit, offset=offset)
