"""Tenant voice policy management."""

import logging
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.locks import tenant_locks
from app.models.voice_minute_limit import OveragePolicy, VoiceMinuteLimit
from app.models.voice_minute_usage import BlockedReason, VoiceMinuteUsage
from app.schemas.voice_minutes import CallerContext, PolicyResult, VoiceErrorCode
from app.services.voice_ledger import (
    get_or_create_policy,
    get_tenant,
    policy_snapshot,
    tenant_error,
)

logger = logging.getLogger(__name__)

POLICY_ADMIN_ROLES = frozenset({"owner", "admin"})


def reasons_lifted_by(policy: OveragePolicy) -> tuple[BlockedReason, ...]:
    """Block reasons that no longer apply once ``policy`` is in force."""
    match policy:
        case OveragePolicy.BLOCK:
            return ()
        case OveragePolicy.CHARGE | OveragePolicy.NOTIFY_ONLY:
            return (BlockedReason.INCLUDED_EXHAUSTED, BlockedReason.CHARGE_CAP_REACHED)
        case _:
            raise ValueError(f"Unhandled overage policy: {policy}")


def lifts_block(policy: VoiceMinuteLimit, period: VoiceMinuteUsage) -> bool:
    """Whether ``period``'s block no longer holds under the updated ``policy``.

    A cap-reached block stays under ``charge`` until the cap is raised above
    the period's accumulated charge.
    """
    if period.blocked_reason not in {r.value for r in reasons_lifted_by(policy.policy)}:
        return False
    if (
        policy.policy == OveragePolicy.CHARGE
        and period.blocked_reason == BlockedReason.CHARGE_CAP_REACHED.value
    ):
        return period.overage_charge_minor_units < policy.max_overage_charge_minor_units
    return True


def _validate_limits(
    included_minutes: int | None,
    overage_price_minor_units: int | None,
    max_overage_charge_minor_units: int | None,
    alert_thresholds: list[int] | None,
) -> str | None:
    for name, value in (
        ("included_minutes", included_minutes),
        ("overage_price_minor_units", overage_price_minor_units),
        ("max_overage_charge_minor_units", max_overage_charge_minor_units),
    ):
        if value is None:
            continue
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            return f"{name} must be a non-negative integer"

    if alert_thresholds is not None:
        if any(isinstance(t, bool) or not isinstance(t, int) for t in alert_thresholds):
            return "alert_thresholds must be integers"
        if any(t < 1 or t > 100 for t in alert_thresholds):
            return "alert_thresholds must be between 1 and 100"
        if any(a >= b for a, b in zip(alert_thresholds, alert_thresholds[1:])):
            return "alert_thresholds must be ascending without duplicates"
    return None


async def provision_voice_policy(db: AsyncSession, tenant_id: UUID) -> PolicyResult:
    """Create the tenant's voice policy with configured defaults (idempotent)."""
    tenant = await get_tenant(db, tenant_id)
    denied = tenant_error(tenant)
    if denied:
        return PolicyResult.fail(*denied)

    async with tenant_locks.hold(tenant_id):
        policy = await get_or_create_policy(db, tenant_id)
        await db.commit()
    return PolicyResult(policy=policy_snapshot(policy))


async def update_minute_limit_policy(
    db: AsyncSession,
    tenant_id: UUID,
    overage_policy: str,
    caller: CallerContext,
    *,
    included_minutes: int | None = None,
    overage_price_minor_units: int | None = None,
    max_overage_charge_minor_units: int | None = None,
    alert_thresholds: list[int] | None = None,
) -> PolicyResult:
    """Change the tenant's overage policy and, optionally, its limits.

    Moving to ``charge`` lifts blocks caused by exhausted included minutes,
    and cap-reached blocks whose charge is below the new cap; moving to
    ``notify_only`` lifts every block. Moving to ``block`` never
    blocks retroactively. The new ``included_minutes`` applies from the next
    period; the current one keeps its snapshot.
    """
    if caller.tenant_id != tenant_id or caller.role not in POLICY_ADMIN_ROLES:
        return PolicyResult.fail(
            VoiceErrorCode.ACCESS_DENIED,
            "Only tenant owners and admins can change the voice policy",
        )

    try:
        new_policy = OveragePolicy(overage_policy)
    except ValueError:
        return PolicyResult.fail(
            VoiceErrorCode.INVALID_POLICY,
            f"Invalid policy '{overage_policy}', expected one of: "
            + ", ".join(p.value for p in OveragePolicy),
        )

    problem = _validate_limits(
        included_minutes,
        overage_price_minor_units,
        max_overage_charge_minor_units,
        alert_thresholds,
    )
    if problem:
        return PolicyResult.fail(VoiceErrorCode.INVALID_INPUT, problem)

    tenant = await get_tenant(db, tenant_id)
    denied = tenant_error(tenant)
    if denied:
        return PolicyResult.fail(*denied)

    async with tenant_locks.hold(tenant_id):
        policy = await get_or_create_policy(db, tenant_id, for_update=True)
        previous = policy.policy

        policy.overage_policy = new_policy.value
        if included_minutes is not None:
            policy.included_minutes = included_minutes
        if overage_price_minor_units is not None:
            policy.overage_price_minor_units = overage_price_minor_units
        if max_overage_charge_minor_units is not None:
            policy.max_overage_charge_minor_units = max_overage_charge_minor_units
        if alert_thresholds is not None:
            policy.alert_thresholds = list(alert_thresholds)

        unblocked = 0
        reasons = reasons_lifted_by(new_policy)
        if reasons:
            result = await db.execute(
                select(VoiceMinuteUsage)
                .where(VoiceMinuteUsage.tenant_id == tenant_id)
                .where(VoiceMinuteUsage.is_blocked.is_(True))
                .where(VoiceMinuteUsage.blocked_reason.in_([r.value for r in reasons]))
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            for period in result.scalars().all():
                if not lifts_block(policy, period):
                    continue
                period.is_blocked = False
                period.blocked_reason = None
                period.blocked_at = None
                unblocked += 1

        snapshot = policy_snapshot(policy)
        await db.commit()

    logger.info(
        "Voice policy for tenant %s changed %s -> %s by %s (%d periods unblocked)",
        tenant_id,
        previous.value,
        new_policy.value,
        caller.role,
        unblocked,
    )
    return PolicyResult(
        policy=snapshot,
        previous_policy=previous,
        periods_unblocked=unblocked,
    )
