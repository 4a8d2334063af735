"""Admission gate and usage recorder for voice minutes."""

import logging
from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.locks import tenant_locks
from app.models.voice_minute_limit import OveragePolicy, VoiceMinuteLimit
from app.models.voice_minute_transaction import VoiceMinuteTransaction
from app.models.voice_minute_usage import BlockedReason, VoiceMinuteUsage
from app.schemas.voice_minutes import AdmissionResult, UsageResult, VoiceErrorCode
from app.services.voice_alerts import build_alert
from app.services.voice_ledger import (
    crossed_threshold,
    default_policy,
    get_current_period,
    get_or_create_policy,
    get_policy,
    get_tenant,
    minutes_for_seconds,
    policy_snapshot,
    tenant_error,
    to_major_units,
    usage_percent,
    usage_snapshot,
    utcnow,
)

logger = logging.getLogger(__name__)

PLAN_LIMIT_MESSAGE = "Service temporarily unavailable: plan limit reached."

_BLOCKED_REASON_TEXT = {
    BlockedReason.INCLUDED_EXHAUSTED.value: "Included minutes exhausted under block policy",
    BlockedReason.CHARGE_CAP_REACHED.value: "Maximum overage charge for the period reached",
}


def describe_block(reason: str | None) -> str:
    return _BLOCKED_REASON_TEXT.get(reason or "", "Voice minutes blocked for this period")


def denies_at_limit(policy: OveragePolicy) -> bool:
    """Whether exhausting included minutes stops new calls."""
    match policy:
        case OveragePolicy.BLOCK:
            return True
        case OveragePolicy.CHARGE | OveragePolicy.NOTIFY_ONLY:
            return False
        case _:
            raise ValueError(f"Unhandled overage policy: {policy}")


def overage_charge(policy: VoiceMinuteLimit, overage_minutes: int) -> int:
    """Uncapped charge in minor units for ``overage_minutes``."""
    match policy.policy:
        case OveragePolicy.CHARGE:
            return overage_minutes * policy.overage_price_minor_units
        case OveragePolicy.BLOCK | OveragePolicy.NOTIFY_ONLY:
            return 0
        case _:
            raise ValueError(f"Unhandled overage policy: {policy.policy}")


def block_reason_after(
    policy: VoiceMinuteLimit,
    period: VoiceMinuteUsage,
) -> BlockedReason | None:
    """Block condition reached by ``period`` under ``policy``, if any."""
    exhausted = period.remaining_included == 0
    match policy.policy:
        case OveragePolicy.BLOCK:
            return BlockedReason.INCLUDED_EXHAUSTED if exhausted else None
        case OveragePolicy.CHARGE:
            capped = period.overage_charge_minor_units >= policy.max_overage_charge_minor_units
            return BlockedReason.CHARGE_CAP_REACHED if exhausted and capped else None
        case OveragePolicy.NOTIFY_ONLY:
            return None
        case _:
            raise ValueError(f"Unhandled overage policy: {policy.policy}")


# ── Admission gate ──────────────────────────────────────────────────


async def check_minute_limit(
    db: AsyncSession,
    tenant_id: UUID,
    now: datetime | None = None,
) -> AdmissionResult:
    """Tell the voice pipeline whether a new call may start.

    Read-only and lock-free: nothing is reserved, so concurrent admissions
    can overshoot by one call. The recorder is where totals stay correct.
    """
    tenant = await get_tenant(db, tenant_id)
    denied = tenant_error(tenant)
    if denied:
        return AdmissionResult.fail(*denied)

    policy = await get_policy(db, tenant_id) or default_policy(tenant_id)
    period = await get_current_period(db, tenant_id, policy, now=now)

    snapshot = dict(policy=policy_snapshot(policy), usage=usage_snapshot(period))

    if period.is_billed:
        reason = "Current period is already billed"
        return AdmissionResult.fail(
            VoiceErrorCode.PERIOD_BILLED,
            reason,
            block_reason=reason,
            user_message=PLAN_LIMIT_MESSAGE,
            **snapshot,
        )

    if period.is_blocked:
        reason = describe_block(period.blocked_reason)
        return AdmissionResult.fail(
            VoiceErrorCode.TENANT_BLOCKED,
            reason,
            block_reason=reason,
            user_message=PLAN_LIMIT_MESSAGE,
            **snapshot,
        )

    if period.remaining_included == 0 and denies_at_limit(policy.policy):
        reason = "Included minutes exhausted and overage policy is block"
        return AdmissionResult.fail(
            VoiceErrorCode.LIMIT_EXCEEDED_BLOCK_POLICY,
            reason,
            block_reason=reason,
            user_message=PLAN_LIMIT_MESSAGE,
            **snapshot,
        )

    return AdmissionResult(can_proceed=True, **snapshot)


# ── Usage recorder ──────────────────────────────────────────────────


async def _find_call(
    db: AsyncSession,
    usage_id: UUID,
    call_id: str,
) -> VoiceMinuteTransaction | None:
    result = await db.execute(
        select(VoiceMinuteTransaction)
        .where(VoiceMinuteTransaction.usage_id == usage_id)
        .where(VoiceMinuteTransaction.call_id == call_id)
    )
    return result.scalar_one_or_none()


def _duplicate_result(
    txn: VoiceMinuteTransaction,
    period: VoiceMinuteUsage,
) -> UsageResult:
    return UsageResult(
        transaction_id=txn.id,
        usage_id=period.id,
        minutes_recorded=txn.minutes_recorded,
        minutes_to_included=txn.minutes_to_included,
        minutes_to_overage=txn.minutes_to_overage,
        is_overage=txn.is_overage,
        charge_minor_units=txn.charge_minor_units,
        charge_amount=to_major_units(txn.charge_minor_units),
        total_overage_charge_minor_units=period.overage_charge_minor_units,
        total_overage_charge_amount=to_major_units(period.overage_charge_minor_units),
        remaining_included=period.remaining_included,
        usage_percent=round(usage_percent(period.included_minutes, period.total_minutes_used), 1),
        is_blocked=period.is_blocked,
        blocked_reason=period.blocked_reason,
        is_duplicate=True,
    )


async def record_minute_usage(
    db: AsyncSession,
    tenant_id: UUID,
    call_id: str | None,
    seconds_used: int,
    metadata: dict | None = None,
    now: datetime | None = None,
) -> UsageResult:
    """Apply a finished call to the tenant's current period.

    The whole read-modify-write runs under the tenant lock with the period
    row selected FOR UPDATE, and is committed before the lock is released.
    A ``call_id`` already recorded in the period is answered with the
    original transaction and changes nothing.
    """
    if isinstance(seconds_used, bool) or not isinstance(seconds_used, int) or seconds_used <= 0:
        return UsageResult.fail(
            VoiceErrorCode.INVALID_INPUT,
            "seconds_used must be a positive integer",
        )

    now = now or utcnow()

    async with tenant_locks.hold(tenant_id):
        tenant = await get_tenant(db, tenant_id)
        denied = tenant_error(tenant)
        if denied:
            return UsageResult.fail(*denied)

        policy = await get_or_create_policy(db, tenant_id)
        period = await get_current_period(
            db, tenant_id, policy, now=now, create=True, for_update=True
        )

        if period.is_billed:
            await db.commit()
            return UsageResult.fail(
                VoiceErrorCode.PERIOD_BILLED,
                "Current period is already billed",
                usage_id=period.id,
            )

        if call_id is not None:
            existing = await _find_call(db, period.id, call_id)
            if existing is not None:
                await db.commit()
                logger.info("Call %s already recorded for tenant %s", call_id, tenant_id)
                return _duplicate_result(existing, period)

        if period.is_blocked:
            await db.commit()
            return UsageResult.fail(
                VoiceErrorCode.TENANT_BLOCKED,
                describe_block(period.blocked_reason),
                usage_id=period.id,
                is_blocked=True,
                blocked_reason=period.blocked_reason,
                remaining_included=period.remaining_included,
            )

        minutes = minutes_for_seconds(seconds_used)
        to_included = min(minutes, period.remaining_included)
        to_overage = minutes - to_included

        raw_charge = overage_charge(policy, to_overage)
        headroom = max(0, policy.max_overage_charge_minor_units - period.overage_charge_minor_units)
        charge = min(raw_charge, headroom)
        if charge < raw_charge:
            logger.info(
                "Overage charge for tenant %s clipped from %d to %d by period cap",
                tenant_id,
                raw_charge,
                charge,
            )

        period.included_minutes_used += to_included
        period.overage_minutes_used += to_overage
        period.overage_charge_minor_units += charge
        period.total_calls += 1

        percent = usage_percent(period.included_minutes, period.total_minutes_used)
        threshold = crossed_threshold(
            list(policy.alert_thresholds), period.last_alert_threshold, percent
        )
        if threshold is not None:
            period.last_alert_threshold = threshold
            db.add(build_alert(period, policy, threshold, percent))

        reason = block_reason_after(policy, period)
        if reason is not None:
            period.is_blocked = True
            period.blocked_reason = reason.value
            period.blocked_at = now
            logger.warning("Blocking voice minutes for tenant %s: %s", tenant_id, reason.value)

        txn = VoiceMinuteTransaction(
            id=uuid4(),
            tenant_id=tenant_id,
            usage_id=period.id,
            call_id=call_id,
            seconds_used=seconds_used,
            minutes_recorded=minutes,
            minutes_to_included=to_included,
            minutes_to_overage=to_overage,
            charge_minor_units=charge,
            call_metadata=metadata or {},
        )
        db.add(txn)

        result = UsageResult(
            transaction_id=txn.id,
            usage_id=period.id,
            minutes_recorded=minutes,
            minutes_to_included=to_included,
            minutes_to_overage=to_overage,
            is_overage=to_overage > 0,
            raw_charge_minor_units=raw_charge,
            charge_minor_units=charge,
            charge_amount=to_major_units(charge),
            total_overage_charge_minor_units=period.overage_charge_minor_units,
            total_overage_charge_amount=to_major_units(period.overage_charge_minor_units),
            remaining_included=period.remaining_included,
            usage_percent=round(percent, 1),
            is_blocked=period.is_blocked,
            blocked_reason=period.blocked_reason,
            alert_threshold_triggered=threshold,
        )
        await db.commit()

    logger.info(
        "Recorded %d voice minutes for tenant %s (included=%d overage=%d charge=%d)",
        minutes,
        tenant_id,
        to_included,
        to_overage,
        charge,
    )
    return result
