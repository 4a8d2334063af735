"""Voice minute ledger: periods, policies and the monthly reset job.

Every read or write of a tenant's current period goes through
``get_current_period`` so that "no period yet" is handled in one place.
Writers must hold ``tenant_locks.hold(tenant_id)`` while they read and
mutate a period.
"""

import logging
import math
from datetime import date, datetime, timezone
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.core.locks import tenant_locks
from app.models.tenant import Tenant
from app.models.voice_minute_limit import OveragePolicy, VoiceMinuteLimit
from app.models.voice_minute_usage import VoiceMinuteUsage
from app.schemas.voice_minutes import (
    PolicySnapshot,
    ResetReport,
    UsageSnapshot,
    VoiceErrorCode,
)

logger = logging.getLogger(__name__)

SECONDS_PER_MINUTE = 60


# ── Period and money arithmetic ─────────────────────────────────────


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def current_period_bounds(now: datetime | None = None) -> tuple[date, date]:
    """Calendar month containing ``now`` as ``(start, exclusive end)``."""
    today = (now or utcnow()).date()
    start = today.replace(day=1)
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return start, end


def minutes_for_seconds(seconds: int) -> int:
    """Billable minutes for a call: any started minute counts."""
    return math.ceil(seconds / SECONDS_PER_MINUTE)


def to_major_units(minor_units: int) -> Decimal:
    """Centavos to pesos (or cents to dollars) for display."""
    return (Decimal(minor_units) / 100).quantize(Decimal("0.01"))


def usage_percent(included_minutes: int, minutes_used: int) -> float:
    """Total usage as a percentage of the included allowance."""
    if included_minutes <= 0:
        return 0.0
    return minutes_used / included_minutes * 100


def crossed_threshold(
    thresholds: list[int],
    last_alert_threshold: int | None,
    percent: float,
) -> int | None:
    """Highest threshold reached by ``percent`` and not yet alerted."""
    crossed = [
        t for t in thresholds
        if t <= percent and (last_alert_threshold is None or t > last_alert_threshold)
    ]
    return max(crossed) if crossed else None


# ── Tenants and policies ────────────────────────────────────────────


async def get_tenant(db: AsyncSession, tenant_id: UUID) -> Tenant | None:
    result = await db.execute(select(Tenant).where(Tenant.id == tenant_id))
    return result.scalar_one_or_none()


def tenant_error(tenant: Tenant | None) -> tuple[VoiceErrorCode, str] | None:
    """Why a tenant cannot use voice minutes, or None when it can."""
    if tenant is None:
        return VoiceErrorCode.TENANT_NOT_FOUND, "Tenant not found"
    if tenant.plan not in get_settings().voice_eligible_plans:
        return (
            VoiceErrorCode.PLAN_NOT_ELIGIBLE,
            f"Voice minutes are not included in plan '{tenant.plan}'",
        )
    return None


def default_policy(tenant_id: UUID) -> VoiceMinuteLimit:
    """Unsaved policy carrying the configured defaults."""
    settings = get_settings()
    return VoiceMinuteLimit(
        tenant_id=tenant_id,
        included_minutes=settings.voice_default_included_minutes,
        overage_policy=OveragePolicy(settings.voice_default_overage_policy).value,
        overage_price_minor_units=settings.voice_default_overage_price_minor_units,
        max_overage_charge_minor_units=settings.voice_default_max_overage_charge_minor_units,
        alert_thresholds=list(settings.voice_default_alert_thresholds),
    )


def _insert(db: AsyncSession, model):
    """Dialect-specific INSERT so ON CONFLICT DO NOTHING is available."""
    if db.get_bind().dialect.name == "postgresql":
        return pg_insert(model)
    return sqlite_insert(model)


def _policy_query(tenant_id: UUID, for_update: bool):
    stmt = select(VoiceMinuteLimit).where(VoiceMinuteLimit.tenant_id == tenant_id)
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    return stmt


async def get_policy(
    db: AsyncSession,
    tenant_id: UUID,
    for_update: bool = False,
) -> VoiceMinuteLimit | None:
    result = await db.execute(_policy_query(tenant_id, for_update))
    return result.scalar_one_or_none()


async def get_or_create_policy(
    db: AsyncSession,
    tenant_id: UUID,
    for_update: bool = False,
) -> VoiceMinuteLimit:
    """Get the tenant's policy, inserting the configured defaults if missing.

    Uses INSERT ... ON CONFLICT DO NOTHING so two writers provisioning the
    same tenant at once end up with a single row.
    """
    policy = await get_policy(db, tenant_id, for_update=for_update)
    if policy is not None:
        return policy

    defaults = default_policy(tenant_id)
    stmt = (
        _insert(db, VoiceMinuteLimit)
        .values(
            id=uuid4(),
            tenant_id=tenant_id,
            included_minutes=defaults.included_minutes,
            overage_policy=defaults.overage_policy,
            overage_price_minor_units=defaults.overage_price_minor_units,
            max_overage_charge_minor_units=defaults.max_overage_charge_minor_units,
            alert_thresholds=defaults.alert_thresholds,
        )
        .on_conflict_do_nothing(index_elements=["tenant_id"])
    )
    await db.execute(stmt)
    logger.info("Provisioned default voice policy for tenant %s", tenant_id)

    result = await db.execute(_policy_query(tenant_id, for_update))
    return result.scalar_one()


# ── Periods ─────────────────────────────────────────────────────────


def _empty_period(
    tenant_id: UUID,
    period_start: date,
    period_end: date,
    included_minutes: int,
) -> VoiceMinuteUsage:
    return VoiceMinuteUsage(
        tenant_id=tenant_id,
        period_start=period_start,
        period_end=period_end,
        included_minutes=included_minutes,
        included_minutes_used=0,
        overage_minutes_used=0,
        overage_charge_minor_units=0,
        total_calls=0,
        is_blocked=False,
        blocked_reason=None,
        last_alert_threshold=None,
        is_billed=False,
    )


def _period_query(tenant_id: UUID, period_start: date, for_update: bool):
    stmt = (
        select(VoiceMinuteUsage)
        .where(VoiceMinuteUsage.tenant_id == tenant_id)
        .where(VoiceMinuteUsage.period_start == period_start)
    )
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    return stmt


async def _select_period(
    db: AsyncSession,
    tenant_id: UUID,
    period_start: date,
    for_update: bool,
) -> VoiceMinuteUsage | None:
    result = await db.execute(_period_query(tenant_id, period_start, for_update))
    return result.scalar_one_or_none()


async def insert_period_if_absent(
    db: AsyncSession,
    tenant_id: UUID,
    period_start: date,
    period_end: date,
    included_minutes: int,
) -> bool:
    """Insert a fresh period; returns False if one already existed."""
    stmt = (
        _insert(db, VoiceMinuteUsage)
        .values(
            id=uuid4(),
            tenant_id=tenant_id,
            period_start=period_start,
            period_end=period_end,
            included_minutes=included_minutes,
            included_minutes_used=0,
            overage_minutes_used=0,
            overage_charge_minor_units=0,
            total_calls=0,
            is_blocked=False,
            is_billed=False,
        )
        .on_conflict_do_nothing(index_elements=["tenant_id", "period_start"])
    )
    result = await db.execute(stmt)
    return result.rowcount == 1


async def get_current_period(
    db: AsyncSession,
    tenant_id: UUID,
    policy: VoiceMinuteLimit,
    now: datetime | None = None,
    create: bool = False,
    for_update: bool = False,
) -> VoiceMinuteUsage:
    """Return the period covering ``now``.

    With ``create=False`` a missing period is returned as an unsaved, empty
    view so readers never write. With ``create=True`` the period is inserted
    (snapshotting ``policy.included_minutes``) and re-read, locked when
    ``for_update`` is set.
    """
    period_start, period_end = current_period_bounds(now)
    period = await _select_period(db, tenant_id, period_start, for_update)
    if period is not None:
        return period

    if not create:
        return _empty_period(tenant_id, period_start, period_end, policy.included_minutes)

    if await insert_period_if_absent(
        db, tenant_id, period_start, period_end, policy.included_minutes
    ):
        logger.info(
            "Opened voice period %s..%s for tenant %s",
            period_start,
            period_end,
            tenant_id,
        )
    result = await db.execute(_period_query(tenant_id, period_start, for_update))
    return result.scalar_one()


# ── Snapshots ───────────────────────────────────────────────────────


def policy_snapshot(policy: VoiceMinuteLimit) -> PolicySnapshot:
    return PolicySnapshot(
        included_minutes=policy.included_minutes,
        overage_policy=policy.policy,
        overage_price_minor_units=policy.overage_price_minor_units,
        max_overage_charge_minor_units=policy.max_overage_charge_minor_units,
        alert_thresholds=list(policy.alert_thresholds),
    )


def usage_snapshot(period: VoiceMinuteUsage) -> UsageSnapshot:
    remaining = period.remaining_included
    return UsageSnapshot(
        usage_id=period.id,
        period_start=period.period_start,
        period_end=period.period_end,
        included_minutes=period.included_minutes,
        included_minutes_used=period.included_minutes_used,
        overage_minutes_used=period.overage_minutes_used,
        total_minutes_used=period.total_minutes_used,
        remaining_included=remaining,
        usage_percent=round(usage_percent(period.included_minutes, period.total_minutes_used), 1),
        is_at_limit=remaining == 0,
        overage_charge_minor_units=period.overage_charge_minor_units,
        overage_charge_amount=to_major_units(period.overage_charge_minor_units),
        total_calls=period.total_calls,
        is_blocked=period.is_blocked,
        blocked_reason=period.blocked_reason,
        last_alert_threshold=period.last_alert_threshold,
    )


# ── Period lifecycle job ────────────────────────────────────────────


async def reset_monthly_usage(
    db: AsyncSession,
    now: datetime | None = None,
) -> ResetReport:
    """Open the current calendar-month period for every voice tenant.

    Safe to run repeatedly and concurrently with itself or with usage
    recording: existence is re-checked under the tenant lock and the insert
    ignores conflicts.
    """
    settings = get_settings()
    period_start, period_end = current_period_bounds(now)

    result = await db.execute(
        select(VoiceMinuteLimit.tenant_id, VoiceMinuteLimit.included_minutes)
        .join(Tenant, Tenant.id == VoiceMinuteLimit.tenant_id)
        .where(Tenant.plan.in_(settings.voice_eligible_plans))
        .order_by(VoiceMinuteLimit.tenant_id)
    )
    tenants = result.all()

    created = 0
    for tenant_id, included_minutes in tenants:
        async with tenant_locks.hold(tenant_id):
            if await _select_period(db, tenant_id, period_start, for_update=False):
                continue
            if await insert_period_if_absent(
                db, tenant_id, period_start, period_end, included_minutes
            ):
                created += 1
            await db.commit()

    logger.info(
        "Monthly voice reset: %d/%d tenants got period %s..%s",
        created,
        len(tenants),
        period_start,
        period_end,
    )
    return ResetReport(
        tenants_checked=len(tenants),
        tenants_processed=created,
        period_start=period_start,
        period_end=period_end,
    )
