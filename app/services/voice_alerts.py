"""Voice usage alerts raised when a period crosses a usage threshold."""

import logging
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.voice_minute_limit import OveragePolicy, VoiceMinuteLimit
from app.models.voice_minute_usage import VoiceMinuteUsage
from app.models.voice_usage_alert import AlertSeverity, VoiceUsageAlert
from app.schemas.voice_minutes import (
    AcknowledgeAlertsResult,
    CallerContext,
    VoiceAlertList,
    VoiceAlertRead,
    VoiceErrorCode,
)
from app.services.voice_ledger import to_major_units, utcnow

logger = logging.getLogger(__name__)


def severity_for(threshold: int) -> AlertSeverity:
    if threshold >= 100:
        return AlertSeverity.CRITICAL
    if threshold >= 85:
        return AlertSeverity.WARNING
    return AlertSeverity.INFO


def _policy_hint(policy: OveragePolicy) -> str:
    match policy:
        case OveragePolicy.BLOCK:
            return "New calls will be rejected once included minutes run out."
        case OveragePolicy.CHARGE:
            return "Additional minutes are billed as overage."
        case OveragePolicy.NOTIFY_ONLY:
            return "Calls continue without additional charges."
        case _:
            raise ValueError(f"Unhandled overage policy: {policy}")


def build_alert(
    period: VoiceMinuteUsage,
    policy: VoiceMinuteLimit,
    threshold: int,
    percent: float,
) -> VoiceUsageAlert:
    """Alert row for ``threshold``; the caller adds it to the session."""
    if threshold >= 100:
        title = "Included voice minutes exhausted"
    else:
        title = f"Voice minutes at {threshold}%"
    message = (
        f"{period.total_minutes_used} of {period.included_minutes} included minutes used "
        f"({percent:.1f}%). {_policy_hint(policy.policy)}"
    )
    if period.overage_charge_minor_units:
        message += f" Overage so far: {to_major_units(period.overage_charge_minor_units)}."

    return VoiceUsageAlert(
        tenant_id=period.tenant_id,
        usage_id=period.id,
        threshold=threshold,
        severity=severity_for(threshold).value,
        usage_percent=round(percent, 2),
        minutes_used=period.total_minutes_used,
        included_minutes=period.included_minutes,
        overage_minutes=period.overage_minutes_used,
        overage_charge_minor_units=period.overage_charge_minor_units,
        title=title,
        message=message,
        acknowledged=False,
    )


async def get_unacknowledged_alert_count(db: AsyncSession, tenant_id: UUID) -> int:
    result = await db.execute(
        select(func.count(VoiceUsageAlert.id))
        .where(VoiceUsageAlert.tenant_id == tenant_id)
        .where(VoiceUsageAlert.acknowledged.is_(False))
    )
    return result.scalar_one() or 0


async def list_voice_alerts(
    db: AsyncSession,
    tenant_id: UUID,
    caller: CallerContext,
    unacknowledged_only: bool = False,
    limit: int = 50,
) -> VoiceAlertList:
    """Most recent alerts for the caller's tenant."""
    if caller.tenant_id != tenant_id:
        return VoiceAlertList.fail(VoiceErrorCode.ACCESS_DENIED, "Access denied")

    stmt = (
        select(VoiceUsageAlert)
        .where(VoiceUsageAlert.tenant_id == tenant_id)
        .order_by(VoiceUsageAlert.created_at.desc(), VoiceUsageAlert.threshold.desc())
        .limit(limit)
    )
    if unacknowledged_only:
        stmt = stmt.where(VoiceUsageAlert.acknowledged.is_(False))
    result = await db.execute(stmt)

    return VoiceAlertList(
        items=[VoiceAlertRead.model_validate(a) for a in result.scalars().all()],
        unacknowledged=await get_unacknowledged_alert_count(db, tenant_id),
    )


async def acknowledge_all_alerts(
    db: AsyncSession,
    tenant_id: UUID,
    caller: CallerContext,
) -> AcknowledgeAlertsResult:
    """Mark every open alert of the tenant as acknowledged by the caller."""
    if caller.tenant_id != tenant_id:
        return AcknowledgeAlertsResult.fail(VoiceErrorCode.ACCESS_DENIED, "Access denied")

    result = await db.execute(
        select(VoiceUsageAlert)
        .where(VoiceUsageAlert.tenant_id == tenant_id)
        .where(VoiceUsageAlert.acknowledged.is_(False))
        .execution_options(populate_existing=True)
    )
    alerts = result.scalars().all()

    now = utcnow()
    for alert in alerts:
        alert.acknowledged = True
        alert.acknowledged_at = now
        alert.acknowledged_by = caller.user_id
    await db.commit()

    logger.info("Acknowledged %d voice alerts for tenant %s", len(alerts), tenant_id)
    return AcknowledgeAlertsResult(acknowledged=len(alerts))


async def acknowledge_alert(
    db: AsyncSession,
    tenant_id: UUID,
    alert_id: UUID,
    caller: CallerContext,
) -> AcknowledgeAlertsResult:
    """Acknowledge one alert. An alert acknowledged earlier keeps its stamp."""
    if caller.tenant_id != tenant_id:
        return AcknowledgeAlertsResult.fail(VoiceErrorCode.ACCESS_DENIED, "Access denied")

    result = await db.execute(
        select(VoiceUsageAlert)
        .where(VoiceUsageAlert.id == alert_id)
        .where(VoiceUsageAlert.tenant_id == tenant_id)
        .execution_options(populate_existing=True)
    )
    alert = result.scalar_one_or_none()
    if alert is None:
        return AcknowledgeAlertsResult.fail(
            VoiceErrorCode.ALERT_NOT_FOUND,
            f"Voice alert {alert_id} not found",
        )
    if alert.acknowledged:
        return AcknowledgeAlertsResult(acknowledged=0)

    alert.acknowledged = True
    alert.acknowledged_at = utcnow()
    alert.acknowledged_by = caller.user_id
    await db.commit()

    logger.info("Acknowledged voice alert %s for tenant %s", alert_id, tenant_id)
    return AcknowledgeAlertsResult(acknowledged=1)
