"""Voice minute endpoints.

``/check`` and ``/usage`` are called by the voice pipeline and always answer
200 with a typed result. The tenant dashboard routes map failures to HTTP
errors.
"""

from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status

from app.deps import CurrentCaller, DbSession, TenantId
from app.schemas.voice_minutes import (
    AcknowledgeAlertsResult,
    AdmissionResult,
    BillingHistory,
    MinuteUsageSummary,
    OveragePreview,
    PolicyResult,
    PolicyUpdateRequest,
    RecordUsageRequest,
    UsageResult,
    VoiceAlertList,
    VoiceErrorCode,
    VoiceResult,
)
from app.services.minute_limit import check_minute_limit, record_minute_usage
from app.services.minute_policy import update_minute_limit_policy
from app.services.voice_alerts import (
    acknowledge_alert,
    acknowledge_all_alerts,
    list_voice_alerts,
)
from app.services.voice_reports import (
    get_current_overage_preview,
    get_minute_usage_summary,
    get_voice_billing_history,
)

router = APIRouter()

_STATUS_FOR_ERROR = {
    VoiceErrorCode.ACCESS_DENIED: status.HTTP_403_FORBIDDEN,
    VoiceErrorCode.PLAN_NOT_ELIGIBLE: status.HTTP_403_FORBIDDEN,
    VoiceErrorCode.TENANT_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    VoiceErrorCode.USAGE_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    VoiceErrorCode.ALERT_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    VoiceErrorCode.INVALID_INPUT: status.HTTP_422_UNPROCESSABLE_ENTITY,
    VoiceErrorCode.INVALID_POLICY: status.HTTP_422_UNPROCESSABLE_ENTITY,
}


def raise_for_error(result: VoiceResult) -> None:
    """Translate a failed result into an HTTP error for dashboard routes."""
    if result.success:
        return
    raise HTTPException(
        status_code=_STATUS_FOR_ERROR.get(result.error_code, status.HTTP_409_CONFLICT),
        detail={"error": result.error, "error_code": result.error_code.value},
    )


# --- Voice pipeline ---


@router.get("/check", response_model=AdmissionResult)
async def check_limit(tenant_id: TenantId, db: DbSession) -> AdmissionResult:
    """Whether a new call may start for the tenant."""
    return await check_minute_limit(db, tenant_id)


@router.post("/usage", response_model=UsageResult)
async def record_usage(
    data: RecordUsageRequest,
    tenant_id: TenantId,
    db: DbSession,
) -> UsageResult:
    """Record a finished call."""
    return await record_minute_usage(
        db,
        tenant_id,
        call_id=data.call_id,
        seconds_used=data.seconds_used,
        metadata=data.metadata,
    )


# --- Tenant dashboard ---


@router.get("/tenants/{tenant_id}/summary", response_model=MinuteUsageSummary)
async def get_summary(
    tenant_id: UUID,
    caller: CurrentCaller,
    db: DbSession,
) -> MinuteUsageSummary:
    """Current period usage with policy and days remaining."""
    result = await get_minute_usage_summary(db, tenant_id, caller)
    raise_for_error(result)
    return result


@router.get("/tenants/{tenant_id}/preview", response_model=OveragePreview)
async def get_preview(
    tenant_id: UUID,
    caller: CurrentCaller,
    db: DbSession,
) -> OveragePreview:
    """Projected overage for the end of the current period."""
    result = await get_current_overage_preview(db, tenant_id, caller)
    raise_for_error(result)
    return result


@router.get("/tenants/{tenant_id}/history", response_model=BillingHistory)
async def get_history(
    tenant_id: UUID,
    caller: CurrentCaller,
    db: DbSession,
    limit: int = Query(12, ge=1, le=100),
    offset: int = Query(0, ge=0),
) -> BillingHistory:
    """Closed periods, newest first."""
    result = await get_voice_billing_history(db, tenant_id, caller, limit=limit, offset=offset)
    raise_for_error(result)
    return result


@router.put("/tenants/{tenant_id}/policy", response_model=PolicyResult)
async def update_policy(
    tenant_id: UUID,
    data: PolicyUpdateRequest,
    caller: CurrentCaller,
    db: DbSession,
) -> PolicyResult:
    """Change the overage policy (owners and admins only)."""
    result = await update_minute_limit_policy(
        db,
        tenant_id,
        data.overage_policy,
        caller,
        included_minutes=data.included_minutes,
        overage_price_minor_units=data.overage_price_minor_units,
        max_overage_charge_minor_units=data.max_overage_charge_minor_units,
        alert_thresholds=data.alert_thresholds,
    )
    raise_for_error(result)
    return result


@router.get("/tenants/{tenant_id}/alerts", response_model=VoiceAlertList)
async def get_alerts(
    tenant_id: UUID,
    caller: CurrentCaller,
    db: DbSession,
    unacknowledged_only: bool = False,
    limit: int = Query(50, ge=1, le=200),
) -> VoiceAlertList:
    """Usage alerts raised for the tenant."""
    result = await list_voice_alerts(
        db, tenant_id, caller, unacknowledged_only=unacknowledged_only, limit=limit
    )
    raise_for_error(result)
    return result


@router.post("/tenants/{tenant_id}/alerts/acknowledge", response_model=AcknowledgeAlertsResult)
async def acknowledge_alerts(
    tenant_id: UUID,
    caller: CurrentCaller,
    db: DbSession,
) -> AcknowledgeAlertsResult:
    """Acknowledge all open alerts."""
    result = await acknowledge_all_alerts(db, tenant_id, caller)
    raise_for_error(result)
    return result


@router.post(
    "/tenants/{tenant_id}/alerts/{alert_id}/acknowledge",
    response_model=AcknowledgeAlertsResult,
)
async def acknowledge_one_alert(
    tenant_id: UUID,
    alert_id: UUID,
    caller: CurrentCaller,
    db: DbSession,
) -> AcknowledgeAlertsResult:
    result = await acknowledge_alert(db, tenant_id, alert_id, caller)
    raise_for_error(result)
    return result
