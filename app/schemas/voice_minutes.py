"""Voice minute schemas: typed outcomes for every ledger operation."""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.models.voice_minute_limit import OveragePolicy


class VoiceErrorCode(str, Enum):
    """Business failures returned (never raised) by the voice minute engine."""

    TENANT_NOT_FOUND = "TENANT_NOT_FOUND"
    PLAN_NOT_ELIGIBLE = "PLAN_NOT_ELIGIBLE"
    INVALID_INPUT = "INVALID_INPUT"
    INVALID_POLICY = "INVALID_POLICY"
    LIMIT_EXCEEDED_BLOCK_POLICY = "LIMIT_EXCEEDED_BLOCK_POLICY"
    TENANT_BLOCKED = "TENANT_BLOCKED"
    ACCESS_DENIED = "ACCESS_DENIED"
    USAGE_NOT_FOUND = "USAGE_NOT_FOUND"
    PERIOD_BILLED = "PERIOD_BILLED"
    ALERT_NOT_FOUND = "ALERT_NOT_FOUND"


class CallerContext(BaseModel):
    """Tenant and role already resolved by the upstream auth layer."""

    tenant_id: UUID
    role: str
    user_id: str | None = None


class VoiceResult(BaseModel):
    """Success/failure envelope shared by all action results."""

    success: bool = True
    error: str | None = None
    error_code: VoiceErrorCode | None = None

    @classmethod
    def fail(cls, code: VoiceErrorCode, message: str, **fields):
        return cls(success=False, error=message, error_code=code, **fields)


# --- Snapshots ---


class PolicySnapshot(BaseModel):
    """Tenant voice policy as seen by one operation."""

    model_config = ConfigDict(from_attributes=True)

    included_minutes: int
    overage_policy: OveragePolicy
    overage_price_minor_units: int
    max_overage_charge_minor_units: int
    alert_thresholds: list[int]


class UsageSnapshot(BaseModel):
    """Current-period counters plus derived figures."""

    usage_id: UUID | None
    period_start: date
    period_end: date
    included_minutes: int
    included_minutes_used: int
    overage_minutes_used: int
    total_minutes_used: int
    remaining_included: int
    usage_percent: float
    is_at_limit: bool
    overage_charge_minor_units: int
    overage_charge_amount: Decimal
    total_calls: int
    is_blocked: bool
    blocked_reason: str | None
    last_alert_threshold: int | None


# --- Admission gate / recorder ---


class AdmissionResult(VoiceResult):
    """Whether a new call may start right now."""

    can_proceed: bool = False
    policy: PolicySnapshot | None = None
    usage: UsageSnapshot | None = None
    block_reason: str | None = None
    user_message: str | None = None


class RecordUsageRequest(BaseModel):
    """Body sent by the voice pipeline once a call has ended."""

    call_id: str | None = None
    seconds_used: int
    metadata: dict = Field(default_factory=dict)


class UsageResult(VoiceResult):
    """Outcome of recording one call against the ledger."""

    transaction_id: UUID | None = None
    usage_id: UUID | None = None
    minutes_recorded: int = 0
    minutes_to_included: int = 0
    minutes_to_overage: int = 0
    is_overage: bool = False
    raw_charge_minor_units: int = 0
    charge_minor_units: int = 0
    charge_amount: Decimal = Decimal("0.00")
    total_overage_charge_minor_units: int = 0
    total_overage_charge_amount: Decimal = Decimal("0.00")
    remaining_included: int = 0
    usage_percent: float = 0.0
    is_blocked: bool = False
    blocked_reason: str | None = None
    alert_threshold_triggered: int | None = None
    is_duplicate: bool = False


# --- Policy manager ---


class PolicyUpdateRequest(BaseModel):
    """Body for changing a tenant's overage policy and limits."""

    overage_policy: str
    included_minutes: int | None = None
    overage_price_minor_units: int | None = None
    max_overage_charge_minor_units: int | None = None
    alert_thresholds: list[int] | None = None


class PolicyResult(VoiceResult):
    """Stored policy after an update, with the unblock count for audit."""

    policy: PolicySnapshot | None = None
    previous_policy: OveragePolicy | None = None
    periods_unblocked: int = 0


# --- Period lifecycle ---


class ResetReport(BaseModel):
    """Outcome of one monthly reset run."""

    success: bool = True
    tenants_checked: int = 0
    tenants_processed: int = 0
    period_start: date
    period_end: date


# --- Billing reconciliation ---


class PendingOverageBilling(BaseModel):
    """A closed period with overage that has not been invoiced yet."""

    tenant_id: UUID
    tenant_name: str
    stripe_customer_id: str | None
    stripe_subscription_id: str | None
    usage_id: UUID
    period_start: date
    period_end: date
    overage_minutes: int
    overage_charge_minor_units: int
    overage_charge_amount: Decimal


class MarkBilledResult(VoiceResult):
    """Outcome of marking a period as invoiced."""

    usage_id: UUID | None = None
    billing_reference_id: str | None = None
    transactions_billed: int = 0


class PaymentStatusResult(VoiceResult):
    """Outcome of a payment confirmation callback."""

    usage_id: UUID | None = None
    tenant_id: UUID | None = None
    paid_reference_id: str | None = None
    paid_at: datetime | None = None


class OverageBillingItem(BaseModel):
    """Per-period line of a billing run report."""

    success: bool
    tenant_id: UUID
    period_start: date
    charge_minor_units: int = 0
    invoice_item_id: str | None = None
    transactions_billed: int = 0
    error: str | None = None


class OverageBillingReport(BaseModel):
    """Outcome of one overage billing run."""

    processed_at: datetime
    tenants_with_overage: int = 0
    tenants_processed: int = 0
    total_overage_minutes: int = 0
    total_charge_minor_units: int = 0
    results: list[OverageBillingItem] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


# --- Read paths ---


class MinuteUsageSummary(VoiceResult):
    """Current period snapshot with policy and calendar position."""

    policy: PolicySnapshot | None = None
    usage: UsageSnapshot | None = None
    days_total: int = 0
    days_elapsed: int = 0
    days_remaining: int = 0


class OveragePreview(VoiceResult):
    """Advisory end-of-period overage projection."""

    period_start: date | None = None
    period_end: date | None = None
    overage_policy: OveragePolicy | None = None
    overage_price_minor_units: int = 0
    current_overage_minutes: int = 0
    current_overage_charge_minor_units: int = 0
    current_overage_charge_amount: Decimal = Decimal("0.00")
    days_elapsed: int = 0
    days_total: int = 0
    projected_overage_minutes: int = 0
    projected_charge_minor_units: int = 0
    projected_charge_amount: Decimal = Decimal("0.00")


class BillingHistoryItem(BaseModel):
    """One closed period as shown in billing history."""

    usage_id: UUID
    period_start: date
    period_end: date
    included_minutes: int
    included_minutes_used: int
    overage_minutes_used: int
    total_minutes_used: int
    overage_charge_minor_units: int
    overage_charge_amount: Decimal
    total_calls: int
    is_billed: bool
    billing_reference_id: str | None
    paid_at: datetime | None


class BillingHistory(VoiceResult):
    """Page of closed periods, newest first."""

    items: list[BillingHistoryItem] = Field(default_factory=list)
    total: int = 0
    limit: int = 12
    offset: int = 0


# --- Alerts ---


class VoiceAlertRead(BaseModel):
    """Schema for reading a usage alert."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    usage_id: UUID
    threshold: int
    severity: str
    usage_percent: float
    minutes_used: int
    included_minutes: int
    overage_minutes: int
    overage_charge_minor_units: int
    title: str
    message: str
    acknowledged: bool
    acknowledged_at: datetime | None
    acknowledged_by: str | None


class VoiceAlertList(VoiceResult):
    """Alerts for a tenant with the unacknowledged count."""

    items: list[VoiceAlertRead] = Field(default_factory=list)
    unacknowledged: int = 0


class AcknowledgeAlertsResult(VoiceResult):
    """How many alerts were acknowledged."""

    acknowledged: int = 0
