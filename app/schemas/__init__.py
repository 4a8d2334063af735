"""Pydantic schemas for API request/response validation."""

from app.schemas.voice_minutes import (
    AdmissionResult,
    BillingHistory,
    CallerContext,
    MinuteUsageSummary,
    OveragePreview,
    PolicyResult,
    PolicyUpdateRequest,
    RecordUsageRequest,
    UsageResult,
    VoiceErrorCode,
)

__all__ = [
    "AdmissionResult",
    "BillingHistory",
    "CallerContext",
    "MinuteUsageSummary",
    "OveragePreview",
    "PolicyResult",
    "PolicyUpdateRequest",
    "RecordUsageRequest",
    "UsageResult",
    "VoiceErrorCode",
]
