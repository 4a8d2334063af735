"""SQLAlchemy models package."""

from app.models.tenant import Tenant
from app.models.voice_minute_limit import OveragePolicy, VoiceMinuteLimit
from app.models.voice_minute_usage import BlockedReason, VoiceMinuteUsage
from app.models.voice_minute_transaction import VoiceMinuteTransaction
from app.models.voice_usage_alert import AlertSeverity, VoiceUsageAlert

__all__ = [
    "Tenant",
    "OveragePolicy",
    "VoiceMinuteLimit",
    "BlockedReason",
    "VoiceMinuteUsage",
    "VoiceMinuteTransaction",
    "AlertSeverity",
    "VoiceUsageAlert",
]
