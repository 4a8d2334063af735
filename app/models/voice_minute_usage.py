"""Voice minute usage per tenant per billing period."""

from datetime import date, datetime
from enum import Enum
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base

if TYPE_CHECKING:
    from app.models.tenant import Tenant
    from app.models.voice_minute_transaction import VoiceMinuteTransaction


class BlockedReason(str, Enum):
    """Why a period stopped accepting usage."""

    INCLUDED_EXHAUSTED = "included_exhausted"
    CHARGE_CAP_REACHED = "charge_cap_reached"


class VoiceMinuteUsage(Base):
    """One accounting window (calendar month) of voice usage for a tenant.

    ``period_end`` is exclusive. ``included_minutes`` is the policy value
    snapshotted when the period was opened.
    """

    __tablename__ = "voice_minute_usage"
    __table_args__ = (
        UniqueConstraint("tenant_id", "period_start", name="uq_voice_usage_tenant_period"),
        CheckConstraint("period_end > period_start", name="ck_voice_usage_valid_period"),
        CheckConstraint("included_minutes_used >= 0", name="ck_voice_usage_included_used"),
        CheckConstraint("overage_minutes_used >= 0", name="ck_voice_usage_overage_used"),
        CheckConstraint("overage_charge_minor_units >= 0", name="ck_voice_usage_overage_charge"),
    )

    id: Mapped[UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid4,
    )
    tenant_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    # Period (calendar month)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    included_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Counters
    included_minutes_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    overage_minutes_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    overage_charge_minor_units: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_calls: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Blocking and alerts
    is_blocked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    blocked_reason: Mapped[str | None] = mapped_column(String(50), nullable=True)
    blocked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_alert_threshold: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Billing
    is_billed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    billing_reference_id: Mapped[str | None] = mapped_column(
        String(255),
        unique=True,
        nullable=True,
    )
    billed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_reference_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )

    # Relationships
    tenant: Mapped["Tenant"] = relationship("Tenant", back_populates="voice_usage_periods")
    transactions: Mapped[list["VoiceMinuteTransaction"]] = relationship(
        "VoiceMinuteTransaction",
        back_populates="usage",
        cascade="all, delete-orphan",
    )

    @property
    def total_minutes_used(self) -> int:
        """Included plus overage minutes."""
        return self.included_minutes_used + self.overage_minutes_used

    @property
    def remaining_included(self) -> int:
        """Included minutes left in this period."""
        return max(0, self.included_minutes - self.included_minutes_used)
