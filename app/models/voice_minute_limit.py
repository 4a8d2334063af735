"""Voice minute limit (per-tenant overage policy) model."""

from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

from sqlalchemy import JSON, CheckConstraint, DateTime, ForeignKey, Integer, String, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base

if TYPE_CHECKING:
    from app.models.tenant import Tenant


class OveragePolicy(str, Enum):
    """What happens once a tenant's included minutes run out."""

    BLOCK = "block"
    CHARGE = "charge"
    NOTIFY_ONLY = "notify_only"


class VoiceMinuteLimit(Base):
    """Included minutes, overage price, cap and policy for one tenant."""

    __tablename__ = "voice_minute_limits"
    __table_args__ = (
        CheckConstraint("included_minutes >= 0", name="ck_voice_limits_included_minutes"),
        CheckConstraint("overage_price_minor_units >= 0", name="ck_voice_limits_overage_price"),
        CheckConstraint("max_overage_charge_minor_units >= 0", name="ck_voice_limits_max_charge"),
    )

    id: Mapped[UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid4,
    )
    tenant_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("tenants.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
        index=True,
    )
    included_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=200)
    overage_policy: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=OveragePolicy.CHARGE.value,
    )
    overage_price_minor_units: Mapped[int] = mapped_column(Integer, nullable=False, default=350)
    max_overage_charge_minor_units: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=200_000,
    )
    alert_thresholds: Mapped[list[int]] = mapped_column(
        JSON,
        nullable=False,
        default=lambda: [70, 85, 95, 100],
    )

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
    tenant: Mapped["Tenant"] = relationship("Tenant", back_populates="voice_limit")

    @property
    def policy(self) -> OveragePolicy:
        """Overage policy as an enum member."""
        return OveragePolicy(self.overage_policy)
