"""Append-only log of recorded voice calls."""

from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

from sqlalchemy import JSON, CheckConstraint, DateTime, ForeignKey, Integer, String, UniqueConstraint, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base

if TYPE_CHECKING:
    from app.models.voice_minute_usage import VoiceMinuteUsage


class VoiceMinuteTransaction(Base):
    """One recorded call and how its minutes were split and charged."""

    __tablename__ = "voice_minute_transactions"
    __table_args__ = (
        UniqueConstraint("usage_id", "call_id", name="uq_voice_transactions_usage_call"),
        CheckConstraint("seconds_used > 0", name="ck_voice_transactions_seconds"),
        CheckConstraint(
            "minutes_to_included + minutes_to_overage = minutes_recorded",
            name="ck_voice_transactions_split",
        ),
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
    usage_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("voice_minute_usage.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    call_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    seconds_used: Mapped[int] = mapped_column(Integer, nullable=False)
    minutes_recorded: Mapped[int] = mapped_column(Integer, nullable=False)
    minutes_to_included: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    minutes_to_overage: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    charge_minor_units: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    call_metadata: Mapped[dict | None] = mapped_column(JSON, default=dict)

    # Invoice item this overage was folded into
    billing_reference_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )

    # Relationships
    usage: Mapped["VoiceMinuteUsage"] = relationship("VoiceMinuteUsage", back_populates="transactions")

    @property
    def is_overage(self) -> bool:
        return self.minutes_to_overage > 0
