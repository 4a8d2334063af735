"""Tenant model."""

from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

from sqlalchemy import DateTime, String, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base

if TYPE_CHECKING:
    from app.models.voice_minute_limit import VoiceMinuteLimit
    from app.models.voice_minute_usage import VoiceMinuteUsage


class Tenant(Base):
    """Tenant represents a customer account billed for voice minutes."""

    __tablename__ = "tenants"

    id: Mapped[UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid4,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    plan: Mapped[str] = mapped_column(String(50), nullable=False, default="starter")

    # Stripe identifiers used when invoicing overage
    stripe_customer_id: Mapped[str | None] = mapped_column(
        String(255),
        unique=True,
        nullable=True,
    )
    stripe_subscription_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
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
    voice_limit: Mapped["VoiceMinuteLimit | None"] = relationship(
        "VoiceMinuteLimit",
        back_populates="tenant",
        uselist=False,
        cascade="all, delete-orphan",
    )
    voice_usage_periods: Mapped[list["VoiceMinuteUsage"]] = relationship(
        "VoiceMinuteUsage",
        back_populates="tenant",
        cascade="all, delete-orphan",
    )
