"""Shared fixtures: a throwaway SQLite ledger and tenant factories."""

import os

# The app builds its engine at import time; point it somewhere harmless
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test")

from datetime import date, datetime, timezone
from uuid import UUID, uuid4

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from app.database import Base
from app.models import (
    Tenant,
    VoiceMinuteLimit,
    VoiceMinuteTransaction,
    VoiceMinuteUsage,
    VoiceUsageAlert,
)
from app.schemas.voice_minutes import CallerContext

# Mid-month, so the current period is 2026-03-01..2026-04-01
NOW = datetime(2026, 3, 16, 12, 0, tzinfo=timezone.utc)
PERIOD_START = date(2026, 3, 1)
PERIOD_END = date(2026, 4, 1)


@pytest_asyncio.fixture
async def engine(tmp_path):
    """File-backed SQLite so several sessions can share one ledger."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'voice.db'}",
        poolclass=NullPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_maker) -> AsyncSession:
    async with session_maker() as session:
        yield session


async def make_tenant(
    db: AsyncSession,
    plan: str = "growth",
    stripe_customer_id: str | None = None,
    name: str = "Taqueria El Gordo",
) -> Tenant:
    tenant = Tenant(
        id=uuid4(),
        name=name,
        plan=plan,
        stripe_customer_id=stripe_customer_id,
    )
    db.add(tenant)
    await db.commit()
    return tenant


async def make_policy(
    db: AsyncSession,
    tenant_id: UUID,
    overage_policy: str = "charge",
    included_minutes: int = 200,
    overage_price_minor_units: int = 350,
    max_overage_charge_minor_units: int = 200_000,
    alert_thresholds: list[int] | None = None,
) -> VoiceMinuteLimit:
    policy = VoiceMinuteLimit(
        id=uuid4(),
        tenant_id=tenant_id,
        overage_policy=overage_policy,
        included_minutes=included_minutes,
        overage_price_minor_units=overage_price_minor_units,
        max_overage_charge_minor_units=max_overage_charge_minor_units,
        alert_thresholds=alert_thresholds or [70, 85, 95, 100],
    )
    db.add(policy)
    await db.commit()
    return policy


async def make_period(
    db: AsyncSession,
    tenant_id: UUID,
    period_start: date = PERIOD_START,
    period_end: date = PERIOD_END,
    **fields,
) -> VoiceMinuteUsage:
    values = dict(
        included_minutes=200,
        included_minutes_used=0,
        overage_minutes_used=0,
        overage_charge_minor_units=0,
        total_calls=0,
        is_blocked=False,
        is_billed=False,
    )
    values.update(fields)
    period = VoiceMinuteUsage(
        id=uuid4(),
        tenant_id=tenant_id,
        period_start=period_start,
        period_end=period_end,
        **values,
    )
    db.add(period)
    await db.commit()
    return period


async def fetch_period(
    db: AsyncSession,
    tenant_id: UUID,
    period_start: date = PERIOD_START,
) -> VoiceMinuteUsage | None:
    """Re-read a period from the database, bypassing the identity map."""
    result = await db.execute(
        select(VoiceMinuteUsage)
        .where(VoiceMinuteUsage.tenant_id == tenant_id)
        .where(VoiceMinuteUsage.period_start == period_start)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def fetch_transactions(db: AsyncSession, usage_id: UUID) -> list[VoiceMinuteTransaction]:
    result = await db.execute(
        select(VoiceMinuteTransaction)
        .where(VoiceMinuteTransaction.usage_id == usage_id)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def fetch_alerts(db: AsyncSession, tenant_id: UUID) -> list[VoiceUsageAlert]:
    result = await db.execute(
        select(VoiceUsageAlert)
        .where(VoiceUsageAlert.tenant_id == tenant_id)
        .order_by(VoiceUsageAlert.threshold)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


def owner(tenant_id: UUID) -> CallerContext:
    return CallerContext(tenant_id=tenant_id, role="owner", user_id="user_owner")


def member(tenant_id: UUID) -> CallerContext:
    return CallerContext(tenant_id=tenant_id, role="member", user_id="user_member")
