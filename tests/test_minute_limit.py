"""Tests for the admission gate and the usage recorder."""

import asyncio
from uuid import uuid4

import pytest

from app.schemas.voice_minutes import VoiceErrorCode
from app.services.minute_limit import PLAN_LIMIT_MESSAGE, check_minute_limit, record_minute_usage

from conftest import (
    NOW,
    fetch_alerts,
    fetch_period,
    fetch_transactions,
    make_period,
    make_policy,
    make_tenant,
)


# ─── Admission gate ──────────────────────────────────────────────────────────

class TestCheckMinuteLimit:
    @pytest.mark.asyncio
    async def test_unknown_tenant(self, db):
        result = await check_minute_limit(db, uuid4(), now=NOW)

        assert not result.success
        assert result.error_code == VoiceErrorCode.TENANT_NOT_FOUND
        assert not result.can_proceed

    @pytest.mark.asyncio
    async def test_plan_not_eligible(self, db):
        tenant = await make_tenant(db, plan="starter")

        result = await check_minute_limit(db, tenant.id, now=NOW)

        assert result.error_code == VoiceErrorCode.PLAN_NOT_ELIGIBLE
        assert not result.can_proceed

    @pytest.mark.asyncio
    async def test_fresh_tenant_may_call_without_writing(self, db):
        tenant = await make_tenant(db)

        result = await check_minute_limit(db, tenant.id, now=NOW)

        assert result.success
        assert result.can_proceed
        assert result.usage.remaining_included == 200
        assert result.usage.usage_id is None
        assert result.policy.overage_policy == "charge"
        assert await fetch_period(db, tenant.id) is None

    @pytest.mark.asyncio
    async def test_block_policy_at_limit(self, db):
        tenant = await make_tenant(db)
        await make_policy(db, tenant.id, overage_policy="block")
        await make_period(db, tenant.id, included_minutes_used=200)

        result = await check_minute_limit(db, tenant.id, now=NOW)

        assert not result.can_proceed
        assert result.error_code == VoiceErrorCode.LIMIT_EXCEEDED_BLOCK_POLICY
        assert result.user_message == PLAN_LIMIT_MESSAGE
        assert result.usage.is_at_limit

    @pytest.mark.asyncio
    async def test_charge_policy_at_limit_proceeds(self, db):
        tenant = await make_tenant(db)
        await make_policy(db, tenant.id, overage_policy="charge")
        await make_period(db, tenant.id, included_minutes_used=200, overage_minutes_used=30)

        result = await check_minute_limit(db, tenant.id, now=NOW)

        assert result.can_proceed
        assert result.usage.overage_minutes_used == 30

    @pytest.mark.asyncio
    async def test_blocked_period(self, db):
        tenant = await make_tenant(db)
        await make_policy(db, tenant.id, overage_policy="charge")
        await make_period(
            db,
            tenant.id,
            included_minutes_used=200,
            overage_charge_minor_units=200_000,
            is_blocked=True,
            blocked_reason="charge_cap_reached",
        )

        result = await check_minute_limit(db, tenant.id, now=NOW)

        assert not result.can_proceed
        assert result.error_code == VoiceErrorCode.TENANT_BLOCKED
        assert result.user_message == PLAN_LIMIT_MESSAGE


# ─── Usage recorder ──────────────────────────────────────────────────────────

class TestRecordMinuteUsage:
    @pytest.mark.asyncio
    async def test_rejects_non_positive_seconds(self, db):
        tenant = await make_tenant(db)

        for seconds in (0, -5):
            result = await record_minute_usage(db, tenant.id, "call-1", seconds, now=NOW)
            assert result.error_code == VoiceErrorCode.INVALID_INPUT

        assert await fetch_period(db, tenant.id) is None

    @pytest.mark.asyncio
    async def test_rejects_non_integer_seconds(self, db):
        tenant = await make_tenant(db)

        result = await record_minute_usage(db, tenant.id, "call-1", 12.5, now=NOW)

        assert result.error_code == VoiceErrorCode.INVALID_INPUT

    @pytest.mark.asyncio
    async def test_unknown_tenant(self, db):
        result = await record_minute_usage(db, uuid4(), "call-1", 60, now=NOW)

        assert result.error_code == VoiceErrorCode.TENANT_NOT_FOUND

    @pytest.mark.asyncio
    async def test_first_call_creates_policy_and_period(self, db):
        tenant = await make_tenant(db)

        result = await record_minute_usage(db, tenant.id, "call-1", 185, now=NOW)

        assert result.success
        assert result.minutes_recorded == 4
        assert result.minutes_to_included == 4
        assert result.minutes_to_overage == 0
        assert result.remaining_included == 196

        period = await fetch_period(db, tenant.id)
        assert period.included_minutes_used == 4
        assert period.total_calls == 1

    @pytest.mark.asyncio
    async def test_split_across_included_and_overage(self, db):
        tenant = await make_tenant(db)
        await make_policy(db, tenant.id, overage_policy="charge", overage_price_minor_units=350)
        await make_period(db, tenant.id, included_minutes_used=198)

        result = await record_minute_usage(db, tenant.id, "call-1", 300, now=NOW)

        assert result.minutes_recorded == 5
        assert result.minutes_to_included == 2
        assert result.minutes_to_overage == 3
        assert result.charge_minor_units == 1050
        assert result.is_overage
        assert not result.is_blocked

        period = await fetch_period(db, tenant.id)
        assert period.included_minutes_used == 200
        assert period.overage_minutes_used == 3
        assert period.overage_charge_minor_units == 1050

        [txn] = await fetch_transactions(db, period.id)
        assert txn.minutes_to_included + txn.minutes_to_overage == txn.minutes_recorded
        assert txn.charge_minor_units == 1050

    @pytest.mark.asyncio
    async def test_charge_is_clipped_at_cap(self, db):
        tenant = await make_tenant(db)
        await make_policy(
            db,
            tenant.id,
            overage_policy="charge",
            overage_price_minor_units=350,
            max_overage_charge_minor_units=200_000,
        )
        await make_period(
            db,
            tenant.id,
            included_minutes_used=200,
            overage_minutes_used=568,
            overage_charge_minor_units=199_000,
        )

        result = await record_minute_usage(db, tenant.id, "call-1", 300, now=NOW)

        assert result.minutes_to_overage == 5
        assert result.raw_charge_minor_units == 1750
        assert result.charge_minor_units == 1000
        assert result.total_overage_charge_minor_units == 200_000
        assert result.is_blocked
        assert result.blocked_reason == "charge_cap_reached"

        period = await fetch_period(db, tenant.id)
        assert period.overage_minutes_used == 573
        assert period.overage_charge_minor_units == 200_000
        assert period.is_blocked

    @pytest.mark.asyncio
    async def test_block_policy_blocks_when_included_runs_out(self, db):
        tenant = await make_tenant(db)
        await make_policy(db, tenant.id, overage_policy="block")
        await make_period(db, tenant.id, included_minutes_used=198)

        result = await record_minute_usage(db, tenant.id, "call-1", 120, now=NOW)

        assert result.minutes_to_included == 2
        assert result.charge_minor_units == 0
        assert result.is_blocked
        assert result.blocked_reason == "included_exhausted"

        followup = await record_minute_usage(db, tenant.id, "call-2", 60, now=NOW)
        assert followup.error_code == VoiceErrorCode.TENANT_BLOCKED

    @pytest.mark.asyncio
    async def test_notify_only_never_charges_or_blocks(self, db):
        tenant = await make_tenant(db)
        await make_policy(db, tenant.id, overage_policy="notify_only")
        await make_period(db, tenant.id, included_minutes_used=200)

        result = await record_minute_usage(db, tenant.id, "call-1", 600, now=NOW)

        assert result.minutes_to_overage == 10
        assert result.charge_minor_units == 0
        assert not result.is_blocked

    @pytest.mark.asyncio
    async def test_zero_cap_allows_calls_until_included_exhausted(self, db):
        tenant = await make_tenant(db)
        await make_policy(db, tenant.id, overage_policy="charge", max_overage_charge_minor_units=0)

        first = await record_minute_usage(db, tenant.id, "call-1", 60, now=NOW)
        assert first.success
        assert not first.is_blocked

        await make_period_usage(db, tenant.id, included_minutes_used=199)
        last = await record_minute_usage(db, tenant.id, "call-2", 120, now=NOW)
        assert last.minutes_to_overage == 1
        assert last.charge_minor_units == 0
        assert last.is_blocked
        assert last.blocked_reason == "charge_cap_reached"

    @pytest.mark.asyncio
    async def test_duplicate_call_is_not_counted_twice(self, db):
        tenant = await make_tenant(db)

        first = await record_minute_usage(db, tenant.id, "call-1", 90, now=NOW)
        second = await record_minute_usage(db, tenant.id, "call-1", 90, now=NOW)

        assert second.success
        assert second.is_duplicate
        assert second.transaction_id == first.transaction_id
        assert second.minutes_recorded == 2

        period = await fetch_period(db, tenant.id)
        assert period.included_minutes_used == 2
        assert period.total_calls == 1

    @pytest.mark.asyncio
    async def test_calls_without_id_are_all_counted(self, db):
        tenant = await make_tenant(db)

        await record_minute_usage(db, tenant.id, None, 60, now=NOW)
        await record_minute_usage(db, tenant.id, None, 60, now=NOW)

        period = await fetch_period(db, tenant.id)
        assert period.total_calls == 2
        assert period.included_minutes_used == 2

    @pytest.mark.asyncio
    async def test_billed_period_is_frozen(self, db):
        tenant = await make_tenant(db)
        await make_policy(db, tenant.id)
        await make_period(db, tenant.id, included_minutes_used=50, is_billed=True)

        admission = await check_minute_limit(db, tenant.id, now=NOW)
        result = await record_minute_usage(db, tenant.id, "call-1", 60, now=NOW)

        assert not admission.can_proceed
        assert admission.error_code == VoiceErrorCode.PERIOD_BILLED
        assert result.error_code == VoiceErrorCode.PERIOD_BILLED
        period = await fetch_period(db, tenant.id)
        assert period.included_minutes_used == 50

    @pytest.mark.asyncio
    async def test_counters_never_decrease(self, db):
        tenant = await make_tenant(db)
        await make_policy(db, tenant.id, included_minutes=10, max_overage_charge_minor_units=5_000)

        previous = (0, 0, 0)
        for n, seconds in enumerate([61, 300, 45, 600, 1, 900]):
            await record_minute_usage(db, tenant.id, f"call-{n}", seconds, now=NOW)
            period = await fetch_period(db, tenant.id)
            current = (
                period.included_minutes_used,
                period.overage_minutes_used,
                period.overage_charge_minor_units,
            )
            assert all(c >= p for c, p in zip(current, previous))
            assert period.included_minutes_used <= period.included_minutes
            previous = current


class TestThresholdAlerts:
    @pytest.mark.asyncio
    async def test_alert_on_crossing(self, db):
        tenant = await make_tenant(db)
        await make_policy(db, tenant.id, included_minutes=100)
        await make_period(db, tenant.id, included_minutes=100, included_minutes_used=60)

        result = await record_minute_usage(db, tenant.id, "call-1", 720, now=NOW)

        assert result.alert_threshold_triggered == 70
        [alert] = await fetch_alerts(db, tenant.id)
        assert alert.threshold == 70
        assert alert.severity == "info"
        assert alert.minutes_used == 72

    @pytest.mark.asyncio
    async def test_jump_reports_highest_threshold_once(self, db):
        tenant = await make_tenant(db)
        await make_policy(db, tenant.id, included_minutes=100)
        await make_period(db, tenant.id, included_minutes=100)

        first = await record_minute_usage(db, tenant.id, "call-1", 96 * 60, now=NOW)
        second = await record_minute_usage(db, tenant.id, "call-2", 60, now=NOW)

        assert first.alert_threshold_triggered == 95
        assert second.alert_threshold_triggered is None
        period = await fetch_period(db, tenant.id)
        assert period.last_alert_threshold == 95

    @pytest.mark.asyncio
    async def test_exhausted_alert_is_critical(self, db):
        tenant = await make_tenant(db)
        await make_policy(db, tenant.id, included_minutes=100)
        await make_period(db, tenant.id, included_minutes=100, included_minutes_used=96, last_alert_threshold=95)

        result = await record_minute_usage(db, tenant.id, "call-1", 300, now=NOW)

        assert result.alert_threshold_triggered == 100
        [alert] = await fetch_alerts(db, tenant.id)
        assert alert.severity == "critical"


class TestConcurrentRecording:
    @pytest.mark.asyncio
    async def test_last_included_minute_goes_to_one_call(self, session_maker):
        async with session_maker() as setup:
            tenant = await make_tenant(setup)
            await make_policy(setup, tenant.id, overage_policy="charge")
            await make_period(setup, tenant.id, included_minutes_used=199)

        async def record(call_id: str):
            async with session_maker() as session:
                return await record_minute_usage(session, tenant.id, call_id, 60, now=NOW)

        results = await asyncio.gather(record("call-a"), record("call-b"))

        assert all(r.success for r in results)
        splits = sorted((r.minutes_to_included, r.minutes_to_overage) for r in results)
        assert splits == [(0, 1), (1, 0)]

        async with session_maker() as check:
            period = await fetch_period(check, tenant.id)
            assert period.included_minutes_used == 200
            assert period.overage_minutes_used == 1
            assert period.total_calls == 2

    @pytest.mark.asyncio
    async def test_first_calls_of_a_month_share_one_period(self, session_maker):
        async with session_maker() as setup:
            tenant = await make_tenant(setup)

        async def record(call_id: str):
            async with session_maker() as session:
                return await record_minute_usage(session, tenant.id, call_id, 60, now=NOW)

        results = await asyncio.gather(*(record(f"call-{n}") for n in range(5)))

        assert len({r.usage_id for r in results}) == 1
        async with session_maker() as check:
            period = await fetch_period(check, tenant.id)
            assert period.total_calls == 5
            assert period.included_minutes_used == 5


async def make_period_usage(db, tenant_id, **fields):
    """Overwrite counters of the current period."""
    period = await fetch_period(db, tenant_id)
    for name, value in fields.items():
        setattr(period, name, value)
    await db.commit()
