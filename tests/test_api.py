"""Endpoint tests for the voice minute routes and the Stripe webhook."""

from uuid import uuid4
from unittest.mock import MagicMock, patch

import pytest
import stripe
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.orm import Session
from sqlalchemy.pool import NullPool

from app.database import Base, get_db
from app.main import app
from app.models import Tenant, VoiceMinuteLimit, VoiceMinuteUsage
from app.services.voice_ledger import current_period_bounds


# --- Fixtures ---

@pytest.fixture
def sync_engine(tmp_path):
    """Sync handle on the same SQLite file, used to seed and inspect."""
    path = tmp_path / "api.db"
    engine = create_engine(f"sqlite:///{path}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def client(sync_engine):
    """FastAPI test client bound to the test database."""
    async_engine = create_async_engine(
        f"sqlite+aiosqlite:///{sync_engine.url.database}",
        poolclass=NullPool,
    )
    session_maker = async_sessionmaker(async_engine, expire_on_commit=False)

    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def tenant(sync_engine) -> Tenant:
    with Session(sync_engine, expire_on_commit=False) as session:
        tenant = Tenant(id=uuid4(), name="Clinica Dental Sonrisa", plan="growth", stripe_customer_id="cus_api")
        session.add(tenant)
        session.commit()
        return tenant


def headers(tenant_id, role="owner") -> dict:
    return {"X-Tenant-ID": str(tenant_id), "X-Caller-Role": role, "X-User-ID": "user_1"}


def seed_block_policy_at_limit(sync_engine, tenant_id):
    start, end = current_period_bounds()
    with Session(sync_engine) as session:
        session.add(VoiceMinuteLimit(
            id=uuid4(),
            tenant_id=tenant_id,
            included_minutes=200,
            overage_policy="block",
            overage_price_minor_units=350,
            max_overage_charge_minor_units=200_000,
            alert_thresholds=[70, 85, 95, 100],
        ))
        session.add(VoiceMinuteUsage(
            id=uuid4(),
            tenant_id=tenant_id,
            period_start=start,
            period_end=end,
            included_minutes=200,
            included_minutes_used=200,
            overage_minutes_used=0,
            overage_charge_minor_units=0,
            total_calls=50,
            is_blocked=False,
            is_billed=False,
        ))
        session.commit()


# --- Voice pipeline ---

class TestPipelineRoutes:
    def test_check_requires_tenant_header(self, client):
        response = client.get("/api/v1/voice-minutes/check")
        assert response.status_code == 400

    def test_check_allows_fresh_tenant(self, client, tenant):
        response = client.get("/api/v1/voice-minutes/check", headers=headers(tenant.id))

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["can_proceed"] is True

    def test_check_denied_is_still_200(self, client, sync_engine, tenant):
        seed_block_policy_at_limit(sync_engine, tenant.id)

        response = client.get("/api/v1/voice-minutes/check", headers=headers(tenant.id))

        assert response.status_code == 200
        body = response.json()
        assert body["can_proceed"] is False
        assert body["error_code"] == "LIMIT_EXCEEDED_BLOCK_POLICY"
        assert body["user_message"]

    def test_record_usage(self, client, sync_engine, tenant):
        response = client.post(
            "/api/v1/voice-minutes/usage",
            headers=headers(tenant.id),
            json={"call_id": "call-1", "seconds_used": 185, "metadata": {"agent": "reception"}},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["minutes_recorded"] == 4

        with Session(sync_engine) as session:
            period = session.scalars(
                select(VoiceMinuteUsage).where(VoiceMinuteUsage.tenant_id == tenant.id)
            ).one()
            assert period.included_minutes_used == 4

    def test_record_invalid_seconds_is_typed_failure(self, client, tenant):
        response = client.post(
            "/api/v1/voice-minutes/usage",
            headers=headers(tenant.id),
            json={"call_id": "call-1", "seconds_used": 0},
        )

        assert response.status_code == 200
        assert response.json()["error_code"] == "INVALID_INPUT"


# --- Tenant dashboard ---

class TestDashboardRoutes:
    def test_summary(self, client, tenant):
        response = client.get(
            f"/api/v1/voice-minutes/tenants/{tenant.id}/summary", headers=headers(tenant.id)
        )

        assert response.status_code == 200
        body = response.json()
        assert body["usage"]["remaining_included"] == 200
        assert body["policy"]["overage_policy"] == "charge"

    def test_summary_for_other_tenant_is_forbidden(self, client, tenant):
        response = client.get(
            f"/api/v1/voice-minutes/tenants/{tenant.id}/summary", headers=headers(uuid4())
        )

        assert response.status_code == 403
        assert response.json()["detail"]["error_code"] == "ACCESS_DENIED"
        assert "usage" not in response.json()

    def test_summary_requires_role(self, client, tenant):
        response = client.get(
            f"/api/v1/voice-minutes/tenants/{tenant.id}/summary",
            headers={"X-Tenant-ID": str(tenant.id)},
        )
        assert response.status_code == 401

    def test_update_policy(self, client, tenant):
        response = client.put(
            f"/api/v1/voice-minutes/tenants/{tenant.id}/policy",
            headers=headers(tenant.id),
            json={"overage_policy": "notify_only", "alert_thresholds": [80, 100]},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["policy"]["overage_policy"] == "notify_only"
        assert body["previous_policy"] == "charge"

    def test_update_policy_as_member_is_forbidden(self, client, tenant):
        response = client.put(
            f"/api/v1/voice-minutes/tenants/{tenant.id}/policy",
            headers=headers(tenant.id, role="member"),
            json={"overage_policy": "block"},
        )
        assert response.status_code == 403

    def test_update_policy_invalid(self, client, tenant):
        response = client.put(
            f"/api/v1/voice-minutes/tenants/{tenant.id}/policy",
            headers=headers(tenant.id),
            json={"overage_policy": "free_for_all"},
        )
        assert response.status_code == 422
        assert response.json()["detail"]["error_code"] == "INVALID_POLICY"

    def test_history_and_preview(self, client, tenant):
        history = client.get(
            f"/api/v1/voice-minutes/tenants/{tenant.id}/history", headers=headers(tenant.id)
        )
        preview = client.get(
            f"/api/v1/voice-minutes/tenants/{tenant.id}/preview", headers=headers(tenant.id)
        )

        assert history.status_code == 200
        assert history.json()["items"] == []
        assert preview.status_code == 200
        assert preview.json()["current_overage_minutes"] == 0

    def test_alerts(self, client, tenant):
        client.post(
            "/api/v1/voice-minutes/usage",
            headers=headers(tenant.id),
            json={"call_id": "long-call", "seconds_used": 150 * 60},
        )

        listed = client.get(f"/api/v1/voice-minutes/tenants/{tenant.id}/alerts", headers=headers(tenant.id))
        assert listed.status_code == 200
        assert listed.json()["unacknowledged"] == 1
        assert listed.json()["items"][0]["threshold"] == 70

        acked = client.post(
            f"/api/v1/voice-minutes/tenants/{tenant.id}/alerts/acknowledge", headers=headers(tenant.id)
        )
        assert acked.json()["acknowledged"] == 1

    def test_acknowledge_one_alert(self, client, tenant):
        client.post(
            "/api/v1/voice-minutes/usage",
            headers=headers(tenant.id),
            json={"call_id": "long-call", "seconds_used": 150 * 60},
        )
        listed = client.get(f"/api/v1/voice-minutes/tenants/{tenant.id}/alerts", headers=headers(tenant.id))
        alert_id = listed.json()["items"][0]["id"]

        acked = client.post(
            f"/api/v1/voice-minutes/tenants/{tenant.id}/alerts/{alert_id}/acknowledge",
            headers=headers(tenant.id),
        )
        missing = client.post(
            f"/api/v1/voice-minutes/tenants/{tenant.id}/alerts/{uuid4()}/acknowledge",
            headers=headers(tenant.id),
        )

        assert acked.status_code == 200
        assert acked.json()["acknowledged"] == 1
        assert missing.status_code == 404
        assert missing.json()["detail"]["error_code"] == "ALERT_NOT_FOUND"


# --- Stripe webhook ---

class TestStripeWebhook:
    def test_missing_signature(self, client):
        response = client.post("/api/v1/webhooks/stripe", content=b"{}")
        assert response.status_code == 400

    def test_invalid_signature(self, client):
        with patch(
            "app.api.v1.webhooks.stripe.Webhook.construct_event",
            side_effect=stripe.SignatureVerificationError("bad", "sig"),
        ):
            response = client.post(
                "/api/v1/webhooks/stripe", content=b"{}", headers={"stripe-signature": "sig"}
            )
        assert response.status_code == 400

    def test_invoice_paid_confirms_overage(self, client, sync_engine, tenant):
        start, end = current_period_bounds()
        with Session(sync_engine) as session:
            session.add(VoiceMinuteUsage(
                id=uuid4(),
                tenant_id=tenant.id,
                period_start=start,
                period_end=end,
                included_minutes=200,
                included_minutes_used=200,
                overage_minutes_used=3,
                overage_charge_minor_units=1050,
                total_calls=10,
                is_blocked=False,
                is_billed=True,
                billing_reference_id="ii_paid",
            ))
            session.commit()

        invoice = {
            "id": "in_999",
            "status_transitions": {"paid_at": 1772703000},
            "lines": {"data": [{"id": "il_1", "metadata": {"type": "voice_overage"}, "invoice_item": "ii_paid"}]},
        }
        event = MagicMock(type="invoice.paid")
        event.data.object = invoice

        with patch("app.api.v1.webhooks.stripe.Webhook.construct_event", return_value=event):
            response = client.post(
                "/api/v1/webhooks/stripe", content=b"{}", headers={"stripe-signature": "sig"}
            )

        assert response.status_code == 200
        with Session(sync_engine) as session:
            period = session.scalars(
                select(VoiceMinuteUsage).where(VoiceMinuteUsage.billing_reference_id == "ii_paid")
            ).one()
            assert period.paid_reference_id == "in_999"
            assert period.paid_at is not None
