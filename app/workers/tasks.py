"""Arq cron jobs for the voice minute period lifecycle and overage billing."""

import logging

from arq import cron
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from app.config import get_settings
from app.services.voice_billing import process_overage_billing
from app.services.voice_ledger import reset_monthly_usage
from app.workers.settings import redis_settings

settings = get_settings()
logger = logging.getLogger(__name__)


# Create engine for worker (separate from web app)
engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_pre_ping=True,
)
async_session_maker = async_sessionmaker(engine, expire_on_commit=False)


async def get_db() -> AsyncSession:
    """Get database session for worker."""
    return async_session_maker()


async def reset_monthly_voice_usage(ctx: dict) -> dict:
    """Cron job: open the new calendar-month period for every voice tenant."""
    db = await get_db()
    try:
        report = await reset_monthly_usage(db)
        logger.info(
            "Cron: voice reset opened %d periods for %s",
            report.tenants_processed,
            report.period_start,
        )
        return report.model_dump(mode="json")

    except Exception as e:
        logger.exception("Voice reset failed")
        await db.rollback()
        return {"error": str(e)}

    finally:
        await db.close()


async def bill_voice_overage(ctx: dict) -> dict:
    """Cron job: invoice overage of closed periods through Stripe."""
    db = await get_db()
    try:
        report = await process_overage_billing(db)
        return {
            "tenants_processed": report.tenants_processed,
            "total_charge_minor_units": report.total_charge_minor_units,
            "errors": report.errors,
        }

    except Exception as e:
        logger.exception("Voice overage billing failed")
        await db.rollback()
        return {"error": str(e)}

    finally:
        await db.close()


# ── Lifecycle ───────────────────────────────────────────────────────


async def startup(ctx: dict) -> None:
    """Worker startup hook."""
    logger.info("Worker starting up...")


async def shutdown(ctx: dict) -> None:
    """Worker shutdown hook."""
    logger.info("Worker shutting down...")
    await engine.dispose()


class WorkerSettings:
    """Arq worker settings."""

    functions = [reset_monthly_voice_usage, bill_voice_overage]
    cron_jobs = [
        # First day of the month, before any traffic of the new period is billed
        cron(reset_monthly_voice_usage, day=1, hour=0, minute=5),
        # Daily so a failed run is retried the next morning
        cron(bill_voice_overage, hour=6, minute=0),
    ]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = redis_settings
    max_jobs = 10
    job_timeout = 600  # 10 minutes max per job
    keep_result = 3600  # Keep results for 1 hour
