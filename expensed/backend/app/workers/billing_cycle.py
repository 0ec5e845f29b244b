# backend/app/workers/billing_cycle.py
"""
Billing-cycle jobs.

Each job is safe to run twice for the same cycle: usage resets and
repeating-coupon months are keyed on the cycle start, and period-end
cancellations only pick up subscriptions that are still pending. Celery
therefore simply retries a failed run.
"""
import asyncio
from datetime import datetime
from typing import Dict, Optional

from celery import Task
from celery.schedules import crontab

from app.core.config import settings
from app.core.logging import logger
from app.core.timeutils import utcnow
from app.workers.celery_app import celery_app


def cycle_start_for(now: datetime) -> datetime:
    """Calendar-month cycle boundary at or before ``now``"""
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def _session_factory(session_factory=None):
    if session_factory is not None:
        return session_factory
    from app.db.database import async_session_local
    return async_session_local


async def reset_monthly_usage(cycle_start: Optional[datetime] = None, session_factory=None) -> int:
    """Zero receipt counters of every organization once for the cycle"""
    from app.db.repositories.subscription_repository import SubscriptionRepository
    from app.services.usage_counter import UsageCounter

    cycle_start = cycle_start or cycle_start_for(utcnow())
    factory = _session_factory(session_factory)
    async with factory() as session:
        organization_ids = await SubscriptionRepository(session).list_organization_ids()
        await session.commit()

        counter = UsageCounter(session)
        reset = 0
        for organization_id in organization_ids:
            if await counter.reset_monthly_usage(organization_id, cycle_start):
                reset += 1

    logger.info(f"Monthly usage reset for {reset} of {len(organization_ids)} organizations")
    return reset


async def advance_repeating_discounts(cycle_start: Optional[datetime] = None, session_factory=None) -> int:
    """Consume one month of every open repeating coupon; returns how many advanced"""
    from app.db.repositories.subscription_repository import SubscriptionRepository
    from app.services.coupon_engine import CouponEngine

    cycle_start = cycle_start or cycle_start_for(utcnow())
    factory = _session_factory(session_factory)
    async with factory() as session:
        organization_ids = await SubscriptionRepository(session).list_organization_ids()
        await session.commit()

        engine = CouponEngine(session)
        advanced = 0
        for organization_id in organization_ids:
            if await engine.advance_repeating_discount(organization_id, cycle_start) is not None:
                advanced += 1

    logger.info(f"Advanced {advanced} repeating discounts")
    return advanced


async def expire_discounts(now: Optional[datetime] = None, session_factory=None) -> int:
    from app.services.coupon_engine import CouponEngine

    factory = _session_factory(session_factory)
    async with factory() as session:
        return await CouponEngine(session).expire_discounts(now)


async def realize_period_end_cancellations(now: Optional[datetime] = None, session_factory=None) -> int:
    from app.services.subscription_lifecycle import SubscriptionLifecycleManager

    factory = _session_factory(session_factory)
    async with factory() as session:
        return await SubscriptionLifecycleManager(session).realize_period_end(now)


async def run_cycle_boundary(now: Optional[datetime] = None, session_factory=None) -> Dict[str, int]:
    now = now or utcnow()
    cycle_start = cycle_start_for(now)
    return {
        "usage_reset": await reset_monthly_usage(cycle_start, session_factory),
        "discounts_advanced": await advance_repeating_discounts(cycle_start, session_factory),
    }


class BillingCycleTask(Task):
    """Custom task class for billing-cycle jobs"""

    autoretry_for = (Exception,)
    retry_backoff = True
    max_retries = 3

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        """Handle task failure"""
        logger.error(f"Billing cycle task {task_id} failed: {exc}", exc_info=True)


@celery_app.task(base=BillingCycleTask, name="billing.cycle_boundary")
def cycle_boundary_task() -> Dict[str, int]:
    return asyncio.run(run_cycle_boundary())


@celery_app.task(base=BillingCycleTask, name="billing.period_end_maintenance")
def period_end_maintenance_task() -> Dict[str, int]:
    async def run() -> Dict[str, int]:
        return {
            "cancellations_realized": await realize_period_end_cancellations(),
            "discounts_expired": await expire_discounts(),
        }
    return asyncio.run(run())


@celery_app.on_after_configure.connect
def setup_billing_tasks(sender, **kwargs):
    # First of the month
    sender.add_periodic_task(
        crontab(day_of_month=1, hour=settings.USAGE_RESET_CRON_HOUR, minute=0),
        cycle_boundary_task.s(),
        name="monthly_cycle_boundary",
    )
    # Hourly, quarter past
    sender.add_periodic_task(
        crontab(minute=15),
        period_end_maintenance_task.s(),
        name="period_end_maintenance",
    )
