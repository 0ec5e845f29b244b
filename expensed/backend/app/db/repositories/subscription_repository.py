# backend/app/db/repositories/subscription_repository.py
from typing import Optional, List, Dict
from datetime import datetime
from sqlalchemy import select, update, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.constants import SubscriptionStatus
from app.db.models.plan import Plan
from app.db.models.subscription import Subscription
from app.db.repositories.base import BaseRepository


class SubscriptionRepository(BaseRepository[Subscription]):
    """Repository for Subscription operations"""

    def __init__(self, session: AsyncSession):
        super().__init__(Subscription, session)

    async def get_by_organization(self, organization_id: str) -> Optional[Subscription]:
        result = await self.session.execute(
            select(Subscription).where(Subscription.organization_id == organization_id)
        )
        return result.scalar_one_or_none()

    async def get_by_processor_subscription(self, processor_subscription_id: str) -> Optional[Subscription]:
        result = await self.session.execute(
            select(Subscription).where(Subscription.processor_subscription_id == processor_subscription_id)
        )
        return result.scalar_one_or_none()

    async def create_for_organization(self, organization_id: str, plan: Plan, **fields) -> Subscription:
        subscription = Subscription(
            organization_id=organization_id,
            plan=plan,
            plan_id=plan.id,
            status=fields.pop("status", SubscriptionStatus.ACTIVE.value),
            usage_reset_at=fields.pop("usage_reset_at", datetime.utcnow()),
            **fields,
        )
        self.session.add(subscription)
        await self.session.flush()
        return subscription

    # ==================== Usage counters ====================

    async def increment_receipts(self, organization_id: str, limit: Optional[int] = None) -> bool:
        """
        Atomic ``count = count + 1``.

        With ``limit`` set the increment and the limit check are the same
        statement; returns False when the cap left the row unchanged.
        """
        query = (
            update(Subscription)
            .where(Subscription.organization_id == organization_id)
            .values(current_month_receipts=Subscription.current_month_receipts + 1)
        )
        if limit is not None:
            query = query.where(Subscription.current_month_receipts < limit)
        result = await self.session.execute(query.execution_options(synchronize_session=False))
        return result.rowcount > 0

    async def set_user_count(self, organization_id: str, user_count: int) -> bool:
        result = await self.session.execute(
            update(Subscription)
            .where(Subscription.organization_id == organization_id)
            .values(current_user_count=user_count)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def reset_usage_if_due(self, organization_id: str, cycle_start: datetime) -> bool:
        """Zero the monthly counter unless it was already reset for this cycle"""
        result = await self.session.execute(
            update(Subscription)
            .where(Subscription.organization_id == organization_id)
            .where(or_(Subscription.usage_reset_at.is_(None), Subscription.usage_reset_at < cycle_start))
            .values(current_month_receipts=0, usage_reset_at=cycle_start)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    # ==================== Admin listings ====================

    async def list_filtered(
        self,
        status: Optional[str] = None,
        plan_name: Optional[str] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> List[Subscription]:
        query = select(Subscription).order_by(Subscription.created_at.desc())
        if status:
            query = query.where(Subscription.status == status)
        if plan_name:
            query = query.join(Plan, Subscription.plan_id == Plan.id).where(Plan.name == plan_name)
        result = await self.session.execute(query.offset(skip).limit(limit))
        return list(result.scalars().all())

    async def list_cancel_pending(self, now: datetime) -> List[Subscription]:
        """Subscriptions whose deferred cancellation is due"""
        result = await self.session.execute(
            select(Subscription)
            .where(Subscription.cancel_at_period_end.is_(True))
            .where(Subscription.status != SubscriptionStatus.CANCELED.value)
            .where(Subscription.current_period_end.is_not(None))
            .where(Subscription.current_period_end <= now)
        )
        return list(result.scalars().all())

    async def count_by_plan_and_status(self) -> Dict[str, Dict[str, int]]:
        """{plan_name: {status: count}}"""
        result = await self.session.execute(
            select(Plan.name, Subscription.status, func.count(Subscription.id))
            .join(Plan, Subscription.plan_id == Plan.id)
            .group_by(Plan.name, Subscription.status)
        )
        counts: Dict[str, Dict[str, int]] = {}
        for plan_name, status, count in result.all():
            counts.setdefault(plan_name, {})[status] = count
        return counts

    async def list_expired_discounts(self, now: datetime) -> List[Subscription]:
        result = await self.session.execute(
            select(Subscription)
            .where(Subscription.discount_expires_at.is_not(None))
            .where(Subscription.discount_expires_at <= now)
        )
        return list(result.scalars().all())

    async def list_organization_ids(self) -> List[str]:
        result = await self.session.execute(select(Subscription.organization_id))
        return list(result.scalars().all())

    async def list_entitled(self) -> List[Subscription]:
        result = await self.session.execute(
            select(Subscription).where(
                Subscription.status.in_([SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value])
            )
        )
        return list(result.scalars().all())

    async def count_all(self) -> int:
        result = await self.session.execute(select(func.count(Subscription.id)))
        return result.scalar() or 0
