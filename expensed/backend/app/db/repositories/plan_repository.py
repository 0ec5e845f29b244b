# backend/app/db/repositories/plan_repository.py
from typing import Optional, List
from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.constants import DEFAULT_PLANS
from app.db.models.plan import Plan
from app.db.repositories.base import BaseRepository


class PlanRepository(BaseRepository[Plan]):
    """Repository for Plan operations"""

    def __init__(self, session: AsyncSession):
        super().__init__(Plan, session)

    async def get_by_name(self, name: str) -> Optional[Plan]:
        result = await self.session.execute(
            select(Plan).where(Plan.name == name)
        )
        return result.scalar_one_or_none()

    async def list_all(self, include_hidden: bool = False) -> List[Plan]:
        """Plans in display order; hidden/inactive ones only when asked"""
        query = select(Plan).order_by(Plan.display_order)
        if not include_hidden:
            query = query.where(Plan.is_active.is_(True)).where(Plan.is_public.is_(True))
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def get_by_processor_price(self, price_id: str) -> Optional[Plan]:
        result = await self.session.execute(
            select(Plan).where(
                or_(
                    Plan.processor_monthly_price_id == price_id,
                    Plan.processor_annual_price_id == price_id,
                )
            )
        )
        return result.scalars().first()

    async def ensure_defaults(self) -> int:
        """Insert the canonical plans that are missing; returns how many were added"""
        existing = {plan.name for plan in await self.list_all(include_hidden=True)}
        created = 0
        for plan_data in DEFAULT_PLANS:
            if plan_data["name"] in existing:
                continue
            self.session.add(Plan(**plan_data))
            created += 1
        if created:
            await self.session.flush()
        return created
