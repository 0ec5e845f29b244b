# backend/app/db/repositories/coupon_repository.py
from typing import Optional, List, Dict, Any
from sqlalchemy import select, update, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.constants import CouponDuration
from app.db.models.coupon import Coupon, CouponRedemption
from app.db.repositories.base import BaseRepository


class CouponRepository(BaseRepository[Coupon]):
    """Repository for Coupon and CouponRedemption operations"""

    def __init__(self, session: AsyncSession):
        super().__init__(Coupon, session)

    async def get_by_code(self, code: str) -> Optional[Coupon]:
        result = await self.session.execute(
            select(Coupon).where(Coupon.code == code)
        )
        return result.scalar_one_or_none()

    async def count_org_redemptions(self, coupon_id: str, organization_id: str) -> int:
        result = await self.session.execute(
            select(func.count(CouponRedemption.id))
            .where(CouponRedemption.coupon_id == coupon_id)
            .where(CouponRedemption.organization_id == organization_id)
        )
        return result.scalar() or 0

    async def claim_redemption_slot(self, coupon_id: str) -> bool:
        """
        Conditional increment of ``redemption_count``.

        The limit check lives in the WHERE clause, so of two concurrent
        claims on the last slot exactly one sees a changed row.
        """
        result = await self.session.execute(
            update(Coupon)
            .where(Coupon.id == coupon_id)
            .where(Coupon.is_active.is_(True))
            .where(or_(Coupon.max_redemptions.is_(None), Coupon.redemption_count < Coupon.max_redemptions))
            .values(redemption_count=Coupon.redemption_count + 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def add_redemption(self, values: Dict[str, Any]) -> CouponRedemption:
        redemption = CouponRedemption(**values)
        self.session.add(redemption)
        await self.session.flush()
        return redemption

    async def get_open_repeating_redemption(self, organization_id: str) -> Optional[CouponRedemption]:
        """Latest repeating redemption that still has months left"""
        result = await self.session.execute(
            select(CouponRedemption)
            .where(CouponRedemption.organization_id == organization_id)
            .where(CouponRedemption.duration == CouponDuration.REPEATING.value)
            .where(CouponRedemption.remaining_months > 0)
            .order_by(CouponRedemption.redeemed_at.desc())
        )
        return result.scalars().first()

    async def get_latest_redemption(self, organization_id: str) -> Optional[CouponRedemption]:
        result = await self.session.execute(
            select(CouponRedemption)
            .where(CouponRedemption.organization_id == organization_id)
            .order_by(CouponRedemption.redeemed_at.desc())
        )
        return result.scalars().first()

    async def top_coupons(self, limit: int = 10) -> List[Coupon]:
        result = await self.session.execute(
            select(Coupon)
            .where(Coupon.redemption_count > 0)
            .order_by(Coupon.redemption_count.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def consume_repeating_month(self, redemption_id: str, cycle_start) -> bool:
        """Take one month off a repeating redemption, at most once per cycle"""
        result = await self.session.execute(
            update(CouponRedemption)
            .where(CouponRedemption.id == redemption_id)
            .where(CouponRedemption.remaining_months > 0)
            .where(or_(CouponRedemption.last_advanced_at.is_(None), CouponRedemption.last_advanced_at < cycle_start))
            .values(
                remaining_months=CouponRedemption.remaining_months - 1,
                last_advanced_at=cycle_start,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
