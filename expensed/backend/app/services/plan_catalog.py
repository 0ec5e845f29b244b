# backend/app/services/plan_catalog.py
"""
Cached, read-only view of the subscription plans.

The catalog owns its cache: entries live for ``PLAN_CACHE_TTL_SECONDS`` and
``invalidate()`` drops them immediately. Plan edits call ``invalidate()``
after their commit and before reporting success.
"""
import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.constants import PlanTier
from app.core.exceptions import NotFoundError
from app.core.logging import get_logger
from app.db.models.plan import Plan
from app.db.repositories.plan_repository import PlanRepository

logger = get_logger(__name__)


@dataclass(frozen=True)
class PlanView:
    id: str
    name: str
    display_name: str
    description: Optional[str]
    monthly_price_cents: int
    annual_price_cents: int
    min_users: int
    max_users: Optional[int]
    features: Dict[str, Any] = field(default_factory=dict)
    processor_product_id: Optional[str] = None
    processor_monthly_price_id: Optional[str] = None
    processor_annual_price_id: Optional[str] = None
    display_order: int = 0
    is_active: bool = True
    is_public: bool = True

    @classmethod
    def from_model(cls, plan: Plan) -> "PlanView":
        return cls(
            id=plan.id,
            name=plan.name,
            display_name=plan.display_name,
            description=plan.description,
            monthly_price_cents=plan.monthly_price_cents,
            annual_price_cents=plan.annual_price_cents,
            min_users=plan.min_users,
            max_users=plan.max_users,
            features=dict(plan.features or {}),
            processor_product_id=plan.processor_product_id,
            processor_monthly_price_id=plan.processor_monthly_price_id,
            processor_annual_price_id=plan.processor_annual_price_id,
            display_order=plan.display_order,
            is_active=plan.is_active,
            is_public=plan.is_public,
        )

    @property
    def is_free(self) -> bool:
        return self.name == PlanTier.FREE.value

    def price_id_for(self, billing_cycle: str) -> Optional[str]:
        if billing_cycle == "annual":
            return self.processor_annual_price_id
        return self.processor_monthly_price_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "display_name": self.display_name,
            "description": self.description,
            "monthly_price_cents": self.monthly_price_cents,
            "annual_price_cents": self.annual_price_cents,
            "min_users": self.min_users,
            "max_users": self.max_users,
            "features": dict(self.features),
            "display_order": self.display_order,
            "is_active": self.is_active,
            "is_public": self.is_public,
        }


class PlanCatalog:
    """Cache-first plan lookups"""

    def __init__(self, ttl_seconds: Optional[int] = None):
        self.ttl_seconds = settings.PLAN_CACHE_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        self._plans: Optional[Dict[str, PlanView]] = None
        self._loaded_at = 0.0
        self._lock = asyncio.Lock()

    def invalidate(self) -> None:
        self._plans = None
        self._loaded_at = 0.0
        logger.info("Plan catalog cache invalidated")

    def _is_fresh(self) -> bool:
        if self._plans is None:
            return False
        return (time.monotonic() - self._loaded_at) < self.ttl_seconds

    async def _snapshot(self, session: AsyncSession) -> Dict[str, PlanView]:
        if self._is_fresh():
            return self._plans

        async with self._lock:
            if self._is_fresh():
                return self._plans
            plans = await PlanRepository(session).list_all(include_hidden=True)
            snapshot = {plan.name: PlanView.from_model(plan) for plan in plans}
            self._plans = snapshot
            self._loaded_at = time.monotonic()
            return snapshot

    async def list_plans(self, session: AsyncSession, include_hidden: bool = False) -> List[PlanView]:
        """Plans ordered by display_order; only active public plans by default"""
        plans = sorted((await self._snapshot(session)).values(), key=lambda plan: plan.display_order)
        if include_hidden:
            return plans
        return [plan for plan in plans if plan.is_active and plan.is_public]

    async def get_plan(self, session: AsyncSession, name: str) -> PlanView:
        plan = (await self._snapshot(session)).get(name)
        if plan is None:
            raise NotFoundError(f"Plan not found: {name}")
        return plan

    async def get_plan_by_id(self, session: AsyncSession, plan_id: str) -> PlanView:
        for plan in (await self._snapshot(session)).values():
            if plan.id == plan_id:
                return plan
        raise NotFoundError(f"Plan not found: {plan_id}")

    async def get_plan_by_processor_price(self, session: AsyncSession, price_id: str) -> Optional[PlanView]:
        for plan in (await self._snapshot(session)).values():
            if price_id and price_id in (plan.processor_monthly_price_id, plan.processor_annual_price_id):
                return plan
        return None


plan_catalog = PlanCatalog()
