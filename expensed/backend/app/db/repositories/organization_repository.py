# backend/app/db/repositories/organization_repository.py
from typing import Optional
from datetime import datetime
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.organization import Organization
from app.db.repositories.base import BaseRepository


class OrganizationRepository(BaseRepository[Organization]):
    """Repository for Organization operations"""

    def __init__(self, session: AsyncSession):
        super().__init__(Organization, session)

    async def get_active(self, organization_id: str) -> Optional[Organization]:
        """Get organization unless it was soft-deleted"""
        result = await self.session.execute(
            select(Organization)
            .where(Organization.id == organization_id)
            .where(Organization.deleted_at.is_(None))
        )
        return result.scalar_one_or_none()

    async def get_by_processor_customer(self, customer_id: str) -> Optional[Organization]:
        result = await self.session.execute(
            select(Organization).where(Organization.processor_customer_id == customer_id)
        )
        return result.scalar_one_or_none()

    async def soft_delete(self, organization: Organization, deleted_by: str) -> Organization:
        organization.deleted_at = datetime.utcnow()
        organization.deleted_by = deleted_by
        await self.session.flush()
        return organization
