# backend/app/db/repositories/super_admin_repository.py
from typing import Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.super_admin import SuperAdmin
from app.db.repositories.base import BaseRepository


class SuperAdminRepository(BaseRepository[SuperAdmin]):
    """Repository for SuperAdmin operations"""

    def __init__(self, session: AsyncSession):
        super().__init__(SuperAdmin, session)

    async def get_active_by_user(self, user_id: str) -> Optional[SuperAdmin]:
        result = await self.session.execute(
            select(SuperAdmin)
            .where(SuperAdmin.user_id == user_id)
            .where(SuperAdmin.is_active.is_(True))
        )
        return result.scalar_one_or_none()

    async def get_by_user(self, user_id: str) -> Optional[SuperAdmin]:
        result = await self.session.execute(
            select(SuperAdmin).where(SuperAdmin.user_id == user_id)
        )
        return result.scalar_one_or_none()
