# backend/app/db/repositories/processed_event_repository.py
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.processed_event import ProcessedEvent


class ProcessedEventRepository:
    """Dedupe ledger for processor events"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def exists(self, event_id: str) -> bool:
        result = await self.session.execute(
            select(ProcessedEvent.event_id).where(ProcessedEvent.event_id == event_id)
        )
        return result.scalar_one_or_none() is not None

    def stage(self, event_id: str, event_type: str, organization_id: str | None, outcome: str) -> ProcessedEvent:
        """Added to the caller's transaction; a concurrent duplicate fails on the primary key at commit"""
        record = ProcessedEvent(
            event_id=event_id,
            event_type=event_type,
            organization_id=organization_id,
            outcome=outcome,
        )
        self.session.add(record)
        return record
