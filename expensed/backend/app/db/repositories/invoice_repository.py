# backend/app/db/repositories/invoice_repository.py
from typing import Optional, List
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.invoice import Invoice
from app.db.repositories.base import BaseRepository


class InvoiceRepository(BaseRepository[Invoice]):
    """Repository for Invoice operations"""

    def __init__(self, session: AsyncSession):
        super().__init__(Invoice, session)

    async def get_by_processor_invoice(self, processor_invoice_id: str) -> Optional[Invoice]:
        result = await self.session.execute(
            select(Invoice).where(Invoice.processor_invoice_id == processor_invoice_id)
        )
        return result.scalar_one_or_none()

    async def list_for_organization(self, organization_id: str, limit: int = 24) -> List[Invoice]:
        result = await self.session.execute(
            select(Invoice)
            .where(Invoice.organization_id == organization_id)
            .order_by(Invoice.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def upsert_from_processor(self, processor_invoice_id: str, values: dict) -> Invoice:
        invoice = await self.get_by_processor_invoice(processor_invoice_id)
        if invoice is None:
            invoice = Invoice(processor_invoice_id=processor_invoice_id, **values)
            self.session.add(invoice)
        else:
            for key, value in values.items():
                setattr(invoice, key, value)
        await self.session.flush()
        return invoice
