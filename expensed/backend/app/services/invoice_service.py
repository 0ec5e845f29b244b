# backend/app/services/invoice_service.py
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.audit_log import AuditContext, AuditLogRecorder
from app.core.constants import AuditAction, InvoiceStatus
from app.core.exceptions import NotFoundError, StateError, ValidationError
from app.core.logging import get_logger
from app.db.repositories.invoice_repository import InvoiceRepository
from app.schemas.billing import InvoiceOut, dump
from app.services.payment_processor import PaymentProcessorService

logger = get_logger(__name__)

REFUNDABLE_STATUSES = frozenset({InvoiceStatus.PAID.value, InvoiceStatus.PARTIALLY_REFUNDED.value})


class InvoiceService:
    """Invoice listing and refunds"""

    def __init__(self, session: AsyncSession, processor: Optional[PaymentProcessorService] = None):
        self.session = session
        self.processor = processor or PaymentProcessorService()
        self.invoices = InvoiceRepository(session)
        self.audit = AuditLogRecorder(session)

    async def list_invoices(self, organization_id: str, limit: int = 24) -> List[Dict[str, Any]]:
        return [dump(InvoiceOut, invoice) for invoice in await self.invoices.list_for_organization(organization_id, limit)]

    async def issue_refund(
        self,
        invoice_id: str,
        context: AuditContext,
        amount_cents: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Refund a paid invoice, in full when ``amount_cents`` is None.

        Success records ``refund_issued``; any failure, including one after
        the processor already refunded, records ``refund_failed``.
        """
        details: Dict[str, Any] = {"invoice_id": invoice_id, "requested_cents": amount_cents, "reason": reason}
        organization_id = None
        try:
            invoice = await self.invoices.get(invoice_id)
            if invoice is None:
                raise NotFoundError(f"Invoice not found: {invoice_id}")
            organization_id = invoice.organization_id
            if not invoice.processor_charge_id:
                raise ValidationError("Invoice has no charge to refund")
            if invoice.status not in REFUNDABLE_STATUSES:
                raise StateError(f"Cannot refund a {invoice.status} invoice")

            refundable = invoice.amount_paid_cents - invoice.amount_refunded_cents
            amount = refundable if amount_cents is None else amount_cents
            if amount <= 0 or amount > refundable:
                raise ValidationError(f"Refund amount must be between 1 and {refundable} cents")
            full = amount == refundable

            result = await self.processor.refund(
                invoice.processor_charge_id,
                None if full and amount_cents is None else amount,
                idempotency_key=f"refund_{invoice.id}_{invoice.amount_refunded_cents}_{amount}",
            )

            invoice.amount_refunded_cents += amount
            if invoice.amount_refunded_cents >= invoice.amount_paid_cents:
                invoice.status = InvoiceStatus.REFUNDED.value
            else:
                invoice.status = InvoiceStatus.PARTIALLY_REFUNDED.value
            details.update({"processor_refund_id": result.get("id"), "full_refund": full, "invoice_status": invoice.status})
            await self.audit.record(
                AuditAction.REFUND_ISSUED,
                details=details,
                context=context,
                organization_id=organization_id,
                subscription_id=invoice.subscription_id,
                amount_cents=amount,
            )
            await self.session.commit()
        except Exception as e:
            await self.audit.record_failure(
                AuditAction.REFUND_FAILED,
                e,
                details=details,
                context=context,
                organization_id=organization_id,
                amount_cents=amount_cents,
            )
            raise

        logger.info(f"Refunded {amount} cents on invoice {invoice_id}", extra={"organization_id": organization_id})
        return {"success": True, "message": f"Refunded ${amount / 100:.2f}", "invoice": dump(InvoiceOut, invoice)}
