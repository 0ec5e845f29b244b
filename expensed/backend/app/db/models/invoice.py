# backend/app/db/models/invoice.py
from sqlalchemy import Column, String, ForeignKey, Integer, DateTime, JSON, Text

from app.db.base import BaseModel, generate_uuid
from app.core.constants import InvoiceStatus


class Invoice(BaseModel):
    """Processor-issued invoice mirrored locally"""
    __tablename__ = "subscription_invoices"

    id = Column(String(36), primary_key=True, default=generate_uuid, index=True)
    organization_id = Column(String(36), ForeignKey("organizations.id"), nullable=False, index=True)
    subscription_id = Column(String(36), ForeignKey("organization_subscriptions.id"), nullable=True, index=True)

    processor_invoice_id = Column(String(255), unique=True, nullable=True)
    processor_payment_intent_id = Column(String(255), nullable=True)
    processor_charge_id = Column(String(255), nullable=True)

    amount_cents = Column(Integer, nullable=False)
    amount_paid_cents = Column(Integer, default=0, nullable=False)
    amount_refunded_cents = Column(Integer, default=0, nullable=False)
    currency = Column(String(3), default="usd", nullable=False)

    status = Column(String(30), default=InvoiceStatus.DRAFT.value, nullable=False, index=True)
    description = Column(Text, nullable=True)
    line_items = Column(JSON, default=list, nullable=False)  # [{"description": ..., "amount": ...}]

    invoice_date = Column(DateTime, nullable=True)
    due_date = Column(DateTime, nullable=True)
    paid_at = Column(DateTime, nullable=True)

    hosted_invoice_url = Column(Text, nullable=True)
    invoice_pdf_url = Column(Text, nullable=True)
