# backend/app/db/models/audit_log.py
from sqlalchemy import Column, String, ForeignKey, Integer, Boolean, DateTime, JSON, Text, event
from datetime import datetime

from app.db.base import Base, generate_uuid


class AuditLogEntry(Base):
    """Append-only billing audit trail"""
    __tablename__ = "subscription_audit_log"

    id = Column(String(36), primary_key=True, default=generate_uuid, index=True)
    organization_id = Column(String(36), ForeignKey("organizations.id"), nullable=True, index=True)
    subscription_id = Column(String(36), nullable=True, index=True)

    action = Column(String(100), nullable=False, index=True)  # coupon_applied, refund_issued, ...
    action_details = Column(JSON, default=dict, nullable=False)
    amount_cents = Column(Integer, nullable=True)

    performed_by = Column(String(36), nullable=True, index=True)
    is_super_admin = Column(Boolean, default=False, nullable=False)
    is_system = Column(Boolean, default=False, nullable=False)

    # Request details
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)


class AuditLogImmutableError(RuntimeError):
    pass


@event.listens_for(AuditLogEntry, "before_update")
def _refuse_update(mapper, connection, target):
    raise AuditLogImmutableError("Audit log entries cannot be modified")


@event.listens_for(AuditLogEntry, "before_delete")
def _refuse_delete(mapper, connection, target):
    raise AuditLogImmutableError("Audit log entries cannot be deleted")
