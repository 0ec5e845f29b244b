# backend/app/db/models/__init__.py
from app.db.models.plan import Plan
from app.db.models.organization import Organization
from app.db.models.subscription import Subscription
from app.db.models.invoice import Invoice
from app.db.models.coupon import Coupon, CouponRedemption
from app.db.models.audit_log import AuditLogEntry
from app.db.models.super_admin import SuperAdmin
from app.db.models.processed_event import ProcessedEvent

__all__ = [
    "Plan",
    "Organization",
    "Subscription",
    "Invoice",
    "Coupon",
    "CouponRedemption",
    "AuditLogEntry",
    "SuperAdmin",
    "ProcessedEvent",
]
