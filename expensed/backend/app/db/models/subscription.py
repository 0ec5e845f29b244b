# backend/app/db/models/subscription.py
from sqlalchemy import Column, String, ForeignKey, Integer, BigInteger, Boolean, DateTime, Text
from sqlalchemy.orm import relationship

from app.db.base import BaseModel, generate_uuid
from app.core.constants import SubscriptionStatus


class Subscription(BaseModel):
    """One row per organization; no row means the implicit free tier"""
    __tablename__ = "organization_subscriptions"

    id = Column(String(36), primary_key=True, default=generate_uuid, index=True)
    organization_id = Column(String(36), ForeignKey("organizations.id"), unique=True, nullable=False, index=True)
    plan_id = Column(String(36), ForeignKey("subscription_plans.id"), nullable=False, index=True)

    # Processor references
    processor_subscription_id = Column(String(255), unique=True, nullable=True)
    processor_customer_id = Column(String(255), nullable=True, index=True)

    # Lifecycle
    status = Column(String(20), default=SubscriptionStatus.ACTIVE.value, nullable=False, index=True)
    billing_cycle = Column(String(20), nullable=True)  # monthly, annual
    current_period_start = Column(DateTime, nullable=True)
    current_period_end = Column(DateTime, nullable=True)
    trial_start = Column(DateTime, nullable=True)
    trial_end = Column(DateTime, nullable=True)
    canceled_at = Column(DateTime, nullable=True)
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)
    paused_at = Column(DateTime, nullable=True)

    # Usage counters
    current_user_count = Column(Integer, default=1, nullable=False)
    current_month_receipts = Column(Integer, default=0, nullable=False)
    usage_reset_at = Column(DateTime, nullable=True)

    # Discounts
    custom_price_cents = Column(Integer, nullable=True)
    discount_percent = Column(Integer, default=0, nullable=False)
    discount_expires_at = Column(DateTime, nullable=True)
    discount_reason = Column(Text, nullable=True)

    # Billing contact
    billing_email = Column(String(255), nullable=True)
    billing_name = Column(String(255), nullable=True)
    billing_company = Column(String(255), nullable=True)

    # Ordering token of the last applied status change (epoch seconds)
    version = Column(BigInteger, default=0, nullable=False)

    plan = relationship("Plan", lazy="joined")
    organization = relationship("Organization", lazy="joined")

    @property
    def status_enum(self) -> SubscriptionStatus:
        return SubscriptionStatus(self.status)
