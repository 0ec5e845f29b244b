# backend/app/db/models/coupon.py
from sqlalchemy import Column, String, ForeignKey, Integer, Boolean, DateTime, JSON, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from app.db.base import BaseModel, generate_uuid
from app.core.constants import CouponDuration


class Coupon(BaseModel):
    """Promotional discount code"""
    __tablename__ = "coupon_codes"

    id = Column(String(36), primary_key=True, default=generate_uuid, index=True)
    code = Column(String(20), unique=True, nullable=False, index=True)  # upper-cased

    discount_type = Column(String(10), nullable=False)  # percent, fixed
    discount_value = Column(Integer, nullable=False)  # percent points or cents

    # Restrictions; applies_to_plans NULL means every plan
    applies_to_plans = Column(JSON, nullable=True)
    min_users = Column(Integer, nullable=True)

    # Redemption accounting; max_redemptions NULL means unlimited
    max_redemptions = Column(Integer, nullable=True)
    max_redemptions_per_org = Column(Integer, default=1, nullable=False)
    redemption_count = Column(Integer, default=0, nullable=False)

    duration = Column(String(10), default=CouponDuration.ONCE.value, nullable=False)
    duration_months = Column(Integer, nullable=True)

    valid_from = Column(DateTime, nullable=True)
    valid_until = Column(DateTime, nullable=True)

    processor_coupon_id = Column(String(255), nullable=True)
    campaign_name = Column(String(255), nullable=True)
    internal_notes = Column(Text, nullable=True)
    created_by = Column(String(36), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)

    redemptions = relationship("CouponRedemption", back_populates="coupon")


class CouponRedemption(BaseModel):
    """One coupon applied to one organization, terms frozen at redemption"""
    __tablename__ = "coupon_redemptions"
    __table_args__ = (
        UniqueConstraint("coupon_id", "organization_id", "sequence", name="uq_coupon_redemption_org_seq"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid, index=True)
    coupon_id = Column(String(36), ForeignKey("coupon_codes.id"), nullable=False, index=True)
    organization_id = Column(String(36), ForeignKey("organizations.id"), nullable=False, index=True)
    subscription_id = Column(String(36), ForeignKey("organization_subscriptions.id"), nullable=True)

    sequence = Column(Integer, default=1, nullable=False)  # nth redemption of this coupon by this organization
    redeemed_at = Column(DateTime, nullable=False)
    redeemed_by = Column(String(36), nullable=True)

    # Snapshot of the coupon terms
    discount_type = Column(String(10), nullable=False)
    discount_value = Column(Integer, nullable=False)
    duration = Column(String(10), nullable=False)
    discount_applied_cents = Column(Integer, default=0, nullable=False)
    remaining_months = Column(Integer, nullable=True)
    last_advanced_at = Column(DateTime, nullable=True)  # start of the last cycle that consumed a month

    coupon = relationship("Coupon", back_populates="redemptions")
