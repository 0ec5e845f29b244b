# backend/app/schemas/billing.py
from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List
from datetime import datetime

from app.core.constants import (
    BillingCycle,
    CouponDuration,
    DEFAULT_ADMIN_PAGE_SIZE,
    DiscountType,
    FeatureFlag,
    MAX_ADMIN_PAGE_SIZE,
)


class BillingRequest(BaseModel):
    action: str
    params: Dict[str, Any] = Field(default_factory=dict)


# ==================== Organization actions ====================

class CheckoutParams(BaseModel):
    plan_name: str
    billing_cycle: BillingCycle = BillingCycle.MONTHLY


class ChangePlanParams(BaseModel):
    plan_name: str


class ApplyCouponParams(BaseModel):
    code: str


class CheckFeatureParams(BaseModel):
    feature: FeatureFlag


class InvoiceListParams(BaseModel):
    limit: int = Field(default=24, ge=1, le=100)


# ==================== Admin actions ====================

class SubscriptionListParams(BaseModel):
    status: Optional[str] = None
    plan: Optional[str] = None
    skip: int = Field(default=0, ge=0)
    limit: int = Field(default=DEFAULT_ADMIN_PAGE_SIZE, ge=1)

    @property
    def capped_limit(self) -> int:
        return min(self.limit, MAX_ADMIN_PAGE_SIZE)


class OrganizationActionParams(BaseModel):
    organization_id: str
    reason: Optional[str] = None


class ApplyDiscountParams(BaseModel):
    organization_id: str
    discount_percent: int
    reason: Optional[str] = None
    expires_at: Optional[datetime] = None


class RefundParams(BaseModel):
    invoice_id: str
    amount_cents: Optional[int] = None
    reason: Optional[str] = None


class CreateCouponParams(BaseModel):
    code: str
    discount_type: DiscountType
    discount_value: int
    duration: CouponDuration = CouponDuration.ONCE
    duration_months: Optional[int] = None
    max_redemptions: Optional[int] = None
    max_redemptions_per_org: int = 1
    applies_to_plans: Optional[List[str]] = None
    min_users: Optional[int] = None
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    campaign_name: Optional[str] = None
    internal_notes: Optional[str] = None


class CouponIdParams(BaseModel):
    coupon_id: str


class ExtendTrialParams(BaseModel):
    organization_id: str
    days: int


class DeleteOrganizationParams(BaseModel):
    organization_id: str
    confirmation: str


class UpdatePlanParams(BaseModel):
    plan_id: str
    updates: Dict[str, Any]


class AuditLogParams(BaseModel):
    action: Optional[str] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    organization: Optional[str] = None
    limit: int = Field(default=100, ge=1, le=1000)
    offset: int = Field(default=0, ge=0)
    format: str = Field(default="json", pattern="^(json|csv)$")


class AddSuperAdminParams(BaseModel):
    user_id: str
    display_name: Optional[str] = None
    permissions: Optional[Dict[str, bool]] = None


# ==================== Responses ====================

class PlanOut(BaseModel):
    id: str
    name: str
    display_name: str
    description: Optional[str] = None
    monthly_price_cents: int
    annual_price_cents: int
    min_users: int
    max_users: Optional[int] = None
    features: Dict[str, Any]
    display_order: int
    is_active: bool
    is_public: bool

    class Config:
        from_attributes = True


class SubscriptionOut(BaseModel):
    id: str
    organization_id: str
    plan: PlanOut
    status: str
    billing_cycle: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    cancel_at_period_end: bool
    paused_at: Optional[datetime] = None
    current_user_count: int
    current_month_receipts: int
    discount_percent: int
    discount_expires_at: Optional[datetime] = None
    discount_reason: Optional[str] = None

    class Config:
        from_attributes = True


class InvoiceOut(BaseModel):
    id: str
    processor_invoice_id: Optional[str] = None
    amount_cents: int
    amount_paid_cents: int
    amount_refunded_cents: int
    currency: str
    status: str
    description: Optional[str] = None
    line_items: List[Dict[str, Any]] = Field(default_factory=list)
    invoice_date: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    hosted_invoice_url: Optional[str] = None
    invoice_pdf_url: Optional[str] = None

    class Config:
        from_attributes = True


class CouponOut(BaseModel):
    id: str
    code: str
    discount_type: str
    discount_value: int
    duration: str
    duration_months: Optional[int] = None
    max_redemptions: Optional[int] = None
    max_redemptions_per_org: int
    redemption_count: int
    applies_to_plans: Optional[List[str]] = None
    min_users: Optional[int] = None
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    campaign_name: Optional[str] = None
    is_active: bool

    class Config:
        from_attributes = True


def dump(schema, obj) -> Dict[str, Any]:
    """ORM object to a JSON-ready dict through ``schema``"""
    return schema.model_validate(obj).model_dump(mode="json")
