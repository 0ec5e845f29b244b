# backend/app/core/constants.py
from enum import Enum
from typing import Dict, Any, List, Optional


class PlanTier(str, Enum):
    FREE = "free"
    STARTER = "starter"
    TEAM = "team"
    BUSINESS = "business"
    ENTERPRISE = "enterprise"


# Ordered lowest to highest; upgrade recommendations walk this list.
TIER_ORDER: List[PlanTier] = [
    PlanTier.FREE,
    PlanTier.STARTER,
    PlanTier.TEAM,
    PlanTier.BUSINESS,
    PlanTier.ENTERPRISE,
]
TOP_TIER = TIER_ORDER[-1]


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"
    PAUSED = "paused"


# Statuses that grant the subscribed plan's features
ENTITLED_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING})


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    ANNUAL = "annual"


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    OPEN = "open"
    PAID = "paid"
    VOID = "void"
    UNCOLLECTIBLE = "uncollectible"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"
    PENDING = "pending"
    FAILED = "failed"


class DiscountType(str, Enum):
    PERCENT = "percent"
    FIXED = "fixed"


class CouponDuration(str, Enum):
    ONCE = "once"
    REPEATING = "repeating"
    FOREVER = "forever"


class SupportLevel(str, Enum):
    COMMUNITY = "community"
    EMAIL = "email"
    PRIORITY = "priority"
    DEDICATED = "dedicated"


class FeatureFlag(str, Enum):
    STRIPE_PAYOUTS = "stripe_payouts"
    API_ACCESS = "api_access"
    MILEAGE_GPS = "mileage_gps"
    MULTI_LEVEL_APPROVAL = "multi_level_approval"
    UNLIMITED_RECEIPTS = "unlimited_receipts"
    PRIORITY_SUPPORT = "priority_support"


class OrganizationRole(str, Enum):
    EMPLOYEE = "employee"
    MANAGER = "manager"
    FINANCE = "finance"
    ADMIN = "admin"


class AdminPermission(str, Enum):
    VIEW_ORGANIZATIONS = "view_organizations"
    MANAGE_SUBSCRIPTIONS = "manage_subscriptions"
    ISSUE_REFUNDS = "issue_refunds"
    CREATE_COUPONS = "create_coupons"
    VIEW_ANALYTICS = "view_analytics"
    MANAGE_SUPER_ADMINS = "manage_super_admins"
    MANAGE_SETTINGS = "manage_settings"
    MANAGE_ANNOUNCEMENTS = "manage_announcements"
    MANAGE_EMAIL_TEMPLATES = "manage_email_templates"
    IMPERSONATE_USERS = "impersonate_users"
    VIEW_ERROR_LOGS = "view_error_logs"
    MANAGE_PLANS = "manage_plans"
    MANAGE_API_KEYS = "manage_api_keys"
    EXPORT_DATA = "export_data"
    DELETE_ORGANIZATIONS = "delete_organizations"
    BULK_OPERATIONS = "bulk_operations"


# Granted to a newly added super admin unless the caller says otherwise
DEFAULT_ADMIN_PERMISSIONS: Dict[str, bool] = {
    permission.value: permission in (
        AdminPermission.VIEW_ORGANIZATIONS,
        AdminPermission.MANAGE_SUBSCRIPTIONS,
        AdminPermission.ISSUE_REFUNDS,
        AdminPermission.CREATE_COUPONS,
        AdminPermission.VIEW_ANALYTICS,
    )
    for permission in AdminPermission
}


class AuditAction(str, Enum):
    CHECKOUT_SESSION_CREATED = "checkout_session_created"
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    STATUS_CHANGED = "status_changed"
    PLAN_CHANGED = "plan_changed"
    PLAN_UPGRADED = "plan_upgraded"
    PLAN_DOWNGRADED = "plan_downgraded"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    SUBSCRIPTION_RESUMED = "subscription_resumed"
    SUBSCRIPTION_PAUSED = "subscription_paused"
    SUBSCRIPTION_ENDED = "subscription_ended"
    TRIAL_ENDING_SOON = "trial_ending_soon"
    TRIAL_EXTENDED = "trial_extended"
    PAYMENT_RECEIVED = "payment_received"
    PAYMENT_FAILED = "payment_failed"
    INVOICE_FINALIZED = "invoice_finalized"
    REFUND_ISSUED = "refund_issued"
    REFUND_FAILED = "refund_failed"
    COUPON_APPLIED = "coupon_applied"
    COUPON_CREATED = "coupon_created"
    COUPON_DEACTIVATED = "coupon_deactivated"
    DISCOUNT_APPLIED = "discount_applied"
    DISCOUNT_APPLY_FAILED = "discount_apply_failed"
    DISCOUNT_EXPIRED = "discount_expired"
    USAGE_RESET = "usage_reset"
    PLAN_UPDATED = "plan_updated"
    ORGANIZATION_DELETED = "organization_deleted"
    SUPER_ADMIN_ADDED = "super_admin_added"
    ADMIN_ACTION_FAILED = "admin_action_failed"
    SECURITY_ALERT = "security_alert"


class AuditCategory(str, Enum):
    PAYMENT = "Payment"
    SUBSCRIPTION = "Subscription"
    DISCOUNT = "Discount"
    SYSTEM = "System"


class ProcessorEventType(str, Enum):
    CHECKOUT_COMPLETED = "checkout.session.completed"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    TRIAL_WILL_END = "customer.subscription.trial_will_end"
    INVOICE_PAID = "invoice.paid"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    INVOICE_FINALIZED = "invoice.finalized"


# Processor subscription status -> local status
PROCESSOR_STATUS_MAP: Dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "past_due": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "unpaid": SubscriptionStatus.UNPAID,
    "paused": SubscriptionStatus.PAUSED,
    "incomplete": SubscriptionStatus.ACTIVE,
    "incomplete_expired": SubscriptionStatus.CANCELED,
}


# The one free-tier feature set. The plan seed below and the entitlement
# evaluator's no-subscription path both read this constant.
FREE_TIER_FEATURES: Dict[str, Any] = {
    "receipts_per_month": 20,
    "stripe_payouts_enabled": False,
    "api_access_enabled": False,
    "mileage_gps_enabled": False,
    "multi_level_approval": False,
    "support_level": SupportLevel.COMMUNITY.value,
}
FREE_TIER_MAX_USERS: Optional[int] = 3


def _paid_features(support_level: SupportLevel) -> Dict[str, Any]:
    return {
        "receipts_per_month": None,
        "stripe_payouts_enabled": True,
        "api_access_enabled": True,
        "mileage_gps_enabled": True,
        "multi_level_approval": True,
        "support_level": support_level.value,
    }


# Seed rows for subscription_plans
DEFAULT_PLANS: List[Dict[str, Any]] = [
    {
        "name": PlanTier.FREE.value,
        "display_name": "Free",
        "description": "Get started with expense tracking",
        "monthly_price_cents": 0,
        "annual_price_cents": 0,
        "min_users": 1,
        "max_users": FREE_TIER_MAX_USERS,
        "features": dict(FREE_TIER_FEATURES),
        "display_order": 1,
    },
    {
        "name": PlanTier.STARTER.value,
        "display_name": "Starter",
        "description": "Perfect for small teams",
        "monthly_price_cents": 999,
        "annual_price_cents": 9590,
        "min_users": 1,
        "max_users": 5,
        "features": _paid_features(SupportLevel.EMAIL),
        "display_order": 2,
    },
    {
        "name": PlanTier.TEAM.value,
        "display_name": "Team",
        "description": "Built for growing teams",
        "monthly_price_cents": 1899,
        "annual_price_cents": 18230,
        "min_users": 1,
        "max_users": 10,
        "features": _paid_features(SupportLevel.PRIORITY),
        "display_order": 3,
    },
    {
        "name": PlanTier.BUSINESS.value,
        "display_name": "Business",
        "description": "For scaling organizations",
        "monthly_price_cents": 2999,
        "annual_price_cents": 28790,
        "min_users": 1,
        "max_users": 20,
        "features": _paid_features(SupportLevel.PRIORITY),
        "display_order": 4,
    },
    {
        "name": PlanTier.ENTERPRISE.value,
        "display_name": "Enterprise",
        "description": "For large organizations",
        "monthly_price_cents": 5999,
        "annual_price_cents": 57590,
        "min_users": 1,
        "max_users": 50,
        "features": _paid_features(SupportLevel.DEDICATED),
        "display_order": 5,
    },
]

# Fields admin_update_plan may change
PLAN_UPDATABLE_FIELDS = frozenset({
    "display_name",
    "description",
    "monthly_price_cents",
    "annual_price_cents",
    "min_users",
    "max_users",
    "features",
    "is_active",
    "is_public",
})

COUPON_CODE_PATTERN = r"^[A-Z0-9]{4,20}$"

# Share of the receipt allowance after which an upgrade is suggested
APPROACHING_LIMIT_RATIO = 0.8

ORGANIZATION_DELETE_CONFIRMATION = "DELETE"

MAX_ADMIN_PAGE_SIZE = 100
DEFAULT_ADMIN_PAGE_SIZE = 50
