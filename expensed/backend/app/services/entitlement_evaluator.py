# backend/app/services/entitlement_evaluator.py
"""
Entitlement decisions.

The module-level functions are pure: they take plan features and usage
numbers and return decisions. ``EntitlementService`` loads those inputs for an
organization. Without an entitled subscription it evaluates the seeded
``free`` plan row; only when the datastore cannot be read does it fall back
to the built-in free-tier defaults, flagged as degraded.
"""
from dataclasses import dataclass, asdict
from typing import Any, Callable, Dict, Mapping, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.constants import (
    APPROACHING_LIMIT_RATIO,
    ENTITLED_STATUSES,
    FREE_TIER_FEATURES,
    FREE_TIER_MAX_USERS,
    FeatureFlag,
    PlanTier,
    SubscriptionStatus,
    SupportLevel,
    TIER_ORDER,
    TOP_TIER,
)
from app.core.exceptions import NotFoundError
from app.core.logging import get_logger
from app.db.models.subscription import Subscription
from app.db.repositories.subscription_repository import SubscriptionRepository
from app.services.plan_catalog import PlanCatalog, PlanView, plan_catalog

logger = get_logger(__name__)


@dataclass(frozen=True)
class FeatureAccessResult:
    allowed: bool
    reason: Optional[str] = None
    upgrade_to: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}


@dataclass(frozen=True)
class UsageLimits:
    receipt_limit: Optional[int]
    receipts_used: int
    receipts_remaining: Optional[int]
    user_limit: Optional[int]
    users_current: int
    at_user_limit: bool
    at_receipt_limit: bool

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class UsageSummary:
    used: int
    limit: Optional[int]
    remaining: Optional[int]
    percentage: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class UpgradeRecommendation:
    should_upgrade: bool
    reason: str
    recommended_plan: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "shouldUpgrade": self.should_upgrade,
            "reason": self.reason,
            "recommendedPlan": self.recommended_plan,
        }


# ==================== Usage arithmetic ====================

def remaining(limit: Optional[int], used: int) -> Optional[int]:
    if limit is None:
        return None
    return max(0, limit - used)


def usage_percentage(limit: Optional[int], used: int) -> int:
    if limit is None:
        return 0
    if limit == 0:
        return 100 if used > 0 else 0
    return round(used / limit * 100)


def at_limit(limit: Optional[int], used: int) -> bool:
    return limit is not None and used >= limit


def get_usage_limits(features: Mapping[str, Any], max_users: Optional[int], receipts_used: int, users_current: int) -> UsageLimits:
    receipt_limit = features.get("receipts_per_month")
    return UsageLimits(
        receipt_limit=receipt_limit,
        receipts_used=receipts_used,
        receipts_remaining=remaining(receipt_limit, receipts_used),
        user_limit=max_users,
        users_current=users_current,
        at_user_limit=at_limit(max_users, users_current),
        at_receipt_limit=at_limit(receipt_limit, receipts_used),
    )


def receipt_usage(limits: UsageLimits) -> UsageSummary:
    return UsageSummary(
        used=limits.receipts_used,
        limit=limits.receipt_limit,
        remaining=limits.receipts_remaining,
        percentage=usage_percentage(limits.receipt_limit, limits.receipts_used),
    )


def user_usage(limits: UsageLimits) -> UsageSummary:
    return UsageSummary(
        used=limits.users_current,
        limit=limits.user_limit,
        remaining=remaining(limits.user_limit, limits.users_current),
        percentage=usage_percentage(limits.user_limit, limits.users_current),
    )


# ==================== Tiers ====================

def get_next_tier(plan_name: Optional[str]) -> str:
    """One step up the tier order; the top tier and unknown names map to the top tier"""
    try:
        index = TIER_ORDER.index(PlanTier(plan_name))
    except ValueError:
        return TOP_TIER.value
    return TIER_ORDER[min(index + 1, len(TIER_ORDER) - 1)].value


def get_upgrade_recommendation(plan_name: Optional[str], limits: Optional[UsageLimits]) -> Optional[UpgradeRecommendation]:
    if plan_name is None or limits is None:
        return None
    if plan_name == TOP_TIER.value:
        return None

    next_tier = get_next_tier(plan_name)
    if limits.at_receipt_limit:
        return UpgradeRecommendation(True, "You've hit your monthly receipt limit", next_tier)
    if limits.at_user_limit:
        return UpgradeRecommendation(True, "You've reached your user limit", next_tier)
    if (
        limits.receipt_limit
        and limits.receipts_used / limits.receipt_limit > APPROACHING_LIMIT_RATIO
    ):
        return UpgradeRecommendation(True, "You're approaching your receipt limit", next_tier)
    return None


# ==================== Feature checks ====================

def _paid_flag(key: str, label: str) -> Callable[[Mapping[str, Any]], FeatureAccessResult]:
    def check(features: Mapping[str, Any]) -> FeatureAccessResult:
        if features.get(key) is True:
            return FeatureAccessResult(allowed=True)
        return FeatureAccessResult(
            allowed=False,
            reason=f"{label} only available on paid plans",
            upgrade_to=PlanTier.STARTER.value,
        )
    return check


def _unlimited_receipts(features: Mapping[str, Any]) -> FeatureAccessResult:
    if "receipts_per_month" in features and features["receipts_per_month"] is None:
        return FeatureAccessResult(allowed=True)
    return FeatureAccessResult(
        allowed=False,
        reason="Unlimited receipts are only available on paid plans",
        upgrade_to=PlanTier.STARTER.value,
    )


def _priority_support(features: Mapping[str, Any]) -> FeatureAccessResult:
    if features.get("support_level") in (SupportLevel.PRIORITY.value, SupportLevel.DEDICATED.value):
        return FeatureAccessResult(allowed=True)
    return FeatureAccessResult(
        allowed=False,
        reason="Priority support is available on Team plan and above",
        upgrade_to=PlanTier.TEAM.value,
    )


FEATURE_CHECKS: Dict[FeatureFlag, Callable[[Mapping[str, Any]], FeatureAccessResult]] = {
    FeatureFlag.STRIPE_PAYOUTS: _paid_flag("stripe_payouts_enabled", "Stripe payouts are"),
    FeatureFlag.API_ACCESS: _paid_flag("api_access_enabled", "API access is"),
    FeatureFlag.MILEAGE_GPS: _paid_flag("mileage_gps_enabled", "GPS mileage tracking is"),
    FeatureFlag.MULTI_LEVEL_APPROVAL: _paid_flag("multi_level_approval", "Multi-level approvals are"),
    FeatureFlag.UNLIMITED_RECEIPTS: _unlimited_receipts,
    FeatureFlag.PRIORITY_SUPPORT: _priority_support,
}

_unchecked = set(FeatureFlag) - set(FEATURE_CHECKS)
if _unchecked:
    raise RuntimeError(f"Feature flags without a check: {sorted(flag.value for flag in _unchecked)}")


def can_use_feature(flag: FeatureFlag, features: Mapping[str, Any]) -> FeatureAccessResult:
    return FEATURE_CHECKS[FeatureFlag(flag)](features)


def can_upload_receipt(features: Mapping[str, Any], limits: UsageLimits) -> FeatureAccessResult:
    if features.get("receipts_per_month") is None:
        return FeatureAccessResult(allowed=True)
    if limits.at_receipt_limit:
        return FeatureAccessResult(
            allowed=False,
            reason=f"You've reached your monthly limit of {limits.receipt_limit} receipts.",
            upgrade_to=PlanTier.STARTER.value,
        )
    return FeatureAccessResult(allowed=True)


def can_add_user(plan_name: str, limits: UsageLimits) -> FeatureAccessResult:
    if limits.user_limit is None or not limits.at_user_limit:
        return FeatureAccessResult(allowed=True)
    return FeatureAccessResult(
        allowed=False,
        reason=f"You've reached the user limit ({limits.user_limit}) for your plan.",
        upgrade_to=get_next_tier(plan_name),
    )


# ==================== Organization-level evaluation ====================

@dataclass(frozen=True)
class Entitlements:
    """Resolved inputs for one organization at one point in time"""
    plan_name: str
    features: Dict[str, Any]
    limits: UsageLimits
    has_subscription: bool
    status: Optional[SubscriptionStatus] = None
    degraded: bool = False  # True when the datastore could not be read

    def can_use_feature(self, flag: FeatureFlag) -> FeatureAccessResult:
        return can_use_feature(flag, self.features)

    def can_upload_receipt(self) -> FeatureAccessResult:
        return can_upload_receipt(self.features, self.limits)

    def can_add_user(self) -> FeatureAccessResult:
        return can_add_user(self.plan_name, self.limits)

    def upgrade_recommendation(self) -> Optional[UpgradeRecommendation]:
        if not self.has_subscription:
            return None
        return get_upgrade_recommendation(self.plan_name, self.limits)

    def to_dict(self) -> Dict[str, Any]:
        recommendation = self.upgrade_recommendation()
        return {
            "plan": self.plan_name,
            "status": self.status.value if self.status else None,
            "features": dict(self.features),
            "limits": self.limits.to_dict(),
            "receipt_usage": receipt_usage(self.limits).to_dict(),
            "user_usage": user_usage(self.limits).to_dict(),
            "upgrade_recommendation": recommendation.to_dict() if recommendation else None,
            "degraded": self.degraded,
        }


def _free_tier_terms(free_plan: Optional[PlanView]):
    if free_plan is None:
        return dict(FREE_TIER_FEATURES), FREE_TIER_MAX_USERS
    return dict(free_plan.features), free_plan.max_users


def free_tier_entitlements(
    free_plan: Optional[PlanView] = None,
    receipts_used: int = 0,
    users_current: int = 1,
    degraded: bool = False,
) -> Entitlements:
    """
    Free tier from the seeded ``free`` plan row.

    The built-in defaults are only used when that row could not be read.
    """
    features, max_users = _free_tier_terms(free_plan)
    return Entitlements(
        plan_name=PlanTier.FREE.value,
        features=features,
        limits=get_usage_limits(features, max_users, receipts_used, users_current),
        has_subscription=False,
        degraded=degraded,
    )


def evaluate(
    subscription: Optional[Subscription],
    plan: Optional[PlanView],
    free_plan: Optional[PlanView] = None,
) -> Entitlements:
    """Entitlements for a loaded subscription; statuses without access get the free tier"""
    if subscription is None or plan is None:
        return free_tier_entitlements(free_plan)

    status = SubscriptionStatus(subscription.status)
    if status in ENTITLED_STATUSES:
        features = dict(plan.features)
        max_users = plan.max_users
        plan_name = plan.name
    else:
        features, max_users = _free_tier_terms(free_plan)
        plan_name = PlanTier.FREE.value

    return Entitlements(
        plan_name=plan_name,
        features=features,
        limits=get_usage_limits(
            features,
            max_users,
            subscription.current_month_receipts,
            subscription.current_user_count,
        ),
        has_subscription=True,
        status=status,
    )


class EntitlementService:
    """Loads current counters and plan, then evaluates; fails closed"""

    def __init__(self, session: AsyncSession, catalog: Optional[PlanCatalog] = None):
        self.session = session
        self.catalog = catalog or plan_catalog
        self.subscriptions = SubscriptionRepository(session)

    async def get_entitlements(self, organization_id: str) -> Entitlements:
        try:
            free_plan = await self.catalog.get_plan(self.session, PlanTier.FREE.value)
            subscription = await self.subscriptions.get_by_organization(organization_id)
            if subscription is None:
                return free_tier_entitlements(free_plan)
            # Counters are read fresh; never reuse an identity-map copy
            await self.session.refresh(subscription)
            plan = await self.catalog.get_plan_by_id(self.session, subscription.plan_id)
        except (SQLAlchemyError, NotFoundError):
            logger.exception(
                "Entitlement lookup failed, falling back to free tier",
                extra={"organization_id": organization_id},
            )
            return free_tier_entitlements(degraded=True)
        return evaluate(subscription, plan, free_plan)

    async def can_use_feature(self, organization_id: str, flag: FeatureFlag) -> FeatureAccessResult:
        return (await self.get_entitlements(organization_id)).can_use_feature(flag)

    async def get_usage_limits(self, organization_id: str) -> UsageLimits:
        return (await self.get_entitlements(organization_id)).limits

    async def get_upgrade_recommendation(self, organization_id: str) -> Optional[UpgradeRecommendation]:
        return (await self.get_entitlements(organization_id)).upgrade_recommendation()
