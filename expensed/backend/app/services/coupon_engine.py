# backend/app/services/coupon_engine.py
"""
Coupon redemption and administrative discounts.

Redemption checks run in a fixed order and the first failing check is the
one reported. The redemption slot itself is claimed with a conditional
UPDATE, so the read-side ``redemption_count`` check only produces the
friendlier message; the UPDATE is what actually enforces the limit.

A redemption copies the coupon's terms. Later edits to the coupon never
change a discount that was already granted.
"""
import re
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.audit_log import AuditContext, AuditLogRecorder
from app.core.constants import (
    AuditAction,
    BillingCycle,
    COUPON_CODE_PATTERN,
    CouponDuration,
    DiscountType,
    PlanTier,
)
from app.core.events import ChangeEvent, ChangeNotifier, notifier
from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.core.logging import get_logger
from app.core.timeutils import to_epoch, utcnow
from app.db.models.coupon import Coupon
from app.db.models.subscription import Subscription
from app.db.repositories.coupon_repository import CouponRepository
from app.db.repositories.organization_repository import OrganizationRepository
from app.db.repositories.plan_repository import PlanRepository
from app.db.repositories.subscription_repository import SubscriptionRepository
from app.schemas.billing import CouponOut, CreateCouponParams, dump
from app.services.payment_processor import PaymentProcessorService
from app.services.plan_catalog import PlanCatalog, plan_catalog

logger = get_logger(__name__)

# A "once" coupon on a subscription without a future period end
ONCE_FALLBACK_DAYS = 30


def normalize_code(code: Optional[str]) -> str:
    normalized = (code or "").strip().upper()
    if not re.match(COUPON_CODE_PATTERN, normalized):
        raise ValidationError("Invalid coupon code format")
    return normalized


def describe_discount(discount_type: str, discount_value: int) -> str:
    if discount_type == DiscountType.PERCENT.value:
        return f"{discount_value}% off"
    return f"${discount_value / 100:.2f} off"


def discount_amount_cents(discount_type: str, discount_value: int, price_cents: int) -> int:
    if discount_type == DiscountType.PERCENT.value:
        return price_cents * discount_value // 100
    return min(discount_value, price_cents)


class CouponEngine:

    def __init__(
        self,
        session: AsyncSession,
        processor: Optional[PaymentProcessorService] = None,
        catalog: Optional[PlanCatalog] = None,
        events: Optional[ChangeNotifier] = None,
    ):
        self.session = session
        self.processor = processor or PaymentProcessorService()
        self.catalog = catalog or plan_catalog
        self.events = events or notifier
        self.audit = AuditLogRecorder(session)
        self.coupons = CouponRepository(session)
        self.subscriptions = SubscriptionRepository(session)

    async def _subscription_for(self, organization_id: str) -> Subscription:
        """Existing row, or a free-tier row for an organization that never subscribed"""
        subscription = await self.subscriptions.get_by_organization(organization_id)
        if subscription is not None:
            return subscription
        if await OrganizationRepository(self.session).get_active(organization_id) is None:
            raise NotFoundError(f"Organization not found: {organization_id}")
        free_plan = await self.catalog.get_plan(self.session, PlanTier.FREE.value)
        plan = await PlanRepository(self.session).get(free_plan.id)
        return await self.subscriptions.create_for_organization(organization_id, plan)

    async def _validate(self, coupon: Optional[Coupon], organization_id: str, subscription: Subscription, now: datetime) -> int:
        """Raise on the first failing check; returns how many times the organization already redeemed the coupon"""
        if coupon is None:
            raise NotFoundError("Coupon not found")
        if not coupon.is_active:
            raise ConflictError("Coupon is no longer active")
        if coupon.valid_from and now < coupon.valid_from:
            raise ConflictError("Coupon is not yet valid")
        if coupon.valid_until and now > coupon.valid_until:
            raise ConflictError("Coupon has expired")
        if coupon.max_redemptions is not None and coupon.redemption_count >= coupon.max_redemptions:
            raise ConflictError("Coupon redemption limit reached")
        used = await self.coupons.count_org_redemptions(coupon.id, organization_id)
        if used >= (coupon.max_redemptions_per_org or 1):
            raise ConflictError("Coupon already redeemed by this organization")
        plan_name = subscription.plan.name
        if coupon.applies_to_plans and plan_name not in coupon.applies_to_plans:
            raise ConflictError(f"Coupon does not apply to the {plan_name} plan")
        if coupon.min_users and subscription.current_user_count < coupon.min_users:
            raise ConflictError(f"Coupon requires at least {coupon.min_users} users")
        return used

    async def apply_coupon(
        self,
        organization_id: str,
        code: str,
        context: AuditContext,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        now = now or utcnow()
        code = normalize_code(code)
        coupon = await self.coupons.get_by_code(code)
        subscription = await self._subscription_for(organization_id)
        used = await self._validate(coupon, organization_id, subscription, now)

        if not await self.coupons.claim_redemption_slot(coupon.id):
            await self.session.rollback()
            raise ConflictError("Coupon redemption limit reached")

        plan = await self.catalog.get_plan_by_id(self.session, subscription.plan_id)
        if subscription.billing_cycle == BillingCycle.ANNUAL.value:
            price_cents = plan.annual_price_cents
        else:
            price_cents = plan.monthly_price_cents
        applied_cents = discount_amount_cents(coupon.discount_type, coupon.discount_value, price_cents)

        try:
            await self.coupons.add_redemption({
                "coupon_id": coupon.id,
                "organization_id": organization_id,
                "sequence": used + 1,
                "subscription_id": subscription.id,
                "redeemed_at": now,
                "redeemed_by": context.performed_by,
                "discount_type": coupon.discount_type,
                "discount_value": coupon.discount_value,
                "duration": coupon.duration,
                "discount_applied_cents": applied_cents,
                "remaining_months": coupon.duration_months if coupon.duration == CouponDuration.REPEATING.value else None,
            })
        except IntegrityError:
            # Another redemption by this organization took the same sequence number
            await self.session.rollback()
            raise ConflictError("Coupon redemption race lost, please retry")

        if coupon.discount_type == DiscountType.PERCENT.value:
            subscription.discount_percent = coupon.discount_value
            subscription.custom_price_cents = None
        else:
            subscription.discount_percent = 0
            subscription.custom_price_cents = max(0, price_cents - coupon.discount_value)
        if coupon.duration == CouponDuration.ONCE.value:
            period_end = subscription.current_period_end
            if period_end is None or period_end <= now:
                period_end = now + timedelta(days=ONCE_FALLBACK_DAYS)
            subscription.discount_expires_at = period_end
        else:
            subscription.discount_expires_at = None
        subscription.discount_reason = f"Coupon {code}"

        description = describe_discount(coupon.discount_type, coupon.discount_value)
        await self.audit.record(
            AuditAction.COUPON_APPLIED,
            details={
                "coupon_code": code,
                "discount": description,
                "duration": coupon.duration,
                "duration_months": coupon.duration_months,
            },
            context=context,
            organization_id=organization_id,
            subscription_id=subscription.id,
            amount_cents=applied_cents,
        )

        try:
            if subscription.processor_subscription_id and coupon.processor_coupon_id:
                await self.processor.apply_coupon(subscription.processor_subscription_id, coupon.processor_coupon_id)
        except Exception:
            # Releases the claimed slot together with everything else
            await self.session.rollback()
            raise
        await self.session.commit()

        logger.info(f"Coupon {code} applied", extra={"organization_id": organization_id})
        await self.events.publish(ChangeEvent.SUBSCRIPTION_CHANGED, organization_id, {"coupon": code})
        return {"success": True, "message": f"Coupon applied: {description}", "discount_applied_cents": applied_cents}

    async def advance_repeating_discount(self, organization_id: str, cycle_start: Optional[datetime] = None) -> Optional[int]:
        """
        Consume one month of the organization's repeating coupon for the cycle
        starting at ``cycle_start``; the discount is cleared when none remain.

        Returns the months left, or None when there is no repeating coupon or
        this cycle was already consumed.
        """
        cycle_start = cycle_start or utcnow()
        redemption = await self.coupons.get_open_repeating_redemption(organization_id)
        if redemption is None:
            return None
        if not await self.coupons.consume_repeating_month(redemption.id, cycle_start):
            await self.session.rollback()
            return None
        await self.session.refresh(redemption)

        if redemption.remaining_months == 0:
            subscription = await self.subscriptions.get_by_organization(organization_id)
            if subscription is not None:
                self._clear_discount(subscription)
            await self.audit.record(
                AuditAction.DISCOUNT_EXPIRED,
                details={"coupon_id": redemption.coupon_id, "duration": CouponDuration.REPEATING.value},
                organization_id=organization_id,
                subscription_id=redemption.subscription_id,
            )
        await self.session.commit()
        return redemption.remaining_months

    async def expire_discounts(self, now: Optional[datetime] = None) -> int:
        """Clear discounts whose expiry has passed; returns how many were cleared"""
        now = now or utcnow()
        expired = 0
        for subscription in await self.subscriptions.list_expired_discounts(now):
            details = {
                "discount_percent": subscription.discount_percent,
                "custom_price_cents": subscription.custom_price_cents,
                "reason": subscription.discount_reason,
            }
            self._clear_discount(subscription)
            await self.audit.record(
                AuditAction.DISCOUNT_EXPIRED,
                details=details,
                organization_id=subscription.organization_id,
                subscription_id=subscription.id,
            )
            await self.session.commit()
            expired += 1
        return expired

    @staticmethod
    def _clear_discount(subscription: Subscription) -> None:
        subscription.discount_percent = 0
        subscription.custom_price_cents = None
        subscription.discount_expires_at = None
        subscription.discount_reason = None

    # ==================== Admin ====================

    async def apply_discount(
        self,
        organization_id: str,
        discount_percent: int,
        reason: Optional[str],
        context: AuditContext,
        expires_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Administrative discount override.

        Always leaves an audit entry: ``discount_applied`` on success,
        ``discount_apply_failed`` with the error when any step fails.
        """
        now = now or utcnow()
        details = {
            "discount_percent": discount_percent,
            "reason": reason,
            "expires_at": expires_at.isoformat() if expires_at else None,
        }
        try:
            if not reason or not reason.strip():
                raise ValidationError("A reason is required to apply a discount")
            if not 0 <= discount_percent <= 100:
                raise ValidationError("Discount percent must be between 0 and 100")
            if expires_at is not None and expires_at <= now:
                raise ValidationError("Discount expiry must be in the future")

            subscription = await self.subscriptions.get_by_organization(organization_id)
            if subscription is None:
                raise NotFoundError(f"No subscription found for organization {organization_id}")

            details["previous_percent"] = subscription.discount_percent
            subscription.discount_percent = discount_percent
            subscription.discount_expires_at = expires_at if discount_percent else None
            subscription.discount_reason = reason.strip() if discount_percent else None
            await self.audit.record(
                AuditAction.DISCOUNT_APPLIED,
                details=details,
                context=context,
                organization_id=organization_id,
                subscription_id=subscription.id,
            )
            await self.session.commit()
        except Exception as e:
            await self.audit.record_failure(
                AuditAction.DISCOUNT_APPLY_FAILED,
                e,
                details=details,
                context=context,
                organization_id=organization_id,
            )
            raise

        await self.events.publish(ChangeEvent.SUBSCRIPTION_CHANGED, organization_id, {"discount_percent": discount_percent})
        return {"success": True, "message": f"Applied {discount_percent}% discount"}

    async def create_coupon(self, params: CreateCouponParams, context: AuditContext) -> Dict[str, Any]:
        code = normalize_code(params.code)
        discount_type = params.discount_type.value
        duration = params.duration.value

        if discount_type == DiscountType.PERCENT.value and not 1 <= params.discount_value <= 100:
            raise ValidationError("Percent discount must be between 1 and 100")
        if discount_type == DiscountType.FIXED.value and params.discount_value <= 0:
            raise ValidationError("Fixed discount must be a positive amount in cents")
        if duration == CouponDuration.REPEATING.value and not params.duration_months:
            raise ValidationError("Repeating coupons need duration_months")
        if params.max_redemptions is not None and params.max_redemptions < 1:
            raise ValidationError("max_redemptions must be at least 1")
        if params.max_redemptions_per_org < 1:
            raise ValidationError("max_redemptions_per_org must be at least 1")
        if params.valid_from and params.valid_until and params.valid_until <= params.valid_from:
            raise ValidationError("valid_until must be after valid_from")
        if params.applies_to_plans:
            known = {plan.name for plan in await self.catalog.list_plans(self.session, include_hidden=True)}
            unknown = sorted(set(params.applies_to_plans) - known)
            if unknown:
                raise ValidationError(f"Unknown plans: {', '.join(unknown)}")
        if await self.coupons.get_by_code(code) is not None:
            raise ConflictError(f"Coupon code already exists: {code}")

        processor_coupon_id = await self.processor.create_coupon(
            code,
            discount_type,
            params.discount_value,
            duration,
            duration_months=params.duration_months,
            max_redemptions=params.max_redemptions,
            redeem_by_ts=to_epoch(params.valid_until) if params.valid_until else None,
        )

        coupon = await self.coupons.create({
            "code": code,
            "discount_type": discount_type,
            "discount_value": params.discount_value,
            "duration": duration,
            "duration_months": params.duration_months if duration == CouponDuration.REPEATING.value else None,
            "max_redemptions": params.max_redemptions,
            "max_redemptions_per_org": params.max_redemptions_per_org,
            "applies_to_plans": params.applies_to_plans or None,
            "min_users": params.min_users,
            "valid_from": params.valid_from,
            "valid_until": params.valid_until,
            "processor_coupon_id": processor_coupon_id,
            "campaign_name": params.campaign_name,
            "internal_notes": params.internal_notes,
            "created_by": context.performed_by,
        })
        await self.audit.record(
            AuditAction.COUPON_CREATED,
            details={"coupon_code": code, "discount": describe_discount(discount_type, params.discount_value)},
            context=context,
        )
        await self.session.commit()
        return dump(CouponOut, coupon)

    async def deactivate_coupon(self, coupon_id: str, context: AuditContext) -> Dict[str, Any]:
        coupon = await self.coupons.get(coupon_id)
        if coupon is None:
            raise NotFoundError(f"Coupon not found: {coupon_id}")

        if coupon.is_active and coupon.processor_coupon_id:
            await self.processor.delete_coupon(coupon.processor_coupon_id)
        coupon.is_active = False
        await self.audit.record(
            AuditAction.COUPON_DEACTIVATED,
            details={"coupon_code": coupon.code, "redemption_count": coupon.redemption_count},
            context=context,
        )
        await self.session.commit()
        return dump(CouponOut, coupon)
