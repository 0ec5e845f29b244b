# backend/app/services/admin_service.py
"""Platform-operator reads and mutations that sit outside the subscription state machine"""
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.audit_log import AuditContext, AuditLogRecorder, AuditQuery
from app.core.constants import (
    AdminPermission,
    AuditAction,
    BillingCycle,
    DEFAULT_ADMIN_PERMISSIONS,
    ENTITLED_STATUSES,
    ORGANIZATION_DELETE_CONFIRMATION,
    PLAN_UPDATABLE_FIELDS,
    PlanTier,
    SubscriptionStatus,
)
from app.core.events import ChangeEvent, ChangeNotifier, notifier
from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.core.logging import get_logger
from app.core.timeutils import to_epoch, utcnow
from app.db.models.subscription import Subscription
from app.db.repositories.coupon_repository import CouponRepository
from app.db.repositories.organization_repository import OrganizationRepository
from app.db.repositories.plan_repository import PlanRepository
from app.db.repositories.subscription_repository import SubscriptionRepository
from app.db.repositories.super_admin_repository import SuperAdminRepository
from app.schemas.billing import CouponOut, PlanOut, SubscriptionOut, dump
from app.services.audit_export import to_csv
from app.services.payment_processor import PaymentProcessorService
from app.services.plan_catalog import PlanCatalog, plan_catalog

logger = get_logger(__name__)

RECENT_ACTIVITY_LIMIT = 20
TOP_COUPONS_LIMIT = 10


def monthly_revenue_cents(subscription: Subscription) -> int:
    """Recurring revenue of one subscription normalized to a month, after discounts"""
    plan = subscription.plan
    if subscription.custom_price_cents is not None:
        price = subscription.custom_price_cents
    elif subscription.billing_cycle == BillingCycle.ANNUAL.value:
        price = plan.annual_price_cents
    else:
        price = plan.monthly_price_cents
    if subscription.billing_cycle == BillingCycle.ANNUAL.value:
        price = price // 12
    if subscription.discount_percent:
        price = price * (100 - subscription.discount_percent) // 100
    return price


class AdminService:

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
        self.subscriptions = SubscriptionRepository(session)
        self.organizations = OrganizationRepository(session)

    async def list_subscriptions(
        self,
        status: Optional[str] = None,
        plan_name: Optional[str] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> Dict[str, Any]:
        if status is not None:
            try:
                SubscriptionStatus(status)
            except ValueError as e:
                raise ValidationError(f"Unknown status: {status}") from e

        subscriptions = await self.subscriptions.list_filtered(status, plan_name, skip, limit)
        items = []
        for subscription in subscriptions:
            item = dump(SubscriptionOut, subscription)
            item["organization_name"] = subscription.organization.name if subscription.organization else None
            items.append(item)
        return {"subscriptions": items, "skip": skip, "limit": limit}

    async def delete_organization(self, organization_id: str, confirmation: str, context: AuditContext) -> Dict[str, Any]:
        """Soft delete; the subscription is canceled and billing history is kept"""
        if confirmation != ORGANIZATION_DELETE_CONFIRMATION:
            raise ValidationError(f'Type "{ORGANIZATION_DELETE_CONFIRMATION}" to confirm deletion')

        organization = await self.organizations.get_active(organization_id)
        if organization is None:
            raise NotFoundError(f"Organization not found: {organization_id}")

        subscription = await self.subscriptions.get_by_organization(organization_id)
        if subscription is not None and subscription.status != SubscriptionStatus.CANCELED.value:
            if subscription.processor_subscription_id:
                await self.processor.cancel_subscription(subscription.processor_subscription_id)
            now = utcnow()
            subscription.status = SubscriptionStatus.CANCELED.value
            subscription.canceled_at = now
            subscription.version = max(subscription.version or 0, to_epoch(now))

        await self.organizations.soft_delete(organization, deleted_by=context.performed_by)
        await self.audit.record(
            AuditAction.ORGANIZATION_DELETED,
            details={"organization_name": organization.name},
            context=context,
            organization_id=organization_id,
        )
        await self.session.commit()
        await self.events.publish(ChangeEvent.SUBSCRIPTION_CHANGED, organization_id, {"deleted": True})
        return {"success": True, "message": f"Organization {organization.name} deleted"}

    async def update_plan(self, plan_id: str, updates: Dict[str, Any], context: AuditContext) -> Dict[str, Any]:
        """Edit a plan; the catalog cache is invalidated before this returns"""
        plans = PlanRepository(self.session)
        plan = await plans.get(plan_id)
        if plan is None:
            raise NotFoundError(f"Plan not found: {plan_id}")

        disallowed = sorted(set(updates) - PLAN_UPDATABLE_FIELDS)
        if disallowed:
            raise ValidationError(f"Fields cannot be updated: {', '.join(disallowed)}")
        for field in ("monthly_price_cents", "annual_price_cents"):
            if field in updates and (not isinstance(updates[field], int) or updates[field] < 0):
                raise ValidationError(f"{field} must be a non-negative integer")
        min_users = updates.get("min_users", plan.min_users)
        max_users = updates.get("max_users", plan.max_users)
        if not isinstance(min_users, int) or min_users < 1:
            raise ValidationError("min_users must be at least 1")
        if max_users is not None and (not isinstance(max_users, int) or max_users < min_users):
            raise ValidationError("max_users must be empty or at least min_users")
        if "features" in updates and not isinstance(updates["features"], dict):
            raise ValidationError("features must be an object")

        changes = {}
        for field, value in updates.items():
            if field == "features":
                value = {**(plan.features or {}), **value}
            previous = getattr(plan, field)
            if previous != value:
                changes[field] = {"from": previous, "to": value}
                setattr(plan, field, value)

        await self.audit.record(
            AuditAction.PLAN_UPDATED,
            details={"plan": plan.name, "changes": changes},
            context=context,
        )
        await self.session.commit()
        self.catalog.invalidate()
        await self.events.publish(ChangeEvent.PLANS_CHANGED, None, {"plan": plan.name})
        return dump(PlanOut, plan)

    async def add_super_admin(
        self,
        user_id: str,
        context: AuditContext,
        display_name: Optional[str] = None,
        permissions: Optional[Dict[str, bool]] = None,
    ) -> Dict[str, Any]:
        known = {permission.value for permission in AdminPermission}
        unknown = sorted(set(permissions or {}) - known)
        if unknown:
            raise ValidationError(f"Unknown permissions: {', '.join(unknown)}")
        granted = {**DEFAULT_ADMIN_PERMISSIONS, **(permissions or {})}

        admins = SuperAdminRepository(self.session)
        admin = await admins.get_by_user(user_id)
        if admin is not None and admin.is_active:
            raise ConflictError("User is already a super admin")
        if admin is None:
            admin = await admins.create({
                "user_id": user_id,
                "display_name": display_name,
                "permissions": granted,
                "created_by": context.performed_by,
            })
        else:
            admin.permissions = granted
            admin.display_name = display_name or admin.display_name
            admin.is_active = True

        await self.audit.record(
            AuditAction.SUPER_ADMIN_ADDED,
            details={"user_id": user_id, "permissions": sorted(name for name, on in granted.items() if on)},
            context=context,
        )
        await self.session.commit()
        return {"success": True, "user_id": user_id, "permissions": granted}

    async def get_analytics(self) -> Dict[str, Any]:
        billable = await self.subscriptions.list_entitled()
        paying = [s for s in billable if s.plan and s.plan.name != PlanTier.FREE.value]
        mrr = sum(monthly_revenue_cents(s) for s in paying)

        distribution: Dict[str, int] = {}
        for plan_name, by_status in (await self.subscriptions.count_by_plan_and_status()).items():
            distribution[plan_name] = sum(
                count for status, count in by_status.items() if SubscriptionStatus(status) in ENTITLED_STATUSES
            )
        total = await self.subscriptions.count_all()

        recent = await self.audit.query(AuditQuery(limit=RECENT_ACTIVITY_LIMIT))
        top_coupons = await CouponRepository(self.session).top_coupons(TOP_COUPONS_LIMIT)
        return {
            "mrr_cents": mrr,
            "arr_cents": mrr * 12,
            "paying_customers": len(paying),
            "free_customers": len(billable) - len(paying),
            "total_subscriptions": total,
            "plan_distribution": distribution,
            "recent_activity": [
                {
                    "action": record.action,
                    "organization_name": record.organization_name,
                    "amount_cents": record.amount_cents,
                    "created_at": record.created_at.isoformat(),
                }
                for record in recent
            ],
            "top_coupons": [dump(CouponOut, coupon) for coupon in top_coupons],
        }

    async def get_audit_log(
        self,
        action: Optional[str] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        organization: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
        format: str = "json",
    ) -> Dict[str, Any]:
        records = await self.audit.query(AuditQuery(
            action=action,
            date_from=date_from,
            date_to=date_to,
            organization=organization,
            limit=limit,
            offset=offset,
        ))
        if format == "csv":
            return {
                "content": to_csv(records),
                "filename": f"billing_audit_{utcnow().strftime('%Y%m%d')}.csv",
            }
        return {"entries": [_record_to_dict(record) for record in records]}


def _record_to_dict(record) -> Dict[str, Any]:
    return {
        "id": record.id,
        "created_at": record.created_at.isoformat(),
        "action": record.action,
        "action_details": record.action_details,
        "amount_cents": record.amount_cents,
        "organization_id": record.organization_id,
        "organization_name": record.organization_name,
        "performed_by": record.performed_by,
        "is_super_admin": record.is_super_admin,
        "is_system": record.is_system,
    }
