# backend/app/services/usage_counter.py
"""
Per-organization receipt and seat counters.

Receipt uploads are counted with a soft limit by default: the increment is
an atomic ``count + 1`` and brief overage under concurrent uploads is
accepted. With ``enforce_limit`` the limit check is folded into the same
UPDATE statement. Resets are triggered from outside (billing cycle jobs).
"""
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.audit_log import AuditLogRecorder
from app.core.config import settings
from app.core.constants import AuditAction, PlanTier
from app.core.events import ChangeEvent, ChangeNotifier, notifier
from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.core.logging import get_logger
from app.db.repositories.organization_repository import OrganizationRepository
from app.db.repositories.plan_repository import PlanRepository
from app.db.repositories.subscription_repository import SubscriptionRepository
from app.services.entitlement_evaluator import EntitlementService, UsageLimits
from app.services.plan_catalog import PlanCatalog, plan_catalog

logger = get_logger(__name__)


class UsageCounter:

    def __init__(
        self,
        session: AsyncSession,
        catalog: Optional[PlanCatalog] = None,
        events: Optional[ChangeNotifier] = None,
    ):
        self.session = session
        self.catalog = catalog or plan_catalog
        self.events = events or notifier
        self.subscriptions = SubscriptionRepository(session)
        self.organizations = OrganizationRepository(session)
        self.entitlements = EntitlementService(session, self.catalog)

    async def _ensure_subscription(self, organization_id: str) -> None:
        """Organizations without a row get a free-tier row to count against"""
        if await self.subscriptions.get_by_organization(organization_id) is not None:
            return
        if await self.organizations.get_active(organization_id) is None:
            raise NotFoundError(f"Organization not found: {organization_id}")
        free_plan = await self.catalog.get_plan(self.session, PlanTier.FREE.value)
        plan = await PlanRepository(self.session).get(free_plan.id)
        await self.subscriptions.create_for_organization(organization_id, plan)

    async def record_receipt_upload(self, organization_id: str, enforce_limit: Optional[bool] = None) -> UsageLimits:
        if enforce_limit is None:
            enforce_limit = settings.ENFORCE_RECEIPT_HARD_CAP

        await self._ensure_subscription(organization_id)

        limit = None
        if enforce_limit:
            limit = (await self.entitlements.get_usage_limits(organization_id)).receipt_limit

        counted = await self.subscriptions.increment_receipts(organization_id, limit=limit)
        if not counted:
            await self.session.rollback()
            raise ConflictError(
                f"You've reached your monthly limit of {limit} receipts.",
                upgrade_to=PlanTier.STARTER.value,
            )
        await self.session.commit()

        limits = await self.entitlements.get_usage_limits(organization_id)
        await self.events.publish(ChangeEvent.USAGE_CHANGED, organization_id, {"receipts_used": limits.receipts_used})
        return limits

    async def set_user_count(self, organization_id: str, user_count: int) -> UsageLimits:
        if user_count < 0:
            raise ValidationError("User count cannot be negative")

        await self._ensure_subscription(organization_id)
        await self.subscriptions.set_user_count(organization_id, user_count)
        await self.session.commit()

        limits = await self.entitlements.get_usage_limits(organization_id)
        await self.events.publish(ChangeEvent.USAGE_CHANGED, organization_id, {"users_current": user_count})
        return limits

    async def reset_monthly_usage(self, organization_id: str, cycle_start: Optional[datetime] = None) -> bool:
        """
        Zero the monthly receipt counter for the cycle starting at ``cycle_start``.

        A second call for the same cycle is a no-op and returns False.
        """
        cycle_start = cycle_start or datetime.utcnow()
        reset = await self.subscriptions.reset_usage_if_due(organization_id, cycle_start)
        if not reset:
            await self.session.rollback()
            return False

        await AuditLogRecorder(self.session).record(
            AuditAction.USAGE_RESET,
            details={"cycle_start": cycle_start.isoformat()},
            organization_id=organization_id,
        )
        await self.session.commit()

        logger.info("Monthly usage reset", extra={"organization_id": organization_id})
        await self.events.publish(ChangeEvent.USAGE_CHANGED, organization_id, {"receipts_used": 0})
        return True
