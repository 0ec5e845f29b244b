# backend/app/services/billing_actions.py
"""
Action dispatcher behind ``POST /billing/rpc``.

Organization actions check the caller's organization role. Every ``admin_*``
action passes the ``AuthorizationGate`` before its parameters are even
parsed, and a failed admin mutation is recorded in the audit log before the
error is returned.
"""
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Type

from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.audit_log import AuditContext, AuditLogRecorder
from app.core.constants import AuditAction, OrganizationRole
from app.core.events import ChangeNotifier, notifier
from app.core.exceptions import PermissionDenied, ValidationError
from app.core.logging import get_logger
from app.core.rbac import ADMIN_ACTION_PERMISSIONS, AuthorizationGate, role_at_least
from app.schemas.billing import (
    AddSuperAdminParams,
    ApplyCouponParams,
    ApplyDiscountParams,
    AuditLogParams,
    ChangePlanParams,
    CheckFeatureParams,
    CheckoutParams,
    CouponIdParams,
    CreateCouponParams,
    DeleteOrganizationParams,
    ExtendTrialParams,
    InvoiceListParams,
    OrganizationActionParams,
    RefundParams,
    SubscriptionListParams,
    UpdatePlanParams,
)
from app.services.admin_service import AdminService
from app.services.coupon_engine import CouponEngine
from app.services.entitlement_evaluator import EntitlementService
from app.services.invoice_service import InvoiceService
from app.services.payment_processor import PaymentProcessorService
from app.services.plan_catalog import PlanCatalog, plan_catalog
from app.services.subscription_lifecycle import SubscriptionLifecycleManager

logger = get_logger(__name__)


@dataclass
class Actor:
    """Authenticated caller as resolved by the API layer"""
    user_id: Optional[str]
    organization_id: Optional[str] = None
    organization_role: Optional[str] = None
    email: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    def audit_context(self, is_super_admin: bool = False) -> AuditContext:
        return AuditContext(
            performed_by=self.user_id,
            is_super_admin=is_super_admin,
            ip_address=self.ip_address,
            user_agent=self.user_agent,
        )


# action -> (handler, minimum organization role or None for public, params model)
ORGANIZATION_ACTIONS: Dict[str, Tuple[str, Optional[OrganizationRole], Optional[Type[BaseModel]]]] = {
    "get_plans": ("_get_plans", None, None),
    "get_subscription": ("_get_subscription", OrganizationRole.EMPLOYEE, None),
    "get_usage_limits": ("_get_usage_limits", OrganizationRole.EMPLOYEE, None),
    "check_feature": ("_check_feature", OrganizationRole.EMPLOYEE, CheckFeatureParams),
    "get_invoices": ("_get_invoices", OrganizationRole.FINANCE, InvoiceListParams),
    "create_checkout_session": ("_create_checkout_session", OrganizationRole.ADMIN, CheckoutParams),
    "create_customer_portal": ("_create_customer_portal", OrganizationRole.ADMIN, None),
    "cancel_subscription": ("_cancel_subscription", OrganizationRole.ADMIN, None),
    "resume_subscription": ("_resume_subscription", OrganizationRole.ADMIN, None),
    "change_plan": ("_change_plan", OrganizationRole.ADMIN, ChangePlanParams),
    "apply_coupon": ("_apply_coupon", OrganizationRole.ADMIN, ApplyCouponParams),
}

ADMIN_ACTIONS: Dict[str, Tuple[str, Type[BaseModel]]] = {
    "admin_get_all_subscriptions": ("_admin_get_all_subscriptions", SubscriptionListParams),
    "admin_apply_discount": ("_admin_apply_discount", ApplyDiscountParams),
    "admin_issue_refund": ("_admin_issue_refund", RefundParams),
    "admin_create_coupon": ("_admin_create_coupon", CreateCouponParams),
    "admin_deactivate_coupon": ("_admin_deactivate_coupon", CouponIdParams),
    "admin_pause_subscription": ("_admin_pause_subscription", OrganizationActionParams),
    "admin_resume_subscription": ("_admin_resume_subscription", OrganizationActionParams),
    "admin_cancel_subscription": ("_admin_cancel_subscription", OrganizationActionParams),
    "admin_extend_trial": ("_admin_extend_trial", ExtendTrialParams),
    "admin_delete_organization": ("_admin_delete_organization", DeleteOrganizationParams),
    "admin_update_plan": ("_admin_update_plan", UpdatePlanParams),
    "admin_get_analytics": ("_admin_get_analytics", BaseModel),
    "admin_get_audit_log": ("_admin_get_audit_log", AuditLogParams),
    "admin_add_super_admin": ("_admin_add_super_admin", AddSuperAdminParams),
}

if set(ADMIN_ACTIONS) != set(ADMIN_ACTION_PERMISSIONS):
    raise RuntimeError("Every admin action needs exactly one permission mapping")

READ_ONLY_ADMIN_ACTIONS = frozenset({"admin_get_all_subscriptions", "admin_get_analytics", "admin_get_audit_log"})

# These services write their own failure entries
SELF_AUDITED_ADMIN_ACTIONS = frozenset({"admin_apply_discount", "admin_issue_refund"})


def parse_params(model: Type[BaseModel], params: Dict[str, Any]) -> BaseModel:
    try:
        return model(**(params or {}))
    except PydanticValidationError as e:
        errors = {".".join(str(part) for part in error["loc"]): error["msg"] for error in e.errors()}
        raise ValidationError("Invalid parameters", details={"errors": errors}) from e


class BillingActionDispatcher:

    def __init__(
        self,
        session: AsyncSession,
        actor: Actor,
        processor: Optional[PaymentProcessorService] = None,
        catalog: Optional[PlanCatalog] = None,
        events: Optional[ChangeNotifier] = None,
        gate: Optional[AuthorizationGate] = None,
    ):
        self.session = session
        self.actor = actor
        self.processor = processor or PaymentProcessorService()
        self.catalog = catalog or plan_catalog
        self.events = events or notifier
        self.gate = gate or AuthorizationGate(session, actor.user_id)

    @property
    def lifecycle(self) -> SubscriptionLifecycleManager:
        return SubscriptionLifecycleManager(self.session, self.processor, self.catalog, self.events)

    @property
    def coupons(self) -> CouponEngine:
        return CouponEngine(self.session, self.processor, self.catalog, self.events)

    @property
    def admin(self) -> AdminService:
        return AdminService(self.session, self.processor, self.catalog, self.events)

    async def dispatch(self, action: str, params: Optional[Dict[str, Any]] = None) -> Any:
        params = params or {}
        if action in ADMIN_ACTIONS:
            return await self._dispatch_admin(action, params)
        if action in ORGANIZATION_ACTIONS:
            return await self._dispatch_organization(action, params)
        raise ValidationError(f"Unknown action: {action}")

    async def _dispatch_organization(self, action: str, params: Dict[str, Any]) -> Any:
        handler_name, required_role, model = ORGANIZATION_ACTIONS[action]
        if required_role is not None:
            if not self.actor.organization_id:
                raise PermissionDenied("No organization context")
            if not role_at_least(self.actor.organization_role, required_role):
                raise PermissionDenied(f"Requires the {required_role.value} role")

        request = parse_params(model, params) if model else None
        handler: Callable[..., Awaitable[Any]] = getattr(self, handler_name)
        return await handler(request) if model else await handler()

    async def _dispatch_admin(self, action: str, params: Dict[str, Any]) -> Any:
        # Denied callers never reach parsing or the target
        await self.gate.require_action(action)

        handler_name, model = ADMIN_ACTIONS[action]
        try:
            return await getattr(self, handler_name)(parse_params(model, params))
        except Exception as e:
            if action not in READ_ONLY_ADMIN_ACTIONS and action not in SELF_AUDITED_ADMIN_ACTIONS:
                logger.warning(
                    f"Admin action {action} failed: {e}",
                    extra={"user_id": self.actor.user_id, "action": action},
                )
                await AuditLogRecorder(self.session).record_failure(
                    AuditAction.ADMIN_ACTION_FAILED,
                    e,
                    details={"rpc_action": action, "params": jsonable_encoder(params)},
                    context=self.actor.audit_context(is_super_admin=True),
                    organization_id=params.get("organization_id"),
                )
            raise

    @property
    def _admin_context(self) -> AuditContext:
        return self.actor.audit_context(is_super_admin=True)

    # ==================== Organization handlers ====================

    async def _get_plans(self) -> Dict[str, Any]:
        plans = await self.catalog.list_plans(self.session)
        return {"plans": [plan.to_dict() for plan in plans]}

    async def _get_subscription(self) -> Dict[str, Any]:
        return await self.lifecycle.get_subscription(self.actor.organization_id)

    async def _get_usage_limits(self) -> Dict[str, Any]:
        entitlements = await EntitlementService(self.session, self.catalog).get_entitlements(self.actor.organization_id)
        recommendation = entitlements.upgrade_recommendation()
        return {
            "plan": entitlements.plan_name,
            "limits": entitlements.limits.to_dict(),
            "upgrade_recommendation": recommendation.to_dict() if recommendation else None,
        }

    async def _check_feature(self, request: CheckFeatureParams) -> Dict[str, Any]:
        result = await EntitlementService(self.session, self.catalog).can_use_feature(
            self.actor.organization_id, request.feature
        )
        return result.to_dict()

    async def _get_invoices(self, request: InvoiceListParams) -> Dict[str, Any]:
        invoices = await InvoiceService(self.session, self.processor).list_invoices(
            self.actor.organization_id, request.limit
        )
        return {"invoices": invoices}

    async def _create_checkout_session(self, request: CheckoutParams) -> Dict[str, Any]:
        return await self.lifecycle.create_checkout_session(
            self.actor.organization_id,
            request.plan_name,
            request.billing_cycle.value,
            self.actor.audit_context(),
            email=self.actor.email,
        )

    async def _create_customer_portal(self) -> Dict[str, Any]:
        return await self.lifecycle.create_customer_portal(self.actor.organization_id)

    async def _cancel_subscription(self) -> Dict[str, Any]:
        return await self.lifecycle.cancel_subscription(self.actor.organization_id, self.actor.audit_context())

    async def _resume_subscription(self) -> Dict[str, Any]:
        return await self.lifecycle.resume_subscription(self.actor.organization_id, self.actor.audit_context())

    async def _change_plan(self, request: ChangePlanParams) -> Dict[str, Any]:
        return await self.lifecycle.change_plan(self.actor.organization_id, request.plan_name, self.actor.audit_context())

    async def _apply_coupon(self, request: ApplyCouponParams) -> Dict[str, Any]:
        return await self.coupons.apply_coupon(self.actor.organization_id, request.code, self.actor.audit_context())

    # ==================== Admin handlers ====================

    async def _admin_get_all_subscriptions(self, request: SubscriptionListParams) -> Dict[str, Any]:
        return await self.admin.list_subscriptions(request.status, request.plan, request.skip, request.capped_limit)

    async def _admin_apply_discount(self, request: ApplyDiscountParams) -> Dict[str, Any]:
        return await self.coupons.apply_discount(
            request.organization_id,
            request.discount_percent,
            request.reason,
            self._admin_context,
            expires_at=request.expires_at,
        )

    async def _admin_issue_refund(self, request: RefundParams) -> Dict[str, Any]:
        return await InvoiceService(self.session, self.processor).issue_refund(
            request.invoice_id,
            self._admin_context,
            amount_cents=request.amount_cents,
            reason=request.reason,
        )

    async def _admin_create_coupon(self, request: CreateCouponParams) -> Dict[str, Any]:
        return await self.coupons.create_coupon(request, self._admin_context)

    async def _admin_deactivate_coupon(self, request: CouponIdParams) -> Dict[str, Any]:
        return await self.coupons.deactivate_coupon(request.coupon_id, self._admin_context)

    async def _admin_pause_subscription(self, request: OrganizationActionParams) -> Dict[str, Any]:
        return await self.lifecycle.pause_subscription(request.organization_id, self._admin_context, reason=request.reason)

    async def _admin_resume_subscription(self, request: OrganizationActionParams) -> Dict[str, Any]:
        return await self.lifecycle.resume_paused_subscription(request.organization_id, self._admin_context)

    async def _admin_cancel_subscription(self, request: OrganizationActionParams) -> Dict[str, Any]:
        return await self.lifecycle.cancel_immediately(request.organization_id, self._admin_context, reason=request.reason)

    async def _admin_extend_trial(self, request: ExtendTrialParams) -> Dict[str, Any]:
        return await self.lifecycle.extend_trial(request.organization_id, request.days, self._admin_context)

    async def _admin_delete_organization(self, request: DeleteOrganizationParams) -> Dict[str, Any]:
        return await self.admin.delete_organization(request.organization_id, request.confirmation, self._admin_context)

    async def _admin_update_plan(self, request: UpdatePlanParams) -> Dict[str, Any]:
        return await self.admin.update_plan(request.plan_id, request.updates, self._admin_context)

    async def _admin_get_analytics(self, request: BaseModel) -> Dict[str, Any]:
        return await self.admin.get_analytics()

    async def _admin_get_audit_log(self, request: AuditLogParams) -> Dict[str, Any]:
        return await self.admin.get_audit_log(
            action=request.action,
            date_from=request.date_from,
            date_to=request.date_to,
            organization=request.organization,
            limit=request.limit,
            offset=request.offset,
            format=request.format,
        )

    async def _admin_add_super_admin(self, request: AddSuperAdminParams) -> Dict[str, Any]:
        return await self.admin.add_super_admin(
            request.user_id,
            self._admin_context,
            display_name=request.display_name,
            permissions=request.permissions,
        )
