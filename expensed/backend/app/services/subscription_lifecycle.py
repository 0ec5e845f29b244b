# backend/app/services/subscription_lifecycle.py
"""
Subscription state machine.

Two writers share it: processor webhooks (``handle_event``) and organization
or admin actions. Both check ``ALLOWED_TRANSITIONS`` and both stamp
``Subscription.version`` with the time of the change they apply. A webhook
whose ``created`` timestamp is older than the stored version is acknowledged
but changes nothing, so a late ``past_due`` can never overwrite a newer
``active``.

Every applied change writes one audit entry in the same transaction and
publishes ``SUBSCRIPTION_CHANGED`` after the commit.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.audit_log import AuditContext, AuditLogRecorder
from app.core.constants import (
    AuditAction,
    BillingCycle,
    ENTITLED_STATUSES,
    InvoiceStatus,
    PROCESSOR_STATUS_MAP,
    PlanTier,
    ProcessorEventType,
    SubscriptionStatus,
)
from app.core.events import ChangeEvent, ChangeNotifier, notifier
from app.core.exceptions import ConflictError, NotFoundError, StateError, ValidationError
from app.core.logging import get_logger
from app.core.timeutils import from_epoch, to_epoch, utcnow
from app.db.models.invoice import Invoice
from app.db.models.plan import Plan
from app.db.models.subscription import Subscription
from app.db.repositories.invoice_repository import InvoiceRepository
from app.db.repositories.organization_repository import OrganizationRepository
from app.db.repositories.plan_repository import PlanRepository
from app.db.repositories.processed_event_repository import ProcessedEventRepository
from app.db.repositories.subscription_repository import SubscriptionRepository
from app.schemas.billing import SubscriptionOut, dump
from app.services.entitlement_evaluator import EntitlementService
from app.services.payment_processor import PaymentProcessorService
from app.services.plan_catalog import PlanCatalog, PlanView, plan_catalog

logger = get_logger(__name__)


Status = SubscriptionStatus

ALLOWED_TRANSITIONS: Dict[SubscriptionStatus, FrozenSet[SubscriptionStatus]] = {
    Status.TRIALING: frozenset({Status.ACTIVE, Status.CANCELED}),
    Status.ACTIVE: frozenset({Status.PAST_DUE, Status.PAUSED, Status.CANCELED}),
    Status.PAST_DUE: frozenset({Status.ACTIVE, Status.UNPAID, Status.CANCELED}),
    Status.UNPAID: frozenset({Status.ACTIVE, Status.CANCELED}),
    Status.PAUSED: frozenset({Status.ACTIVE, Status.CANCELED}),
    # Only undoing a deferred cancellation before its period ends
    Status.CANCELED: frozenset({Status.ACTIVE}),
}

# Statuses a processor-backed subscription may start in
INITIAL_STATUSES = frozenset({Status.TRIALING, Status.ACTIVE})

_unmapped = set(SubscriptionStatus) - set(ALLOWED_TRANSITIONS)
if _unmapped:
    raise RuntimeError(f"Statuses missing from ALLOWED_TRANSITIONS: {sorted(s.value for s in _unmapped)}")

MAX_TRIAL_EXTENSION_DAYS = 90


def can_transition(
    current: Optional[SubscriptionStatus],
    target: SubscriptionStatus,
    subscription: Optional[Subscription] = None,
    now: Optional[datetime] = None,
) -> bool:
    """``current`` None means no processor-backed subscription exists yet"""
    if current is None:
        return target in INITIAL_STATUSES
    if current == target:
        return True
    if target not in ALLOWED_TRANSITIONS[current]:
        return False
    if current == Status.CANCELED:
        now = now or utcnow()
        return (
            subscription is not None
            and bool(subscription.cancel_at_period_end)
            and subscription.current_period_end is not None
            and subscription.current_period_end > now
        )
    return True


class EventOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    STALE = "stale"
    REJECTED = "rejected"
    IGNORED = "ignored"


@dataclass(frozen=True)
class ProcessorEvent:
    """A processor webhook delivery reduced to what the state machine reads"""
    id: str
    type: str
    created: int
    data: Dict[str, Any]

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ProcessorEvent":
        try:
            return cls(
                id=str(payload["id"]),
                type=str(payload["type"]),
                created=int(payload.get("created") or 0),
                data=dict((payload.get("data") or {}).get("object") or {}),
            )
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise ValidationError("Malformed processor event") from e


EVENT_HANDLERS: Dict[ProcessorEventType, str] = {
    ProcessorEventType.CHECKOUT_COMPLETED: "_on_checkout_completed",
    ProcessorEventType.SUBSCRIPTION_CREATED: "_on_subscription_upsert",
    ProcessorEventType.SUBSCRIPTION_UPDATED: "_on_subscription_upsert",
    ProcessorEventType.SUBSCRIPTION_DELETED: "_on_subscription_deleted",
    ProcessorEventType.TRIAL_WILL_END: "_on_trial_will_end",
    ProcessorEventType.INVOICE_PAID: "_on_invoice_paid",
    ProcessorEventType.INVOICE_PAYMENT_FAILED: "_on_invoice_payment_failed",
    ProcessorEventType.INVOICE_FINALIZED: "_on_invoice_finalized",
}

_unhandled = set(ProcessorEventType) - set(EVENT_HANDLERS)
if _unhandled:
    raise RuntimeError(f"Processor events without a handler: {sorted(e.value for e in _unhandled)}")


HandlerResult = Tuple[EventOutcome, Optional[str]]


class SubscriptionLifecycleManager:

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
        self.invoices = InvoiceRepository(session)
        self.processed = ProcessedEventRepository(session)

    # ==================== Shared helpers ====================

    async def _plan_model(self, plan: PlanView) -> Plan:
        model = await PlanRepository(self.session).get(plan.id)
        if model is None:
            raise NotFoundError(f"Plan not found: {plan.name}")
        return model

    async def _require_subscription(self, organization_id: str) -> Subscription:
        subscription = await self.subscriptions.get_by_organization(organization_id)
        if subscription is None:
            raise NotFoundError(f"No subscription found for organization {organization_id}")
        return subscription

    @staticmethod
    def _stamp(subscription: Subscription, timestamp: int) -> None:
        subscription.version = max(subscription.version or 0, timestamp)

    @staticmethod
    def _set_plan(subscription: Subscription, plan: Plan) -> None:
        subscription.plan = plan
        subscription.plan_id = plan.id

    def _require_transition(self, subscription: Subscription, target: SubscriptionStatus, now: datetime) -> None:
        current = subscription.status_enum
        if not can_transition(current, target, subscription, now):
            raise ConflictError(f"Cannot move subscription from {current.value} to {target.value}")

    async def _commit(
        self,
        action: AuditAction,
        context: Optional[AuditContext],
        organization_id: Optional[str],
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Commit; a failed commit after a processor side effect still leaves an audit entry"""
        try:
            await self.session.commit()
        except SQLAlchemyError as e:
            logger.exception(
                f"Commit failed for {action.value}",
                extra={"organization_id": organization_id, "action": action.value},
            )
            await self.audit.record_failure(action, e, details=details, context=context, organization_id=organization_id)
            raise

    async def _publish(self, subscription: Subscription) -> None:
        await self.events.publish(
            ChangeEvent.SUBSCRIPTION_CHANGED,
            subscription.organization_id,
            {"status": subscription.status, "plan": subscription.plan.name if subscription.plan else None},
        )

    def _billing_cycle(self, obj: Dict[str, Any], plan: PlanView) -> str:
        price = self._first_price(obj)
        if price.get("id") and price.get("id") == plan.processor_annual_price_id:
            return BillingCycle.ANNUAL.value
        if (price.get("recurring") or {}).get("interval") == "year":
            return BillingCycle.ANNUAL.value
        return BillingCycle.MONTHLY.value

    @staticmethod
    def _first_price(obj: Dict[str, Any]) -> Dict[str, Any]:
        items = (obj.get("items") or {}).get("data") or []
        if not items:
            return {}
        return items[0].get("price") or {}

    # ==================== Webhook events ====================

    async def handle_event(self, event: ProcessorEvent) -> EventOutcome:
        """
        Apply one processor event at most once.

        The processed-event record is staged in the same transaction as the
        change it describes; a concurrent delivery of the same id loses on the
        primary key at commit and is reported as a duplicate. Any other constraint
        failure propagates so the processor redelivers the event.
        """
        log_extra = {"event_id": event.id}
        if await self.processed.exists(event.id):
            logger.info(f"Duplicate processor event {event.type}", extra=log_extra)
            return EventOutcome.DUPLICATE

        try:
            event_type = ProcessorEventType(event.type)
        except ValueError:
            event_type = None

        try:
            if event_type is None:
                logger.info(f"Unhandled processor event type: {event.type}", extra=log_extra)
                outcome, organization_id = EventOutcome.IGNORED, None
            else:
                handler = getattr(self, EVENT_HANDLERS[event_type])
                outcome, organization_id = await handler(event)
            self.processed.stage(event.id, event.type, organization_id, outcome.value)
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            if not await self.processed.exists(event.id):
                logger.exception(f"Processor event {event.type} failed on a constraint", extra=log_extra)
                raise
            logger.info("Processor event claimed by a concurrent delivery", extra=log_extra)
            return EventOutcome.DUPLICATE
        except Exception:
            await self.session.rollback()
            raise

        logger.info(
            f"Processor event {event.type}: {outcome.value}",
            extra={"event_id": event.id, "organization_id": organization_id},
        )
        if outcome == EventOutcome.APPLIED and organization_id:
            subscription = await self.subscriptions.get_by_organization(organization_id)
            if subscription is not None:
                await self._publish(subscription)
        return outcome

    async def _security_alert(self, message: str, event: ProcessorEvent, **details: Any) -> None:
        logger.warning(message, extra={"event_id": event.id})
        await self.audit.record(
            AuditAction.SECURITY_ALERT,
            details={"message": message, "event_id": event.id, "event_type": event.type, **details},
        )

    async def _resolve_organization_id(self, obj: Dict[str, Any]) -> Optional[str]:
        organization_id = (obj.get("metadata") or {}).get("organization_id")
        if organization_id:
            organization = await self.organizations.get_active(organization_id)
            return organization.id if organization else None
        customer_id = obj.get("customer")
        if customer_id:
            organization = await self.organizations.get_by_processor_customer(customer_id)
            if organization is not None and not organization.is_deleted:
                return organization.id
        return None

    async def _resolve_plan(self, obj: Dict[str, Any]) -> Optional[PlanView]:
        plan_id = (obj.get("metadata") or {}).get("plan_id")
        if plan_id:
            try:
                return await self.catalog.get_plan_by_id(self.session, plan_id)
            except NotFoundError:
                return None
        price_id = self._first_price(obj).get("id")
        if price_id:
            return await self.catalog.get_plan_by_processor_price(self.session, price_id)
        return None

    async def _on_checkout_completed(self, event: ProcessorEvent) -> HandlerResult:
        obj = event.data
        organization_id = (obj.get("metadata") or {}).get("organization_id")
        organization = await self.organizations.get_active(organization_id) if organization_id else None
        if organization is None:
            await self._security_alert(
                "Checkout completed for an unknown organization",
                event,
                organization_id=organization_id,
            )
            return EventOutcome.REJECTED, None

        customer_id = obj.get("customer")
        if customer_id:
            organization.processor_customer_id = customer_id
            subscription = await self.subscriptions.get_by_organization(organization.id)
            if subscription is not None:
                subscription.processor_customer_id = customer_id
        await self.session.flush()
        return EventOutcome.APPLIED, organization.id

    async def _on_subscription_upsert(self, event: ProcessorEvent) -> HandlerResult:
        obj = event.data
        processor_id = obj.get("id")
        subscription = await self.subscriptions.get_by_processor_subscription(processor_id) if processor_id else None
        organization_id = subscription.organization_id if subscription else await self._resolve_organization_id(obj)
        if organization_id is None:
            await self._security_alert("Subscription event for an unknown organization", event, processor_subscription_id=processor_id)
            return EventOutcome.REJECTED, None
        if subscription is None:
            subscription = await self.subscriptions.get_by_organization(organization_id)

        plan = await self._resolve_plan(obj)
        if plan is None:
            await self._security_alert("Subscription event for an unknown plan", event, organization_id=organization_id)
            return EventOutcome.REJECTED, organization_id

        if subscription is not None and event.created < (subscription.version or 0):
            logger.info(
                "Stale subscription event ignored",
                extra={"event_id": event.id, "organization_id": organization_id},
            )
            return EventOutcome.STALE, organization_id

        target = PROCESSOR_STATUS_MAP.get(obj.get("status"))
        if target is None:
            logger.warning(
                f"Unknown processor subscription status: {obj.get('status')}",
                extra={"event_id": event.id, "organization_id": organization_id},
            )
            return EventOutcome.REJECTED, organization_id

        now = utcnow()
        is_new = subscription is None or subscription.processor_subscription_id != processor_id
        current = None if is_new else subscription.status_enum
        if not can_transition(current, target, subscription, now):
            logger.warning(
                f"Rejected transition {current.value if current else 'none'} -> {target.value}",
                extra={"event_id": event.id, "organization_id": organization_id},
            )
            return EventOutcome.REJECTED, organization_id

        plan_model = await self._plan_model(plan)
        previous_plan = subscription.plan.name if subscription is not None else None
        previous_status = subscription.status if subscription is not None else None
        if subscription is None:
            subscription = await self.subscriptions.create_for_organization(organization_id, plan_model, status=target.value)
        else:
            self._set_plan(subscription, plan_model)

        subscription.processor_subscription_id = processor_id
        subscription.processor_customer_id = obj.get("customer") or subscription.processor_customer_id
        subscription.status = target.value
        subscription.billing_cycle = self._billing_cycle(obj, plan)
        subscription.current_period_start = from_epoch(obj.get("current_period_start"))
        subscription.current_period_end = from_epoch(obj.get("current_period_end"))
        subscription.trial_start = from_epoch(obj.get("trial_start"))
        subscription.trial_end = from_epoch(obj.get("trial_end"))
        subscription.cancel_at_period_end = bool(obj.get("cancel_at_period_end"))
        subscription.canceled_at = from_epoch(obj.get("canceled_at"))
        if target == Status.PAUSED:
            subscription.paused_at = subscription.paused_at or now
        else:
            subscription.paused_at = None
        self._stamp(subscription, event.created)

        if is_new:
            action = AuditAction.SUBSCRIPTION_CREATED
            details = {"plan": plan.name, "status": target.value, "billing_cycle": subscription.billing_cycle}
        elif previous_plan != plan.name:
            action = AuditAction.PLAN_CHANGED
            details = {"from_plan": previous_plan, "to_plan": plan.name, "status": target.value}
        elif previous_status != target.value:
            action = AuditAction.STATUS_CHANGED
            details = {"from_status": previous_status, "to_status": target.value}
        else:
            action = AuditAction.SUBSCRIPTION_UPDATED
            details = {"cancel_at_period_end": subscription.cancel_at_period_end}
        details["processor_subscription_id"] = processor_id
        details["event_id"] = event.id

        await self.session.flush()
        await self.audit.record(action, details=details, organization_id=organization_id, subscription_id=subscription.id)
        return EventOutcome.APPLIED, organization_id

    async def _on_subscription_deleted(self, event: ProcessorEvent) -> HandlerResult:
        """The paid subscription ended; the organization drops back to the free plan"""
        processor_id = event.data.get("id")
        subscription = await self.subscriptions.get_by_processor_subscription(processor_id) if processor_id else None
        if subscription is None:
            logger.info("Deletion event for an unknown subscription", extra={"event_id": event.id})
            return EventOutcome.IGNORED, None
        if event.created < (subscription.version or 0):
            return EventOutcome.STALE, subscription.organization_id

        now = utcnow()
        previous_plan = subscription.plan.name
        free_plan = await self._plan_model(await self.catalog.get_plan(self.session, PlanTier.FREE.value))
        self._set_plan(subscription, free_plan)
        subscription.status = Status.ACTIVE.value
        subscription.processor_subscription_id = None
        subscription.billing_cycle = None
        subscription.current_period_start = now
        subscription.current_period_end = None
        subscription.trial_start = None
        subscription.trial_end = None
        subscription.cancel_at_period_end = False
        subscription.canceled_at = from_epoch(event.data.get("ended_at")) or now
        subscription.paused_at = None
        self._stamp(subscription, event.created)

        await self.audit.record(
            AuditAction.SUBSCRIPTION_ENDED,
            details={
                "previous_plan": previous_plan,
                "downgraded_to": PlanTier.FREE.value,
                "processor_subscription_id": processor_id,
                "event_id": event.id,
            },
            organization_id=subscription.organization_id,
            subscription_id=subscription.id,
        )
        return EventOutcome.APPLIED, subscription.organization_id

    async def _on_trial_will_end(self, event: ProcessorEvent) -> HandlerResult:
        processor_id = event.data.get("id")
        subscription = await self.subscriptions.get_by_processor_subscription(processor_id) if processor_id else None
        if subscription is None:
            return EventOutcome.IGNORED, None

        trial_end = from_epoch(event.data.get("trial_end")) or subscription.trial_end
        days_remaining = max(0, (trial_end - utcnow()).days) if trial_end else None
        await self.audit.record(
            AuditAction.TRIAL_ENDING_SOON,
            details={
                "trial_end": trial_end.isoformat() if trial_end else None,
                "days_remaining": days_remaining,
                "event_id": event.id,
            },
            organization_id=subscription.organization_id,
            subscription_id=subscription.id,
        )
        return EventOutcome.APPLIED, subscription.organization_id

    async def _invoice_context(self, obj: Dict[str, Any]) -> Tuple[Optional[Subscription], Optional[str]]:
        processor_subscription_id = obj.get("subscription")
        subscription = None
        if processor_subscription_id:
            subscription = await self.subscriptions.get_by_processor_subscription(processor_subscription_id)
        if subscription is not None:
            return subscription, subscription.organization_id
        organization_id = await self._resolve_organization_id(obj)
        if organization_id:
            subscription = await self.subscriptions.get_by_organization(organization_id)
        return subscription, organization_id

    @staticmethod
    def _invoice_values(
        obj: Dict[str, Any],
        organization_id: str,
        subscription: Optional[Subscription],
        status: InvoiceStatus,
    ) -> Dict[str, Any]:
        lines = (obj.get("lines") or {}).get("data") or []
        return {
            "organization_id": organization_id,
            "subscription_id": subscription.id if subscription else None,
            "processor_payment_intent_id": obj.get("payment_intent"),
            "processor_charge_id": obj.get("charge"),
            "amount_cents": int(obj.get("amount_due") or obj.get("total") or 0),
            "amount_paid_cents": int(obj.get("amount_paid") or 0),
            "currency": obj.get("currency") or "usd",
            "status": status.value,
            "description": obj.get("description"),
            "line_items": [
                {"description": line.get("description"), "amount": line.get("amount")} for line in lines
            ],
            "invoice_date": from_epoch(obj.get("created")),
            "due_date": from_epoch(obj.get("due_date")),
            "hosted_invoice_url": obj.get("hosted_invoice_url"),
            "invoice_pdf_url": obj.get("invoice_pdf"),
        }

    async def _upsert_invoice(self, obj: Dict[str, Any], values: Dict[str, Any]) -> Invoice:
        return await self.invoices.upsert_from_processor(obj["id"], values)

    async def _on_invoice_paid(self, event: ProcessorEvent) -> HandlerResult:
        obj = event.data
        subscription, organization_id = await self._invoice_context(obj)
        if organization_id is None or not obj.get("id"):
            logger.info("Paid invoice for an unknown organization", extra={"event_id": event.id})
            return EventOutcome.IGNORED, None

        values = self._invoice_values(obj, organization_id, subscription, InvoiceStatus.PAID)
        paid_at = from_epoch((obj.get("status_transitions") or {}).get("paid_at")) or from_epoch(event.created)
        values["paid_at"] = paid_at
        invoice = await self._upsert_invoice(obj, values)

        restored = False
        if (
            subscription is not None
            and subscription.status_enum in (Status.PAST_DUE, Status.UNPAID)
            and event.created >= (subscription.version or 0)
        ):
            subscription.status = Status.ACTIVE.value
            self._stamp(subscription, event.created)
            restored = True

        await self.audit.record(
            AuditAction.PAYMENT_RECEIVED,
            details={
                "invoice_id": invoice.id,
                "processor_invoice_id": obj["id"],
                "status_restored": restored,
                "event_id": event.id,
            },
            organization_id=organization_id,
            subscription_id=subscription.id if subscription else None,
            amount_cents=invoice.amount_paid_cents,
        )
        return EventOutcome.APPLIED, organization_id

    async def _on_invoice_payment_failed(self, event: ProcessorEvent) -> HandlerResult:
        obj = event.data
        subscription, organization_id = await self._invoice_context(obj)
        if organization_id is None or not obj.get("id"):
            return EventOutcome.IGNORED, None

        invoice = await self._upsert_invoice(obj, self._invoice_values(obj, organization_id, subscription, InvoiceStatus.OPEN))

        if (
            subscription is not None
            and subscription.status_enum == Status.ACTIVE
            and event.created >= (subscription.version or 0)
        ):
            subscription.status = Status.PAST_DUE.value
            self._stamp(subscription, event.created)

        await self.audit.record(
            AuditAction.PAYMENT_FAILED,
            details={
                "invoice_id": invoice.id,
                "processor_invoice_id": obj["id"],
                "attempt_count": obj.get("attempt_count"),
                "next_payment_attempt": obj.get("next_payment_attempt"),
                "event_id": event.id,
            },
            organization_id=organization_id,
            subscription_id=subscription.id if subscription else None,
            amount_cents=invoice.amount_cents,
        )
        return EventOutcome.APPLIED, organization_id

    async def _on_invoice_finalized(self, event: ProcessorEvent) -> HandlerResult:
        obj = event.data
        subscription, organization_id = await self._invoice_context(obj)
        if organization_id is None or not obj.get("id"):
            return EventOutcome.IGNORED, None

        values = self._invoice_values(obj, organization_id, subscription, InvoiceStatus.OPEN)
        existing = await self.invoices.get_by_processor_invoice(obj["id"])
        if existing is not None and existing.status != InvoiceStatus.DRAFT.value:
            # A late finalization never reopens a settled invoice
            values.pop("status")
            values.pop("amount_paid_cents")
        invoice = await self._upsert_invoice(obj, values)

        await self.audit.record(
            AuditAction.INVOICE_FINALIZED,
            details={"invoice_id": invoice.id, "processor_invoice_id": obj["id"], "event_id": event.id},
            organization_id=organization_id,
            subscription_id=subscription.id if subscription else None,
            amount_cents=invoice.amount_cents,
        )
        return EventOutcome.APPLIED, organization_id

    # ==================== Organization actions ====================

    async def get_subscription(self, organization_id: str) -> Dict[str, Any]:
        subscription = await self.subscriptions.get_by_organization(organization_id)
        entitlements = await EntitlementService(self.session, self.catalog).get_entitlements(organization_id)
        return {
            "subscription": dump(SubscriptionOut, subscription) if subscription else None,
            "entitlements": entitlements.to_dict(),
        }

    async def create_checkout_session(
        self,
        organization_id: str,
        plan_name: str,
        billing_cycle: str,
        context: AuditContext,
        email: Optional[str] = None,
    ) -> Dict[str, str]:
        organization = await self.organizations.get_active(organization_id)
        if organization is None:
            raise NotFoundError(f"Organization not found: {organization_id}")

        plan = await self.catalog.get_plan(self.session, plan_name)
        if plan.is_free:
            raise ValidationError("The free plan does not need a checkout")
        if not plan.is_active:
            raise ValidationError(f"Plan {plan.display_name} is not available")
        price_id = plan.price_id_for(billing_cycle)
        if not price_id:
            raise ValidationError(f"Plan {plan.display_name} is not configured for {billing_cycle} billing")

        customer_id = organization.processor_customer_id
        if not customer_id:
            customer_id = await self.processor.create_customer(organization.id, email, organization.name)
            organization.processor_customer_id = customer_id

        checkout = await self.processor.create_checkout_session(
            customer_id, price_id, organization.id, plan.id, billing_cycle
        )
        details = {"plan": plan.name, "billing_cycle": billing_cycle, "session_id": checkout["session_id"]}
        await self.audit.record(
            AuditAction.CHECKOUT_SESSION_CREATED,
            details=details,
            context=context,
            organization_id=organization.id,
        )
        await self._commit(AuditAction.CHECKOUT_SESSION_CREATED, context, organization.id, details)
        return checkout

    async def create_customer_portal(self, organization_id: str) -> Dict[str, str]:
        organization = await self.organizations.get_active(organization_id)
        if organization is None or not organization.processor_customer_id:
            raise NotFoundError("No billing account found")
        return {"url": await self.processor.create_customer_portal(organization.processor_customer_id)}

    async def cancel_subscription(
        self,
        organization_id: str,
        context: AuditContext,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Cancel at the end of the current period; access continues until then"""
        now = now or utcnow()
        subscription = await self._require_subscription(organization_id)
        if subscription.plan.name == PlanTier.FREE.value:
            raise StateError("No paid subscription to cancel")
        if subscription.status_enum not in ENTITLED_STATUSES:
            raise StateError(f"Cannot cancel a {subscription.status} subscription")
        if subscription.cancel_at_period_end:
            raise StateError("Subscription is already set to cancel")

        if subscription.processor_subscription_id:
            await self.processor.set_cancel_at_period_end(subscription.processor_subscription_id, True)

        subscription.cancel_at_period_end = True
        subscription.canceled_at = now
        self._stamp(subscription, to_epoch(now))
        details = {
            "reason": reason,
            "immediate": False,
            "effective_at": subscription.current_period_end.isoformat() if subscription.current_period_end else None,
        }
        await self.audit.record(
            AuditAction.SUBSCRIPTION_CANCELED,
            details=details,
            context=context,
            organization_id=organization_id,
            subscription_id=subscription.id,
        )
        await self._commit(AuditAction.SUBSCRIPTION_CANCELED, context, organization_id, details)
        await self._publish(subscription)
        return {
            "message": "Subscription will cancel at the end of the billing period",
            "subscription": dump(SubscriptionOut, subscription),
        }

    async def resume_subscription(
        self,
        organization_id: str,
        context: AuditContext,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Undo a deferred cancellation; only possible before the period ends"""
        now = now or utcnow()
        subscription = await self._require_subscription(organization_id)
        if not subscription.cancel_at_period_end:
            raise StateError("Subscription is not scheduled for cancellation")
        if subscription.current_period_end is not None and subscription.current_period_end <= now:
            raise StateError("The billing period has ended; start a new subscription instead")

        current = subscription.status_enum
        target = Status.ACTIVE if current == Status.CANCELED else current
        if not can_transition(current, target, subscription, now):
            raise StateError(f"Cannot resume a {current.value} subscription")

        if subscription.processor_subscription_id:
            await self.processor.set_cancel_at_period_end(subscription.processor_subscription_id, False)

        subscription.status = target.value
        subscription.cancel_at_period_end = False
        subscription.canceled_at = None
        self._stamp(subscription, to_epoch(now))
        details = {"from_status": current.value, "to_status": target.value}
        await self.audit.record(
            AuditAction.SUBSCRIPTION_RESUMED,
            details=details,
            context=context,
            organization_id=organization_id,
            subscription_id=subscription.id,
        )
        await self._commit(AuditAction.SUBSCRIPTION_RESUMED, context, organization_id, details)
        await self._publish(subscription)
        return {"message": "Subscription resumed", "subscription": dump(SubscriptionOut, subscription)}

    async def change_plan(
        self,
        organization_id: str,
        plan_name: str,
        context: AuditContext,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        now = now or utcnow()
        target = await self.catalog.get_plan(self.session, plan_name)
        subscription = await self.subscriptions.get_by_organization(organization_id)
        current_name = subscription.plan.name if subscription else PlanTier.FREE.value
        if current_name == target.name:
            raise ValidationError(f"Already on the {target.display_name} plan")
        if not target.is_active:
            raise ValidationError(f"Plan {target.display_name} is not available")

        if target.is_free:
            if subscription.status_enum not in ENTITLED_STATUSES:
                raise StateError(f"Cannot change plan on a {subscription.status} subscription")
            self._require_transition(subscription, Status.ACTIVE, now)
            # Leaving a paid plan for free ends the processor subscription outright
            if subscription.processor_subscription_id:
                await self.processor.cancel_subscription(subscription.processor_subscription_id)
            action = AuditAction.PLAN_DOWNGRADED
            subscription.status = Status.ACTIVE.value
            subscription.processor_subscription_id = None
            subscription.billing_cycle = None
            subscription.cancel_at_period_end = False
            subscription.current_period_start = now
            subscription.current_period_end = None
        else:
            if subscription is None or not subscription.processor_subscription_id:
                raise ValidationError("No active paid subscription. Please checkout for the new plan.")
            if subscription.status_enum not in ENTITLED_STATUSES:
                raise StateError(f"Cannot change plan on a {subscription.status} subscription")
            billing_cycle = subscription.billing_cycle or BillingCycle.MONTHLY.value
            price_id = target.price_id_for(billing_cycle)
            if not price_id:
                raise ValidationError(f"Plan {target.display_name} is not configured for {billing_cycle} billing")

            await self.processor.change_subscription_price(subscription.processor_subscription_id, price_id, target.id)
            current_plan = await self.catalog.get_plan_by_id(self.session, subscription.plan_id)
            if target.monthly_price_cents > current_plan.monthly_price_cents:
                action = AuditAction.PLAN_UPGRADED
            else:
                action = AuditAction.PLAN_DOWNGRADED

        self._set_plan(subscription, await self._plan_model(target))
        self._stamp(subscription, to_epoch(now))
        details = {"from_plan": current_name, "to_plan": target.name}
        await self.audit.record(
            action,
            details=details,
            context=context,
            organization_id=organization_id,
            subscription_id=subscription.id,
        )
        await self._commit(action, context, organization_id, details)
        await self._publish(subscription)
        return {"message": f"Plan changed to {target.display_name}", "subscription": dump(SubscriptionOut, subscription)}

    # ==================== Admin actions ====================

    async def pause_subscription(
        self,
        organization_id: str,
        context: AuditContext,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        now = now or utcnow()
        subscription = await self._require_subscription(organization_id)
        previous = subscription.status
        self._require_transition(subscription, Status.PAUSED, now)
        if subscription.status_enum == Status.PAUSED:
            raise StateError("Subscription is already paused")

        if subscription.processor_subscription_id:
            await self.processor.set_paused(subscription.processor_subscription_id, True)

        subscription.status = Status.PAUSED.value
        subscription.paused_at = now
        self._stamp(subscription, to_epoch(now))
        details = {"reason": reason, "previous_status": previous}
        await self.audit.record(
            AuditAction.SUBSCRIPTION_PAUSED,
            details=details,
            context=context,
            organization_id=organization_id,
            subscription_id=subscription.id,
        )
        await self._commit(AuditAction.SUBSCRIPTION_PAUSED, context, organization_id, details)
        await self._publish(subscription)
        return {"message": "Subscription paused", "subscription": dump(SubscriptionOut, subscription)}

    async def resume_paused_subscription(
        self,
        organization_id: str,
        context: AuditContext,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        now = now or utcnow()
        subscription = await self._require_subscription(organization_id)
        if subscription.status_enum != Status.PAUSED:
            raise StateError("Subscription is not paused")
        self._require_transition(subscription, Status.ACTIVE, now)

        if subscription.processor_subscription_id:
            await self.processor.set_paused(subscription.processor_subscription_id, False)

        subscription.status = Status.ACTIVE.value
        subscription.paused_at = None
        self._stamp(subscription, to_epoch(now))
        details = {"from_status": Status.PAUSED.value, "to_status": Status.ACTIVE.value}
        await self.audit.record(
            AuditAction.SUBSCRIPTION_RESUMED,
            details=details,
            context=context,
            organization_id=organization_id,
            subscription_id=subscription.id,
        )
        await self._commit(AuditAction.SUBSCRIPTION_RESUMED, context, organization_id, details)
        await self._publish(subscription)
        return {"message": "Subscription resumed", "subscription": dump(SubscriptionOut, subscription)}

    async def cancel_immediately(
        self,
        organization_id: str,
        context: AuditContext,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        now = now or utcnow()
        subscription = await self._require_subscription(organization_id)
        previous = subscription.status
        if subscription.status_enum == Status.CANCELED:
            raise StateError("Subscription is already canceled")
        self._require_transition(subscription, Status.CANCELED, now)

        if subscription.processor_subscription_id:
            await self.processor.cancel_subscription(subscription.processor_subscription_id)

        subscription.status = Status.CANCELED.value
        subscription.canceled_at = now
        subscription.cancel_at_period_end = False
        self._stamp(subscription, to_epoch(now))
        details = {"reason": reason, "immediate": True, "previous_status": previous}
        await self.audit.record(
            AuditAction.SUBSCRIPTION_CANCELED,
            details=details,
            context=context,
            organization_id=organization_id,
            subscription_id=subscription.id,
        )
        await self._commit(AuditAction.SUBSCRIPTION_CANCELED, context, organization_id, details)
        await self._publish(subscription)
        return {"message": "Subscription canceled", "subscription": dump(SubscriptionOut, subscription)}

    async def extend_trial(
        self,
        organization_id: str,
        days: int,
        context: AuditContext,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        if days < 1 or days > MAX_TRIAL_EXTENSION_DAYS:
            raise ValidationError(f"Trial extension must be between 1 and {MAX_TRIAL_EXTENSION_DAYS} days")

        now = now or utcnow()
        subscription = await self._require_subscription(organization_id)
        if subscription.status_enum != Status.TRIALING:
            raise StateError("Subscription is not in trial")

        previous_end = subscription.trial_end
        base = previous_end if previous_end and previous_end > now else now
        new_end = base + timedelta(days=days)
        if subscription.processor_subscription_id:
            await self.processor.set_trial_end(subscription.processor_subscription_id, to_epoch(new_end))

        subscription.trial_end = new_end
        self._stamp(subscription, to_epoch(now))
        details = {
            "days": days,
            "previous_trial_end": previous_end.isoformat() if previous_end else None,
            "new_trial_end": new_end.isoformat(),
        }
        await self.audit.record(
            AuditAction.TRIAL_EXTENDED,
            details=details,
            context=context,
            organization_id=organization_id,
            subscription_id=subscription.id,
        )
        await self._commit(AuditAction.TRIAL_EXTENDED, context, organization_id, details)
        await self._publish(subscription)
        return {"message": f"Trial extended by {days} days", "subscription": dump(SubscriptionOut, subscription)}

    # ==================== Scheduled ====================

    async def realize_period_end(self, now: Optional[datetime] = None) -> int:
        """Move every due deferred cancellation to canceled; returns how many moved"""
        now = now or utcnow()
        realized = 0
        for subscription in await self.subscriptions.list_cancel_pending(now):
            if not can_transition(subscription.status_enum, Status.CANCELED, subscription, now):
                logger.warning(
                    f"Cannot cancel {subscription.status} subscription at period end",
                    extra={"organization_id": subscription.organization_id},
                )
                continue
            previous = subscription.status
            subscription.status = Status.CANCELED.value
            self._stamp(subscription, to_epoch(now))
            await self.audit.record(
                AuditAction.SUBSCRIPTION_CANCELED,
                details={"reason": "period_end", "immediate": False, "previous_status": previous},
                context=AuditContext.system(),
                organization_id=subscription.organization_id,
                subscription_id=subscription.id,
            )
            await self.session.commit()
            await self._publish(subscription)
            realized += 1

        if realized:
            logger.info(f"Realized {realized} period-end cancellations")
        return realized
