"""
Admin service tests
Subscription listing, organization deletion, plan edits, admin management and analytics
"""

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.audit_log import AuditContext, AuditLogRecorder, AuditQuery
from app.core.constants import AdminPermission, DEFAULT_ADMIN_PERMISSIONS, SubscriptionStatus
from app.core.events import ChangeEvent, ChangeNotifier
from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.db.repositories.organization_repository import OrganizationRepository
from app.db.repositories.plan_repository import PlanRepository
from app.db.repositories.subscription_repository import SubscriptionRepository
from app.db.repositories.super_admin_repository import SuperAdminRepository
from app.services.admin_service import AdminService, monthly_revenue_cents
from app.services.plan_catalog import PlanCatalog

ADMIN = AuditContext(performed_by="admin-1", is_super_admin=True)


@pytest.fixture
def events() -> ChangeNotifier:
    return ChangeNotifier()


@pytest.fixture
def catalog() -> PlanCatalog:
    return PlanCatalog(ttl_seconds=3600)


@pytest.fixture
def admin_service(db_session, processor, catalog, events) -> AdminService:
    return AdminService(db_session, processor, catalog, events)


@pytest.mark.asyncio
class TestListSubscriptions:
    """Test the operator subscription listing"""

    async def test_lists_with_organization_name(self, admin_service, organization, make_organization, make_subscription):
        other = await make_organization("Globex")
        await make_subscription(organization.id, "starter")
        await make_subscription(other.id, "team", status=SubscriptionStatus.PAST_DUE.value)

        result = await admin_service.list_subscriptions()

        names = {item["organization_name"]: item["plan"]["name"] for item in result["subscriptions"]}
        assert names == {"Acme Corp": "starter", "Globex": "team"}
        assert result["skip"] == 0

    async def test_filters_by_status_and_plan(self, admin_service, organization, make_organization, make_subscription):
        other = await make_organization("Globex")
        await make_subscription(organization.id, "starter")
        await make_subscription(other.id, "team", status=SubscriptionStatus.PAST_DUE.value)

        past_due = await admin_service.list_subscriptions(status="past_due")
        starter = await admin_service.list_subscriptions(plan_name="starter")

        assert [item["organization_name"] for item in past_due["subscriptions"]] == ["Globex"]
        assert [item["organization_name"] for item in starter["subscriptions"]] == ["Acme Corp"]

    async def test_unknown_status(self, admin_service):
        with pytest.raises(ValidationError, match="Unknown status"):
            await admin_service.list_subscriptions(status="zombie")


@pytest.mark.asyncio
class TestDeleteOrganization:
    """Test soft deletion of an organization"""

    async def test_requires_confirmation(self, admin_service, organization):
        with pytest.raises(ValidationError, match="DELETE"):
            await admin_service.delete_organization(organization.id, "delete", ADMIN)

    async def test_soft_deletes_and_cancels(
        self, db_session: AsyncSession, admin_service, organization, make_subscription, processor_api, events
    ):
        """
        Test: Delete an organization with a live paid subscription
        Expected: Processor subscription deleted, local row canceled, organization hidden but kept
        """
        subscription = await make_subscription(organization.id, "starter")
        received = []
        events.subscribe(ChangeEvent.SUBSCRIPTION_CHANGED, received.append)

        result = await admin_service.delete_organization(organization.id, "DELETE", ADMIN)

        assert result["success"] is True
        assert processor_api.calls("DELETE", f"/subscriptions/{subscription.processor_subscription_id}") == [{}]
        assert subscription.status == SubscriptionStatus.CANCELED.value
        assert subscription.canceled_at is not None

        organizations = OrganizationRepository(db_session)
        assert await organizations.get_active(organization.id) is None
        deleted = await organizations.get(organization.id)
        assert deleted.is_deleted
        assert deleted.deleted_by == "admin-1"

        entries = await AuditLogRecorder(db_session).query(AuditQuery(action="organization_deleted"))
        assert entries[0].action_details == {"organization_name": "Acme Corp"}
        assert received[0]["deleted"] is True

    async def test_free_organization_needs_no_processor(self, admin_service, organization, processor_api):
        await admin_service.delete_organization(organization.id, "DELETE", ADMIN)

        assert processor_api.requests == []

    async def test_already_deleted(self, admin_service, organization):
        await admin_service.delete_organization(organization.id, "DELETE", ADMIN)

        with pytest.raises(NotFoundError):
            await admin_service.delete_organization(organization.id, "DELETE", ADMIN)


@pytest.mark.asyncio
class TestUpdatePlan:
    """Test plan edits and catalog invalidation"""

    async def test_update_invalidates_catalog(self, db_session: AsyncSession, admin_service, catalog, events):
        starter = await catalog.get_plan(db_session, "starter")
        received = []
        events.subscribe(ChangeEvent.PLANS_CHANGED, received.append)

        result = await admin_service.update_plan(starter.id, {"monthly_price_cents": 1099}, ADMIN)

        assert result["monthly_price_cents"] == 1099
        assert (await catalog.get_plan(db_session, "starter")).monthly_price_cents == 1099
        assert received == [{"event": "plans_changed", "organization_id": None, "plan": "starter"}]

        entries = await AuditLogRecorder(db_session).query(AuditQuery(action="plan_updated"))
        assert entries[0].action_details["changes"] == {"monthly_price_cents": {"from": 999, "to": 1099}}

    async def test_features_are_merged(self, db_session: AsyncSession, admin_service):
        starter = await PlanRepository(db_session).get_by_name("starter")

        result = await admin_service.update_plan(starter.id, {"features": {"receipts_per_month": 500}}, ADMIN)

        assert result["features"]["receipts_per_month"] == 500
        assert result["features"]["stripe_payouts_enabled"] is True

    @pytest.mark.parametrize("updates,message", [
        ({"name": "premium"}, "cannot be updated: name"),
        ({"monthly_price_cents": -1}, "non-negative"),
        ({"min_users": 0}, "at least 1"),
        ({"max_users": 0}, "max_users"),
        ({"features": ["api"]}, "must be an object"),
    ])
    async def test_invalid_updates(self, db_session: AsyncSession, admin_service, updates, message):
        starter = await PlanRepository(db_session).get_by_name("starter")

        with pytest.raises(ValidationError, match=message):
            await admin_service.update_plan(starter.id, updates, ADMIN)

    async def test_unknown_plan(self, admin_service):
        with pytest.raises(NotFoundError):
            await admin_service.update_plan("missing", {"description": "x"}, ADMIN)


@pytest.mark.asyncio
class TestAddSuperAdmin:
    """Test granting super-admin access"""

    async def test_defaults_are_merged(self, db_session: AsyncSession, admin_service):
        result = await admin_service.add_super_admin("user-9", ADMIN, permissions={"manage_plans": True})

        expected = {**DEFAULT_ADMIN_PERMISSIONS, "manage_plans": True}
        assert result["permissions"] == expected
        admin = await SuperAdminRepository(db_session).get_active_by_user("user-9")
        assert admin.permissions == expected
        assert admin.created_by == "admin-1"

    async def test_active_admin_conflicts(self, admin_service, make_super_admin):
        await make_super_admin("user-9")

        with pytest.raises(ConflictError):
            await admin_service.add_super_admin("user-9", ADMIN)

    async def test_inactive_admin_is_reactivated(self, db_session: AsyncSession, admin_service, make_super_admin):
        await make_super_admin("user-9", {"view_analytics": True}, is_active=False)

        await admin_service.add_super_admin("user-9", ADMIN)

        admin = await SuperAdminRepository(db_session).get_active_by_user("user-9")
        assert admin is not None
        assert admin.permissions[AdminPermission.MANAGE_SUPER_ADMINS.value] is False

    async def test_unknown_permission(self, admin_service):
        with pytest.raises(ValidationError, match="fly"):
            await admin_service.add_super_admin("user-9", ADMIN, permissions={"fly": True})


@pytest.mark.asyncio
class TestAnalytics:
    """Test revenue analytics"""

    async def test_monthly_revenue(self, db_session: AsyncSession, admin_service, organization, make_organization, make_subscription):
        """
        Test: Starter monthly plus Team annual with a 10% discount
        Expected: 999 + (18230 // 12) * 90 // 100 = 2366 cents MRR
        """
        annual = await make_organization("Globex")
        free = await make_organization("Initech")
        await make_subscription(organization.id, "starter")
        team = await make_subscription(annual.id, "team", billing_cycle="annual", discount_percent=10)
        await make_subscription(free.id, "free")

        assert monthly_revenue_cents(team) == 1367

        result = await admin_service.get_analytics()

        assert result["mrr_cents"] == 2366
        assert result["arr_cents"] == 2366 * 12
        assert result["paying_customers"] == 2
        assert result["free_customers"] == 1
        assert result["total_subscriptions"] == 3
        assert result["plan_distribution"] == {"starter": 1, "team": 1, "free": 1}

    async def test_custom_price_wins(self, organization, make_subscription):
        subscription = await make_subscription(organization.id, "business", custom_price_cents=2000)

        assert monthly_revenue_cents(subscription) == 2000

    async def test_canceled_excluded(self, admin_service, organization, make_subscription):
        await make_subscription(organization.id, "starter", status=SubscriptionStatus.CANCELED.value)

        result = await admin_service.get_analytics()

        assert result["mrr_cents"] == 0
        assert result["plan_distribution"] == {"starter": 0}


@pytest.mark.asyncio
class TestAuditLogExport:
    """Test the admin audit log read"""

    async def test_json_entries(self, db_session: AsyncSession, admin_service, organization):
        await AuditLogRecorder(db_session).record("coupon_applied", {"code": "WELCOME20"}, ADMIN, organization.id)
        await db_session.commit()

        result = await admin_service.get_audit_log(organization="acme")

        assert len(result["entries"]) == 1
        assert result["entries"][0]["organization_name"] == "Acme Corp"
        assert result["entries"][0]["action_details"] == {"code": "WELCOME20"}

    async def test_csv_export(self, db_session: AsyncSession, admin_service, organization):
        await AuditLogRecorder(db_session).record("refund_issued", {}, ADMIN, organization.id, amount_cents=1250)
        await db_session.commit()

        result = await admin_service.get_audit_log(format="csv")

        assert result["filename"].startswith("billing_audit_")
        assert result["filename"].endswith(".csv")
        lines = result["content"].splitlines()
        assert lines[0] == '"Date/Time","Action","Category","Organization","Amount","Performed By","Details"'
        assert '"Refund Issued","payment","Acme Corp","$12.50","admin-1 (Super Admin)"' in lines[1]
