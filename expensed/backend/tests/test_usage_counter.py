"""
Usage counter tests
Receipt counting, seat counts and cycle resets
"""

import asyncio
import pytest
from datetime import datetime, timedelta
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.audit_log import AuditLogRecorder, AuditQuery
from app.core.events import ChangeEvent, notifier
from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.db.repositories.subscription_repository import SubscriptionRepository
from app.services.usage_counter import UsageCounter


@pytest.mark.asyncio
class TestUsageCounter:
    """Test per-organization usage counters"""

    # ==================== Receipts ====================

    async def test_first_upload_creates_free_row(self, db_session: AsyncSession, organization):
        """
        Test: Upload a receipt for an organization with no subscription
        Expected: Free-tier row created and counted
        """
        limits = await UsageCounter(db_session).record_receipt_upload(organization.id)

        assert limits.receipts_used == 1
        assert limits.receipt_limit == 20
        subscription = await SubscriptionRepository(db_session).get_by_organization(organization.id)
        assert subscription.plan.name == "free"

    async def test_unknown_organization_raises(self, db_session: AsyncSession):
        with pytest.raises(NotFoundError):
            await UsageCounter(db_session).record_receipt_upload("missing-org")

    async def test_soft_limit_allows_overage(self, db_session: AsyncSession, organization, make_subscription):
        """
        Test: Upload past the free limit with the soft limit
        Expected: Counter keeps counting, limits report the cap
        """
        await make_subscription(organization.id, "free", current_month_receipts=20)

        limits = await UsageCounter(db_session).record_receipt_upload(organization.id, enforce_limit=False)

        assert limits.receipts_used == 21
        assert limits.receipts_remaining == 0
        assert limits.at_receipt_limit is True

    async def test_hard_cap_rejects_at_limit(self, db_session: AsyncSession, organization, make_subscription):
        """
        Test: Upload at the free limit with the hard cap
        Expected: ConflictError with an upgrade target, counter unchanged
        """
        await make_subscription(organization.id, "free", current_month_receipts=20)

        with pytest.raises(ConflictError) as exc_info:
            await UsageCounter(db_session).record_receipt_upload(organization.id, enforce_limit=True)

        assert exc_info.value.upgrade_to == "starter"
        assert "monthly limit of 20" in exc_info.value.message
        subscription = await SubscriptionRepository(db_session).get_by_organization(organization.id)
        await db_session.refresh(subscription)
        assert subscription.current_month_receipts == 20

    async def test_hard_cap_never_applies_to_unlimited_plans(self, db_session: AsyncSession, organization, make_subscription):
        await make_subscription(organization.id, "starter", current_month_receipts=5000)

        limits = await UsageCounter(db_session).record_receipt_upload(organization.id, enforce_limit=True)

        assert limits.receipts_used == 5001
        assert limits.receipt_limit is None

    async def test_concurrent_uploads_all_counted(self, session_factory, db_session: AsyncSession, organization, make_subscription):
        """
        Test: Five uploads from separate sessions at once
        Expected: Counter ends at exactly five
        """
        await make_subscription(organization.id, "starter")
        await db_session.commit()

        async def upload():
            async with session_factory() as session:
                await UsageCounter(session).record_receipt_upload(organization.id)

        await asyncio.gather(*(upload() for _ in range(5)))

        async with session_factory() as session:
            subscription = await SubscriptionRepository(session).get_by_organization(organization.id)
            assert subscription.current_month_receipts == 5

    async def test_upload_publishes_usage_changed(self, db_session: AsyncSession, organization):
        received = []
        notifier.subscribe(ChangeEvent.USAGE_CHANGED, received.append)

        await UsageCounter(db_session).record_receipt_upload(organization.id)

        assert received == [{"event": "usage_changed", "organization_id": organization.id, "receipts_used": 1}]

    # ==================== Users ====================

    async def test_set_user_count(self, db_session: AsyncSession, organization, make_subscription):
        await make_subscription(organization.id, "free")

        limits = await UsageCounter(db_session).set_user_count(organization.id, 3)

        assert limits.users_current == 3
        assert limits.at_user_limit is True

    async def test_negative_user_count_rejected(self, db_session: AsyncSession, organization):
        with pytest.raises(ValidationError):
            await UsageCounter(db_session).set_user_count(organization.id, -1)

    # ==================== Reset ====================

    async def test_reset_once_per_cycle(self, db_session: AsyncSession, organization, make_subscription):
        """
        Test: Reset the same cycle twice
        Expected: First call zeroes and audits, second call is a no-op
        """
        await make_subscription(
            organization.id,
            "starter",
            current_month_receipts=42,
            usage_reset_at=datetime(2026, 9, 1),
        )
        counter = UsageCounter(db_session)
        cycle_start = datetime(2026, 10, 1)

        assert await counter.reset_monthly_usage(organization.id, cycle_start) is True
        assert await counter.reset_monthly_usage(organization.id, cycle_start) is False

        subscription = await SubscriptionRepository(db_session).get_by_organization(organization.id)
        await db_session.refresh(subscription)
        assert subscription.current_month_receipts == 0
        assert subscription.usage_reset_at == cycle_start

        resets = await AuditLogRecorder(db_session).query(AuditQuery(action="usage_reset"))
        assert len(resets) == 1
        assert resets[0].is_system is True

    async def test_reset_next_cycle_applies_again(self, db_session: AsyncSession, organization, make_subscription):
        await make_subscription(organization.id, "starter", usage_reset_at=datetime(2026, 9, 1))
        counter = UsageCounter(db_session)

        assert await counter.reset_monthly_usage(organization.id, datetime(2026, 10, 1))
        assert await counter.reset_monthly_usage(organization.id, datetime(2026, 10, 1) + timedelta(days=31))
