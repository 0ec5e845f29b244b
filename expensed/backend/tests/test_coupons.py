"""
Coupon engine tests
Redemption validation, the redemption race, snapshots, repeating months and admin discounts
"""

import asyncio
import pytest
from datetime import datetime, timedelta
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.audit_log import AuditContext, AuditLogRecorder, AuditQuery
from app.core.exceptions import ConflictError, ExternalServiceError, NotFoundError, ValidationError
from app.core.timeutils import utcnow
from app.db.models.coupon import Coupon, CouponRedemption
from app.db.repositories.coupon_repository import CouponRepository
from app.db.repositories.subscription_repository import SubscriptionRepository
from app.schemas.billing import CreateCouponParams
from app.services.coupon_engine import ONCE_FALLBACK_DAYS, CouponEngine, describe_discount, discount_amount_cents, normalize_code

USER = AuditContext(performed_by="user-1")
ADMIN = AuditContext(performed_by="admin-1", is_super_admin=True)


@pytest.fixture
def make_coupon(db_session: AsyncSession):
    async def _make(code: str = "WELCOME20", **fields) -> Coupon:
        values = {
            "code": code,
            "discount_type": "percent",
            "discount_value": 20,
            "duration": "forever",
        }
        values.update(fields)
        coupon = Coupon(**values)
        db_session.add(coupon)
        await db_session.commit()
        return coupon
    return _make


@pytest.fixture
def engine_for(processor):
    def _engine(session: AsyncSession) -> CouponEngine:
        return CouponEngine(session, processor)
    return _engine


async def audit_entries(session: AsyncSession, action: str):
    return await AuditLogRecorder(session).query(AuditQuery(action=action))


class TestCouponHelpers:
    """Test code normalization and discount arithmetic"""

    def test_normalize_code(self):
        assert normalize_code("  welcome20 ") == "WELCOME20"

    @pytest.mark.parametrize("code", ["", "AB", "WITH-DASH", "X" * 21, None])
    def test_invalid_code_format(self, code):
        with pytest.raises(ValidationError, match="Invalid coupon code format"):
            normalize_code(code)

    def test_describe_discount(self):
        assert describe_discount("percent", 20) == "20% off"
        assert describe_discount("fixed", 1000) == "$10.00 off"

    def test_fixed_discount_never_exceeds_price(self):
        assert discount_amount_cents("fixed", 5000, 999) == 999
        assert discount_amount_cents("percent", 20, 999) == 199


@pytest.mark.asyncio
class TestApplyCoupon:
    """Test coupon redemption"""

    # ==================== Validation ====================

    async def test_exhausted_coupon_rejected(self, db_session: AsyncSession, engine_for, organization, make_subscription, make_coupon):
        """
        Test: WELCOME20 with 100 of 100 redemptions used
        Expected: ConflictError, redemption limit reached
        """
        await make_subscription(organization.id, "starter")
        await make_coupon(max_redemptions=100, redemption_count=100)

        with pytest.raises(ConflictError, match="redemption limit reached"):
            await engine_for(db_session).apply_coupon(organization.id, "WELCOME20", USER)

    async def test_unknown_coupon(self, db_session: AsyncSession, engine_for, organization):
        with pytest.raises(NotFoundError, match="Coupon not found"):
            await engine_for(db_session).apply_coupon(organization.id, "NOPE1234", USER)

    async def test_inactive_reported_before_expiry(self, db_session: AsyncSession, engine_for, organization, make_coupon):
        """
        Test: Coupon that is both inactive and expired
        Expected: The inactive check is reported first
        """
        await make_coupon(is_active=False, valid_until=utcnow() - timedelta(days=1))

        with pytest.raises(ConflictError, match="no longer active"):
            await engine_for(db_session).apply_coupon(organization.id, "WELCOME20", USER)

    async def test_validity_window(self, db_session: AsyncSession, engine_for, organization, make_coupon):
        now = utcnow()
        await make_coupon("EARLYBIRD", valid_from=now + timedelta(days=1))
        await make_coupon("LATEBIRD", valid_until=now - timedelta(days=1))
        engine = engine_for(db_session)

        with pytest.raises(ConflictError, match="not yet valid"):
            await engine.apply_coupon(organization.id, "EARLYBIRD", USER, now=now)
        with pytest.raises(ConflictError, match="expired"):
            await engine.apply_coupon(organization.id, "LATEBIRD", USER, now=now)

    async def test_plan_restriction(self, db_session: AsyncSession, engine_for, organization, make_subscription, make_coupon):
        await make_subscription(organization.id, "starter")
        await make_coupon("TEAMONLY", applies_to_plans=["team", "business"])

        with pytest.raises(ConflictError, match="does not apply to the starter plan"):
            await engine_for(db_session).apply_coupon(organization.id, "TEAMONLY", USER)

    async def test_min_users(self, db_session: AsyncSession, engine_for, organization, make_subscription, make_coupon):
        await make_subscription(organization.id, "team", current_user_count=2)
        await make_coupon("BIGTEAM", min_users=5)

        with pytest.raises(ConflictError, match="at least 5 users"):
            await engine_for(db_session).apply_coupon(organization.id, "BIGTEAM", USER)

    async def test_once_per_organization(self, db_session: AsyncSession, engine_for, organization, make_subscription, make_coupon):
        await make_subscription(organization.id, "starter")
        await make_coupon()
        engine = engine_for(db_session)

        await engine.apply_coupon(organization.id, "welcome20", USER)
        with pytest.raises(ConflictError, match="already redeemed by this organization"):
            await engine.apply_coupon(organization.id, "WELCOME20", USER)

    async def test_per_organization_limit_above_one(self, db_session: AsyncSession, engine_for, organization, make_subscription, make_coupon):
        """
        Test: TWICE20 allows two redemptions per organization, applied three times
        Expected: First two succeed with sequences 1 and 2, the third is rejected
        """
        await make_subscription(organization.id, "starter")
        coupon = await make_coupon("TWICE20", max_redemptions_per_org=2)
        coupon_id = coupon.id
        engine = engine_for(db_session)

        await engine.apply_coupon(organization.id, "TWICE20", USER)
        await engine.apply_coupon(organization.id, "TWICE20", USER)
        with pytest.raises(ConflictError, match="already redeemed by this organization"):
            await engine.apply_coupon(organization.id, "TWICE20", USER)

        repository = CouponRepository(db_session)
        assert await repository.count_org_redemptions(coupon_id, organization.id) == 2
        stored = await repository.get(coupon_id)
        await db_session.refresh(stored)
        assert stored.redemption_count == 2

    async def test_sequence_clash_reported_as_conflict(self, db_session: AsyncSession, engine_for, organization, make_subscription, make_coupon):
        """
        Test: A concurrent redemption already holds the sequence number this one computes
        Expected: ConflictError instead of a database error, and the claimed slot is released
        """
        await make_subscription(organization.id, "starter")
        coupon = await make_coupon("TWICE20", max_redemptions_per_org=2)
        coupon_id = coupon.id
        organization_id = organization.id
        db_session.add(CouponRedemption(
            coupon_id=coupon_id,
            organization_id=organization_id,
            sequence=2,
            redeemed_at=utcnow(),
            discount_type="percent",
            discount_value=20,
            duration="forever",
        ))
        await db_session.commit()

        with pytest.raises(ConflictError, match="race lost"):
            await engine_for(db_session).apply_coupon(organization_id, "TWICE20", USER)

        stored = await CouponRepository(db_session).get(coupon_id)
        await db_session.refresh(stored)
        assert stored.redemption_count == 0
        assert await CouponRepository(db_session).count_org_redemptions(coupon_id, organization_id) == 1

    # ==================== Redemption ====================

    async def test_percent_coupon_applied(self, db_session: AsyncSession, engine_for, processor_api, organization, make_subscription, make_coupon):
        """
        Test: Apply a 20% forever coupon to a processor-backed starter subscription
        Expected: Discount set, slot claimed, processor updated, audited with the amount
        """
        await make_subscription(organization.id, "starter", processor_subscription_id="sub_123")
        coupon = await make_coupon(processor_coupon_id="WELCOME20", max_redemptions=10)

        result = await engine_for(db_session).apply_coupon(organization.id, "WELCOME20", USER)

        assert result["message"] == "Coupon applied: 20% off"
        assert result["discount_applied_cents"] == 199
        subscription = await SubscriptionRepository(db_session).get_by_organization(organization.id)
        assert subscription.discount_percent == 20
        assert subscription.discount_expires_at is None
        await db_session.refresh(coupon)
        assert coupon.redemption_count == 1
        assert processor_api.calls("POST", "/subscriptions/sub_123") == [{"coupon": "WELCOME20"}]
        entry = (await audit_entries(db_session, "coupon_applied"))[0]
        assert entry.amount_cents == 199
        assert entry.action_details["coupon_code"] == "WELCOME20"

    async def test_fixed_once_coupon(self, db_session: AsyncSession, engine_for, organization, make_subscription, make_coupon):
        subscription = await make_subscription(organization.id, "starter")
        await make_coupon("FIVEOFF", discount_type="fixed", discount_value=500, duration="once")

        result = await engine_for(db_session).apply_coupon(organization.id, "FIVEOFF", USER)

        assert result["message"] == "Coupon applied: $5.00 off"
        assert subscription.custom_price_cents == 499
        assert subscription.discount_percent == 0
        assert subscription.discount_expires_at == subscription.current_period_end

    async def test_once_coupon_with_lapsed_period_end(self, db_session: AsyncSession, engine_for, organization, make_subscription, make_coupon):
        """
        Test: Once coupon applied while the stored period end is already in the past
        Expected: The discount expires a fallback period from now, never in the past
        """
        now = utcnow()
        subscription = await make_subscription(organization.id, "starter", current_period_end=now - timedelta(days=3))
        await make_coupon("FIVEOFF", discount_type="fixed", discount_value=500, duration="once")

        await engine_for(db_session).apply_coupon(organization.id, "FIVEOFF", USER, now=now)

        assert subscription.discount_expires_at == now + timedelta(days=ONCE_FALLBACK_DAYS)
        assert subscription.discount_expires_at > now

    async def test_redemption_snapshots_terms(self, db_session: AsyncSession, engine_for, organization, make_subscription, make_coupon):
        """
        Test: Edit the coupon after it was redeemed
        Expected: The redemption keeps the original terms
        """
        await make_subscription(organization.id, "starter")
        coupon = await make_coupon()
        await engine_for(db_session).apply_coupon(organization.id, "WELCOME20", USER)

        coupon.discount_value = 50
        await db_session.commit()

        redemption = await CouponRepository(db_session).get_latest_redemption(organization.id)
        assert redemption.discount_value == 20
        assert redemption.discount_type == "percent"
        assert redemption.redeemed_by == "user-1"

    async def test_processor_failure_releases_slot(self, db_session: AsyncSession, engine_for, processor_api, organization, make_subscription, make_coupon):
        await make_subscription(organization.id, "starter", processor_subscription_id="sub_123")
        coupon = await make_coupon(processor_coupon_id="WELCOME20", max_redemptions=1)
        processor_api.fail("POST", r"/subscriptions/sub_123", 400, "No such coupon")

        with pytest.raises(ExternalServiceError):
            await engine_for(db_session).apply_coupon(organization.id, "WELCOME20", USER)

        await db_session.refresh(coupon)
        assert coupon.redemption_count == 0
        assert await CouponRepository(db_session).get_latest_redemption(organization.id) is None

    async def test_concurrent_last_slot(self, session_factory, db_session: AsyncSession, engine_for, make_organization, make_subscription, make_coupon):
        """
        Test: Two organizations redeem the last remaining slot at the same time
        Expected: Exactly one succeeds and the count ends at the limit
        """
        first = await make_organization("First Co")
        second = await make_organization("Second Co")
        await make_subscription(first.id, "starter")
        await make_subscription(second.id, "starter")
        coupon = await make_coupon("LASTONE", max_redemptions=1)
        await db_session.commit()

        async def redeem(organization_id: str):
            async with session_factory() as session:
                return await engine_for(session).apply_coupon(organization_id, "LASTONE", USER)

        results = await asyncio.gather(redeem(first.id), redeem(second.id), return_exceptions=True)

        successes = [result for result in results if isinstance(result, dict)]
        failures = [result for result in results if isinstance(result, ConflictError)]
        assert len(successes) == 1
        assert len(failures) == 1
        async with session_factory() as session:
            stored = await CouponRepository(session).get(coupon.id)
            assert stored.redemption_count == 1

    # ==================== Repeating and expiry ====================

    async def test_repeating_coupon_runs_out(self, db_session: AsyncSession, engine_for, organization, make_subscription, make_coupon):
        """
        Test: Two-month repeating coupon advanced over three cycles
        Expected: One month per cycle, idempotent within a cycle, cleared at zero
        """
        subscription = await make_subscription(organization.id, "team")
        await make_coupon("TWOMONTHS", duration="repeating", duration_months=2)
        engine = engine_for(db_session)
        await engine.apply_coupon(organization.id, "TWOMONTHS", USER)

        assert await engine.advance_repeating_discount(organization.id, datetime(2026, 11, 1)) == 1
        assert await engine.advance_repeating_discount(organization.id, datetime(2026, 11, 1)) is None
        await db_session.refresh(subscription)
        assert subscription.discount_percent == 20

        assert await engine.advance_repeating_discount(organization.id, datetime(2026, 12, 1)) == 0
        assert subscription.discount_percent == 0
        assert subscription.discount_reason is None
        assert len(await audit_entries(db_session, "discount_expired")) == 1

        assert await engine.advance_repeating_discount(organization.id, datetime(2027, 1, 1)) is None

    async def test_expire_discounts(self, db_session: AsyncSession, engine_for, organization, make_subscription):
        now = utcnow()
        subscription = await make_subscription(
            organization.id, "starter", discount_percent=15, discount_reason="Coupon SPRING15", discount_expires_at=now - timedelta(hours=1)
        )

        assert await engine_for(db_session).expire_discounts(now) == 1
        assert subscription.discount_percent == 0
        assert (await audit_entries(db_session, "discount_expired"))[0].action_details["reason"] == "Coupon SPRING15"
        assert await engine_for(db_session).expire_discounts(now) == 0


@pytest.mark.asyncio
class TestAdminDiscounts:
    """Test admin discount overrides and coupon management"""

    # ==================== Discounts ====================

    async def test_apply_discount(self, db_session: AsyncSession, engine_for, organization, make_subscription):
        subscription = await make_subscription(organization.id, "business")
        expires_at = utcnow() + timedelta(days=90)

        result = await engine_for(db_session).apply_discount(organization.id, 25, "Loyal customer", ADMIN, expires_at=expires_at)

        assert result["success"] is True
        assert subscription.discount_percent == 25
        assert subscription.discount_expires_at == expires_at
        entry = (await audit_entries(db_session, "discount_applied"))[0]
        assert entry.is_super_admin is True
        assert entry.action_details["previous_percent"] == 0

    @pytest.mark.parametrize("percent,reason,message", [
        (150, "Too generous", "between 0 and 100"),
        (-5, "Negative", "between 0 and 100"),
        (10, "   ", "reason is required"),
        (10, None, "reason is required"),
    ])
    async def test_invalid_discount_is_audited(self, db_session: AsyncSession, engine_for, organization, make_subscription, percent, reason, message):
        """
        Test: Apply a malformed discount
        Expected: ValidationError, subscription unchanged, failure audited with the error
        """
        subscription = await make_subscription(organization.id, "business")

        with pytest.raises(ValidationError, match=message):
            await engine_for(db_session).apply_discount(organization.id, percent, reason, ADMIN)

        await db_session.refresh(subscription)
        assert subscription.discount_percent == 0
        failures = await audit_entries(db_session, "discount_apply_failed")
        assert len(failures) == 1
        assert message in failures[0].action_details["error"]
        assert failures[0].action_details["error_type"] == "ValidationError"
        assert await audit_entries(db_session, "discount_applied") == []

    async def test_discount_for_missing_subscription_is_audited(self, db_session: AsyncSession, engine_for, organization):
        with pytest.raises(NotFoundError):
            await engine_for(db_session).apply_discount(organization.id, 10, "Goodwill", ADMIN)

        assert len(await audit_entries(db_session, "discount_apply_failed")) == 1

    @pytest.mark.foreign_keys
    async def test_discount_for_unknown_organization_is_audited(self, db_session: AsyncSession, engine_for):
        """
        Test: Discount for an organization id that does not exist, foreign keys enforced
        Expected: NotFoundError reaches the caller, failure entry keeps the id in its details
        """
        with pytest.raises(NotFoundError):
            await engine_for(db_session).apply_discount("no-such-org", 10, "promo", ADMIN)

        failures = await audit_entries(db_session, "discount_apply_failed")
        assert len(failures) == 1
        assert failures[0].organization_id is None
        assert failures[0].action_details["organization_id"] == "no-such-org"
        assert failures[0].action_details["error_type"] == "NotFoundError"

    # ==================== Coupon management ====================

    async def test_create_coupon(self, db_session: AsyncSession, engine_for, processor_api):
        params = CreateCouponParams(
            code="spring25",
            discount_type="percent",
            discount_value=25,
            duration="repeating",
            duration_months=3,
            max_redemptions=50,
            applies_to_plans=["starter", "team"],
        )

        coupon = await engine_for(db_session).create_coupon(params, ADMIN)

        assert coupon["code"] == "SPRING25"
        assert coupon["redemption_count"] == 0
        assert processor_api.calls("POST", "/coupons") == [{
            "id": "SPRING25",
            "name": "SPRING25",
            "duration": "repeating",
            "percent_off": 25,
            "duration_in_months": 3,
            "max_redemptions": 50,
        }]
        assert (await audit_entries(db_session, "coupon_created"))[0].action_details["discount"] == "25% off"

    async def test_create_coupon_validation(self, db_session: AsyncSession, engine_for, make_coupon, processor_api):
        engine = engine_for(db_session)
        await make_coupon("TAKEN01")

        with pytest.raises(ValidationError, match="duration_months"):
            await engine.create_coupon(CreateCouponParams(code="REPEAT01", discount_type="percent", discount_value=10, duration="repeating"), ADMIN)
        with pytest.raises(ValidationError, match="between 1 and 100"):
            await engine.create_coupon(CreateCouponParams(code="HUGE0001", discount_type="percent", discount_value=120), ADMIN)
        with pytest.raises(ValidationError, match="Unknown plans"):
            await engine.create_coupon(CreateCouponParams(code="PLAN0001", discount_type="percent", discount_value=10, applies_to_plans=["gold"]), ADMIN)
        with pytest.raises(ConflictError, match="already exists"):
            await engine.create_coupon(CreateCouponParams(code="taken01", discount_type="fixed", discount_value=100), ADMIN)
        assert processor_api.calls("POST", "/coupons") == []

    async def test_deactivate_coupon(self, db_session: AsyncSession, engine_for, processor_api, organization, make_coupon):
        coupon = await make_coupon(processor_coupon_id="WELCOME20")

        result = await engine_for(db_session).deactivate_coupon(coupon.id, ADMIN)

        assert result["is_active"] is False
        assert len(processor_api.calls("DELETE", "/coupons/WELCOME20")) == 1
        with pytest.raises(ConflictError, match="no longer active"):
            await engine_for(db_session).apply_coupon(organization.id, "WELCOME20", USER)
