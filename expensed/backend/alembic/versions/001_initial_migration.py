# backend/alembic/versions/001_initial_migration.py
"""Initial billing schema

Revision ID: 001
Revises: 
Create Date: 2026-10-01 00:00:00.000000

"""
from datetime import datetime

from alembic import op
import sqlalchemy as sa

from app.core.constants import DEFAULT_PLANS

# revision identifiers
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime, nullable=False),
        sa.Column('updated_at', sa.DateTime, nullable=False),
    ]


def upgrade() -> None:
    # Create subscription_plans table
    plans = op.create_table(
        'subscription_plans',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('name', sa.String(50), unique=True, nullable=False, index=True),
        sa.Column('display_name', sa.String(100), nullable=False),
        sa.Column('description', sa.Text),
        sa.Column('monthly_price_cents', sa.Integer, server_default=sa.text("0"), nullable=False),
        sa.Column('annual_price_cents', sa.Integer, server_default=sa.text("0"), nullable=False),
        sa.Column('min_users', sa.Integer, server_default=sa.text("1"), nullable=False),
        sa.Column('max_users', sa.Integer),
        sa.Column('features', sa.JSON, nullable=False),
        sa.Column('processor_product_id', sa.String(255)),
        sa.Column('processor_monthly_price_id', sa.String(255), index=True),
        sa.Column('processor_annual_price_id', sa.String(255), index=True),
        sa.Column('display_order', sa.Integer, server_default=sa.text("0"), nullable=False),
        sa.Column('is_active', sa.Boolean, server_default=sa.true(), nullable=False),
        sa.Column('is_public', sa.Boolean, server_default=sa.true(), nullable=False),
        *_timestamps(),
    )

    # Create organizations table
    op.create_table(
        'organizations',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False, index=True),
        sa.Column('processor_customer_id', sa.String(255), unique=True),
        sa.Column('deleted_at', sa.DateTime),
        sa.Column('deleted_by', sa.String(36)),
        *_timestamps(),
    )

    # Create organization_subscriptions table
    op.create_table(
        'organization_subscriptions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('organization_id', sa.String(36), sa.ForeignKey('organizations.id'), unique=True, nullable=False, index=True),
        sa.Column('plan_id', sa.String(36), sa.ForeignKey('subscription_plans.id'), nullable=False, index=True),
        sa.Column('processor_subscription_id', sa.String(255), unique=True),
        sa.Column('processor_customer_id', sa.String(255), index=True),
        sa.Column('status', sa.String(20), server_default=sa.text("'active'"), nullable=False, index=True),
        sa.Column('billing_cycle', sa.String(20)),
        sa.Column('current_period_start', sa.DateTime),
        sa.Column('current_period_end', sa.DateTime),
        sa.Column('trial_start', sa.DateTime),
        sa.Column('trial_end', sa.DateTime),
        sa.Column('canceled_at', sa.DateTime),
        sa.Column('cancel_at_period_end', sa.Boolean, server_default=sa.false(), nullable=False),
        sa.Column('paused_at', sa.DateTime),
        sa.Column('current_user_count', sa.Integer, server_default=sa.text("1"), nullable=False),
        sa.Column('current_month_receipts', sa.Integer, server_default=sa.text("0"), nullable=False),
        sa.Column('usage_reset_at', sa.DateTime),
        sa.Column('custom_price_cents', sa.Integer),
        sa.Column('discount_percent', sa.Integer, server_default=sa.text("0"), nullable=False),
        sa.Column('discount_expires_at', sa.DateTime),
        sa.Column('discount_reason', sa.Text),
        sa.Column('billing_email', sa.String(255)),
        sa.Column('billing_name', sa.String(255)),
        sa.Column('billing_company', sa.String(255)),
        sa.Column('version', sa.BigInteger, server_default=sa.text("0"), nullable=False),
        sa.CheckConstraint('discount_percent >= 0 AND discount_percent <= 100', name='ck_subscription_discount_percent'),
        *_timestamps(),
    )

    # Create subscription_invoices table
    op.create_table(
        'subscription_invoices',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('organization_id', sa.String(36), sa.ForeignKey('organizations.id'), nullable=False, index=True),
        sa.Column('subscription_id', sa.String(36), sa.ForeignKey('organization_subscriptions.id'), index=True),
        sa.Column('processor_invoice_id', sa.String(255), unique=True),
        sa.Column('processor_payment_intent_id', sa.String(255)),
        sa.Column('processor_charge_id', sa.String(255)),
        sa.Column('amount_cents', sa.Integer, nullable=False),
        sa.Column('amount_paid_cents', sa.Integer, server_default=sa.text("0"), nullable=False),
        sa.Column('amount_refunded_cents', sa.Integer, server_default=sa.text("0"), nullable=False),
        sa.Column('currency', sa.String(3), server_default=sa.text("'usd'"), nullable=False),
        sa.Column('status', sa.String(30), server_default=sa.text("'draft'"), nullable=False, index=True),
        sa.Column('description', sa.Text),
        sa.Column('line_items', sa.JSON, nullable=False),
        sa.Column('invoice_date', sa.DateTime),
        sa.Column('due_date', sa.DateTime),
        sa.Column('paid_at', sa.DateTime),
        sa.Column('hosted_invoice_url', sa.Text),
        sa.Column('invoice_pdf_url', sa.Text),
        *_timestamps(),
    )

    # Create coupon_codes table
    op.create_table(
        'coupon_codes',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('code', sa.String(20), unique=True, nullable=False, index=True),
        sa.Column('discount_type', sa.String(10), nullable=False),
        sa.Column('discount_value', sa.Integer, nullable=False),
        sa.Column('applies_to_plans', sa.JSON),
        sa.Column('min_users', sa.Integer),
        sa.Column('max_redemptions', sa.Integer),
        sa.Column('max_redemptions_per_org', sa.Integer, server_default=sa.text("1"), nullable=False),
        sa.Column('redemption_count', sa.Integer, server_default=sa.text("0"), nullable=False),
        sa.Column('duration', sa.String(10), server_default=sa.text("'once'"), nullable=False),
        sa.Column('duration_months', sa.Integer),
        sa.Column('valid_from', sa.DateTime),
        sa.Column('valid_until', sa.DateTime),
        sa.Column('processor_coupon_id', sa.String(255)),
        sa.Column('campaign_name', sa.String(255)),
        sa.Column('internal_notes', sa.Text),
        sa.Column('created_by', sa.String(36)),
        sa.Column('is_active', sa.Boolean, server_default=sa.true(), nullable=False),
        sa.CheckConstraint(
            'max_redemptions IS NULL OR redemption_count <= max_redemptions',
            name='ck_coupon_redemption_limit',
        ),
        *_timestamps(),
    )

    # Create coupon_redemptions table
    op.create_table(
        'coupon_redemptions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('coupon_id', sa.String(36), sa.ForeignKey('coupon_codes.id'), nullable=False, index=True),
        sa.Column('organization_id', sa.String(36), sa.ForeignKey('organizations.id'), nullable=False, index=True),
        sa.Column('subscription_id', sa.String(36), sa.ForeignKey('organization_subscriptions.id')),
        sa.Column('sequence', sa.Integer, server_default=sa.text("1"), nullable=False),
        sa.Column('redeemed_at', sa.DateTime, nullable=False),
        sa.Column('redeemed_by', sa.String(36)),
        sa.Column('discount_type', sa.String(10), nullable=False),
        sa.Column('discount_value', sa.Integer, nullable=False),
        sa.Column('duration', sa.String(10), nullable=False),
        sa.Column('discount_applied_cents', sa.Integer, server_default=sa.text("0"), nullable=False),
        sa.Column('remaining_months', sa.Integer),
        sa.Column('last_advanced_at', sa.DateTime),
        sa.UniqueConstraint('coupon_id', 'organization_id', 'sequence', name='uq_coupon_redemption_org_seq'),
        *_timestamps(),
    )

    # Create subscription_audit_log table
    op.create_table(
        'subscription_audit_log',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('organization_id', sa.String(36), sa.ForeignKey('organizations.id'), index=True),
        sa.Column('subscription_id', sa.String(36), index=True),
        sa.Column('action', sa.String(100), nullable=False, index=True),
        sa.Column('action_details', sa.JSON, nullable=False),
        sa.Column('amount_cents', sa.Integer),
        sa.Column('performed_by', sa.String(36), index=True),
        sa.Column('is_super_admin', sa.Boolean, server_default=sa.false(), nullable=False),
        sa.Column('is_system', sa.Boolean, server_default=sa.false(), nullable=False),
        sa.Column('ip_address', sa.String(45)),
        sa.Column('user_agent', sa.Text),
        sa.Column('created_at', sa.DateTime, nullable=False, index=True),
    )

    # Audit rows are append-only at the database level too
    op.execute("""
        CREATE OR REPLACE FUNCTION refuse_audit_log_change() RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION 'subscription_audit_log is append-only';
        END;
        $$ LANGUAGE plpgsql;
    """)
    op.execute("""
        CREATE TRIGGER subscription_audit_log_append_only
        BEFORE UPDATE OR DELETE ON subscription_audit_log
        FOR EACH ROW EXECUTE FUNCTION refuse_audit_log_change();
    """)

    # Create super_admins table
    op.create_table(
        'super_admins',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), unique=True, nullable=False, index=True),
        sa.Column('display_name', sa.String(255)),
        sa.Column('permissions', sa.JSON, nullable=False),
        sa.Column('is_active', sa.Boolean, server_default=sa.true(), nullable=False),
        sa.Column('last_login_at', sa.DateTime),
        sa.Column('created_by', sa.String(36)),
        *_timestamps(),
    )

    # Create processed_webhook_events table
    op.create_table(
        'processed_webhook_events',
        sa.Column('event_id', sa.String(255), primary_key=True),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('organization_id', sa.String(36), index=True),
        sa.Column('outcome', sa.String(20), nullable=False),
        sa.Column('received_at', sa.DateTime, nullable=False),
    )

    # Seed the plan catalog
    seeded_at = datetime.utcnow()
    op.bulk_insert(plans, [
        {
            **plan,
            'id': f"plan-{plan['name']}",
            'created_at': seeded_at,
            'updated_at': seeded_at,
        }
        for plan in DEFAULT_PLANS
    ])


def downgrade() -> None:
    op.drop_table('processed_webhook_events')
    op.drop_table('super_admins')
    op.execute("DROP TRIGGER IF EXISTS subscription_audit_log_append_only ON subscription_audit_log")
    op.execute("DROP FUNCTION IF EXISTS refuse_audit_log_change()")
    op.drop_table('subscription_audit_log')
    op.drop_table('coupon_redemptions')
    op.drop_table('coupon_codes')
    op.drop_table('subscription_invoices')
    op.drop_table('organization_subscriptions')
    op.drop_table('organizations')
    op.drop_table('subscription_plans')
