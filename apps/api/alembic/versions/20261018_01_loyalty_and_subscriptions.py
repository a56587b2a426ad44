"""Loyalty ledger and subscription billing tables.

Revision ID: 20261018_01
Revises:
Create Date: 2026-10-18
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from storefront_api.models.loyalty import (
    LoyaltyPointExpirationStatus,
    LoyaltyRedemptionType,
    LoyaltyTransactionSource,
    LoyaltyTransactionType,
    PointsCalculationType,
    PointsRuleType,
)
from storefront_api.models.subscription import (
    BillingInterval,
    BillingRecordKind,
    BillingRecordStatus,
    SubscriptionStatus,
)


revision: str = "20261018_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

UUID = postgresql.UUID(as_uuid=True)


def _timestamps(*, updated: bool = True) -> list[sa.Column]:
    columns = [sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)]
    if updated:
        columns.append(
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)
        )
    return columns


def upgrade() -> None:
    op.create_table(
        "loyalty_tiers",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("code", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("point_threshold", sa.Integer(), nullable=False),
        sa.Column("points_multiplier", sa.Numeric(6, 2), nullable=False, server_default="1"),
        sa.Column("benefits", sa.JSON(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
    )
    op.create_index("ix_loyalty_tiers_code", "loyalty_tiers", ["code"], unique=True)

    op.create_table(
        "loyalty_points_rules",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("rule_type", sa.Enum(PointsRuleType, name="loyalty_points_rule_type"), nullable=False),
        sa.Column(
            "calculation_type",
            sa.Enum(PointsCalculationType, name="loyalty_points_calculation_type"),
            nullable=False,
        ),
        sa.Column("value", sa.Numeric(12, 4), nullable=False),
        sa.Column("minimum_amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("max_points_per_transaction", sa.Integer(), nullable=True),
        sa.Column("event_code", sa.String(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_loyalty_points_rules_rule_type", "loyalty_points_rules", ["rule_type"])

    op.create_table(
        "loyalty_settings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("program_name", sa.String(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("points_per_currency_unit", sa.Numeric(12, 4), nullable=False),
        sa.Column("point_value", sa.Numeric(12, 4), nullable=False),
        sa.Column("minimum_redemption", sa.Integer(), nullable=False),
        sa.Column("points_expiry_days", sa.Integer(), nullable=False),
        sa.Column("auto_enroll", sa.Boolean(), nullable=False),
        sa.Column("enable_point_expiry", sa.Boolean(), nullable=False),
        sa.Column("enable_tiers", sa.Boolean(), nullable=False),
        sa.Column("enable_referrals", sa.Boolean(), nullable=False),
        sa.Column("referrer_points", sa.Integer(), nullable=False),
        sa.Column("referred_points", sa.Integer(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        "loyalty_accounts",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("customer_id", sa.String(), nullable=False),
        sa.Column("current_tier_id", UUID, nullable=True),
        sa.Column("points_balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("lifetime_points_earned", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("referral_code", sa.String(), nullable=False),
        sa.Column("referred_by_customer_id", sa.String(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("enrolled_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("version_id", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["current_tier_id"], ["loyalty_tiers.id"]),
        sa.UniqueConstraint("customer_id", name="uq_loyalty_accounts_customer_id"),
        sa.UniqueConstraint("referral_code", name="uq_loyalty_accounts_referral_code"),
    )
    op.create_index("ix_loyalty_accounts_customer_id", "loyalty_accounts", ["customer_id"])

    op.create_table(
        "loyalty_transactions",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("account_id", UUID, nullable=False),
        sa.Column(
            "transaction_type",
            sa.Enum(LoyaltyTransactionType, name="loyalty_transaction_type"),
            nullable=False,
        ),
        sa.Column("source", sa.Enum(LoyaltyTransactionSource, name="loyalty_transaction_source"), nullable=False),
        sa.Column("points", sa.Integer(), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("reference_id", sa.String(), nullable=True),
        sa.Column("dedupe_key", sa.String(), nullable=True),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("expiry_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(updated=False),
        sa.ForeignKeyConstraint(["account_id"], ["loyalty_accounts.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("account_id", "dedupe_key", name="uq_loyalty_transactions_dedupe"),
    )
    op.create_index("ix_loyalty_transactions_account_id", "loyalty_transactions", ["account_id"])
    op.create_index("ix_loyalty_transactions_occurred_at", "loyalty_transactions", ["occurred_at"])

    op.create_table(
        "loyalty_point_expirations",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("account_id", UUID, nullable=False),
        sa.Column("source_transaction_id", UUID, nullable=False),
        sa.Column("points", sa.Integer(), nullable=False),
        sa.Column("consumed_points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "status",
            sa.Enum(LoyaltyPointExpirationStatus, name="loyalty_point_expiration_status"),
            nullable=False,
            server_default=LoyaltyPointExpirationStatus.SCHEDULED.name,
        ),
        sa.Column("expired_points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("expire_transaction_id", UUID, nullable=True),
        sa.Column("swept_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["account_id"], ["loyalty_accounts.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["source_transaction_id"], ["loyalty_transactions.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["expire_transaction_id"], ["loyalty_transactions.id"]),
        sa.UniqueConstraint("source_transaction_id", name="uq_loyalty_point_expirations_source"),
    )
    op.create_index("ix_loyalty_point_expirations_account_id", "loyalty_point_expirations", ["account_id"])
    op.create_index("ix_loyalty_point_expirations_expires_at", "loyalty_point_expirations", ["expires_at"])
    op.create_index("ix_loyalty_point_expirations_status", "loyalty_point_expirations", ["status"])

    op.create_table(
        "loyalty_tier_history",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("account_id", UUID, nullable=False),
        sa.Column("tier_id", UUID, nullable=False),
        sa.Column("previous_tier_id", UUID, nullable=True),
        sa.Column("lifetime_points", sa.Integer(), nullable=False),
        sa.Column("achieved_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["account_id"], ["loyalty_accounts.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["tier_id"], ["loyalty_tiers.id"]),
        sa.ForeignKeyConstraint(["previous_tier_id"], ["loyalty_tiers.id"]),
    )
    op.create_index("ix_loyalty_tier_history_account_id", "loyalty_tier_history", ["account_id"])

    op.create_table(
        "loyalty_redemptions",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("account_id", UUID, nullable=False),
        sa.Column("transaction_id", UUID, nullable=False),
        sa.Column(
            "redemption_type",
            sa.Enum(LoyaltyRedemptionType, name="loyalty_redemption_type"),
            nullable=False,
        ),
        sa.Column("points_redeemed", sa.Integer(), nullable=False),
        sa.Column("value", sa.Numeric(12, 2), nullable=False),
        sa.Column("reference_id", sa.String(), nullable=True),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("redeemed_at", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(updated=False),
        sa.ForeignKeyConstraint(["account_id"], ["loyalty_accounts.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["transaction_id"], ["loyalty_transactions.id"]),
    )
    op.create_index("ix_loyalty_redemptions_account_id", "loyalty_redemptions", ["account_id"])

    op.create_table(
        "loyalty_referrals",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("referrer_account_id", UUID, nullable=False),
        sa.Column("referred_customer_id", sa.String(), nullable=False),
        sa.Column("points_awarded", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("referred_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["referrer_account_id"], ["loyalty_accounts.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("referred_customer_id", name="uq_loyalty_referrals_referred_customer"),
    )
    op.create_index("ix_loyalty_referrals_referrer_account_id", "loyalty_referrals", ["referrer_account_id"])

    op.create_table(
        "subscription_plans",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("code", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("price_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("price_currency", sa.String(3), nullable=False, server_default="INR"),
        sa.Column(
            "billing_interval",
            sa.Enum(BillingInterval, name="subscription_billing_interval"),
            nullable=False,
        ),
        sa.Column("billing_frequency", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("trial_days", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("trial_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("features", sa.JSON(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
    )
    op.create_index("ix_subscription_plans_code", "subscription_plans", ["code"], unique=True)

    op.create_table(
        "subscriptions",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("customer_id", sa.String(), nullable=False),
        sa.Column("plan_id", UUID, nullable=False),
        sa.Column("status", sa.Enum(SubscriptionStatus, name="subscription_status"), nullable=False),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("cancellation_reason", sa.String(), nullable=True),
        sa.Column("cancellation_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payment_method", sa.String(), nullable=True),
        sa.Column("failed_payment_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("version_id", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["plan_id"], ["subscription_plans.id"]),
    )
    op.create_index("ix_subscriptions_customer_id", "subscriptions", ["customer_id"])
    op.create_index("ix_subscriptions_plan_id", "subscriptions", ["plan_id"])
    op.create_index("ix_subscriptions_status", "subscriptions", ["status"])
    op.create_index("ix_subscriptions_current_period_end", "subscriptions", ["current_period_end"])

    op.create_table(
        "subscription_billing_records",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("subscription_id", UUID, nullable=False),
        sa.Column("plan_id", UUID, nullable=False),
        sa.Column("kind", sa.Enum(BillingRecordKind, name="subscription_billing_record_kind"), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column(
            "status",
            sa.Enum(BillingRecordStatus, name="subscription_billing_record_status"),
            nullable=False,
        ),
        sa.Column("period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("transaction_ref", sa.String(), nullable=True),
        sa.Column("invoice_number", sa.String(), nullable=True),
        sa.Column("failure_reason", sa.String(), nullable=True),
        sa.Column("billed_at", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(updated=False),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscriptions.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["plan_id"], ["subscription_plans.id"]),
        sa.UniqueConstraint("invoice_number", name="uq_subscription_billing_records_invoice_number"),
    )
    op.create_index(
        "ix_subscription_billing_records_subscription_id",
        "subscription_billing_records",
        ["subscription_id"],
    )


def downgrade() -> None:
    op.drop_table("subscription_billing_records")
    op.drop_table("subscriptions")
    op.drop_table("subscription_plans")
    op.drop_table("loyalty_referrals")
    op.drop_table("loyalty_redemptions")
    op.drop_table("loyalty_tier_history")
    op.drop_table("loyalty_point_expirations")
    op.drop_table("loyalty_transactions")
    op.drop_table("loyalty_accounts")
    op.drop_table("loyalty_settings")
    op.drop_table("loyalty_points_rules")
    op.drop_table("loyalty_tiers")

    bind = op.get_bind()
    for enum_name in (
        "subscription_billing_record_status",
        "subscription_billing_record_kind",
        "subscription_status",
        "subscription_billing_interval",
        "loyalty_redemption_type",
        "loyalty_point_expiration_status",
        "loyalty_transaction_source",
        "loyalty_transaction_type",
        "loyalty_points_calculation_type",
        "loyalty_points_rule_type",
    ):
        sa.Enum(name=enum_name).drop(bind, checkfirst=True)
