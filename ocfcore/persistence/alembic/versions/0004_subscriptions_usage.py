"""add plans, subscriptions, seat batches, usage and terminals

Revision ID: 0004_subscriptions_usage
Revises: 0003_rename_legacy_groups
Create Date: 2026-09-16
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0004_subscriptions_usage"
down_revision = "0003_rename_legacy_groups"
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Plans carry both pricing and the numeric entitlements enforced at request time.
    op.create_table(
        "subscription_plans",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("priority", sa.Integer(), server_default="0", nullable=False),
        sa.Column("currency", sa.String(length=8), server_default="eur", nullable=False),
        sa.Column("billing_interval", sa.String(), server_default="month", nullable=False),
        sa.Column("price_amount", sa.BigInteger(), server_default="0", nullable=False),
        sa.Column("stripe_product_id", sa.String(), nullable=True),
        sa.Column("stripe_price_id", sa.String(), nullable=True),
        sa.Column("pricing_tiers", postgresql.JSONB(), nullable=True),
        sa.Column("features", postgresql.JSONB(), nullable=True),
        sa.Column("max_concurrent_users", sa.Integer(), server_default="1", nullable=False),
        sa.Column("max_courses", sa.Integer(), server_default="-1", nullable=False),
        sa.Column("max_lab_sessions", sa.Integer(), server_default="-1", nullable=False),
        sa.Column("max_concurrent_terminals", sa.Integer(), server_default="1", nullable=False),
        sa.Column("max_session_duration_minutes", sa.Integer(), server_default="60", nullable=False),
        sa.Column("data_persistence_gb", sa.Integer(), server_default="0", nullable=False),
        sa.Column("allowed_templates", postgresql.JSONB(), nullable=True),
        sa.Column("allowed_machine_sizes", postgresql.JSONB(), nullable=True),
        sa.Column("required_role", sa.String(), server_default="member", nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_subscription_plans_stripe_price_id", "subscription_plans", ["stripe_price_id"], unique=False)

    op.create_table(
        "subscription_batches",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("purchaser_user_id", sa.String(), nullable=False),
        sa.Column("subscription_plan_id", sa.String(), nullable=False),
        sa.Column("group_id", sa.String(), nullable=True),
        sa.Column("stripe_subscription_id", sa.String(), nullable=True),
        sa.Column("stripe_subscription_item_id", sa.String(), nullable=True),
        sa.Column("total_quantity", sa.Integer(), nullable=False),
        sa.Column("assigned_quantity", sa.Integer(), server_default="0", nullable=False),
        sa.Column("status", sa.String(), server_default="pending_payment", nullable=False),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["subscription_plan_id"], ["subscription_plans.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("stripe_subscription_id", name="uq_subscription_batches_stripe_subscription_id"),
        sa.CheckConstraint(
            "assigned_quantity >= 0 AND assigned_quantity <= total_quantity",
            name="ck_subscription_batches_assigned_bounds",
        ),
    )
    op.create_index(
        "ix_subscription_batches_purchaser_user_id", "subscription_batches", ["purchaser_user_id"], unique=False
    )

    op.create_table(
        "user_subscriptions",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("subscription_plan_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), server_default="incomplete", nullable=False),
        sa.Column("subscription_type", sa.String(), server_default="personal", nullable=False),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trial_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("stripe_subscription_id", sa.String(), nullable=True),
        sa.Column("stripe_customer_id", sa.String(), nullable=True),
        sa.Column("subscription_batch_id", sa.String(), nullable=True),
        sa.Column("purchaser_user_id", sa.String(), nullable=True),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["subscription_plan_id"], ["subscription_plans.id"]),
        sa.ForeignKeyConstraint(["subscription_batch_id"], ["subscription_batches.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_user_subscriptions_user_status", "user_subscriptions", ["user_id", "status"], unique=False)
    op.create_index(
        "ix_user_subscriptions_batch_status", "user_subscriptions", ["subscription_batch_id", "status"], unique=False
    )
    op.create_index(
        "ix_user_subscriptions_stripe_subscription_id", "user_subscriptions", ["stripe_subscription_id"], unique=False
    )
    op.create_index(
        "ix_user_subscriptions_stripe_customer_id", "user_subscriptions", ["stripe_customer_id"], unique=False
    )

    op.create_table(
        "organization_subscriptions",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("subscription_plan_id", sa.String(), nullable=False),
        sa.Column("quantity", sa.Integer(), server_default="1", nullable=False),
        sa.Column("status", sa.String(), server_default="incomplete", nullable=False),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("stripe_subscription_id", sa.String(), nullable=True),
        sa.Column("stripe_customer_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["subscription_plan_id"], ["subscription_plans.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "stripe_subscription_id", name="uq_organization_subscriptions_stripe_subscription_id"
        ),
        sa.CheckConstraint("quantity >= 1", name="ck_organization_subscriptions_quantity"),
    )
    op.create_index(
        "ix_organization_subscriptions_org_status",
        "organization_subscriptions",
        ["organization_id", "status"],
        unique=False,
    )

    # One counter row per (user, subscription, metric); live-count metrics are recomputed on read.
    op.create_table(
        "usage_metrics",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("subscription_id", sa.String(), nullable=False),
        sa.Column("metric_type", sa.String(), nullable=False),
        sa.Column("current_value", sa.BigInteger(), server_default="0", nullable=False),
        sa.Column("limit_value", sa.BigInteger(), server_default="-1", nullable=False),
        sa.Column("period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_updated", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["subscription_id"], ["user_subscriptions.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "subscription_id", "metric_type", name="uq_usage_metrics_key"),
    )
    op.create_index("ix_usage_metrics_user_metric", "usage_metrics", ["user_id", "metric_type"], unique=False)
    op.create_index("ix_usage_metrics_subscription_id", "usage_metrics", ["subscription_id"], unique=False)

    op.create_table(
        "terminals",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("status", sa.String(), server_default="active", nullable=False),
        sa.Column("subscription_id", sa.String(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("stopped_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_terminals_user_status", "terminals", ["user_id", "status"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_terminals_user_status", table_name="terminals")
    op.drop_table("terminals")

    op.drop_index("ix_usage_metrics_subscription_id", table_name="usage_metrics")
    op.drop_index("ix_usage_metrics_user_metric", table_name="usage_metrics")
    op.drop_table("usage_metrics")

    op.drop_index("ix_organization_subscriptions_org_status", table_name="organization_subscriptions")
    op.drop_table("organization_subscriptions")

    op.drop_index("ix_user_subscriptions_stripe_customer_id", table_name="user_subscriptions")
    op.drop_index("ix_user_subscriptions_stripe_subscription_id", table_name="user_subscriptions")
    op.drop_index("ix_user_subscriptions_batch_status", table_name="user_subscriptions")
    op.drop_index("ix_user_subscriptions_user_status", table_name="user_subscriptions")
    op.drop_table("user_subscriptions")

    op.drop_index("ix_subscription_batches_purchaser_user_id", table_name="subscription_batches")
    op.drop_table("subscription_batches")

    op.drop_index("ix_subscription_plans_stripe_price_id", table_name="subscription_plans")
    op.drop_table("subscription_plans")
