from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# Portable JSON column: JSONB on PostgreSQL, generic JSON elsewhere (sqlite tests).
JsonType = JSON().with_variant(JSONB(), "postgresql")


def _new_id() -> str:
    return str(uuid4())


class Base(DeclarativeBase):
    # Fetch server-generated timestamps on flush so async sessions never lazy-load them.
    __mapper_args__ = {"eager_defaults": True}


class CasbinRule(Base):
    __tablename__ = "casbin_rules"
    __table_args__ = (
        UniqueConstraint("ptype", "v0", "v1", "v2", name="uq_casbin_rules_tuple"),
        Index("ix_casbin_rules_ptype_v0", "ptype", "v0"),
    )

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    # "p" rows are (subject, resource, methods); "g" rows are (user_or_role, role).
    ptype: Mapped[str] = mapped_column(String(8))
    v0: Mapped[str] = mapped_column(String)
    v1: Mapped[str] = mapped_column(String)
    # Empty for grouping rows so the unique constraint also deduplicates them.
    v2: Mapped[str] = mapped_column(String, default="", nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class TokenBlacklist(Base):
    __tablename__ = "token_blacklist"

    # Lookup by jti on every authenticated request; keep it the primary key.
    jti: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, index=True)
    # Rows past expiry are swept lazily; the token itself is already invalid then.
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    reason: Mapped[str] = mapped_column(String, default="logout")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class EmailVerificationToken(Base):
    __tablename__ = "email_verification_tokens"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String, index=True)
    email: Mapped[str] = mapped_column(String, index=True)
    # 32 random bytes, hex encoded.
    token: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    # Transitions once; a set value marks the token consumed.
    used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resend_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_resent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class PasswordResetToken(Base):
    __tablename__ = "password_reset_tokens"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String, index=True)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    token: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Organization(Base):
    __tablename__ = "organizations"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    # Slug-like unique name; personal organizations use personal_{user_id}.
    name: Mapped[str] = mapped_column(String, unique=True, index=True)
    display_name: Mapped[str] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    owner_user_id: Mapped[str] = mapped_column(String, index=True)
    # personal | team
    organization_type: Mapped[str] = mapped_column(String, default="team")
    # Soft limits; -1 means unbounded.
    max_groups: Mapped[int] = mapped_column(Integer, default=10)
    max_members: Mapped[int] = mapped_column(Integer, default=50)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    subscription_plan_id: Mapped[str | None] = mapped_column(String, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class OrganizationMember(Base):
    __tablename__ = "organization_members"
    __table_args__ = (
        UniqueConstraint("organization_id", "user_id", name="uq_organization_members_user"),
        Index("ix_organization_members_user_active", "user_id", "is_active"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(
        String, ForeignKey("organizations.id", ondelete="CASCADE"), index=True
    )
    user_id: Mapped[str] = mapped_column(String)
    # owner | manager | member
    role: Mapped[str] = mapped_column(String, default="member")
    invited_by: Mapped[str | None] = mapped_column(String, nullable=True)
    joined_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class ClassGroup(Base):
    __tablename__ = "class_groups"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String, unique=True, index=True)
    display_name: Mapped[str] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    owner_user_id: Mapped[str] = mapped_column(String, index=True)
    organization_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=True, index=True
    )
    max_members: Mapped[int] = mapped_column(Integer, default=50)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class GroupMember(Base):
    __tablename__ = "group_members"
    __table_args__ = (
        UniqueConstraint("group_id", "user_id", name="uq_group_members_user"),
        Index("ix_group_members_user_active", "user_id", "is_active"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    group_id: Mapped[str] = mapped_column(
        String, ForeignKey("class_groups.id", ondelete="CASCADE"), index=True
    )
    user_id: Mapped[str] = mapped_column(String)
    role: Mapped[str] = mapped_column(String, default="member")
    invited_by: Mapped[str | None] = mapped_column(String, nullable=True)
    joined_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class SubscriptionPlan(Base):
    __tablename__ = "subscription_plans"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Higher wins when several active subscriptions apply to one user.
    priority: Mapped[int] = mapped_column(Integer, default=0)
    currency: Mapped[str] = mapped_column(String(8), default="eur")
    billing_interval: Mapped[str] = mapped_column(String, default="month")
    # Minor units; 0 selects the free-plan fast path.
    price_amount: Mapped[int] = mapped_column(BigInteger, default=0)
    stripe_product_id: Mapped[str | None] = mapped_column(String, nullable=True)
    stripe_price_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    # Graduated rungs [{min_qty, max_qty?, unit_amount}]; empty means flat pricing.
    pricing_tiers: Mapped[list[dict[str, Any]] | None] = mapped_column(JsonType, nullable=True)
    # Display-only strings; never consulted for gating.
    features: Mapped[list[str] | None] = mapped_column(JsonType, nullable=True)
    # Numeric quotas; -1 means unbounded.
    max_concurrent_users: Mapped[int] = mapped_column(Integer, default=1)
    max_courses: Mapped[int] = mapped_column(Integer, default=-1)
    max_lab_sessions: Mapped[int] = mapped_column(Integer, default=-1)
    max_concurrent_terminals: Mapped[int] = mapped_column(Integer, default=1)
    max_session_duration_minutes: Mapped[int] = mapped_column(Integer, default=60)
    data_persistence_gb: Mapped[int] = mapped_column(Integer, default=0)
    allowed_templates: Mapped[list[str] | None] = mapped_column(JsonType, nullable=True)
    allowed_machine_sizes: Mapped[list[str] | None] = mapped_column(JsonType, nullable=True)
    required_role: Mapped[str] = mapped_column(String, default="member")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class SubscriptionBatch(Base):
    __tablename__ = "subscription_batches"
    __table_args__ = (
        CheckConstraint(
            "assigned_quantity >= 0 AND assigned_quantity <= total_quantity",
            name="ck_subscription_batches_assigned_bounds",
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    purchaser_user_id: Mapped[str] = mapped_column(String, index=True)
    subscription_plan_id: Mapped[str] = mapped_column(String, ForeignKey("subscription_plans.id"))
    group_id: Mapped[str | None] = mapped_column(String, nullable=True)
    stripe_subscription_id: Mapped[str | None] = mapped_column(String, nullable=True, unique=True)
    stripe_subscription_item_id: Mapped[str | None] = mapped_column(String, nullable=True)
    total_quantity: Mapped[int] = mapped_column(Integer)
    assigned_quantity: Mapped[int] = mapped_column(Integer, default=0)
    # pending_payment | active | cancelled
    status: Mapped[str] = mapped_column(String, default="pending_payment")
    current_period_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class UserSubscription(Base):
    __tablename__ = "user_subscriptions"
    __table_args__ = (
        Index("ix_user_subscriptions_user_status", "user_id", "status"),
        Index("ix_user_subscriptions_batch_status", "subscription_batch_id", "status"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    # Null for unassigned seat licences.
    user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    subscription_plan_id: Mapped[str] = mapped_column(String, ForeignKey("subscription_plans.id"))
    status: Mapped[str] = mapped_column(String, default="incomplete")
    # personal | assigned
    subscription_type: Mapped[str] = mapped_column(String, default="personal")
    current_period_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    trial_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    stripe_subscription_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    stripe_customer_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    subscription_batch_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("subscription_batches.id", ondelete="CASCADE"), nullable=True
    )
    purchaser_user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    assigned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class OrganizationSubscription(Base):
    __tablename__ = "organization_subscriptions"
    __table_args__ = (
        CheckConstraint("quantity >= 1", name="ck_organization_subscriptions_quantity"),
        Index("ix_organization_subscriptions_org_status", "organization_id", "status"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(
        String, ForeignKey("organizations.id", ondelete="CASCADE")
    )
    subscription_plan_id: Mapped[str] = mapped_column(String, ForeignKey("subscription_plans.id"))
    quantity: Mapped[int] = mapped_column(Integer, default=1)
    status: Mapped[str] = mapped_column(String, default="incomplete")
    current_period_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    stripe_subscription_id: Mapped[str | None] = mapped_column(String, nullable=True, unique=True)
    stripe_customer_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class UsageMetric(Base):
    __tablename__ = "usage_metrics"
    __table_args__ = (
        UniqueConstraint("user_id", "subscription_id", "metric_type", name="uq_usage_metrics_key"),
        Index("ix_usage_metrics_user_metric", "user_id", "metric_type"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String)
    subscription_id: Mapped[str] = mapped_column(
        String, ForeignKey("user_subscriptions.id", ondelete="CASCADE"), index=True
    )
    metric_type: Mapped[str] = mapped_column(String)
    # Advisory for live-count metrics; recomputed from the live table on read.
    current_value: Mapped[int] = mapped_column(BigInteger, default=0)
    # -1 means unbounded.
    limit_value: Mapped[int] = mapped_column(BigInteger, default=-1)
    period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    last_updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class Invoice(Base):
    __tablename__ = "invoices"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String, index=True)
    user_subscription_id: Mapped[str | None] = mapped_column(String, nullable=True)
    subscription_batch_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # Upsert key for webhook replays.
    stripe_invoice_id: Mapped[str] = mapped_column(String, unique=True)
    amount: Mapped[int] = mapped_column(BigInteger, default=0)
    currency: Mapped[str] = mapped_column(String(8), default="eur")
    status: Mapped[str] = mapped_column(String, default="open")
    invoice_number: Mapped[str | None] = mapped_column(String, nullable=True)
    invoice_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    due_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    stripe_hosted_url: Mapped[str | None] = mapped_column(String, nullable=True)
    download_url: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class PaymentMethod(Base):
    __tablename__ = "payment_methods"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String, index=True)
    stripe_payment_method_id: Mapped[str] = mapped_column(String, unique=True)
    type: Mapped[str] = mapped_column(String, default="card")
    card_brand: Mapped[str | None] = mapped_column(String, nullable=True)
    card_last4: Mapped[str | None] = mapped_column(String(4), nullable=True)
    card_exp_month: Mapped[int | None] = mapped_column(Integer, nullable=True)
    card_exp_year: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class BillingAddress(Base):
    __tablename__ = "billing_addresses"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String, index=True)
    line1: Mapped[str] = mapped_column(String)
    line2: Mapped[str | None] = mapped_column(String, nullable=True)
    city: Mapped[str] = mapped_column(String)
    state: Mapped[str | None] = mapped_column(String, nullable=True)
    postal_code: Mapped[str] = mapped_column(String)
    country: Mapped[str] = mapped_column(String(2))
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Terminal(Base):
    __tablename__ = "terminals"
    __table_args__ = (
        Index("ix_terminals_user_status", "user_id", "status"),
    )

    # Live sessions; the authoritative source for the concurrent_terminals counter.
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    # active | stopped
    status: Mapped[str] = mapped_column(String, default="active")
    subscription_id: Mapped[str | None] = mapped_column(String, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    stopped_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class ProcessedWebhookEvent(Base):
    __tablename__ = "processed_webhook_events"

    # Processor event id; a present row short-circuits redelivery.
    event_id: Mapped[str] = mapped_column(String, primary_key=True)
    event_type: Mapped[str] = mapped_column(String)
    processed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class AuditEvent(Base):
    __tablename__ = "audit_events"

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    # Store the event timestamp separately from creation to preserve source clocks.
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    actor_type: Mapped[str] = mapped_column(String)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    actor_roles: Mapped[str | None] = mapped_column(String, nullable=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    outcome: Mapped[str] = mapped_column(String)
    resource_type: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    ip_address: Mapped[str | None] = mapped_column(String, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, default=dict)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
