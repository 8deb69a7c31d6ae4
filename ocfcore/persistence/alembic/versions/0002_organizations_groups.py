"""add organizations and class groups

Revision ID: 0002_organizations_groups
Revises: 0001_init
Create Date: 2026-09-15
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0002_organizations_groups"
down_revision = "0001_init"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "organizations",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("display_name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("owner_user_id", sa.String(), nullable=False),
        sa.Column("organization_type", sa.String(), server_default="team", nullable=False),
        sa.Column("max_groups", sa.Integer(), server_default="10", nullable=False),
        sa.Column("max_members", sa.Integer(), server_default="50", nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("subscription_plan_id", sa.String(), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_organizations_name", "organizations", ["name"], unique=True)
    op.create_index("ix_organizations_owner_user_id", "organizations", ["owner_user_id"], unique=False)

    op.create_table(
        "organization_members",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("role", sa.String(), server_default="member", nullable=False),
        sa.Column("invited_by", sa.String(), nullable=True),
        sa.Column("joined_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("organization_id", "user_id", name="uq_organization_members_user"),
    )
    op.create_index(
        "ix_organization_members_organization_id", "organization_members", ["organization_id"], unique=False
    )
    op.create_index(
        "ix_organization_members_user_active", "organization_members", ["user_id", "is_active"], unique=False
    )

    # Deployments that still carry the legacy groups table get it renamed in 0003 instead.
    if not sa.inspect(op.get_bind()).has_table("groups"):
        op.create_table(
            "class_groups",
            sa.Column("id", sa.String(), nullable=False),
            sa.Column("name", sa.String(), nullable=False),
            sa.Column("display_name", sa.String(), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("owner_user_id", sa.String(), nullable=False),
            sa.Column("organization_id", sa.String(), nullable=True),
            sa.Column("max_members", sa.Integer(), server_default="50", nullable=False),
            sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
            sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
            sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_class_groups_name", "class_groups", ["name"], unique=True)
        op.create_index("ix_class_groups_owner_user_id", "class_groups", ["owner_user_id"], unique=False)
        op.create_index("ix_class_groups_organization_id", "class_groups", ["organization_id"], unique=False)

        op.create_table(
            "group_members",
            sa.Column("id", sa.String(), nullable=False),
            sa.Column("group_id", sa.String(), nullable=False),
            sa.Column("user_id", sa.String(), nullable=False),
            sa.Column("role", sa.String(), server_default="member", nullable=False),
            sa.Column("invited_by", sa.String(), nullable=True),
            sa.Column("joined_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
            sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
            sa.ForeignKeyConstraint(["group_id"], ["class_groups.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("group_id", "user_id", name="uq_group_members_user"),
        )
        op.create_index("ix_group_members_group_id", "group_members", ["group_id"], unique=False)
        op.create_index("ix_group_members_user_active", "group_members", ["user_id", "is_active"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_group_members_user_active", table_name="group_members")
    op.drop_index("ix_group_members_group_id", table_name="group_members")
    op.drop_table("group_members")

    op.drop_index("ix_class_groups_organization_id", table_name="class_groups")
    op.drop_index("ix_class_groups_owner_user_id", table_name="class_groups")
    op.drop_index("ix_class_groups_name", table_name="class_groups")
    op.drop_table("class_groups")

    op.drop_index("ix_organization_members_user_active", table_name="organization_members")
    op.drop_index("ix_organization_members_organization_id", table_name="organization_members")
    op.drop_table("organization_members")

    op.drop_index("ix_organizations_owner_user_id", table_name="organizations")
    op.drop_index("ix_organizations_name", table_name="organizations")
    op.drop_table("organizations")
