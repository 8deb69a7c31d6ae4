"""rename legacy groups table to class_groups

Revision ID: 0003_rename_legacy_groups
Revises: 0002_organizations_groups
Create Date: 2026-09-15
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "0003_rename_legacy_groups"
down_revision = "0002_organizations_groups"
branch_labels = None
depends_on = None


def upgrade() -> None:
    inspector = sa.inspect(op.get_bind())
    # No-op when the schema already uses class_groups; foreign keys follow a table rename.
    if not inspector.has_table("groups") or inspector.has_table("class_groups"):
        return
    columns = {column["name"] for column in inspector.get_columns("groups")}
    op.rename_table("groups", "class_groups")
    if "expires_at" not in columns:
        op.add_column("class_groups", sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True))
    if "organization_id" not in columns:
        op.add_column("class_groups", sa.Column("organization_id", sa.String(), nullable=True))
        op.create_foreign_key(
            "fk_class_groups_organization_id",
            "class_groups",
            "organizations",
            ["organization_id"],
            ["id"],
            ondelete="CASCADE",
        )
        op.create_index("ix_class_groups_organization_id", "class_groups", ["organization_id"], unique=False)


def downgrade() -> None:
    # The legacy name is not restored; 0002 owns the class_groups table lifecycle.
    pass
