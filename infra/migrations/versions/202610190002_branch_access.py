"""branch access, data sharing and small groups

Revision ID: 202610190002
Revises: 202610190001
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "202610190002"
down_revision = "202610190001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "user_branch_access",
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("branch_id", sa.String(), nullable=False),
        sa.Column("role_id", sa.String(), nullable=False),
        sa.Column("is_home_branch", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["organization_id", "user_id"],
            ["users.organization_id", "users.id"],
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["organization_id", "branch_id"],
            ["branches.organization_id", "branches.id"],
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["organization_id", "role_id"],
            ["roles.organization_id", "roles.id"],
        ),
        sa.PrimaryKeyConstraint("organization_id", "user_id", "branch_id"),
    )
    op.create_index("ix_user_branch_access_role_id", "user_branch_access", ["role_id"])
    op.create_index("ix_user_branch_access_created_at", "user_branch_access", ["created_at"])
    op.create_index("ix_user_branch_access_org_user", "user_branch_access", ["organization_id", "user_id"])
    op.create_index("ix_user_branch_access_org_branch", "user_branch_access", ["organization_id", "branch_id"])
    op.create_index(
        "uq_user_branch_access_home",
        "user_branch_access",
        ["user_id"],
        unique=True,
        postgresql_where=sa.text("is_home_branch"),
        sqlite_where=sa.text("is_home_branch"),
    )

    op.create_table(
        "data_sharing_policies",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("source_type", sa.String(), nullable=False),
        sa.Column("source_id", sa.String(), nullable=False),
        sa.Column("target_type", sa.String(), nullable=False),
        sa.Column("target_id", sa.String(), nullable=False),
        sa.Column("resource_type", sa.String(), nullable=False),
        sa.Column("permissions", sa.JSON(), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_data_sharing_policies_organization_id", "data_sharing_policies", ["organization_id"])
    op.create_index("ix_data_sharing_policies_source_type", "data_sharing_policies", ["source_type"])
    op.create_index("ix_data_sharing_policies_target_type", "data_sharing_policies", ["target_type"])
    op.create_index("ix_data_sharing_policies_resource_type", "data_sharing_policies", ["resource_type"])
    op.create_index("ix_data_sharing_policies_active", "data_sharing_policies", ["active"])
    op.create_index("ix_data_sharing_policies_created_by", "data_sharing_policies", ["created_by"])
    op.create_index("ix_data_sharing_policies_created_at", "data_sharing_policies", ["created_at"])
    op.create_index(
        "ix_data_sharing_policies_org_source",
        "data_sharing_policies",
        ["organization_id", "source_type", "source_id"],
    )
    op.create_index(
        "ix_data_sharing_policies_org_target",
        "data_sharing_policies",
        ["organization_id", "target_type", "target_id"],
    )

    op.create_table(
        "small_groups",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("branch_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("group_type", sa.String(), nullable=False),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("meeting_schedule", sa.String(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["organization_id", "branch_id"],
            ["branches.organization_id", "branches.id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("branch_id", "name", name="uq_small_groups_branch_name"),
    )
    op.create_index("ix_small_groups_organization_id", "small_groups", ["organization_id"])
    op.create_index("ix_small_groups_branch_id", "small_groups", ["branch_id"])
    op.create_index("ix_small_groups_name", "small_groups", ["name"])
    op.create_index("ix_small_groups_group_type", "small_groups", ["group_type"])
    op.create_index("ix_small_groups_is_active", "small_groups", ["is_active"])
    op.create_index("ix_small_groups_created_at", "small_groups", ["created_at"])

    op.create_table(
        "small_group_members",
        sa.Column("group_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("member_role", sa.String(), nullable=False),
        sa.Column("position", sa.String(), nullable=True),
        sa.Column("joined_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["group_id"], ["small_groups.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("group_id", "user_id"),
    )
    op.create_index("ix_small_group_members_member_role", "small_group_members", ["member_role"])
    op.create_index("ix_small_group_members_joined_at", "small_group_members", ["joined_at"])


def downgrade() -> None:
    op.drop_index("ix_small_group_members_joined_at", table_name="small_group_members")
    op.drop_index("ix_small_group_members_member_role", table_name="small_group_members")
    op.drop_table("small_group_members")

    op.drop_index("ix_small_groups_created_at", table_name="small_groups")
    op.drop_index("ix_small_groups_is_active", table_name="small_groups")
    op.drop_index("ix_small_groups_group_type", table_name="small_groups")
    op.drop_index("ix_small_groups_name", table_name="small_groups")
    op.drop_index("ix_small_groups_branch_id", table_name="small_groups")
    op.drop_index("ix_small_groups_organization_id", table_name="small_groups")
    op.drop_table("small_groups")

    op.drop_index("ix_data_sharing_policies_org_target", table_name="data_sharing_policies")
    op.drop_index("ix_data_sharing_policies_org_source", table_name="data_sharing_policies")
    op.drop_index("ix_data_sharing_policies_created_at", table_name="data_sharing_policies")
    op.drop_index("ix_data_sharing_policies_created_by", table_name="data_sharing_policies")
    op.drop_index("ix_data_sharing_policies_active", table_name="data_sharing_policies")
    op.drop_index("ix_data_sharing_policies_resource_type", table_name="data_sharing_policies")
    op.drop_index("ix_data_sharing_policies_target_type", table_name="data_sharing_policies")
    op.drop_index("ix_data_sharing_policies_source_type", table_name="data_sharing_policies")
    op.drop_index("ix_data_sharing_policies_organization_id", table_name="data_sharing_policies")
    op.drop_table("data_sharing_policies")

    op.drop_index("uq_user_branch_access_home", table_name="user_branch_access")
    op.drop_index("ix_user_branch_access_org_branch", table_name="user_branch_access")
    op.drop_index("ix_user_branch_access_org_user", table_name="user_branch_access")
    op.drop_index("ix_user_branch_access_created_at", table_name="user_branch_access")
    op.drop_index("ix_user_branch_access_role_id", table_name="user_branch_access")
    op.drop_table("user_branch_access")
