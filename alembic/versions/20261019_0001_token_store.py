"""Users, QuickBooks tokens and admin change log

Revision ID: 20261019_0001
Revises: 
Create Date: 2026-10-19 09:30:00.000000
"""
from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql


revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


admin_change_type_enum = sa.Enum(
    "initial",
    "transfer",
    "revoke",
    name="admin_change_type_enum",
    native_enum=False,
)


def _guid_type(bind) -> sa.types.TypeEngine:
    if bind.dialect.name == "postgresql":
        return postgresql.UUID(as_uuid=True)
    return sa.String(length=36)


def upgrade() -> None:
    bind = op.get_bind()
    guid = _guid_type(bind)

    admin_change_type_enum.create(op.get_bind(), checkfirst=True)

    op.create_table(
        "users",
        sa.Column("id", guid, nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", name="uq_users_user_id"),
    )

    op.create_table(
        "qbo_tokens",
        sa.Column("id", guid, nullable=False),
        sa.Column("realm_id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("access_token_enc", sa.String(), nullable=False),
        sa.Column("refresh_token_enc", sa.String(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("company_name", sa.String(length=255), nullable=True),
        sa.Column("is_sandbox", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("realm_id", name="uq_qbo_tokens_realm"),
    )
    op.create_index("ix_qbo_tokens_user_id", "qbo_tokens", ["user_id"])
    op.create_index("ix_qbo_tokens_expires_at", "qbo_tokens", ["expires_at"])

    op.create_table(
        "qbo_admin_changes",
        sa.Column("id", guid, nullable=False),
        sa.Column("realm_id", sa.String(length=64), nullable=False),
        sa.Column("previous_admin_id", sa.String(length=255), nullable=True),
        sa.Column("new_admin_id", sa.String(length=255), nullable=True),
        sa.Column("change_type", admin_change_type_enum, nullable=False),
        sa.Column("initiated_by", sa.String(length=255), nullable=False),
        sa.Column("reason", sa.String(length=1000), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_qbo_admin_changes_realm_id", "qbo_admin_changes", ["realm_id"])
    op.create_index("ix_qbo_admin_changes_created_at", "qbo_admin_changes", ["created_at"])


def downgrade() -> None:
    op.drop_index("ix_qbo_admin_changes_created_at", table_name="qbo_admin_changes")
    op.drop_index("ix_qbo_admin_changes_realm_id", table_name="qbo_admin_changes")
    op.drop_table("qbo_admin_changes")
    op.drop_index("ix_qbo_tokens_expires_at", table_name="qbo_tokens")
    op.drop_index("ix_qbo_tokens_user_id", table_name="qbo_tokens")
    op.drop_table("qbo_tokens")
    op.drop_table("users")
    admin_change_type_enum.drop(op.get_bind(), checkfirst=True)
