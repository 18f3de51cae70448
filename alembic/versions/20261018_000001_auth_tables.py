"""Initial schema for authcore tables.

Revision ID: 20261018_000001
Revises:
Create Date: 2026-10-18 00:00:01
"""

from alembic import op  # type: ignore[attr-defined]
import sqlalchemy as sa

revision = "20261018_000001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "auth_users",
        sa.Column("id", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("password_hash", sa.String(), nullable=True),
        sa.Column("role", sa.String(), nullable=False),
        sa.Column("username", sa.String(), nullable=True),
        sa.Column("first_name", sa.String(), nullable=True),
        sa.Column("last_name", sa.String(), nullable=True),
        sa.Column("locale", sa.String(), nullable=True),
        sa.Column("avatar", sa.String(), nullable=True),
        sa.Column("last_active_at", sa.DateTime(), nullable=True),
        sa.Column("last_auth_method", sa.String(), nullable=True),
        sa.Column("is_registered", sa.Boolean(), nullable=False),
        sa.Column("failed_attempts", sa.Integer(), nullable=False),
        sa.Column("blocked", sa.Boolean(), nullable=False),
        sa.Column("lockout_until", sa.DateTime(), nullable=True),
        sa.Column("reset_token", sa.String(), nullable=True),
        sa.Column("reset_requested_at", sa.DateTime(), nullable=True),
        sa.Column("is_2fa_enabled", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_auth_users_email", "auth_users", ["email"], unique=True)
    op.create_index("ix_auth_users_role", "auth_users", ["role"], unique=False)
    op.create_index("ix_auth_users_username", "auth_users", ["username"], unique=False)
    op.create_index("ix_auth_users_blocked", "auth_users", ["blocked"], unique=False)

    op.create_table(
        "auth_sessions",
        sa.Column("id", sa.String(length=128), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("expires", sa.DateTime(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_auth_sessions_user_id", "auth_sessions", ["user_id"], unique=False)
    op.create_index("ix_auth_sessions_expires", "auth_sessions", ["expires"], unique=False)

    op.create_table(
        "auth_tokens",
        sa.Column("id", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("token", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("expires", sa.DateTime(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_auth_tokens_token", "auth_tokens", ["token"], unique=True)
    op.create_index("ix_auth_tokens_user_id", "auth_tokens", ["user_id"], unique=False)
    op.create_index("ix_auth_tokens_type", "auth_tokens", ["type"], unique=False)
    op.create_index("ix_auth_tokens_expires", "auth_tokens", ["expires"], unique=False)

    op.create_table(
        "auth_roles",
        sa.Column("id", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.String(), nullable=True),
    )
    op.create_index("ix_auth_roles_name", "auth_roles", ["name"], unique=True)

    op.create_table(
        "auth_permissions",
        sa.Column("id", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("context_id", sa.String(), nullable=False),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("context_type", sa.String(), nullable=False),
        sa.Column("required_role", sa.String(), nullable=True),
        sa.Column("description", sa.String(), nullable=True),
        sa.UniqueConstraint(
            "context_id", "action", "context_type", name="uq_auth_permission_identity"
        ),
    )
    op.create_index("ix_auth_permissions_name", "auth_permissions", ["name"], unique=True)

    op.create_table(
        "auth_role_permissions",
        sa.Column(
            "role_id",
            sa.String(),
            sa.ForeignKey("auth_roles.id"),
            primary_key=True,
            nullable=False,
        ),
        sa.Column(
            "permission_id",
            sa.String(),
            sa.ForeignKey("auth_permissions.id"),
            primary_key=True,
            nullable=False,
        ),
    )

    op.create_table(
        "auth_user_permissions",
        sa.Column(
            "user_id",
            sa.String(),
            sa.ForeignKey("auth_users.id"),
            primary_key=True,
            nullable=False,
        ),
        sa.Column(
            "permission_id",
            sa.String(),
            sa.ForeignKey("auth_permissions.id"),
            primary_key=True,
            nullable=False,
        ),
    )

    op.create_table(
        "auth_documents",
        sa.Column("id", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("collection", sa.String(), nullable=False),
        sa.Column("data", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_auth_documents_collection", "auth_documents", ["collection"], unique=False
    )


def downgrade() -> None:
    op.drop_index("ix_auth_documents_collection", table_name="auth_documents")
    op.drop_table("auth_documents")
    op.drop_table("auth_user_permissions")
    op.drop_table("auth_role_permissions")
    op.drop_index("ix_auth_permissions_name", table_name="auth_permissions")
    op.drop_table("auth_permissions")
    op.drop_index("ix_auth_roles_name", table_name="auth_roles")
    op.drop_table("auth_roles")
    for index in ("ix_auth_tokens_expires", "ix_auth_tokens_type", "ix_auth_tokens_user_id", "ix_auth_tokens_token"):
        op.drop_index(index, table_name="auth_tokens")
    op.drop_table("auth_tokens")
    op.drop_index("ix_auth_sessions_expires", table_name="auth_sessions")
    op.drop_index("ix_auth_sessions_user_id", table_name="auth_sessions")
    op.drop_table("auth_sessions")
    for index in ("ix_auth_users_blocked", "ix_auth_users_username", "ix_auth_users_role", "ix_auth_users_email"):
        op.drop_index(index, table_name="auth_users")
    op.drop_table("auth_users")
