"""Auth tables for the relational storage backend.

These SQLModel tables back ``authcore.storage.sql.SQLStorageAdapter``. The
document backend never imports them.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, Column, DateTime, UniqueConstraint
from sqlmodel import Field, SQLModel

from authcore.utils.clock import utcnow

# Timestamps are stored as naive UTC; see authcore.utils.clock.
NaiveDateTime = DateTime(timezone=False)


class AuthUser(SQLModel, table=True):  # type: ignore[call-arg]
    """User account; direct permission grants live in auth_user_permissions."""

    __tablename__ = "auth_users"

    id: str = Field(primary_key=True, max_length=64)
    email: str = Field(unique=True, index=True)
    password_hash: Optional[str] = Field(default=None)
    role: str = Field(index=True)

    username: Optional[str] = Field(default=None, index=True)
    first_name: Optional[str] = Field(default=None)
    last_name: Optional[str] = Field(default=None)
    locale: Optional[str] = Field(default=None)
    avatar: Optional[str] = Field(default=None)

    last_active_at: Optional[datetime] = Field(default=None, sa_type=NaiveDateTime)
    last_auth_method: Optional[str] = Field(default=None)
    is_registered: bool = Field(default=False)

    failed_attempts: int = Field(default=0)
    blocked: bool = Field(default=False, index=True)
    lockout_until: Optional[datetime] = Field(default=None, sa_type=NaiveDateTime)

    reset_token: Optional[str] = Field(default=None)
    reset_requested_at: Optional[datetime] = Field(default=None, sa_type=NaiveDateTime)
    is_2fa_enabled: bool = Field(default=False)

    created_at: datetime = Field(default_factory=utcnow, sa_type=NaiveDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=NaiveDateTime)


class AuthSession(SQLModel, table=True):  # type: ignore[call-arg]
    """Server-side session; the primary key is the SHA-256 digest of the cookie value."""

    __tablename__ = "auth_sessions"

    id: str = Field(primary_key=True, max_length=128)
    user_id: str = Field(index=True)
    expires: datetime = Field(index=True, sa_type=NaiveDateTime)
    created_at: datetime = Field(default_factory=utcnow, sa_type=NaiveDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=NaiveDateTime)


class AuthToken(SQLModel, table=True):  # type: ignore[call-arg]
    """Single-use typed token (invite, password reset)."""

    __tablename__ = "auth_tokens"

    id: str = Field(primary_key=True, max_length=64)
    token: str = Field(unique=True, index=True)  # SHA-256 digest of the raw value
    user_id: str = Field(index=True)
    email: str
    type: str = Field(index=True)
    expires: datetime = Field(index=True, sa_type=NaiveDateTime)
    created_at: datetime = Field(default_factory=utcnow, sa_type=NaiveDateTime)


class AuthRole(SQLModel, table=True):  # type: ignore[call-arg]
    __tablename__ = "auth_roles"

    id: str = Field(primary_key=True, max_length=64)
    name: str = Field(unique=True, index=True)
    description: Optional[str] = Field(default=None)


class AuthPermission(SQLModel, table=True):  # type: ignore[call-arg]
    """Atomic capability; (context_id, action, context_type) is its identity."""

    __tablename__ = "auth_permissions"
    __table_args__ = (
        UniqueConstraint(
            "context_id", "action", "context_type", name="uq_auth_permission_identity"
        ),
    )

    id: str = Field(primary_key=True, max_length=64)
    name: str = Field(unique=True, index=True)
    context_id: str
    action: str
    context_type: str
    required_role: Optional[str] = Field(default=None)
    description: Optional[str] = Field(default=None)


class AuthRolePermission(SQLModel, table=True):  # type: ignore[call-arg]
    __tablename__ = "auth_role_permissions"

    role_id: str = Field(foreign_key="auth_roles.id", primary_key=True)
    permission_id: str = Field(foreign_key="auth_permissions.id", primary_key=True)


class AuthUserPermission(SQLModel, table=True):  # type: ignore[call-arg]
    """Direct permission grant to a user, on top of their role."""

    __tablename__ = "auth_user_permissions"

    user_id: str = Field(foreign_key="auth_users.id", primary_key=True)
    permission_id: str = Field(foreign_key="auth_permissions.id", primary_key=True)


class AuthDocument(SQLModel, table=True):  # type: ignore[call-arg]
    """Generic host-application document stored as JSON."""

    __tablename__ = "auth_documents"

    id: str = Field(primary_key=True, max_length=64)
    collection: str = Field(index=True)
    data: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(default_factory=utcnow, sa_type=NaiveDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=NaiveDateTime)
