"""Backend-agnostic domain records exchanged through the storage contract.

Every backend maps its native rows/documents onto these models. Timestamps
are naive UTC datetimes (see ``authcore.utils.clock.utcnow``).
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

from authcore.models.fields import PermissionAction, PermissionType, TokenStatus
from authcore.utils.clock import utcnow


def new_id() -> str:
    return uuid.uuid4().hex


class User(SQLModel):
    """Identity record as returned to callers (never carries the password hash)."""

    id: str = Field(default_factory=new_id)
    email: str
    role: str
    permissions: list[str] = Field(default_factory=list)  # direct grants

    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    locale: Optional[str] = None
    avatar: Optional[str] = None

    last_active_at: Optional[datetime] = None
    last_auth_method: Optional[str] = None
    is_registered: bool = False

    failed_attempts: int = 0
    blocked: bool = False
    lockout_until: Optional[datetime] = None

    reset_token: Optional[str] = None
    reset_requested_at: Optional[datetime] = None
    is_2fa_enabled: bool = False

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def is_locked_out(self, now: datetime) -> bool:
        return self.lockout_until is not None and self.lockout_until > now


class UserRecord(User):
    """Stored form of a user, including the Argon2 hash."""

    password_hash: Optional[str] = None

    def to_user(self) -> User:
        return User.model_validate(self.model_dump(exclude={"password_hash"}))


class Session(SQLModel):
    session_id: str
    user_id: str
    expires: datetime
    created_at: datetime = Field(default_factory=utcnow)

    def is_expired(self, now: datetime) -> bool:
        return self.expires <= now


class Token(SQLModel):
    token: str
    user_id: str
    email: str
    type: str
    expires: datetime
    created_at: datetime = Field(default_factory=utcnow)

    def is_expired(self, now: datetime) -> bool:
        return self.expires <= now


class Role(SQLModel):
    role_id: str = Field(default_factory=new_id)
    name: str
    description: Optional[str] = None
    permissions: list[str] = Field(default_factory=list)  # permission ids


class Permission(SQLModel):
    permission_id: str = Field(default_factory=new_id)
    name: str
    context_id: str
    action: PermissionAction
    context_type: PermissionType
    required_role: Optional[str] = None
    description: Optional[str] = None


@dataclass(frozen=True)
class PermissionQuery:
    """What a caller wants to do: the identity triple plus an optional role hint."""

    context_id: str
    action: PermissionAction
    context_type: PermissionType
    required_role: str | None = None

    @classmethod
    def for_permission(cls, permission: Permission) -> "PermissionQuery":
        return cls(
            context_id=permission.context_id,
            action=permission.action,
            context_type=permission.context_type,
            required_role=permission.required_role,
        )


@dataclass
class PermissionDecision:
    has_permission: bool
    # Reserved for throttling; callers gate on it even though it is always False today.
    is_rate_limited: bool = False


@dataclass
class TokenValidation:
    valid: bool
    reason: TokenStatus


@dataclass
class TokenConsumption:
    consumed: bool
    reason: TokenStatus
