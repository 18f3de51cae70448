from authcore.auth import Auth
from authcore.errors import (
    AuthError,
    BackendError,
    Conflict,
    DuplicateEmail,
    Expired,
    NotFound,
    SelfLockout,
    Unauthorized,
)
from authcore.models import (
    Permission,
    PermissionAction,
    PermissionDecision,
    PermissionQuery,
    PermissionType,
    Role,
    Session,
    Token,
    TokenConsumption,
    TokenStatus,
    TokenType,
    TokenValidation,
    User,
)

__all__ = [
    "Auth",
    "AuthError",
    "BackendError",
    "Conflict",
    "DuplicateEmail",
    "Expired",
    "NotFound",
    "Permission",
    "PermissionAction",
    "PermissionDecision",
    "PermissionQuery",
    "PermissionType",
    "Role",
    "SelfLockout",
    "Session",
    "Token",
    "TokenConsumption",
    "TokenStatus",
    "TokenType",
    "TokenValidation",
    "Unauthorized",
    "User",
]
