from authcore.models.auth import (
    Permission,
    PermissionDecision,
    PermissionQuery,
    Role,
    Session,
    Token,
    TokenConsumption,
    TokenValidation,
    User,
    UserRecord,
    new_id,
)
from authcore.models.fields import (
    PermissionAction,
    PermissionType,
    SortOrder,
    TokenStatus,
    TokenType,
)

__all__ = [
    "Permission",
    "PermissionAction",
    "PermissionDecision",
    "PermissionQuery",
    "PermissionType",
    "Role",
    "Session",
    "SortOrder",
    "Token",
    "TokenConsumption",
    "TokenStatus",
    "TokenType",
    "TokenValidation",
    "User",
    "UserRecord",
    "new_id",
]
