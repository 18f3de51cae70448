"""
Enumerations shared by the domain models and both storage backends.
"""
from enum import Enum
from typing import Literal


class PermissionAction(str, Enum):
    create = "create"
    read = "read"
    update = "update"
    delete = "delete"
    manage = "manage"
    share = "share"
    access = "access"


class PermissionType(str, Enum):
    """Resource category a permission governs."""

    collection = "collection"
    user = "user"
    configuration = "configuration"
    # Grants of this type satisfy a query for any context type.
    system = "system"


class TokenType(str, Enum):
    invite = "invite"
    reset = "reset"


class TokenStatus(str, Enum):
    valid = "valid"
    expired = "expired"
    missing = "missing"

    @property
    def label(self) -> str:
        return {
            "valid": "Token is valid",
            "expired": "Token is expired",
            "missing": "Token does not exist",
        }[self.value]


SortOrder = Literal["asc", "desc"]
