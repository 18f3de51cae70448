"""Error taxonomy shared by every authcore component.

Lookup misses (no user, no session, no token) are returned as ``None`` or an
empty result and never raised. The classes below are for conditions a caller
has to handle explicitly.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for all authcore failures."""


class NotFound(AuthError):
    """A mutating call targeted a record that does not exist."""


class Conflict(AuthError):
    """A uniqueness constraint would be violated."""


class DuplicateEmail(Conflict):
    """A user with this email already exists."""

    def __init__(self, email: str) -> None:
        super().__init__(f"A user with email {email!r} already exists")
        self.email = email


class BackendError(AuthError):
    """The storage backend failed; the original exception is ``__cause__``."""


class Unauthorized(AuthError):
    """The acting principal lacks the capability needed for a registry change."""


class SelfLockout(AuthError):
    """A registry change would strip the acting principal's own management access."""


class Expired(AuthError):
    """A session or token is past its validity window."""
