"""Opaque bearer secrets for sessions and single-use tokens.

Callers receive the raw value; backends only ever see ``hash_secret(raw)``,
so reading the store does not yield a usable credential.
"""

import hashlib
import secrets


def generate_secret() -> str:
    """Generate a raw bearer value (stored only as a hash server-side)."""
    return secrets.token_urlsafe(32)


def hash_secret(raw: str) -> str:
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()
