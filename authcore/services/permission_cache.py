"""Per-role permission cache owned by the resolver and invalidated by the registry."""

from __future__ import annotations

import logging

from authcore.models import Permission

logger = logging.getLogger(__name__)


class RolePermissionCache:
    """Role name -> flattened permissions, filled lazily.

    Every invalidation bumps a generation counter. A reader takes the
    generation before it loads from storage and hands it back to ``set``; if
    an invalidation ran in between, the stale result is dropped.
    """

    def __init__(self) -> None:
        self._entries: dict[str, list[Permission]] = {}
        self._generation = 0

    @property
    def generation(self) -> int:
        return self._generation

    def get(self, role: str) -> list[Permission] | None:
        entry = self._entries.get(role)
        return list(entry) if entry is not None else None

    def set(self, role: str, permissions: list[Permission], *, generation: int) -> bool:
        if generation != self._generation:
            logger.debug("Dropped stale permission cache fill for role %s", role)
            return False
        self._entries[role] = list(permissions)
        return True

    def invalidate(self, *roles: str) -> None:
        self._generation += 1
        for role in roles:
            self._entries.pop(role, None)
        logger.debug("Invalidated permission cache for roles %s", roles)

    def clear(self) -> None:
        self._generation += 1
        self._entries.clear()
        logger.debug("Cleared permission cache")

    def __contains__(self, role: object) -> bool:
        return role in self._entries

    def __len__(self) -> int:
        return len(self._entries)
