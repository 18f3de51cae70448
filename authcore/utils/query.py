"""In-process filtering, sorting and paging for records held in memory.

Used by the document backend for every collection and by the relational
backend for generic JSON documents. Filters are plain equality matches:
``{"role": "editor", "blocked": False}``.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any, TypeVar

from authcore.models.fields import SortOrder

T = TypeVar("T")

_MISSING = object()


def _field(record: Any, name: str) -> Any:
    if isinstance(record, Mapping):
        return record.get(name, _MISSING)
    return getattr(record, name, _MISSING)


def _normalize(value: Any) -> Any:
    # Enum members compare equal to their raw values
    return getattr(value, "value", value)


def matches(record: Any, query: Mapping[str, Any] | None) -> bool:
    """Return True when every key in ``query`` equals the record's field."""
    if not query:
        return True
    for name, expected in query.items():
        actual = _field(record, name)
        if actual is _MISSING:
            return False
        if _normalize(actual) != _normalize(expected):
            return False
    return True


def apply_sort(records: list[T], sort: Mapping[str, SortOrder] | None) -> list[T]:
    """Stable multi-key sort; ``None`` values always sort last."""
    if not sort:
        return records
    result = list(records)
    # Sort by the least significant key first so earlier keys win.
    for name, order in reversed(list(sort.items())):
        if order not in ("asc", "desc"):
            raise ValueError(f"Invalid sort order for {name!r}: {order!r}")
        present = [r for r in result if _field(r, name) not in (None, _MISSING)]
        absent = [r for r in result if _field(r, name) in (None, _MISSING)]
        present.sort(key=lambda r: _normalize(_field(r, name)), reverse=order == "desc")
        result = present + absent
    return result


def paginate(records: list[T], *, limit: int | None = None, skip: int = 0) -> list[T]:
    if skip < 0:
        raise ValueError("skip must be >= 0")
    if limit is not None and limit < 0:
        raise ValueError("limit must be >= 0")
    end = None if limit is None else skip + limit
    return records[skip:end]


def select(
    records: Iterable[T],
    query: Mapping[str, Any] | None = None,
    *,
    sort: Mapping[str, SortOrder] | None = None,
    limit: int | None = None,
    skip: int = 0,
) -> list[T]:
    """Filter, sort, then page ``records``."""
    filtered = [r for r in records if matches(r, query)]
    return paginate(apply_sort(filtered, sort), limit=limit, skip=skip)
