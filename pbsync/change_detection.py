"""Field-level change detection between a stored row and an incoming record."""
from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from typing import Any

DEFAULT_IGNORED_FIELDS = frozenset({"id", "created_at", "updated_at"})


def _is_sequence(value: Any) -> bool:
    return isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray))


def values_equal(left: Any, right: Any) -> bool:
    """Deep structural equality; lists and tuples with equal items are equal."""
    if left is None or right is None:
        return left is None and right is None
    if isinstance(left, Mapping) and isinstance(right, Mapping):
        if left.keys() != right.keys():
            return False
        return all(values_equal(left[key], right[key]) for key in left)
    if _is_sequence(left) and _is_sequence(right):
        if len(left) != len(right):
            return False
        return all(values_equal(a, b) for a, b in zip(left, right))
    if isinstance(left, bool) != isinstance(right, bool):
        return False
    return left == right


def _compared_keys(
    existing: Mapping[str, Any],
    incoming: Mapping[str, Any],
    ignored_fields: Iterable[str],
) -> list[str]:
    ignored = set(ignored_fields)
    keys = set(existing.keys()) | set(incoming.keys())
    return sorted(key for key in keys if key not in ignored)


def has_changed(
    existing: Mapping[str, Any],
    incoming: Mapping[str, Any],
    ignored_fields: Iterable[str] = DEFAULT_IGNORED_FIELDS,
) -> bool:
    """Return True when any non-ignored field differs between the two records.

    A key missing on one side is treated as ``None``.
    """
    for key in _compared_keys(existing, incoming, ignored_fields):
        if not values_equal(existing.get(key), incoming.get(key)):
            return True
    return False


def changed_fields(
    existing: Mapping[str, Any],
    incoming: Mapping[str, Any],
    ignored_fields: Iterable[str] = DEFAULT_IGNORED_FIELDS,
) -> list[str]:
    return [
        key
        for key in _compared_keys(existing, incoming, ignored_fields)
        if not values_equal(existing.get(key), incoming.get(key))
    ]
