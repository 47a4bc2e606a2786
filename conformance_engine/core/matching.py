"""Fixed and pattern value comparison over JSON-shaped data."""

from __future__ import annotations

from typing import Any


def deep_equal(left: Any, right: Any) -> bool:
    """Structural equality that keeps booleans apart from numbers."""
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if isinstance(left, dict) and isinstance(right, dict):
        if left.keys() != right.keys():
            return False
        return all(deep_equal(left[k], right[k]) for k in left)
    if isinstance(left, list) and isinstance(right, list):
        return len(left) == len(right) and all(deep_equal(a, b) for a, b in zip(left, right))
    if isinstance(left, (dict, list)) or isinstance(right, (dict, list)):
        return False
    return left == right


def matches_pattern(value: Any, pattern: Any) -> bool:
    """
    Subset match: every field present in ``pattern`` must be present and
    equal in ``value``. A list pattern requires each pattern item to be
    matched by some item of the value list.
    """
    if isinstance(pattern, dict):
        if not isinstance(value, dict):
            return False
        return all(key in value and matches_pattern(value[key], expected) for key, expected in pattern.items())
    if isinstance(pattern, list):
        if not isinstance(value, list):
            return False
        return all(any(matches_pattern(item, expected) for item in value) for expected in pattern)
    return deep_equal(value, pattern)
