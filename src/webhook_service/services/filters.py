"""Per-subscription payload filters.

A filter map is ``{"dot.path": expected}``; a numeric segment indexes into a
list. ``expected`` given as a list, tuple or set accepts any member; any other
value must match exactly. All pairs must pass; an empty map always passes.
"""
from __future__ import annotations

from typing import Any, Mapping


class _Missing:
    __slots__ = ()

    def __repr__(self) -> str:
        return "MISSING"


MISSING: Any = _Missing()


def get_nested_value(payload: Any, path: str) -> Any:
    current = payload
    for segment in path.split("."):
        if isinstance(current, Mapping):
            if segment not in current:
                return MISSING
            current = current[segment]
        elif isinstance(current, (list, tuple)) and segment.isdecimal():
            index = int(segment)
            if index >= len(current):
                return MISSING
            current = current[index]
        else:
            return MISSING
    return current


def _same(actual: Any, expected: Any) -> bool:
    # True == 1 in Python; a filter on 1 must not match a boolean field.
    if isinstance(actual, bool) != isinstance(expected, bool):
        return False
    return actual == expected


def filter_passes(actual: Any, expected: Any) -> bool:
    if actual is MISSING:
        return False
    if isinstance(expected, (list, tuple, set, frozenset)):
        return any(_same(actual, option) for option in expected)
    return _same(actual, expected)


def matches_filters(payload: Any, filters: Mapping[str, Any] | None) -> bool:
    if not filters:
        return True
    return all(
        filter_passes(get_nested_value(payload, path), expected)
        for path, expected in filters.items()
    )
