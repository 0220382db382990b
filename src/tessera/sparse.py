"""Index-addressed list insertion for out-of-order stream events."""

from __future__ import annotations

from collections.abc import Callable
from typing import TypeVar

T = TypeVar("T")


def upsert(
    items: list[T | None],
    index: int,
    value: T,
    merge: Callable[[T, T], T] | None = None,
) -> T:
    """Place *value* at *index*, padding any gap with ``None``.

    An occupied slot is replaced, or combined with ``merge(existing, value)``
    when *merge* is given. The list never shrinks. Returns the stored value.
    """
    if index < 0:
        raise ValueError(f"index must be non-negative, got {index}")

    if index < len(items):
        existing = items[index]
        if existing is not None and merge is not None:
            value = merge(existing, value)
        items[index] = value
        return value

    items.extend([None] * (index - len(items)))
    items.append(value)
    return value


def get(items: list[T | None], index: int | None) -> T | None:
    """Return the element at *index*, or ``None`` for gaps and out-of-range."""
    if index is None or index < 0 or index >= len(items):
        return None
    return items[index]
