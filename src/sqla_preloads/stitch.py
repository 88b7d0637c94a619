"""Helpers that attach fetched rows to already loaded objects.

Composite keys are plain tuples of attribute values read in a fixed order,
so grouping relies on tuple equality and hashing.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import Any, TypeVar

from sqlalchemy.orm import attributes


_O = TypeVar("_O")


def key_of(obj: object, fields: Sequence[str]) -> tuple[Any, ...]:
    return tuple(getattr(obj, name) for name in fields)


def group_by(objects: Iterable[_O], fields: Sequence[str]) -> dict[tuple[Any, ...], list[_O]]:
    """Group *objects* by their key tuple, keeping the input order inside each group."""
    groups: dict[tuple[Any, ...], list[_O]] = {}
    for obj in objects:
        groups.setdefault(key_of(obj, fields), []).append(obj)

    return groups


def is_loaded(obj: object, key: str) -> bool:
    return key in attributes.instance_dict(obj)


def loaded_value(obj: object, key: str) -> Any:
    """Return the loaded value of attribute *key*, or ``None`` without triggering a load."""
    return attributes.instance_dict(obj).get(key)


def set_value(obj: object, key: str, value: Any) -> None:
    """Assign an association as if it had been loaded from the database."""
    attributes.set_committed_value(obj, key, value)


def has_elements(value: Any) -> bool:
    if value is None:
        return False

    if isinstance(value, (list, tuple, set, frozenset)):
        return len(value) > 0

    return True


def unique(objects: Iterable[_O]) -> list[_O]:
    """Drop repeated objects (by identity), keeping first-seen order."""
    seen: dict[int, _O] = {}
    for obj in objects:
        seen.setdefault(id(obj), obj)

    return list(seen.values())


def collect(objects: Iterable[object], key: str) -> list[Any]:
    """Flatten the loaded values of association *key* across *objects*."""
    out: list[Any] = []
    for obj in objects:
        value = loaded_value(obj, key)
        if value is None:
            continue

        if isinstance(value, (list, tuple, set, frozenset)):
            out.extend(value)
        else:
            out.append(value)

    return unique(out)
