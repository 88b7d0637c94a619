from __future__ import annotations

import sys
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any, TypeVar, Union


if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self

import sqlalchemy as sa


K = TypeVar("K")
V = TypeVar("V")

Condition = Union[
    Callable[[sa.Select[Any]], sa.Select[Any]],
    sa.ColumnElement[bool],
]


class frozendict(Mapping[K, V]):  # noqa: N801
    """Immutable, hashable mapping.

    Backs the relationship registry (``Node``) so that the model table can be
    shared freely and used as a cache key.

    Example:
        >>> fd = frozendict({"posts": 1})
        >>> fd.copy(roles=2)
        <frozendict {'posts': 1, 'roles': 2}>
    """

    __slots__ = ("_dict", "_hash")

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        self._dict: dict[K, V] = dict(*args, **kwargs)
        self._hash: int | None = None

    def __getitem__(self, key: K) -> V:
        return self._dict[key]

    def __contains__(self, key: Any) -> bool:
        return key in self._dict

    def copy(self, **add_or_replace: Any) -> Self:
        """Return a new frozendict with *add_or_replace* merged in."""
        return type(self)(self, **add_or_replace)

    def __iter__(self) -> Iterator[K]:
        return iter(self._dict)

    def __len__(self) -> int:
        return len(self._dict)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self._dict!r}>"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, frozendict):
            return self._dict == other._dict

        if isinstance(other, dict):
            return self._dict == other

        return NotImplemented

    def __hash__(self) -> int:
        # computed lazily: values such as relationship tuples are only hashed on demand
        if self._hash is None:
            self._hash = hash(frozenset(self._dict.items()))

        return self._hash


@dataclass(slots=True, frozen=True)
class PreloadRequest:
    """A registered preload: a dotted association path plus its conditions.

    Conditions apply to the last segment only. Each one is either a callable
    taking and returning a ``Select`` (see :func:`~sqla_preloads.add_conditions`)
    or a boolean column expression added to the nested ``WHERE``.
    """

    path: str
    conditions: tuple[Condition, ...] = ()

    def __post_init__(self) -> None:
        if not self.path or any(not segment for segment in self.path.split(".")):
            raise ValueError(f"Invalid preload path {self.path!r}")

    @property
    def segments(self) -> tuple[str, ...]:
        return tuple(self.path.split("."))


@dataclass(slots=True, frozen=True)
class SqlExpr:
    """Snapshot of the select that scopes one preload level."""

    statement: sa.Select[Any]

    @property
    def sql(self) -> str:
        """Rendered SQL text (default dialect)."""
        return str(self.statement)

    @property
    def params(self) -> dict[str, Any]:
        """Bound parameters in compile order."""
        return dict(self.statement.compile().params)

    def cleaned(self) -> SqlExpr:
        """Return a copy without ``ORDER BY``.

        Ordering is kept when the select is windowed by ``LIMIT``/``OFFSET``,
        since it decides which rows the window holds.
        """
        stmt = self.statement
        if stmt._limit_clause is not None or stmt._offset_clause is not None:  # noqa: SLF001
            return self

        return SqlExpr(stmt.order_by(None))


@dataclass(slots=True)
class PreloadState:
    """Per-context memo of loaded path prefixes and their scoping selects."""

    preloaded: set[str] = field(default_factory=set)
    parent_queries: dict[str, SqlExpr] = field(default_factory=dict)

    def is_loaded(self, prefix: str) -> bool:
        return prefix in self.preloaded

    def parent_for(self, prefix: str) -> SqlExpr | None:
        return self.parent_queries.get(prefix)

    def mark(self, prefix: str, expr: SqlExpr) -> None:
        """Record *prefix* as loaded and *expr* as the scope for its children."""
        self.preloaded.add(prefix)
        self.parent_queries[prefix] = expr
