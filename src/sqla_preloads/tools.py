from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from typing import Any, TypeVar

import sqlalchemy as sa
from sqlalchemy import orm

from .datastructures import Condition, SqlExpr


T = TypeVar("T", bound=orm.DeclarativeBase)
_R = TypeVar("_R")


def unique_scalars(result: sa.Result[tuple[_R]]) -> Sequence[_R]:
    """Shorthand for ``result.unique().scalars().all()``.

    Every preload query goes through this, so loader options that join
    collections (``joinedload``) in a scope function keep working.
    """
    return result.unique().scalars().all()


def add_conditions(
    *conditions: sa.ColumnExpressionArgument[bool],
) -> Callable[[sa.Select[tuple[T]]], sa.Select[tuple[T]]]:
    """Create a scope function that adds WHERE conditions to a preload query.

    Args:
        *conditions: SQLAlchemy column expressions that evaluate to boolean.

    Returns:
        A function that takes a select query and returns it with added conditions.

    Example:
        >>> only_senior = add_conditions(Role.level > 3)
        >>> users = sqla_preload(
        ...     session, sa.select(User), "roles", conditions={"roles": only_senior}
        ... )
    """

    def _add(query: sa.Select[tuple[T]]) -> sa.Select[tuple[T]]:
        return query.where(*conditions)

    return _add


def split_conditions(
    conditions: Iterable[Condition],
) -> tuple[list[Callable[[sa.Select[Any]], sa.Select[Any]]], list[sa.ColumnElement[bool]]]:
    """Partition *conditions* into scope functions and literal WHERE terms."""
    scopes: list[Callable[[sa.Select[Any]], sa.Select[Any]]] = []
    terms: list[sa.ColumnElement[bool]] = []
    for condition in conditions:
        if isinstance(condition, sa.ClauseElement):
            terms.append(condition)  # type: ignore[arg-type]
        elif callable(condition):
            scopes.append(condition)
        else:
            raise TypeError(f"Unsupported preload condition: {condition!r}")

    return scopes, terms


def apply_scopes(
    query: sa.Select[Any],
    scopes: Iterable[Callable[[sa.Select[Any]], sa.Select[Any]]],
) -> sa.Select[Any]:
    for scope in scopes:
        query = scope(query)

    return query


def compose_filter(
    parent: SqlExpr,
    owner_columns: Sequence[sa.ColumnElement[Any]],
    related_columns: Sequence[sa.ColumnElement[Any]],
    alias: str,
    *,
    polymorphic: tuple[sa.ColumnElement[Any], Any] | None = None,
) -> sa.ColumnElement[bool]:
    """Build ``related IN (SELECT owner FROM (<parent>) AS alias)``.

    The parent select is wrapped as a derived table so the nested level is
    scoped to exactly the rows the parent level selected. Composite keys use
    row-value containment: ``(c1, c2) IN (SELECT c1, c2 FROM ...)``.

    Args:
        parent: Select of the enclosing preload level.
        owner_columns: Columns read from the derived table.
        related_columns: Columns tested for containment, pairwise with *owner_columns*.
        alias: Name of the derived table.
        polymorphic: Optional ``(discriminator column, value)`` conjunct.

    Returns:
        Boolean clause for the nested query's WHERE.
    """
    if len(owner_columns) != len(related_columns) or not owner_columns:
        raise ValueError(
            f"Mismatched key columns for {alias!r}: "
            f"{len(owner_columns)} owner vs {len(related_columns)} related"
        )

    derived = parent.statement.subquery(name=alias)
    subquery = sa.select(*(_derived_column(derived, column) for column in owner_columns)).correlate(
        None
    )

    clause: sa.ColumnElement[bool] = (
        related_columns[0].in_(subquery)
        if len(related_columns) == 1
        else sa.tuple_(*related_columns).in_(subquery)
    )
    if polymorphic is not None:
        column, value = polymorphic
        clause = sa.and_(clause, column == value)

    return clause


def _derived_column(derived: sa.Subquery, column: sa.ColumnElement[Any]) -> sa.ColumnElement[Any]:
    """Map a table column onto the derived table's matching column."""
    found = derived.corresponding_column(column)
    if found is not None:
        return found

    try:
        return derived.c[column.key]  # type: ignore[index]
    except KeyError:
        raise ValueError(
            f"Column {column.key!r} not found in derived table {derived.name!r}. "
            f"Available: {[c.key for c in derived.c]}"
        ) from None


def get_entity(statement: sa.Select[Any]) -> type[Any]:
    """Return the mapped class selected by a single-entity *statement*.

    Raises:
        TypeError: The statement selects anything but exactly one plain entity.
    """
    descriptions = statement.column_descriptions
    if len(descriptions) == 1:
        # core-only selects carry no "entity" key
        entity = descriptions[0].get("entity")
        if entity is not None and descriptions[0]["expr"] is entity:
            return entity

    raise TypeError("preloads require a select of exactly one mapped entity")
