from __future__ import annotations

import enum
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Final

import sqlalchemy as sa
from sqlalchemy import orm
from sqlalchemy.sql import operators, visitors

from .datastructures import SqlExpr
from .errors import InvalidPreloadOption
from .tools import compose_filter


PRELOAD_INFO_KEY: Final[str] = "preload"

# accepted spellings of a string flag; anything else is rejected
_TRUE_VALUES: Final[frozenset[str]] = frozenset({"1", "t", "T", "TRUE", "true", "True"})
_FALSE_VALUES: Final[frozenset[str]] = frozenset({"0", "f", "F", "FALSE", "false", "False"})


class RelationKind(enum.Enum):
    ONE_TO_ONE = "has_one"
    ONE_TO_MANY = "has_many"
    MANY_TO_ONE = "belongs_to"
    MANY_TO_MANY = "many_to_many"


@dataclass(slots=True, frozen=True, eq=False)
class JoinTableHandler:
    """Association table of a many-to-many relationship.

    ``source_pairs`` holds ``(owner column, association column)`` pairs in
    declaration order; ``secondaryjoin`` links the association table to the
    target table.
    """

    table: sa.FromClause
    source_pairs: tuple[tuple[sa.ColumnElement[Any], sa.ColumnElement[Any]], ...]
    secondaryjoin: sa.ColumnElement[bool]

    def source_foreign_keys(self) -> tuple[sa.ColumnElement[Any], ...]:
        """Association columns that point back at the owner, in key order."""
        return tuple(column for _, column in self.source_pairs)

    def join_with_query(
        self,
        query: sa.Select[Any],
        parent: SqlExpr,
        owner_columns: Sequence[sa.ColumnElement[Any]],
        alias: str,
    ) -> sa.Select[Any]:
        """Join *query* through the association table, scoped to *parent* rows."""
        return query.join(self.table, self.secondaryjoin).where(
            compose_filter(parent, owner_columns, self.source_foreign_keys(), alias)
        )


@dataclass(slots=True, frozen=True, eq=False)
class Relationship:
    """Read-only description of one association, built at registration time.

    ``owner_columns`` are selected from the parent level's derived table and
    ``related_columns`` are matched against them with ``IN``. ``owner_fields``
    and ``related_fields`` are the mapped attribute names used to stitch rows
    back onto objects (``related_fields`` is empty for many-to-many, whose
    keys come from the association table).
    """

    key: str
    kind: RelationKind
    parent: type[Any]
    target: type[Any]
    owner_columns: tuple[sa.ColumnElement[Any], ...]
    related_columns: tuple[sa.ColumnElement[Any], ...]
    owner_fields: tuple[str, ...]
    related_fields: tuple[str, ...] = ()
    polymorphic_column: sa.ColumnElement[Any] | None = None
    polymorphic_value: Any = None
    join_table: JoinTableHandler | None = None
    preload: Any = None

    @property
    def polymorphic(self) -> tuple[sa.ColumnElement[Any], Any] | None:
        if self.polymorphic_column is None:
            return None

        return self.polymorphic_column, self.polymorphic_value


def parse_preload_option(field_name: str, value: Any) -> bool:
    """Interpret an eager-load flag: a bool, or one of the accepted boolean strings.

    Raises:
        InvalidPreloadOption: *value* is neither a bool nor a boolean spelling.
    """
    if isinstance(value, bool):
        return value

    if isinstance(value, str):
        if value in _TRUE_VALUES:
            return True
        if value in _FALSE_VALUES:
            return False

    raise InvalidPreloadOption(field_name, value)


def _attribute_keys(mapper: orm.Mapper[Any], columns: Sequence[sa.ColumnElement[Any]]) -> tuple[str, ...]:
    return tuple(mapper.get_property_by_column(column).key for column in columns)


def _find_discriminator(
    prop: orm.RelationshipProperty[Any],
) -> tuple[sa.ColumnElement[Any], Any] | None:
    """Find ``<target column> == <literal>`` inside the join condition."""
    table = prop.mapper.local_table
    for element in visitors.iterate(prop.primaryjoin):
        if not isinstance(element, sa.BinaryExpression) or element.operator is not operators.eq:
            continue

        for column, literal in (
            (element.left, element.right),
            (element.right, element.left),
        ):
            if not isinstance(literal, sa.BindParameter) or not isinstance(column, sa.Column):
                continue

            own = table.c.get(column.key)
            if own is not None and own.shares_lineage(column):
                return own, literal.effective_value

    return None


def describe_relationship(prop: orm.RelationshipProperty[Any]) -> Relationship:
    """Build the preload descriptor for a mapped relationship."""
    parent_mapper: orm.Mapper[Any] = prop.parent
    target_mapper: orm.Mapper[Any] = prop.mapper
    common: dict[str, Any] = {
        "key": prop.key,
        "parent": parent_mapper.class_,
        "target": target_mapper.class_,
        "preload": prop.info.get(PRELOAD_INFO_KEY),
    }

    if prop.direction is orm.MANYTOMANY:
        assert prop.secondary is not None
        source_pairs = tuple(prop.synchronize_pairs)
        owner_columns = tuple(owner for owner, _ in source_pairs)
        join_table = JoinTableHandler(
            table=prop.secondary,
            source_pairs=source_pairs,
            secondaryjoin=prop.secondaryjoin,  # type: ignore[arg-type]
        )
        return Relationship(
            kind=RelationKind.MANY_TO_MANY,
            owner_columns=owner_columns,
            related_columns=join_table.source_foreign_keys(),
            owner_fields=_attribute_keys(parent_mapper, owner_columns),
            join_table=join_table,
            **common,
        )

    local = tuple(local for local, _ in prop.local_remote_pairs)
    remote = tuple(remote for _, remote in prop.local_remote_pairs)

    if prop.direction is orm.MANYTOONE:
        return Relationship(
            kind=RelationKind.MANY_TO_ONE,
            owner_columns=local,
            related_columns=remote,
            owner_fields=_attribute_keys(parent_mapper, local),
            related_fields=_attribute_keys(target_mapper, remote),
            **common,
        )

    discriminator = _find_discriminator(prop)
    return Relationship(
        kind=RelationKind.ONE_TO_MANY if prop.uselist else RelationKind.ONE_TO_ONE,
        owner_columns=local,
        related_columns=remote,
        owner_fields=_attribute_keys(parent_mapper, local),
        related_fields=_attribute_keys(target_mapper, remote),
        polymorphic_column=discriminator[0] if discriminator else None,
        polymorphic_value=discriminator[1] if discriminator else None,
        **common,
    )
