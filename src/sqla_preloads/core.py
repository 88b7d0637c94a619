from __future__ import annotations

import logging
import sys
from collections.abc import Callable, Iterable, Mapping, Sequence
from contextlib import closing
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Final, Generic, TypeVar, Union


if sys.version_info >= (3, 11):
    from typing import Self, TypedDict, Unpack
else:
    from typing_extensions import Self, TypedDict, Unpack

import sqlalchemy as sa
from sqlalchemy import exc as sa_exc
from sqlalchemy import orm

from .datastructures import Condition, PreloadRequest, PreloadState, SqlExpr
from .errors import (
    InvalidPreloadOption,
    PreloadError,
    QueryExecutionError,
    UnresolvedAssociation,
    UnsupportedRelationKind,
)
from .node import Node
from .relationships import RelationKind, Relationship, parse_preload_option
from .stitch import (
    collect,
    group_by,
    has_elements,
    is_loaded,
    key_of,
    loaded_value,
    set_value,
    unique,
)
from .tools import apply_scopes, compose_filter, get_entity, split_conditions, unique_scalars


if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__.split(".")[0])

T = TypeVar("T", bound=orm.DeclarativeBase)

SKIP_PRELOAD_OPTION: Final[str] = "skip_preload"

_ALIAS_PREFIXES: Final[dict[RelationKind, str]] = {
    RelationKind.ONE_TO_ONE: "ho",
    RelationKind.ONE_TO_MANY: "hm",
    RelationKind.MANY_TO_ONE: "bt",
    RelationKind.MANY_TO_MANY: "mm",
}


class PreloadContext(Generic[T]):
    """State of one preload pass over the results of a single root select.

    Holds the registered requests, the memo of loaded path prefixes and the
    errors recorded while loading. A context belongs to one query execution;
    create a new one per query.

    Example::

        context = PreloadContext(session, sa.select(User)).preload("posts.comments")
        users = session.scalars(context.statement).all()
        context.apply(users)
        context.raise_for_error()
    """

    __slots__ = (
        "auto_preload",
        "errors",
        "model",
        "node",
        "requests",
        "session",
        "state",
        "statement",
    )

    def __init__(
        self,
        session: orm.Session,
        statement: sa.Select[tuple[T]],
        *,
        node: Node | None = None,
        requests: Iterable[PreloadRequest] = (),
        auto_preload: bool = False,
    ) -> None:
        self.session = session
        self.statement = statement
        self.model: type[T] = get_entity(statement)
        self.node = node if node is not None else Node()
        self.requests: list[PreloadRequest] = list(requests)
        self.auto_preload = auto_preload
        self.state = PreloadState()
        self.errors: list[PreloadError] = []

    def preload(self, path: str, *conditions: Condition) -> Self:
        """Register *path*; *conditions* apply to its last segment only."""
        self.requests.append(PreloadRequest(path, conditions))
        return self

    @property
    def error(self) -> PreloadError | None:
        return self.errors[0] if self.errors else None

    def record(self, error: PreloadError) -> None:
        logger.warning("Preload of %s failed: %s", self.model.__name__, error)
        self.errors.append(error)

    def raise_for_error(self) -> None:
        """Raise the first recorded error, if any."""
        if self.errors:
            raise self.errors[0]

    def apply(self, objects: T | Iterable[T] | None) -> None:
        apply_preloads(self, objects)


@dataclass(slots=True)
class _LevelParams:
    relationship: Relationship
    parents: list[Any]
    parent_query: SqlExpr
    conditions: tuple[Condition, ...]
    path: str

    @property
    def alias(self) -> str:
        return f"{_ALIAS_PREFIXES[self.relationship.kind]}_{self.relationship.key}"


def auto_preload(relationships: Iterable[Relationship]) -> list[PreloadRequest]:
    """Requests for every relationship whose eager-load flag is set.

    Relationships opt in through ``info={"preload": True}`` (or a boolean
    string such as ``"true"``); relationships without the flag are skipped.

    Raises:
        InvalidPreloadOption: A flag is not a boolean. :func:`apply_preloads`
            records it and skips the whole pass, explicit paths included.
    """
    requests: list[PreloadRequest] = []
    for relationship in relationships:
        if relationship.preload is None:
            continue

        if parse_preload_option(relationship.key, relationship.preload):
            requests.append(PreloadRequest(relationship.key))

    return requests


def apply_preloads(context: PreloadContext[T], objects: T | Iterable[T] | None) -> None:
    """Load every registered path onto *objects*, the rows of ``context.statement``.

    Paths run in registration order, segments in path order. Prefixes already
    loaded by an earlier path (or an earlier call on the same context) are not
    queried again; their stored select scopes the next level instead. The
    first error stops the pass, leaving earlier assignments in place.

    With ``auto_preload`` set, flags are read before anything is queried: an
    invalid flag is recorded and no path runs, not even the explicit ones.
    """
    if context.errors:
        return

    requests = list(context.requests)
    if context.auto_preload:
        try:
            requests += auto_preload(context.node.get(context.model))
        except InvalidPreloadOption as exc:
            context.record(exc)
            return

    if objects is None:
        roots: list[Any] = []
    elif isinstance(objects, Iterable):
        roots = unique(objects)
    else:
        roots = [objects]

    root_query = SqlExpr(context.statement).cleaned()
    for request in requests:
        if not _resolve(context, request, roots, root_query):
            return


def _resolve(
    context: PreloadContext[Any],
    request: PreloadRequest,
    roots: list[Any],
    root_query: SqlExpr,
) -> bool:
    segments = request.segments
    last = len(segments) - 1
    model: type[Any] = context.model
    parents = roots
    parent_query = root_query

    for idx, segment in enumerate(segments):
        prefix = ".".join(segments[: idx + 1])
        if (stored := context.state.parent_for(".".join(segments[:idx]))) is not None:
            parent_query = stored.cleaned()

        relationship = context.node.find(model, segment)
        if relationship is None:
            context.record(UnresolvedAssociation(segment, model))
            return False

        if context.state.is_loaded(prefix):
            logger.debug("Preload %r already loaded, reusing its query", prefix)
        else:
            loader = _LOADERS.get(relationship.kind)
            if loader is None:
                context.record(UnsupportedRelationKind(relationship.kind, relationship))
                return False

            expr = loader(
                context,
                _LevelParams(
                    relationship=relationship,
                    parents=parents,
                    parent_query=parent_query,
                    conditions=request.conditions if idx == last else (),
                    path=prefix,
                ),
            )
            if context.errors:
                return False

            context.state.mark(prefix, expr)

        if idx < last:
            parents = collect(parents, segment)
            if not parents:
                logger.debug("Preload %r has no rows, skipping %r", prefix, request.path)
                return True

            model = relationship.target

    return True


def _nested_query(params: _LevelParams, *, polymorphic: bool = False) -> sa.Select[Any]:
    relationship = params.relationship
    scopes, terms = split_conditions(params.conditions)
    query = apply_scopes(sa.select(relationship.target), scopes)

    return query.where(
        compose_filter(
            params.parent_query,
            relationship.owner_columns,
            relationship.related_columns,
            params.alias,
            polymorphic=relationship.polymorphic if polymorphic else None,
        ),
        *terms,
    ).execution_options(**{SKIP_PRELOAD_OPTION: True})


def _fetch(context: PreloadContext[Any], query: sa.Select[Any], path: str) -> Sequence[Any] | None:
    logger.debug("Preloading %r: %s", path, query)
    try:
        return unique_scalars(context.session.execute(query))
    except sa_exc.SQLAlchemyError as exc:
        context.record(_query_error(path, exc))
        return None


def _query_error(path: str, exc: sa_exc.SQLAlchemyError) -> QueryExecutionError:
    error = QueryExecutionError(path)
    error.__cause__ = exc
    return error


def _clear_unmatched(parents: Iterable[Any], key: str, matched: set[int]) -> None:
    """Set ``None`` on parents that got no row and had nothing loaded yet."""
    for parent in parents:
        if id(parent) not in matched and not is_loaded(parent, key):
            set_value(parent, key, None)


def _load_has_one(context: PreloadContext[Any], params: _LevelParams) -> SqlExpr:
    if not params.parents:
        return params.parent_query

    relationship = params.relationship
    query = _nested_query(params, polymorphic=True)
    results = _fetch(context, query, params.path)
    if results is None:
        return SqlExpr(query)

    # duplicate keys: the last row in result order wins
    by_key = {key_of(result, relationship.related_fields): result for result in results}
    matched: set[int] = set()
    for parent in params.parents:
        result = by_key.get(key_of(parent, relationship.owner_fields))
        if result is not None:
            set_value(parent, relationship.key, result)
            matched.add(id(parent))

    _clear_unmatched(params.parents, relationship.key, matched)
    return SqlExpr(query)


def _load_has_many(context: PreloadContext[Any], params: _LevelParams) -> SqlExpr:
    if not params.parents:
        return params.parent_query

    relationship = params.relationship
    query = _nested_query(params, polymorphic=True)
    results = _fetch(context, query, params.path)
    if results is None:
        return SqlExpr(query)

    groups = group_by(results, relationship.related_fields)
    for parent in params.parents:
        group = groups.get(key_of(parent, relationship.owner_fields), ())
        set_value(parent, relationship.key, list(group))

    return SqlExpr(query)


def _load_belongs_to(context: PreloadContext[Any], params: _LevelParams) -> SqlExpr:
    if not params.parents:
        return params.parent_query

    relationship = params.relationship
    query = _nested_query(params)
    results = _fetch(context, query, params.path)
    if results is None:
        return SqlExpr(query)

    owners = group_by(params.parents, relationship.owner_fields)
    matched: set[int] = set()
    for result in results:
        for parent in owners.get(key_of(result, relationship.related_fields), ()):
            set_value(parent, relationship.key, result)
            matched.add(id(parent))

    _clear_unmatched(params.parents, relationship.key, matched)
    return SqlExpr(query)


def _load_many_to_many(context: PreloadContext[Any], params: _LevelParams) -> SqlExpr:
    """Load through the association table, decoding its owner keys per row.

    Parents whose collection is already non-empty are left alone; callers
    must not mutate the collection while the pass runs.
    """
    if not params.parents:
        return params.parent_query

    relationship = params.relationship
    handler = relationship.join_table
    if handler is None:
        context.record(UnsupportedRelationKind(relationship.kind, relationship))
        return params.parent_query

    scopes, terms = split_conditions(params.conditions)
    entity_query = (
        handler.join_with_query(
            apply_scopes(sa.select(relationship.target), scopes),
            params.parent_query,
            relationship.owner_columns,
            params.alias,
        )
        .where(*terms)
        .execution_options(**{SKIP_PRELOAD_OPTION: True})
    )
    source_keys = handler.source_foreign_keys()
    query = entity_query.add_columns(*source_keys)

    links: dict[tuple[Any, ...], list[Any]] = {}
    logger.debug("Preloading %r: %s", params.path, query)
    try:
        with closing(context.session.execute(query)) as rows:
            for row in rows:
                links.setdefault(tuple(row[-len(source_keys) :]), []).append(row[0])
    except sa_exc.SQLAlchemyError as exc:
        context.record(_query_error(params.path, exc))
        return SqlExpr(entity_query)

    for key, parents in group_by(params.parents, relationship.owner_fields).items():
        for parent in parents:
            if has_elements(loaded_value(parent, relationship.key)):
                continue

            set_value(parent, relationship.key, list(links.get(key, ())))

    return SqlExpr(entity_query)


_LOADERS: Final[dict[RelationKind, Callable[[PreloadContext[Any], _LevelParams], SqlExpr]]] = {
    RelationKind.ONE_TO_ONE: _load_has_one,
    RelationKind.ONE_TO_MANY: _load_has_many,
    RelationKind.MANY_TO_ONE: _load_belongs_to,
    RelationKind.MANY_TO_MANY: _load_many_to_many,
}


class _PreloadParamsType(TypedDict, total=False):
    conditions: Mapping[str, Union[Condition, Sequence[Condition]]]
    auto_preload: bool
    node: Node


def _as_conditions(value: Condition | Sequence[Condition] | None) -> tuple[Condition, ...]:
    if value is None:
        return ()

    if isinstance(value, (list, tuple)):
        return tuple(value)

    return (value,)


def sqla_preload(
    session: orm.Session,
    statement: sa.Select[tuple[T]],
    *paths: str,
    **params: Unpack[_PreloadParamsType],
) -> Sequence[T]:
    """Execute a single-entity select and preload association paths onto its rows.

    Args:
        session: Session used for the root query and every preload query.
        statement: ``sa.select(Model)``, optionally filtered/ordered/limited.
        *paths: Dotted association paths, e.g. ``"posts.comments"``.
        conditions: Mapping of path to a condition or tuple of conditions.
            Each condition is a ``Select -> Select`` callable (see
            :func:`add_conditions`) or a boolean column expression; it filters
            the last segment of that path only.
        auto_preload: Also load relationships flagged with ``info={"preload": True}``.
        node: Relationship registry. Defaults to the ``Node`` singleton.

    Returns:
        The unique root objects, in query order.

    Raises:
        PreloadError: The first error recorded during the pass.

    Examples:
        Nested paths sharing a prefix (``posts`` is queried once)::

            users = sqla_preload(session, sa.select(User), "posts.comments", "posts.tags")

        Filtering the deepest association::

            users = sqla_preload(
                session,
                sa.select(User),
                "roles",
                conditions={"roles": add_conditions(Role.level > 3)},
            )
    """
    context = PreloadContext(
        session,
        statement,
        node=params.get("node"),
        auto_preload=params.get("auto_preload", False),
    )
    conditions = params.get("conditions") or {}
    for path in paths:
        context.preload(path, *_as_conditions(conditions.get(path)))

    objects = unique_scalars(
        session.execute(statement.execution_options(**{SKIP_PRELOAD_OPTION: True}))
    )
    context.apply(objects)
    context.raise_for_error()

    return objects


async def asqla_preload(
    session: AsyncSession,
    statement: sa.Select[tuple[T]],
    *paths: str,
    **params: Unpack[_PreloadParamsType],
) -> Sequence[T]:
    """Async counterpart of :func:`sqla_preload`, run through ``AsyncSession.run_sync``."""
    return await session.run_sync(sqla_preload, statement, *paths, **params)
