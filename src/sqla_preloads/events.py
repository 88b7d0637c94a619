"""Run preloads from inside ``Session.execute`` via the ``do_orm_execute`` event.

Install the hook once, then attach paths to any single-entity select::

    install(Session)
    stmt = with_preloads(sa.select(User), "posts.comments", "roles")
    users = session.scalars(stmt).all()

Statements issued by the preload engine itself carry the ``skip_preload``
execution option, so the hook never re-triggers on them.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any, Final, TypeVar, Union

import sqlalchemy as sa
from sqlalchemy import event, orm

from .core import SKIP_PRELOAD_OPTION, PreloadContext, _as_conditions
from .datastructures import Condition, PreloadRequest
from .node import Node


T = TypeVar("T", bound=orm.DeclarativeBase)

PRELOADS_OPTION: Final[str] = "preloads"
AUTO_PRELOAD_OPTION: Final[str] = "auto_preload"
PRELOAD_NODE_OPTION: Final[str] = "preload_node"

_EVENT: Final[str] = "do_orm_execute"


def with_preloads(
    statement: sa.Select[tuple[T]],
    *paths: str,
    conditions: Mapping[str, Union[Condition, Sequence[Condition]]] | None = None,
    auto_preload: bool = False,
    node: Node | None = None,
) -> sa.Select[tuple[T]]:
    """Attach preload paths to *statement*; they run when it is executed.

    Paths already attached by an earlier call are kept, new ones appended.
    """
    conditions = conditions or {}
    requests = tuple(
        PreloadRequest(path, _as_conditions(conditions.get(path))) for path in paths
    )
    existing: tuple[PreloadRequest, ...] = statement.get_execution_options().get(
        PRELOADS_OPTION, ()
    )
    options: dict[str, Any] = {PRELOADS_OPTION: (*existing, *requests)}
    if auto_preload:
        options[AUTO_PRELOAD_OPTION] = True
    if node is not None:
        options[PRELOAD_NODE_OPTION] = node

    return statement.execution_options(**options)


def _apply_preloads_hook(orm_execute_state: orm.ORMExecuteState) -> sa.Result[Any] | None:
    if (
        not orm_execute_state.is_select
        or orm_execute_state.is_relationship_load
        or orm_execute_state.is_column_load
    ):
        return None

    options = orm_execute_state.execution_options
    if options.get(SKIP_PRELOAD_OPTION):
        return None

    requests: tuple[PreloadRequest, ...] = options.get(PRELOADS_OPTION, ())
    auto = bool(options.get(AUTO_PRELOAD_OPTION, False))
    if not requests and not auto:
        return None

    statement = orm_execute_state.statement
    assert isinstance(statement, sa.Select), "preloads only apply to select statements"
    # nested levels embed the root select, so execute-time values must travel with it
    parameters = orm_execute_state.parameters
    if isinstance(parameters, Mapping) and parameters:
        statement = statement.params(parameters)

    context: PreloadContext[Any] = PreloadContext(
        orm_execute_state.session,
        statement,
        node=options.get(PRELOAD_NODE_OPTION),
        requests=requests,
        auto_preload=auto,
    )
    frozen = orm_execute_state.invoke_statement(
        execution_options={SKIP_PRELOAD_OPTION: True}
    ).freeze()
    context.apply(frozen().unique().scalars().all())
    context.raise_for_error()

    return frozen()


def install(target: Any = orm.Session) -> None:
    """Listen for preload options on *target* (Session class, sessionmaker or session)."""
    if not event.contains(target, _EVENT, _apply_preloads_hook):
        event.listen(target, _EVENT, _apply_preloads_hook)


def uninstall(target: Any = orm.Session) -> None:
    if event.contains(target, _EVENT, _apply_preloads_hook):
        event.remove(target, _EVENT, _apply_preloads_hook)


def is_installed(target: Any = orm.Session) -> bool:
    return event.contains(target, _EVENT, _apply_preloads_hook)
