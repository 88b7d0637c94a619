"""Level-by-level eager loading of relationships for SQLAlchemy.

sqla_preloads loads dotted association paths (``"posts.comments"``) onto the
rows of a root select with one extra query per path segment. Each nested
query is scoped to the parent level through a derived table built from the
parent's own select, and shared prefixes are loaded once. Initialize a
``Node`` singleton at startup with your declarative base, then call
``sqla_preload(session, sa.select(Model), "path", ...)``.
"""

from ._version import __version__, __version_tuple__
from .core import (
    SKIP_PRELOAD_OPTION,
    PreloadContext,
    apply_preloads,
    asqla_preload,
    auto_preload,
    sqla_preload,
)
from .datastructures import PreloadRequest, PreloadState, SqlExpr, frozendict
from .errors import (
    InvalidPreloadOption,
    PreloadError,
    QueryExecutionError,
    UnresolvedAssociation,
    UnsupportedRelationKind,
)
from .events import install, is_installed, uninstall, with_preloads
from .node import Node, get_node, init_node
from .relationships import (
    JoinTableHandler,
    RelationKind,
    Relationship,
    describe_relationship,
    parse_preload_option,
)
from .tools import add_conditions, compose_filter, get_entity, unique_scalars


__all__ = (
    "SKIP_PRELOAD_OPTION",
    "InvalidPreloadOption",
    "JoinTableHandler",
    "Node",
    "PreloadContext",
    "PreloadError",
    "PreloadRequest",
    "PreloadState",
    "QueryExecutionError",
    "RelationKind",
    "Relationship",
    "SqlExpr",
    "UnresolvedAssociation",
    "UnsupportedRelationKind",
    "__version__",
    "__version_tuple__",
    "add_conditions",
    "apply_preloads",
    "asqla_preload",
    "auto_preload",
    "compose_filter",
    "describe_relationship",
    "frozendict",
    "get_entity",
    "get_node",
    "init_node",
    "install",
    "is_installed",
    "parse_preload_option",
    "sqla_preload",
    "uninstall",
    "unique_scalars",
    "with_preloads",
)
