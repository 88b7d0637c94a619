from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any, ClassVar, final

from sqlalchemy import orm

from .datastructures import frozendict
from .relationships import Relationship, describe_relationship


@final
class Node:
    """Singleton registry of preloadable relationships per mapped class.

    Descriptors are built once by :func:`get_node` and looked up by
    ``(model, key)`` while resolving preload paths. The registry is read-only
    once initialized, so it is safe to share between concurrent sessions.
    """

    __instance: ClassVar[Node | None] = None
    _node: Mapping[type[Any], Sequence[Relationship]]
    _index: Mapping[type[Any], Mapping[str, Relationship]]

    def __new__(
        cls,
        node: Mapping[type[Any], Sequence[Relationship]] | None = None,
    ) -> Node:
        if cls.__instance is None:
            instance = super().__new__(cls)
            if node is not None:
                instance.set_node(node)

            cls.__instance = instance

        if not getattr(cls.__instance, "_node", None):
            raise RuntimeError("Node is not initialized or empty")

        return cls.__instance

    def get(self, model: type[Any]) -> Sequence[Relationship]:
        """Get relationships for a model, returning empty sequence if not found."""
        return self.node.get(model, ())

    def find(self, model: type[Any], key: str) -> Relationship | None:
        """Look up the relationship *key* of *model*, or ``None``."""
        relations = self._index.get(model)
        return relations.get(key) if relations is not None else None

    @property
    def node(self) -> Mapping[type[Any], Sequence[Relationship]]:
        """The underlying model-to-relationships mapping (read-only)."""
        return self._node

    def set_node(self, node: Mapping[type[Any], Sequence[Relationship]]) -> None:
        """Set the relationship mapping for this node instance."""
        self._node = node
        self._index = frozendict({
            model: frozendict({rel.key: rel for rel in relations})
            for model, relations in node.items()
        })

    @classmethod
    def reset(cls) -> None:
        """Destroy the singleton, allowing re-initialization (primarily for tests)."""
        cls._node = {}
        cls._index = {}
        cls.__instance = None


def get_node(
    base: type[orm.DeclarativeBase],
) -> Mapping[type[Any], Sequence[Relationship]]:
    """Describe every relationship mapped on the registry of *base*.

    Args:
        base: SQLAlchemy declarative base class.

    Returns:
        Frozen dictionary mapping model classes to relationship descriptors.

    Raises:
        AssertionError: If base is not a subclass of orm.DeclarativeBase.
    """
    assert orm.DeclarativeBase in getattr(base, "__bases__", ()), (
        "base must be a subclass of orm.DeclarativeBase"
    )

    return frozendict({
        mapper.class_: tuple(describe_relationship(rel) for rel in mapper.relationships.values())
        for mapper in base.registry.mappers
    })


def init_node(node: Mapping[type[Any], Sequence[Relationship]]) -> None:
    """Initialize the global Node singleton.

    Call once at startup, after all models are imported::

        init_node(get_node(Base))
    """
    Node(node)
