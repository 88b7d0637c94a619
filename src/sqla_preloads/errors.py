"""Exception classes raised or recorded by the preload engine.

Loader and resolver failures are not raised mid-pass: they are appended to
``PreloadContext.errors`` and surfaced once by ``raise_for_error()``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any


if TYPE_CHECKING:
    from .relationships import Relationship


class PreloadError(Exception):
    """Base class for errors specific to preload processing."""


class UnresolvedAssociation(PreloadError, LookupError):
    """A path segment does not name a relationship on the current model."""

    def __init__(self, field: str, model: type[Any]) -> None:
        self.field = field
        self.model = model
        super().__init__(f"can't preload field {field!r} for {model.__name__}")


class UnsupportedRelationKind(PreloadError):
    """The relationship kind has no registered loader."""

    def __init__(self, kind: Any, relationship: Relationship) -> None:
        self.kind = kind
        self.relationship = relationship
        super().__init__(
            f"unsupported relation {kind!r} for "
            f"{relationship.parent.__name__}.{relationship.key}"
        )


class InvalidPreloadOption(PreloadError, ValueError):
    """The eager-load flag of a relationship is not a boolean."""

    def __init__(self, field: str, value: Any) -> None:
        self.field = field
        self.value = value
        super().__init__(f"invalid preload option {value!r} on field {field!r}")


class QueryExecutionError(PreloadError):
    """A preload query failed; the original error is the ``__cause__``."""

    def __init__(self, path: str) -> None:
        self.path = path
        super().__init__(f"preload query for {path!r} failed")
