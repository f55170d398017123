"""Shared primitives for chronicle.

This module holds the exception hierarchy, the sentinels used across the
engine, the search direction enum and the clock used to stamp revisions and
resolve "now" in temporal queries.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable


# =============================================================================
# Exceptions
# =============================================================================


class ChronicleError(Exception):
    """Base exception for all chronicle errors."""

    pass


class InvariantViolation(ChronicleError):
    """Raised when an operation would break the revision graph.

    Examples are starting a lineage for an entity that already has one, or a
    chain of revisions that loops back on itself. Never swallowed.
    """

    def __init__(self, message: str, revision_id: int | None = None) -> None:
        self.revision_id = revision_id
        if revision_id is not None:
            message = f"{message} (revision {revision_id})"
        super().__init__(message)


class PersistenceFailure(ChronicleError):
    """Raised when the database rejects a write.

    The transaction has been rolled back by the time this propagates, and the
    underlying ``SQLAlchemyError`` is available as ``__cause__``.
    """

    def __init__(self, operation: str, message: str) -> None:
        self.operation = operation
        super().__init__(f"Failed to {operation}: {message}")


class ClassificationUnknown(ChronicleError):
    """Raised by strict classification when a relation kind cannot be resolved."""

    def __init__(self, relation: str, kind: Any) -> None:
        self.relation = relation
        self.kind = kind
        super().__init__(f"Cannot classify relation '{relation}' of kind {kind!r}")


class EntityNotRegistered(ChronicleError):
    """Raised when a model is used for revisioning without being registered."""

    def __init__(self, model: type) -> None:
        self.model = model
        super().__init__(f"Model not registered for revisioning: {model.__name__}")


# =============================================================================
# Sentinels
# =============================================================================


@dataclass(frozen=True)
class Skipped:
    """Result of a revision attempt that a guard declined.

    Falsy, so callers can write ``if not engine.perform_revision(entity)``.

    Attributes:
        reason: Which guard declined.
        entity: The entity that was left untouched.
    """

    reason: str
    entity: Any = None

    def __bool__(self) -> bool:
        return False


SKIPPED = Skipped(reason="skipped")


class _Marker:
    """Named singleton used where ``None`` already carries meaning."""

    def __init__(self, name: str) -> None:
        self._name = name

    def __repr__(self) -> str:
        return self._name


#: Lift the timeline filter entirely.
ANY_TIMELINE: Any = _Marker("ANY_TIMELINE")

#: Let the query derive the timeline from its checkpoint bounds.
INHERIT: Any = _Marker("INHERIT")


# =============================================================================
# Enums
# =============================================================================


class Direction(str, Enum):
    """Direction of a nearest-checkpoint lookup."""

    OLDER = "older"
    NEWER = "newer"


# =============================================================================
# Clock
# =============================================================================


Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, the form stored in the database."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
