"""Relation descriptors.

Relations are declared explicitly when an entity is registered; nothing is
discovered by inspecting the model at runtime. Each descriptor carries the
data the revision engine needs to cascade a revision across it.

Example:
    >>> from chronicle.relations import owned_many, parent, pivot
    >>> relations = [
    ...     parent("group", Group, foreign_key="group_id"),
    ...     owned_many("servers", Server, foreign_key="environment_id"),
    ...     pivot("clusters", cluster_server, local_key="server_id",
    ...           remote_key="cluster_id"),
    ... ]
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from sqlalchemy import Table


# =============================================================================
# Relation Kinds
# =============================================================================


class RelationKind(str, Enum):
    """How a relation takes part in a revision."""

    PARENT = "parent"
    OWNED_SINGLE = "owned_single"
    OWNED_MULTIPLE = "owned_multiple"
    PIVOT = "pivot"
    UNKNOWN = "unknown"

    @property
    def is_child(self) -> bool:
        """Owned rows that follow their owner into the new revision."""
        return self in (RelationKind.OWNED_SINGLE, RelationKind.OWNED_MULTIPLE)

    @property
    def is_child_single(self) -> bool:
        return self == RelationKind.OWNED_SINGLE

    @property
    def is_child_multiple(self) -> bool:
        return self == RelationKind.OWNED_MULTIPLE

    @property
    def is_pivoted(self) -> bool:
        return self == RelationKind.PIVOT

    @property
    def is_direct(self) -> bool:
        """Relations stored as a foreign key on one of the two rows."""
        return self in (
            RelationKind.PARENT,
            RelationKind.OWNED_SINGLE,
            RelationKind.OWNED_MULTIPLE,
        )


# =============================================================================
# Relation Descriptor
# =============================================================================


@dataclass(frozen=True)
class Relation:
    """Static description of one relation of an entity.

    Attributes:
        name: Relation name, used in exclusion lists and diagnostics.
        kind: A ``RelationKind`` or a relation type alias such as
            ``"has_many"`` resolved by the classifier.
        target: Related model class.
        foreign_key: For owned relations, the column on ``target`` pointing at
            the owner. For parents, the column on the owner.
        type_column: Polymorphic discriminator column on ``target`` holding
            the owner's entity type.
        table: Association table of a pivot relation.
        local_key: Pivot column pointing at the owner.
        remote_key: Pivot column pointing at the related row.
    """

    name: str
    kind: RelationKind | str
    target: type | None = None
    foreign_key: str | None = None
    type_column: str | None = None
    table: Table | None = None
    local_key: str | None = None
    remote_key: str | None = None

    def __post_init__(self) -> None:
        if isinstance(self.kind, str) and not isinstance(self.kind, RelationKind):
            try:
                object.__setattr__(self, "kind", RelationKind(self.kind))
            except ValueError:
                # Left as an alias for the classifier to resolve.
                pass

    def describe(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "kind": self.kind.value if isinstance(self.kind, RelationKind) else self.kind,
            "target": self.target.__name__ if self.target is not None else None,
            "foreign_key": self.foreign_key,
            "type_column": self.type_column,
            "table": self.table.name if self.table is not None else None,
        }


# =============================================================================
# Builders
# =============================================================================


def parent(name: str, target: type, *, foreign_key: str) -> Relation:
    """A row this entity belongs to. Never copied."""
    return Relation(name, RelationKind.PARENT, target=target, foreign_key=foreign_key)


def owned_one(
    name: str,
    target: type,
    *,
    foreign_key: str,
    type_column: str | None = None,
) -> Relation:
    """A single owned child stored with a foreign key to this entity."""
    return Relation(
        name,
        RelationKind.OWNED_SINGLE,
        target=target,
        foreign_key=foreign_key,
        type_column=type_column,
    )


def owned_many(
    name: str,
    target: type,
    *,
    foreign_key: str,
    type_column: str | None = None,
) -> Relation:
    """Owned children stored with a foreign key to this entity."""
    return Relation(
        name,
        RelationKind.OWNED_MULTIPLE,
        target=target,
        foreign_key=foreign_key,
        type_column=type_column,
    )


def pivot(
    name: str,
    table: Table,
    *,
    local_key: str,
    remote_key: str,
    target: type | None = None,
) -> Relation:
    """A many-to-many link through an association table."""
    return Relation(
        name,
        RelationKind.PIVOT,
        target=target,
        table=table,
        local_key=local_key,
        remote_key=remote_key,
    )


def relation(name: str, type_name: str, **kwargs: Any) -> Relation:
    """A relation declared through a type alias, e.g. ``"morph_many"``."""
    return Relation(name, type_name, **kwargs)
