"""Relation classification.

The classifier turns a registered ``Relation`` into a ``RelationKind``.
Relations declared with a ``RelationKind`` classify as themselves; relations
declared with a type alias are looked up in a relation type table which
callers may extend at setup time.
"""

from __future__ import annotations

import logging
import threading
from typing import Mapping

from chronicle.base import ClassificationUnknown
from chronicle.relations.base import Relation, RelationKind

logger = logging.getLogger(__name__)


DEFAULT_RELATION_TYPES: dict[str, RelationKind] = {
    "belongs_to": RelationKind.PARENT,
    "morph_to": RelationKind.PARENT,
    "has_one": RelationKind.OWNED_SINGLE,
    "morph_one": RelationKind.OWNED_SINGLE,
    "has_many": RelationKind.OWNED_MULTIPLE,
    "morph_many": RelationKind.OWNED_MULTIPLE,
    "belongs_to_many": RelationKind.PIVOT,
    "morph_to_many": RelationKind.PIVOT,
    "morphed_by_many": RelationKind.PIVOT,
}


class RelationClassifier:
    """Resolves relation kinds from a static relation type table.

    Example:
        >>> classifier = RelationClassifier()
        >>> classifier.add_relation_type("has_one_of_many", RelationKind.OWNED_SINGLE)
        >>> classifier.classify(relation("latest_block", "has_one_of_many"))
        <RelationKind.OWNED_SINGLE: 'owned_single'>
    """

    def __init__(self, types: Mapping[str, RelationKind] | None = None) -> None:
        self._lock = threading.RLock()
        self._types: dict[str, RelationKind] = dict(
            DEFAULT_RELATION_TYPES if types is None else types
        )

    @property
    def relation_types(self) -> dict[str, RelationKind]:
        with self._lock:
            return dict(self._types)

    def add_relation_type(self, name: str, kind: RelationKind | str) -> None:
        """Register one alias, replacing any previous meaning."""
        with self._lock:
            self._types[name] = RelationKind(kind)

    def add_relation_types(self, types: Mapping[str, RelationKind | str]) -> None:
        with self._lock:
            for name, kind in types.items():
                self._types[name] = RelationKind(kind)

    def merge_relation_types(self, types: Mapping[str, RelationKind | str]) -> None:
        """Register aliases that are not known yet; existing ones win."""
        with self._lock:
            for name, kind in types.items():
                self._types.setdefault(name, RelationKind(kind))

    def remove_relation_type(self, name: str) -> bool:
        with self._lock:
            return self._types.pop(name, None) is not None

    def reset_relation_types(self) -> None:
        """Restore the default relation type table."""
        with self._lock:
            self._types = dict(DEFAULT_RELATION_TYPES)

    def classify(self, relation: Relation, *, strict: bool = False) -> RelationKind:
        """Classify a relation.

        Args:
            relation: The registered relation.
            strict: Raise instead of returning ``RelationKind.UNKNOWN``.

        Returns:
            The relation kind.

        Raises:
            ClassificationUnknown: If ``strict`` and the kind is unresolvable.
        """
        kind = relation.kind
        if isinstance(kind, RelationKind):
            resolved = kind
        else:
            with self._lock:
                resolved = self._types.get(kind, RelationKind.UNKNOWN)

        if resolved == RelationKind.UNKNOWN and strict:
            raise ClassificationUnknown(relation.name, relation.kind)
        return resolved

    def is_child(self, relation: Relation) -> bool:
        return self.classify(relation).is_child

    def is_child_single(self, relation: Relation) -> bool:
        return self.classify(relation).is_child_single

    def is_child_multiple(self, relation: Relation) -> bool:
        return self.classify(relation).is_child_multiple

    def is_pivoted(self, relation: Relation) -> bool:
        return self.classify(relation).is_pivoted

    def is_direct(self, relation: Relation) -> bool:
        return self.classify(relation).is_direct


_default_classifier = RelationClassifier()


def get_classifier() -> RelationClassifier:
    """Process-wide classifier used when none is passed explicitly."""
    return _default_classifier
