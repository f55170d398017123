"""Relation declarations and their classification."""

from chronicle.relations.base import (
    Relation,
    RelationKind,
    owned_many,
    owned_one,
    parent,
    pivot,
    relation,
)
from chronicle.relations.classifier import (
    DEFAULT_RELATION_TYPES,
    RelationClassifier,
    get_classifier,
)

__all__ = [
    "Relation",
    "RelationKind",
    "RelationClassifier",
    "DEFAULT_RELATION_TYPES",
    "get_classifier",
    "owned_many",
    "owned_one",
    "parent",
    "pivot",
    "relation",
]
