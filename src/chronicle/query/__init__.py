"""Temporal reads: visible revisions and the entity query built on them."""

from chronicle.query.engine import Bound, TemporalQuery, Window
from chronicle.query.scope import ACTIVE_OR_NOW, TemporalSelect

__all__ = [
    "ACTIVE_OR_NOW",
    "Bound",
    "TemporalQuery",
    "TemporalSelect",
    "Window",
]
