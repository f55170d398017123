"""SQLAlchemy models for the revision ledger, checkpoints and timelines."""

from chronicle.models.base import Base, TimestampMixin
from chronicle.models.checkpoint import Checkpoint, Timeline
from chronicle.models.revision import Revision

__all__ = [
    "Base",
    "TimestampMixin",
    "Checkpoint",
    "Timeline",
    "Revision",
]
