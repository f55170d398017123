"""The revision ledger table.

Each row is an immutable marker tying one physical entity row to its
lineage. Rows of one lineage form a singly linked list through
``previous_revision_id``; the head of that list (the revision nobody points
at) is the latest one. ``is_latest`` is computed from the chain in SQL and
never stored, so it cannot drift from the links.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    select,
)
from sqlalchemy.orm import column_property, relationship

from chronicle.base import utcnow
from chronicle.models.base import Base

if TYPE_CHECKING:
    from chronicle.models.checkpoint import Checkpoint


class Revision(Base):
    """Ledger marker for one revision of an entity.

    Attributes:
        entity_type: Registered name of the entity model.
        entity_id: Primary key of the physical row holding this revision.
        lineage_id: Id of the initial revision of the lineage.
        previous_revision_id: Predecessor in the chain, ``None`` when initial.
        checkpoint_id: Checkpoint active when the revision was made.
        timeline_id: Timeline of that checkpoint.
        meta: Values of unique columns moved off the physical row, stored in
            the ``metadata`` column.
        is_latest: True when no revision points at this one.
    """

    __tablename__ = "revisions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    entity_type = Column(String(255), nullable=False)
    entity_id = Column(Integer, nullable=False)
    # Filled with the row's own id right after the initial insert.
    lineage_id = Column(Integer, nullable=True)
    previous_revision_id = Column(Integer, ForeignKey("revisions.id"), nullable=True)
    checkpoint_id = Column(
        Integer,
        ForeignKey("checkpoints.id", ondelete="SET NULL"),
        nullable=True,
    )
    timeline_id = Column(
        Integer,
        ForeignKey("timelines.id", ondelete="SET NULL"),
        nullable=True,
    )
    meta = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    checkpoint = relationship("Checkpoint", viewonly=True)
    timeline = relationship("Timeline", viewonly=True)

    __table_args__ = (
        Index("ix_revisions_entity_type_lineage", "entity_type", "lineage_id"),
        Index("ix_revisions_lineage_type_id", "lineage_id", "entity_type", "id"),
        Index("ix_revisions_entity", "entity_type", "entity_id"),
        Index("ix_revisions_previous", "previous_revision_id"),
        Index("ix_revisions_checkpoint_id", "checkpoint_id"),
        Index("ix_revisions_created_at", "created_at"),
    )

    @property
    def is_new(self) -> bool:
        """True for the initial revision of a lineage."""
        return self.previous_revision_id is None

    def is_new_at(self, checkpoint: Checkpoint) -> bool:
        """True when this lineage started at ``checkpoint``.

        Revisions without a checkpoint count as new at every checkpoint.
        """
        if self.checkpoint_id is not None:
            return self.is_new and self.checkpoint_id == checkpoint.id
        return self.is_new

    def is_updated_at(self, checkpoint: Checkpoint) -> bool:
        """True when this revision is an update made at ``checkpoint``."""
        return not self.is_new and (
            self.checkpoint_id is None or self.checkpoint_id == checkpoint.id
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "lineage_id": self.lineage_id,
            "previous_revision_id": self.previous_revision_id,
            "checkpoint_id": self.checkpoint_id,
            "timeline_id": self.timeline_id,
            "metadata": dict(self.meta or {}),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self) -> str:
        return (
            f"Revision(id={self.id!r}, entity_type={self.entity_type!r}, "
            f"entity_id={self.entity_id!r}, lineage_id={self.lineage_id!r}, "
            f"previous_revision_id={self.previous_revision_id!r})"
        )


_successor = Revision.__table__.alias("successor")

Revision.is_latest = column_property(
    ~select(_successor.c.id)
    .where(_successor.c.previous_revision_id == Revision.__table__.c.id)
    .correlate_except(_successor)
    .exists()
)
