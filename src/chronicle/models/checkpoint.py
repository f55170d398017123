"""Checkpoint and timeline tables."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import relationship

from chronicle.base import utcnow
from chronicle.models.base import Base, TimestampMixin


class Timeline(Base):
    """An independent branch of history.

    Timelines group checkpoints, and through them revisions. A revision tagged
    with a checkpoint always carries that checkpoint's timeline.
    """

    __tablename__ = "timelines"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(255), nullable=False)

    checkpoints = relationship(
        "Checkpoint",
        order_by="Checkpoint.checkpoint_date",
        viewonly=True,
    )
    revisions = relationship("Revision", viewonly=True)

    def __repr__(self) -> str:
        return f"Timeline(id={self.id!r}, title={self.title!r})"


class Checkpoint(TimestampMixin, Base):
    """A named point in time.

    Checkpoints are ordered by ``checkpoint_date``; ids say nothing about
    chronology since checkpoints may be inserted for past dates.
    """

    __tablename__ = "checkpoints"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(255), nullable=False)
    checkpoint_date = Column(DateTime, nullable=False, default=utcnow)
    timeline_id = Column(
        Integer,
        ForeignKey("timelines.id", ondelete="SET NULL"),
        nullable=True,
    )

    timeline = relationship("Timeline", viewonly=True)
    revisions = relationship("Revision", viewonly=True)

    __table_args__ = (
        Index("ix_checkpoints_checkpoint_date", "checkpoint_date"),
        Index("ix_checkpoints_timeline_id", "timeline_id"),
    )

    def is_same(self, other: Any) -> bool:
        """True when ``other`` is a persisted checkpoint with the same id."""
        return isinstance(other, Checkpoint) and other.id is not None and other.id == self.id

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "checkpoint_date": _iso(self.checkpoint_date),
            "timeline_id": self.timeline_id,
        }

    def __repr__(self) -> str:
        return (
            f"Checkpoint(id={self.id!r}, title={self.title!r}, "
            f"checkpoint_date={self.checkpoint_date!r}, timeline_id={self.timeline_id!r})"
        )


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None
