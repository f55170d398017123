"""Checkpoint and timeline persistence.

Checkpoints are ordered by ``checkpoint_date``. Every lookup that says
"older" or "newer" compares dates and breaks ties on id, so two checkpoints
on the same date still order deterministically.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Query, Session

from chronicle.base import ANY_TIMELINE, Clock, Direction, utcnow
from chronicle.checkpoints.context import ActiveContextStore
from chronicle.database import atomic, transaction
from chronicle.models.checkpoint import Checkpoint, Timeline
from chronicle.models.revision import Revision
from chronicle.registry import EntityRegistry

logger = logging.getLogger(__name__)

Moment = datetime | Checkpoint | None


def timeline_id_of(timeline: Timeline | int | None) -> int | None:
    if isinstance(timeline, Timeline):
        return timeline.id
    return timeline


class CheckpointStore:
    """Creates, orders and retires checkpoints and timelines.

    Args:
        session: Session to read and write through.
        registry: Registry used to load entities revisioned at a checkpoint.
        context: Active checkpoint store, cleared when its checkpoint is
            deleted.
        clock: Source of "now".
    """

    def __init__(
        self,
        session: Session,
        registry: EntityRegistry | None = None,
        context: ActiveContextStore | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._session = session
        self._registry = registry
        self._context = context
        self._clock = clock

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    def create_timeline(self, title: str) -> Timeline:
        with transaction(self._session, "create timeline"):
            with atomic(self._session, "create timeline"):
                timeline = Timeline(title=title)
                self._session.add(timeline)
                self._session.flush()
        return timeline

    def create_checkpoint(
        self,
        title: str,
        checkpoint_date: datetime | None = None,
        timeline: Timeline | int | None = None,
    ) -> Checkpoint:
        with transaction(self._session, "create checkpoint"):
            with atomic(self._session, "create checkpoint"):
                checkpoint = Checkpoint(
                    title=title,
                    checkpoint_date=checkpoint_date or self._clock(),
                    timeline_id=timeline_id_of(timeline),
                )
                self._session.add(checkpoint)
                self._session.flush()
        return checkpoint

    def get(self, checkpoint_id: int) -> Checkpoint | None:
        return self._session.get(Checkpoint, checkpoint_id)

    def get_timeline(self, timeline_id: int) -> Timeline | None:
        return self._session.get(Timeline, timeline_id)

    # -------------------------------------------------------------------------
    # Ordering
    # -------------------------------------------------------------------------

    def _date_of(self, moment: Moment) -> datetime:
        if isinstance(moment, Checkpoint):
            return moment.checkpoint_date
        if moment is None:
            return self._clock()
        return moment

    def _filtered(self, query: Query, timeline: Any) -> Query:
        if timeline is ANY_TIMELINE:
            return query
        timeline_id = timeline_id_of(timeline)
        if timeline_id is None:
            return query.filter(Checkpoint.timeline_id.is_(None))
        return query.filter(Checkpoint.timeline_id == timeline_id)

    def _older(self, moment: Moment, *, inclusive: bool, timeline: Any) -> Query:
        date = self._date_of(moment)
        column = Checkpoint.checkpoint_date
        query = self._session.query(Checkpoint).filter(
            column <= date if inclusive else column < date
        )
        return self._filtered(query, timeline).order_by(
            Checkpoint.checkpoint_date.desc(), Checkpoint.id.desc()
        )

    def _newer(self, moment: Moment, *, inclusive: bool, timeline: Any) -> Query:
        date = self._date_of(moment)
        column = Checkpoint.checkpoint_date
        query = self._session.query(Checkpoint).filter(
            column >= date if inclusive else column > date
        )
        return self._filtered(query, timeline).order_by(
            Checkpoint.checkpoint_date.asc(), Checkpoint.id.asc()
        )

    def older_than(self, moment: Moment, timeline: Any = ANY_TIMELINE) -> Query:
        """Checkpoints dated strictly before ``moment``, closest first."""
        return self._older(moment, inclusive=False, timeline=timeline)

    def older_than_equals(self, moment: Moment, timeline: Any = ANY_TIMELINE) -> Query:
        return self._older(moment, inclusive=True, timeline=timeline)

    def newer_than(self, moment: Moment, timeline: Any = ANY_TIMELINE) -> Query:
        """Checkpoints dated strictly after ``moment``, closest first."""
        return self._newer(moment, inclusive=False, timeline=timeline)

    def newer_than_equals(self, moment: Moment, timeline: Any = ANY_TIMELINE) -> Query:
        return self._newer(moment, inclusive=True, timeline=timeline)

    def nearest(
        self,
        moment: Moment,
        direction: Direction | str = Direction.OLDER,
        timeline: Any = ANY_TIMELINE,
    ) -> Checkpoint | None:
        """The checkpoint closest to ``moment`` in ``direction``.

        Older matches ``checkpoint_date <= moment`` and prefers the latest
        date, then the highest id. Newer matches ``checkpoint_date > moment``
        and prefers the earliest date.

        Args:
            moment: Instant or checkpoint; ``None`` means now.
            direction: ``Direction.OLDER`` or ``Direction.NEWER``.
            timeline: Timeline to restrict to, ``None`` for checkpoints on no
                timeline, ``ANY_TIMELINE`` for no restriction.
        """
        if Direction(direction) == Direction.OLDER:
            return self.older_than_equals(moment, timeline).first()
        return self.newer_than(moment, timeline).first()

    def current(self, timeline: Any = ANY_TIMELINE) -> Checkpoint | None:
        """The latest checkpoint dated before now."""
        return self.older_than(self._clock(), timeline).first()

    def previous(self, checkpoint: Checkpoint, timeline: Any = ANY_TIMELINE) -> Checkpoint | None:
        return self.older_than(checkpoint, timeline).first()

    def next(self, checkpoint: Checkpoint, timeline: Any = ANY_TIMELINE) -> Checkpoint | None:
        return self.newer_than(checkpoint, timeline).first()

    def checkpoints_of(self, timeline: Timeline | int | None) -> list[Checkpoint]:
        """Checkpoints of a timeline in chronological order.

        ``None`` lists the checkpoints that belong to no timeline.
        """
        query = self._filtered(self._session.query(Checkpoint), timeline)
        return query.order_by(Checkpoint.checkpoint_date, Checkpoint.id).all()

    def timelines(self) -> list[Timeline]:
        return self._session.query(Timeline).order_by(Timeline.id).all()

    # -------------------------------------------------------------------------
    # Revisions and models
    # -------------------------------------------------------------------------

    def revisions_of(self, owner: Checkpoint | Timeline) -> list[Revision]:
        """Revisions tagged with a checkpoint or a timeline."""
        if isinstance(owner, Timeline):
            criterion = Revision.timeline_id == owner.id
        else:
            criterion = Revision.checkpoint_id == owner.id
        return self._session.query(Revision).filter(criterion).order_by(Revision.id).all()

    def models_of(self, checkpoint: Checkpoint, model: type) -> list[Any]:
        """Entities of ``model`` whose revision was made at ``checkpoint``."""
        spec = self._require_registry().spec_for(model)
        key = getattr(model, spec.primary_key)
        revised = self._session.query(Revision.entity_id).filter(
            Revision.entity_type == spec.entity_type,
            Revision.checkpoint_id == checkpoint.id,
        )
        return self._session.query(model).filter(key.in_(revised.scalar_subquery())).all()

    def models(self, checkpoint: Checkpoint) -> dict[str, list[Any]]:
        """Entities revisioned at ``checkpoint``, grouped by entity type."""
        result: dict[str, list[Any]] = {}
        for spec in self._require_registry():
            entities = self.models_of(checkpoint, spec.model)
            if entities:
                result[spec.entity_type] = entities
        return result

    def _require_registry(self) -> EntityRegistry:
        if self._registry is None:
            raise ValueError("CheckpointStore needs a registry to load entities")
        return self._registry

    # -------------------------------------------------------------------------
    # Mutation
    # -------------------------------------------------------------------------

    def move_to_timeline(self, checkpoint: Checkpoint, timeline: Timeline | int | None) -> int:
        """Put ``checkpoint`` on another timeline, retagging its revisions.

        Returns:
            Number of revisions retagged.
        """
        with transaction(self._session, "move checkpoint to timeline"):
            timeline_id = timeline_id_of(timeline)
            with atomic(self._session, "move checkpoint to timeline"):
                checkpoint.timeline_id = timeline_id
                self._session.flush()
                checkpoint_id = checkpoint.id
                count = (
                    self._session.query(Revision)
                    .filter(Revision.checkpoint_id == checkpoint_id)
                    .update({Revision.timeline_id: timeline_id}, synchronize_session="evaluate")
                )
        logger.debug(
            "Moved checkpoint %s to timeline %s (%d revisions)",
            checkpoint_id,
            timeline_id,
            count,
        )
        return count

    def delete_checkpoint(self, checkpoint: Checkpoint) -> int:
        """Delete a checkpoint, detaching its revisions.

        Revisions survive with no checkpoint and no timeline. The active
        context is cleared when it pointed at the checkpoint.

        Returns:
            Number of revisions detached.
        """
        with transaction(self._session, "delete checkpoint"):
            checkpoint_id = checkpoint.id
            was_active = self._context is not None and self._context.refers_to(checkpoint)
            with atomic(self._session, "delete checkpoint"):
                count = (
                    self._session.query(Revision)
                    .filter(Revision.checkpoint_id == checkpoint_id)
                    .update(
                        {Revision.checkpoint_id: None, Revision.timeline_id: None},
                        synchronize_session="evaluate",
                    )
                )
                self._session.delete(checkpoint)
                self._session.flush()

        if was_active:
            self._context.clear()  # type: ignore[union-attr]
            logger.warning("Cleared active checkpoint %s after deleting it", checkpoint_id)

        return count
