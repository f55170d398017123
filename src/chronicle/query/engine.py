"""Temporal visibility of revisions.

For one entity type, the visible revision of a lineage at a boundary is the
revision with the highest id inside the window. The window is built from:

- ``until``: an instant (``created_at <= until``) or a checkpoint
  (``checkpoint_id`` among the checkpoints dated at or before it);
- ``since``: an instant (``created_at > since``) or a checkpoint
  (``checkpoint_id`` among the checkpoints dated after it);
- a timeline: revisions on that timeline only, ``None`` meaning revisions on
  no timeline. Checkpoint bounds bring their own timeline unless the caller
  overrides it; ``ANY_TIMELINE`` lifts the filter.

Everything is expressed as SQL so the result can be used as a subquery when
filtering the entity table.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import Select, func, select
from sqlalchemy.orm import Query, Session

from chronicle.base import ANY_TIMELINE, INHERIT
from chronicle.checkpoints.store import timeline_id_of
from chronicle.models.checkpoint import Checkpoint
from chronicle.models.revision import Revision
from chronicle.registry import EntityRegistry

Bound = datetime | Checkpoint | None


@dataclass(frozen=True)
class Window:
    """A resolved query window.

    Attributes:
        until: Upper bound, ``None`` when unbounded.
        since: Exclusive lower bound, ``None`` when unbounded.
        timeline: Timeline id, ``None`` for "no timeline" or ``ANY_TIMELINE``.
    """

    until: Bound = None
    since: Bound = None
    timeline: Any = None

    @classmethod
    def resolve(cls, until: Bound = None, since: Bound = None, timeline: Any = INHERIT) -> "Window":
        if timeline is INHERIT:
            if isinstance(until, Checkpoint):
                timeline = until.timeline_id
            elif isinstance(since, Checkpoint):
                timeline = since.timeline_id
            else:
                timeline = None
        elif timeline is not ANY_TIMELINE:
            timeline = timeline_id_of(timeline)
        return cls(until=until, since=since, timeline=timeline)


class TemporalQuery:
    """Computes visible revisions for temporal reads.

    Example:
        >>> temporal = TemporalQuery(session, registry)
        >>> temporal.visible_revision_ids("posts", until=release)
        {3, 7}
    """

    def __init__(self, session: Session, registry: EntityRegistry) -> None:
        self._session = session
        self._registry = registry

    def visible_revisions(
        self,
        entity_type: str,
        until: Bound = None,
        since: Bound = None,
        timeline: Any = INHERIT,
    ) -> Select:
        """Select of the visible revision id per lineage."""
        window = Window.resolve(until, since, timeline)
        stmt = select(func.max(Revision.id)).where(Revision.entity_type == entity_type)

        if isinstance(window.until, Checkpoint):
            stmt = stmt.where(
                Revision.checkpoint_id.in_(
                    select(Checkpoint.id).where(
                        Checkpoint.checkpoint_date <= window.until.checkpoint_date
                    )
                )
            )
        elif window.until is not None:
            stmt = stmt.where(Revision.created_at <= window.until)

        if isinstance(window.since, Checkpoint):
            stmt = stmt.where(
                Revision.checkpoint_id.in_(
                    select(Checkpoint.id).where(
                        Checkpoint.checkpoint_date > window.since.checkpoint_date
                    )
                )
            )
        elif window.since is not None:
            stmt = stmt.where(Revision.created_at > window.since)

        if window.timeline is None:
            stmt = stmt.where(Revision.timeline_id.is_(None))
        elif window.timeline is not ANY_TIMELINE:
            stmt = stmt.where(Revision.timeline_id == window.timeline)

        return stmt.group_by(Revision.lineage_id)

    def visible_revision_ids(
        self,
        entity_type: str,
        until: Bound = None,
        since: Bound = None,
        timeline: Any = INHERIT,
    ) -> set[int]:
        stmt = self.visible_revisions(entity_type, until, since, timeline)
        return set(self._session.execute(stmt).scalars())

    def visible_entity_ids(
        self,
        entity_type: str,
        until: Bound = None,
        since: Bound = None,
        timeline: Any = INHERIT,
    ) -> Select:
        """Select of the physical entity ids holding the visible revisions."""
        return select(Revision.entity_id).where(
            Revision.id.in_(self.visible_revisions(entity_type, until, since, timeline))
        )

    def apply(
        self,
        query: Query,
        model: type,
        until: Bound = None,
        since: Bound = None,
        timeline: Any = INHERIT,
    ) -> Query:
        """Restrict an entity query to the rows visible in the window."""
        spec = self._registry.spec_for(model)
        key = getattr(model, spec.primary_key)
        return query.filter(
            key.in_(self.visible_entity_ids(spec.entity_type, until, since, timeline))
        )
