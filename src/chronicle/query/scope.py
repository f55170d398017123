"""Temporal entity queries.

``TemporalSelect`` wraps an ORM query of a registered model and restricts it
to the rows visible at a boundary. Callers opt in by building their reads
through it; ``without_revisions()`` is the explicit way out.

Without an explicit boundary the active checkpoint is used, or now when no
checkpoint is active.

Example:
    >>> posts = TemporalSelect(session, Post, temporal, registry, context)
    >>> posts.count()                       # as of the active checkpoint
    >>> posts.at(release).all()             # as of a checkpoint
    >>> posts.since(last_week).count()      # changed after an instant
    >>> posts.without_revisions().count()   # every physical row
"""

from __future__ import annotations

import copy
from typing import Any, Iterator

from sqlalchemy import Select, and_
from sqlalchemy.orm import Query, Session

from chronicle.base import INHERIT, Clock, utcnow
from chronicle.checkpoints.context import ActiveContextStore
from chronicle.models.revision import Revision
from chronicle.query.engine import Bound, TemporalQuery
from chronicle.registry import EntityRegistry


class _ActiveOrNow:
    def __repr__(self) -> str:
        return "ACTIVE_OR_NOW"


ACTIVE_OR_NOW: Any = _ActiveOrNow()


class TemporalSelect:
    """Generative temporal query over one model.

    Every refinement returns a new ``TemporalSelect``; the receiver is left
    unchanged.
    """

    def __init__(
        self,
        session: Session,
        model: type,
        temporal: TemporalQuery,
        registry: EntityRegistry,
        context: ActiveContextStore | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._session = session
        self._model = model
        self._temporal = temporal
        self._spec = registry.spec_for(model)
        self._context = context
        self._clock = clock

        self._until: Any = ACTIVE_OR_NOW
        self._since: Bound = None
        self._timeline: Any = INHERIT
        self._bypass = False
        self._trashed = "without"
        self._with_metadata = False
        self._criteria: list[Any] = []
        self._ordering: list[Any] = []

    def _clone(self) -> "TemporalSelect":
        clone = copy.copy(self)
        clone._criteria = list(self._criteria)
        clone._ordering = list(self._ordering)
        return clone

    # -------------------------------------------------------------------------
    # Boundaries
    # -------------------------------------------------------------------------

    def at(self, moment: Bound = None) -> "TemporalSelect":
        """Rows visible at ``moment``; ``None`` means active checkpoint or now."""
        clone = self._clone()
        clone._until = ACTIVE_OR_NOW if moment is None else moment
        clone._since = None
        return clone

    def since(self, moment: Bound) -> "TemporalSelect":
        """Rows whose visible revision was made after ``moment``."""
        clone = self._clone()
        clone._until = None
        clone._since = moment
        return clone

    def temporal(
        self,
        until: Bound = None,
        since: Bound = None,
        timeline: Any = INHERIT,
    ) -> "TemporalSelect":
        """Explicit window; ``None`` bounds are open."""
        clone = self._clone()
        clone._until = until
        clone._since = since
        clone._timeline = timeline
        return clone

    def on_timeline(self, timeline: Any) -> "TemporalSelect":
        """Override the timeline filter.

        Accepts a timeline, its id, ``None`` for rows on no timeline or
        ``ANY_TIMELINE``.
        """
        clone = self._clone()
        clone._timeline = timeline
        return clone

    def without_revisions(self) -> "TemporalSelect":
        """Every physical row, superseded revisions included."""
        clone = self._clone()
        clone._bypass = True
        return clone

    # -------------------------------------------------------------------------
    # Soft deletes and metadata
    # -------------------------------------------------------------------------

    def with_trashed(self) -> "TemporalSelect":
        clone = self._clone()
        clone._trashed = "with"
        return clone

    def only_trashed(self) -> "TemporalSelect":
        clone = self._clone()
        clone._trashed = "only"
        return clone

    def with_metadata(self) -> "TemporalSelect":
        """Return ``(entity, metadata)`` rows."""
        clone = self._clone()
        clone._with_metadata = True
        return clone

    # -------------------------------------------------------------------------
    # Plain query refinements
    # -------------------------------------------------------------------------

    def where(self, *criteria: Any) -> "TemporalSelect":
        clone = self._clone()
        clone._criteria.extend(criteria)
        return clone

    filter = where

    def order_by(self, *clauses: Any) -> "TemporalSelect":
        clone = self._clone()
        clone._ordering.extend(clauses)
        return clone

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    def resolved_until(self) -> Bound:
        if self._until is ACTIVE_OR_NOW:
            active = self._context.retrieve() if self._context is not None else None
            return active if active is not None else self._clock()
        return self._until

    def query(self) -> Query:
        """The ORM query this select stands for."""
        model = self._model
        if self._with_metadata:
            key = getattr(model, self._spec.primary_key)
            query = self._session.query(model, Revision.meta).outerjoin(
                Revision,
                and_(
                    Revision.entity_type == self._spec.entity_type,
                    Revision.entity_id == key,
                ),
            )
        else:
            query = self._session.query(model)

        if not self._bypass:
            query = self._temporal.apply(
                query, model, self.resolved_until(), self._since, self._timeline
            )

        column = self._spec.options.soft_delete_column
        if column is not None and self._trashed != "with":
            attribute = getattr(model, column)
            if self._trashed == "only":
                query = query.filter(attribute.isnot(None))
            else:
                query = query.filter(attribute.is_(None))

        if self._criteria:
            query = query.filter(*self._criteria)
        if self._ordering:
            query = query.order_by(*self._ordering)
        return query

    @property
    def statement(self) -> Select:
        return self.query().statement

    def all(self) -> list[Any]:
        rows = self.query().all()
        if self._with_metadata:
            return [(entity, dict(meta or {})) for entity, meta in rows]
        return rows

    def first(self) -> Any:
        row = self.query().first()
        if row is not None and self._with_metadata:
            entity, meta = row
            return entity, dict(meta or {})
        return row

    def count(self) -> int:
        return self.query().count()

    def exists(self) -> bool:
        return self.query().first() is not None

    def ids(self) -> list[int]:
        key = getattr(self._model, self._spec.primary_key)
        return [row[0] for row in self.query().with_entities(key).all()]

    def __iter__(self) -> Iterator[Any]:
        return iter(self.all())
