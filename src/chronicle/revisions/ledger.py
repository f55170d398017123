"""The revision ledger.

Every entity under revision control has a lineage: a chain of ``Revision``
rows linked through ``previous_revision_id``. The ledger creates and extends
those chains, navigates them and repairs them when a physical row goes away.

Invariants maintained here:

- the initial revision of a lineage has no predecessor and its id is the
  ``lineage_id`` of every revision in the lineage;
- a revision has at most one successor, so the lineage is a single chain and
  exactly one revision (the one without successor) is latest;
- a physical entity row has at most one revision.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterator

from sqlalchemy.orm import Session

from chronicle.base import Clock, InvariantViolation, utcnow
from chronicle.checkpoints.context import ActiveContextStore
from chronicle.database import atomic
from chronicle.models.checkpoint import Checkpoint
from chronicle.models.revision import Revision
from chronicle.registry import EntityRegistry

logger = logging.getLogger(__name__)


class RevisionLedger:
    """Creates, navigates and repairs revision chains.

    Args:
        session: Session the ledger reads and writes through.
        registry: Registry resolving entity types.
        context: Active checkpoint store; new revisions are tagged with its
            checkpoint unless one is passed explicitly.
        clock: Source of ``created_at`` timestamps.
    """

    def __init__(
        self,
        session: Session,
        registry: EntityRegistry,
        context: ActiveContextStore | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._session = session
        self._registry = registry
        self._context = context
        self._clock = clock

    @property
    def session(self) -> Session:
        return self._session

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    def revision_for(self, entity: Any) -> Revision | None:
        """The revision of a physical entity row, if it has one."""
        spec = self._registry.spec_for(entity)
        entity_id = getattr(entity, spec.primary_key)
        if entity_id is None:
            return None
        return self.find(spec.entity_type, entity_id)

    def find(self, entity_type: str, entity_id: int) -> Revision | None:
        return (
            self._session.query(Revision)
            .filter(
                Revision.entity_type == entity_type,
                Revision.entity_id == entity_id,
            )
            .order_by(Revision.id.desc())
            .first()
        )

    def entity_of(self, revision: Revision | None) -> Any:
        """Load the physical row a revision points at."""
        if revision is None:
            return None
        spec = self._registry.find(revision.entity_type)
        if spec is None:
            return None
        return self._session.get(spec.model, revision.entity_id)

    # -------------------------------------------------------------------------
    # Chain construction
    # -------------------------------------------------------------------------

    def start(
        self,
        entity: Any,
        checkpoint: Checkpoint | None = None,
        created_at: datetime | None = None,
    ) -> Revision:
        """Open a lineage for an entity that has none.

        Args:
            entity: The entity; flushed first when it has no id yet.
            checkpoint: Checkpoint to tag; defaults to the active one.
            created_at: Revision timestamp; defaults to the clock.

        Returns:
            The initial revision.

        Raises:
            InvariantViolation: If the entity already has a revision.
        """
        spec = self._registry.spec_for(entity)

        with atomic(self._session, "start revision"):
            if getattr(entity, spec.primary_key) is None:
                self._session.add(entity)
                self._session.flush()

            entity_id = getattr(entity, spec.primary_key)
            existing = self.find(spec.entity_type, entity_id)
            if existing is not None:
                raise InvariantViolation(
                    f"{spec.entity_type}#{entity_id} already has a revision",
                    existing.id,
                )

            revision = Revision(
                entity_type=spec.entity_type,
                entity_id=entity_id,
                previous_revision_id=None,
                meta={},
                created_at=created_at or self._clock(),
                **self._tags(checkpoint),
            )
            self._session.add(revision)
            self._session.flush()
            revision.lineage_id = revision.id
            self._session.flush()

        logger.debug(
            "Started lineage %s for %s#%s", revision.id, spec.entity_type, entity_id
        )
        return revision

    def chain_to(
        self,
        old_revision: Revision,
        new_entity_id: int,
        checkpoint: Checkpoint | None = None,
        created_at: datetime | None = None,
    ) -> Revision:
        """Append a revision for ``new_entity_id`` after ``old_revision``.

        The new revision inherits the lineage and entity type; the old one
        stops being latest since it now has a successor.

        Raises:
            InvariantViolation: If the old revision already has a successor or
                belongs to no lineage.
        """
        if old_revision.lineage_id is None:
            raise InvariantViolation("Revision belongs to no lineage", old_revision.id)

        with atomic(self._session, "chain revision"):
            successor = self.next(old_revision)
            if successor is not None:
                raise InvariantViolation(
                    f"Revision already continued by revision {successor.id}",
                    old_revision.id,
                )

            revision = Revision(
                entity_type=old_revision.entity_type,
                entity_id=new_entity_id,
                lineage_id=old_revision.lineage_id,
                previous_revision_id=old_revision.id,
                meta={},
                created_at=created_at or self._clock(),
                **self._tags(checkpoint),
            )
            self._session.add(revision)
            self._session.flush()
            self._session.expire(old_revision, ["is_latest"])

        return revision

    def _tags(self, checkpoint: Checkpoint | None) -> dict[str, int | None]:
        if checkpoint is None and self._context is not None:
            checkpoint = self._context.retrieve()
        if checkpoint is None:
            return {"checkpoint_id": None, "timeline_id": None}
        return {"checkpoint_id": checkpoint.id, "timeline_id": checkpoint.timeline_id}

    # -------------------------------------------------------------------------
    # Chain repair
    # -------------------------------------------------------------------------

    def repair_on_delete(self, revision: Revision) -> None:
        """Unlink ``revision`` from its lineage ahead of its deletion.

        A successor is re-pointed at the revision's predecessor. When the
        revision was the initial one, the successor becomes initial and the
        whole lineage is re-keyed to its id. Without a successor the
        predecessor becomes latest again. Running it twice changes nothing.
        """
        with atomic(self._session, "repair revision chain"):
            successor = self.next(revision)
            if successor is None:
                if revision.previous_revision_id is not None:
                    predecessor = self._session.get(Revision, revision.previous_revision_id)
                    if predecessor is not None:
                        self._session.expire(predecessor, ["is_latest"])
                return

            successor.previous_revision_id = revision.previous_revision_id
            self._session.flush()

            if revision.previous_revision_id is None:
                lineage_id = revision.lineage_id
                (
                    self._session.query(Revision)
                    .filter(
                        Revision.entity_type == revision.entity_type,
                        Revision.lineage_id == lineage_id,
                    )
                    .update(
                        {Revision.lineage_id: successor.id},
                        synchronize_session="evaluate",
                    )
                )
                logger.debug(
                    "Lineage %s of %s re-keyed to %s",
                    lineage_id,
                    revision.entity_type,
                    successor.id,
                )

    def remove(self, revision: Revision) -> None:
        """Repair the chain around ``revision`` and delete it."""
        with atomic(self._session, "delete revision"):
            self.repair_on_delete(revision)
            self._session.delete(revision)
            self._session.flush()

    # -------------------------------------------------------------------------
    # Navigation
    # -------------------------------------------------------------------------

    def is_new(self, revision: Revision) -> bool:
        return revision.previous_revision_id is None

    def is_latest(self, revision: Revision) -> bool:
        return self.next(revision) is None

    def previous(self, revision: Revision) -> Revision | None:
        if revision.previous_revision_id is None:
            return None
        return self._session.get(Revision, revision.previous_revision_id)

    def next(self, revision: Revision) -> Revision | None:
        return (
            self._session.query(Revision)
            .filter(Revision.previous_revision_id == revision.id)
            .order_by(Revision.id)
            .first()
        )

    def initial(self, revision: Revision) -> Revision | None:
        return (
            self._session.query(Revision)
            .filter(
                Revision.entity_type == revision.entity_type,
                Revision.lineage_id == revision.lineage_id,
                Revision.previous_revision_id.is_(None),
            )
            .first()
        )

    def latest(self, revision: Revision) -> Revision | None:
        return (
            self._session.query(Revision)
            .filter(
                Revision.entity_type == revision.entity_type,
                Revision.lineage_id == revision.lineage_id,
                Revision.is_latest,
            )
            .order_by(Revision.id.desc())
            .first()
        )

    def lineage(self, revision: Revision) -> list[Revision]:
        """All revisions of the lineage, oldest first."""
        return (
            self._session.query(Revision)
            .filter(
                Revision.entity_type == revision.entity_type,
                Revision.lineage_id == revision.lineage_id,
            )
            .order_by(Revision.id)
            .all()
        )

    def others(self, revision: Revision) -> list[Revision]:
        return [r for r in self.lineage(revision) if r.id != revision.id]

    def walk(self, revision: Revision) -> Iterator[Revision]:
        """Follow the chain backwards from ``revision`` to the initial one.

        Raises:
            InvariantViolation: If the chain loops.
        """
        seen: set[int] = set()
        current: Revision | None = revision
        while current is not None:
            if current.id in seen:
                raise InvariantViolation("Revision chain contains a cycle", current.id)
            seen.add(current.id)
            yield current
            current = self.previous(current)

    def verify_lineage(self, entity_type: str, lineage_id: int) -> list[Revision]:
        """Check a lineage against the chain invariants.

        Returns:
            The lineage in chain order, oldest first.

        Raises:
            InvariantViolation: On the first broken invariant.
        """
        revisions = (
            self._session.query(Revision)
            .filter(
                Revision.entity_type == entity_type,
                Revision.lineage_id == lineage_id,
            )
            .all()
        )
        if not revisions:
            return []

        initials = [r for r in revisions if r.previous_revision_id is None]
        if len(initials) != 1:
            raise InvariantViolation(
                f"Lineage {lineage_id} has {len(initials)} initial revisions"
            )
        if initials[0].id != lineage_id:
            raise InvariantViolation(
                f"Lineage {lineage_id} starts at revision {initials[0].id}",
                initials[0].id,
            )

        successors: dict[int, int] = {}
        for r in revisions:
            if r.previous_revision_id is None:
                continue
            if r.previous_revision_id in successors:
                raise InvariantViolation(
                    "Revision has more than one successor", r.previous_revision_id
                )
            successors[r.previous_revision_id] = r.id

        heads = [r for r in revisions if r.id not in successors]
        if len(heads) != 1:
            raise InvariantViolation(
                f"Lineage {lineage_id} has {len(heads)} latest revisions"
            )

        chain = list(self.walk(heads[0]))
        if len(chain) != len(revisions) or chain[-1].id != lineage_id:
            raise InvariantViolation(f"Lineage {lineage_id} is not a single chain")
        chain.reverse()
        return chain
