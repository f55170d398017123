"""Bulk start of revisioning for existing rows.

Tables that predate revision control hold rows without a lineage. This
module opens one for each of them, batch by batch, optionally tagging the
initial revisions with a checkpoint.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from chronicle.base import Clock, utcnow
from chronicle.checkpoints.store import CheckpointStore
from chronicle.database import atomic, commit
from chronicle.models.checkpoint import Checkpoint
from chronicle.models.revision import Revision
from chronicle.registry import EntityRegistry
from chronicle.revisions.ledger import RevisionLedger

logger = logging.getLogger(__name__)


@dataclass
class BulkStartResult:
    """Outcome of a bulk start.

    Attributes:
        entity_type: Entity type processed.
        started: Lineages opened.
        existing: Rows that already had a revision.
        batches: Batches processed.
        checkpoint_id: Checkpoint tagged on the new revisions.
    """

    entity_type: str
    started: int = 0
    existing: int = 0
    batches: int = 0
    checkpoint_id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "started": self.started,
            "existing": self.existing,
            "batches": self.batches,
            "checkpoint_id": self.checkpoint_id,
        }


def start_revisioning(
    session: Session,
    model: type,
    registry: EntityRegistry,
    *,
    checkpoint: Checkpoint | None = None,
    with_checkpoint: bool = False,
    chunk_size: int = 500,
    clock: Clock = utcnow,
) -> BulkStartResult:
    """Open a lineage for every row of ``model`` that has none.

    Args:
        session: Session to work in.
        model: Registered model.
        registry: Registry holding ``model``.
        checkpoint: Checkpoint to tag the initial revisions with.
        with_checkpoint: Without an explicit checkpoint, tag the earliest
            existing checkpoint, creating one when there is none.
        chunk_size: Rows per batch. Each batch is committed on its own
            unless the session was inside a transaction on entry, in which
            case committing is left to the caller.
        clock: Source of revision timestamps.

    Returns:
        Counts of what was done.
    """
    if chunk_size < 1:
        raise ValueError("chunk_size must be positive")

    owns = not session.in_transaction()
    spec = registry.spec_for(model)
    ledger = RevisionLedger(session, registry, clock=clock)
    key = getattr(model, spec.primary_key)

    if checkpoint is None and with_checkpoint:
        checkpoint = (
            session.query(Checkpoint)
            .order_by(Checkpoint.checkpoint_date, Checkpoint.id)
            .first()
        )
        if checkpoint is None:
            checkpoint = CheckpointStore(session, registry, clock=clock).create_checkpoint(
                title=f"Start of {spec.entity_type} revisions"
            )

    operation = f"start {spec.entity_type} revisions"
    revisioned = select(Revision.entity_id).where(Revision.entity_type == spec.entity_type)
    result = BulkStartResult(
        entity_type=spec.entity_type,
        existing=session.query(model).filter(key.in_(revisioned)).count(),
        checkpoint_id=checkpoint.id if checkpoint is not None else None,
    )

    while True:
        rows = (
            session.query(model)
            .filter(~key.in_(revisioned))
            .order_by(key)
            .limit(chunk_size)
            .all()
        )
        if not rows:
            break

        try:
            with atomic(session, operation):
                for row in rows:
                    factory = spec.options.created_at
                    created_at = factory(row) if factory is not None else None
                    ledger.start(row, checkpoint, created_at=created_at or clock())
        except Exception:
            if owns:
                session.rollback()
            raise
        if owns:
            commit(session, operation)

        result.started += len(rows)
        result.batches += 1
        logger.debug("Started %d %s lineages", len(rows), spec.entity_type)

    # Also covers a checkpoint created for a table with nothing to start.
    if owns:
        commit(session, operation)

    logger.info(
        "Started %d %s lineages (%d already revisioned)",
        result.started,
        spec.entity_type,
        result.existing,
    )
    return result
