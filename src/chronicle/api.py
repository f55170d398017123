"""Main entry point for chronicle.

``Chronicle`` wires the ledger, the checkpoint store, the temporal query
engine and the revision engine around one session, sharing a registry, an
active checkpoint context and a clock.

Example:
    >>> chronicle = Chronicle(session, registry)
    >>> post = chronicle.create(Post(title="Draft"))
    >>> release = chronicle.checkpoints.create_checkpoint("Release")
    >>> with chronicle.activate(release):
    ...     post.title = "Published"
    ...     post = chronicle.save(post)
    >>> chronicle.query(Post).at(release).count()
    1
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Iterator

from sqlalchemy.orm import Session

from chronicle.base import Clock, utcnow
from chronicle.checkpoints.context import (
    ActiveContextStore,
    active_checkpoint,
    create_context_store,
)
from chronicle.checkpoints.store import CheckpointStore
from chronicle.config import ChronicleConfig
from chronicle.models.checkpoint import Checkpoint
from chronicle.models.revision import Revision
from chronicle.query.engine import TemporalQuery
from chronicle.query.scope import TemporalSelect
from chronicle.registry import EntityRegistry, default_registry
from chronicle.relations.classifier import RelationClassifier
from chronicle.report import HistoryReport
from chronicle.revisions.bulk import BulkStartResult, start_revisioning
from chronicle.revisions.engine import RevisionEngine
from chronicle.revisions.ledger import RevisionLedger
from chronicle.revisions.lifecycle import HookRegistry


class Chronicle:
    """Revision control for the entities of one session.

    Args:
        session: Session all reads and writes go through.
        registry: Registered models; the module default when omitted.
        context: Active checkpoint store; a ``ContextVarStore`` by default.
        classifier: Relation classifier; the process-wide one by default.
        hooks: Lifecycle callbacks.
        clock: Source of "now".
        config: Settings; only revision related settings are read here.
    """

    def __init__(
        self,
        session: Session,
        registry: EntityRegistry | None = None,
        *,
        context: ActiveContextStore | None = None,
        classifier: RelationClassifier | None = None,
        hooks: HookRegistry | None = None,
        clock: Clock = utcnow,
        config: ChronicleConfig | None = None,
    ) -> None:
        self._config = config or ChronicleConfig()
        self._session = session
        self._registry = registry if registry is not None else default_registry
        self._context = context or create_context_store(self._config.context_backend)
        self._clock = clock

        self._engine = RevisionEngine(
            session,
            self._registry,
            context=self._context,
            classifier=classifier,
            hooks=hooks,
            clock=clock,
            store_unique_columns=self._config.store_unique_columns_on_revision,
        )
        self._checkpoints = CheckpointStore(session, self._registry, self._context, clock)
        self._temporal = TemporalQuery(session, self._registry)

    # -------------------------------------------------------------------------
    # Components
    # -------------------------------------------------------------------------

    @property
    def session(self) -> Session:
        return self._session

    @property
    def registry(self) -> EntityRegistry:
        return self._registry

    @property
    def context(self) -> ActiveContextStore:
        return self._context

    @property
    def engine(self) -> RevisionEngine:
        return self._engine

    @property
    def ledger(self) -> RevisionLedger:
        return self._engine.ledger

    @property
    def hooks(self) -> HookRegistry:
        return self._engine.hooks

    @property
    def checkpoints(self) -> CheckpointStore:
        return self._checkpoints

    @property
    def temporal(self) -> TemporalQuery:
        return self._temporal

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def query(self, model: type) -> TemporalSelect:
        """Temporal select over ``model``, bounded by the active checkpoint or now."""
        return TemporalSelect(
            self._session, model, self._temporal, self._registry, self._context, self._clock
        )

    @contextmanager
    def activate(self, checkpoint: Checkpoint | None) -> Iterator[Checkpoint | None]:
        """Make ``checkpoint`` active for the block."""
        with active_checkpoint(self._context, checkpoint) as active:
            yield active

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def create(self, entity: Any, checkpoint: Checkpoint | None = None) -> Any:
        return self._engine.create(entity, checkpoint)

    def save(self, entity: Any) -> Any:
        return self._engine.save(entity)

    def delete(self, entity: Any, *, force: bool = False) -> Any:
        return self._engine.delete(entity, force=force)

    def restore(self, entity: Any) -> Any:
        return self._engine.restore(entity)

    def perform_revision(self, entity: Any) -> Any:
        return self._engine.perform_revision(entity)

    def start_revisioning(
        self,
        model: type,
        *,
        checkpoint: Checkpoint | None = None,
        with_checkpoint: bool = False,
    ) -> BulkStartResult:
        """Open lineages for every stored row of ``model`` without one."""
        return start_revisioning(
            self._session,
            model,
            self._registry,
            checkpoint=checkpoint,
            with_checkpoint=with_checkpoint,
            chunk_size=self._config.chunk_size,
            clock=self._clock,
        )

    # -------------------------------------------------------------------------
    # Entity navigation
    # -------------------------------------------------------------------------

    def revision_of(self, entity: Any) -> Revision | None:
        return self.ledger.revision_for(entity)

    def _neighbour(self, entity: Any, step: str) -> Any:
        revision = self.revision_of(entity)
        if revision is None:
            return None
        return self.ledger.entity_of(getattr(self.ledger, step)(revision))

    def older(self, entity: Any) -> Any:
        """Row holding the previous revision of ``entity``."""
        return self._neighbour(entity, "previous")

    def newer(self, entity: Any) -> Any:
        """Row holding the next revision of ``entity``."""
        return self._neighbour(entity, "next")

    def newest(self, entity: Any) -> Any:
        """Row holding the latest revision of the lineage."""
        return self._neighbour(entity, "latest")

    def initial(self, entity: Any) -> Any:
        """Row holding the initial revision of the lineage."""
        return self._neighbour(entity, "initial")

    def history(self, entity: Any) -> list[Any]:
        """Rows of every revision of the lineage, oldest first."""
        revision = self.revision_of(entity)
        if revision is None:
            return [entity]
        rows = (self.ledger.entity_of(r) for r in self.ledger.lineage(revision))
        return [row for row in rows if row is not None]

    def report(self, entity: Any) -> HistoryReport:
        revision = self.revision_of(entity)
        if revision is None:
            spec = self._registry.spec_for(entity)
            return HistoryReport(title=f"{spec.entity_type} (not revisioned)")
        return HistoryReport.for_lineage(self.ledger, revision)

    def metadata_of(self, entity: Any) -> dict[str, Any]:
        return self._engine.metadata_of(entity)

    def attribute(self, entity: Any, name: str) -> Any:
        return self._engine.attribute(entity, name)
