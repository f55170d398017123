"""Copy-on-write revisioning.

A revision never modifies the row a caller loaded. Instead the engine:

1. asks the guards (``RevisionOptions.should_revision`` and the
   ``REVISIONING`` hooks) whether to go ahead;
2. makes sure the entity has a lineage;
3. restores the loaded row to its committed values and moves its unique
   columns into its revision's metadata;
4. inserts a copy carrying the new values;
5. cascades to related rows (owned children follow, pivots are re-attached,
   parents stay put);
6. chains a new revision for the copy onto the old one.

All of it runs in one savepoint so a failure leaves no partial copy behind.
Public writes commit when the session had no transaction open on entry;
inside a caller's transaction they leave the commit to the caller.

The caller gets the copy back and should continue with it; the old
instance now represents the previous revision.

Example:
    >>> engine = RevisionEngine(session, registry)
    >>> post = engine.create(Post(title="Draft"))
    >>> post.title = "Published"
    >>> post = engine.save(post)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import inspect, insert, select
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value

from chronicle.base import ChronicleError, Clock, InvariantViolation, Skipped, utcnow
from chronicle.checkpoints.context import ActiveContextStore
from chronicle.database import atomic, commit, transaction
from chronicle.models.checkpoint import Checkpoint
from chronicle.models.revision import Revision
from chronicle.registry import EntityRegistry, EntitySpec
from chronicle.relations.base import Relation, RelationKind
from chronicle.relations.classifier import RelationClassifier, get_classifier
from chronicle.revisions.ledger import RevisionLedger
from chronicle.revisions.lifecycle import (
    HookRegistry,
    RevisionEvent,
    RevisionLifecycle,
    RevisionState,
)

logger = logging.getLogger(__name__)

Visited = set[tuple[str, int]]


@dataclass
class _Pending:
    """An entity that passed its guards and was reset to its stored values."""

    entity: Any
    spec: EntitySpec
    old_id: int
    committed: dict[str, Any]
    current: dict[str, Any]
    lifecycle: RevisionLifecycle


class RevisionEngine:
    """Write path for entities under revision control.

    Args:
        session: Session to write through.
        registry: Registered models and their relations.
        context: Active checkpoint store used to tag new revisions.
        classifier: Relation classifier; the process-wide one by default.
        hooks: Lifecycle callbacks.
        clock: Source of revision timestamps.
        store_unique_columns: Move unique columns into revision metadata.
    """

    def __init__(
        self,
        session: Session,
        registry: EntityRegistry,
        *,
        context: ActiveContextStore | None = None,
        classifier: RelationClassifier | None = None,
        hooks: HookRegistry | None = None,
        clock: Clock = utcnow,
        store_unique_columns: bool = True,
    ) -> None:
        self._session = session
        self._registry = registry
        self._context = context
        self._classifier = classifier or get_classifier()
        self._hooks = hooks or HookRegistry()
        self._clock = clock
        self._store_unique_columns = store_unique_columns
        self._ledger = RevisionLedger(session, registry, context, clock)

    @property
    def ledger(self) -> RevisionLedger:
        return self._ledger

    @property
    def hooks(self) -> HookRegistry:
        return self._hooks

    # =========================================================================
    # Write path
    # =========================================================================

    def create(self, entity: Any, checkpoint: Checkpoint | None = None) -> Any:
        """Insert a new entity and open its lineage."""
        spec = self._registry.spec_for(entity)
        operation = f"create {spec.entity_type}"
        with transaction(self._session, operation):
            with atomic(self._session, operation):
                self._session.add(entity)
                self._session.flush()
                revision = self._ledger.start(
                    entity, checkpoint, created_at=self._created_at(spec, entity)
                )
        self._hooks.fire(
            RevisionEvent(RevisionState.CREATED, entity, result=entity, revision=revision)
        )
        return entity

    def start(self, entity: Any, checkpoint: Checkpoint | None = None) -> Revision:
        """Open a lineage for an entity persisted without one."""
        spec = self._registry.spec_for(entity)
        with transaction(self._session, f"start {spec.entity_type} revision"):
            return self._ledger.start(
                entity, checkpoint, created_at=self._created_at(spec, entity)
            )

    def save(self, entity: Any) -> Any:
        """Persist pending changes of an entity.

        Changes touching a watched column produce a new revision and the new
        row is returned. Changes limited to ignored columns, and changes a
        guard declined to revision, are written in place. The write commits
        unless the session was already inside a transaction on entry.

        Returns:
            The row holding the entity's current data, or ``Skipped`` when a
            guard declined (the change is then written in place).
        """
        state = inspect(entity)
        if state.transient or state.pending:
            return self.create(entity)

        owns = self._owns_transaction()
        spec = self._registry.spec_for(entity)
        changed = self.changed_columns(entity)
        if not changed:
            return entity

        if not any(spec.options.watches(column) for column in changed):
            self._write_in_place(spec, "update", owns)
            return entity

        result = self._perform(entity, owns)
        if isinstance(result, Skipped):
            self._write_in_place(spec, "update", owns)
        return result

    def delete(self, entity: Any, *, force: bool = False) -> Any:
        """Delete an entity.

        Models with a soft delete column get a new, trashed revision unless
        ``force`` is given. Hard deletes repair the lineage around the
        entity's revision and remove both rows.

        Returns:
            The trashed revision row for soft deletes, ``None`` otherwise.
        """
        owns = self._owns_transaction()
        spec = self._registry.spec_for(entity)
        column = spec.options.soft_delete_column

        if column is not None and not force:
            setattr(entity, column, self._clock())
            result = self._perform(entity, owns)
            if isinstance(result, Skipped):
                self._write_in_place(spec, "trash", owns)
            return result

        operation = f"delete {spec.entity_type}"
        with transaction(self._session, operation):
            with atomic(self._session, operation):
                revision = self._ledger.revision_for(entity)
                if revision is not None:
                    self._ledger.remove(revision)
                self._session.delete(entity)
                self._session.flush()
        return None

    def restore(self, entity: Any) -> Any:
        """Bring back a soft-deleted entity as a new revision."""
        spec = self._registry.spec_for(entity)
        column = spec.options.soft_delete_column
        if column is None:
            raise ChronicleError(f"{spec.entity_type} does not support soft deletes")
        setattr(entity, column, None)
        return self.save(entity)

    def _owns_transaction(self) -> bool:
        # Decided before the first read: any query autobegins a transaction.
        return not self._session.in_transaction()

    def _write_in_place(self, spec: EntitySpec, verb: str, owns: bool) -> None:
        operation = f"{verb} {spec.entity_type}"
        with atomic(self._session, operation):
            self._session.flush()
        if owns:
            commit(self._session, operation)

    # =========================================================================
    # Revisioning
    # =========================================================================

    def perform_revision(self, entity: Any) -> Any:
        """Turn the pending state of ``entity`` into a new revision.

        Guards run and the pending values are captured before the savepoint
        opens; opening it flushes the session, which must not write the new
        values onto the old row. When no transaction was open on entry the
        revision is committed.

        Returns:
            The new entity row, or a ``Skipped`` sentinel when a guard
            declined. A skipped entity keeps its pending changes and nothing
            is committed.

        Raises:
            InvariantViolation: If the revision graph would break.
            PersistenceFailure: If the database rejected a write. Nothing of
                the revision is left behind and the entity gets its pending
                values back, so a corrected retry revisions it.
        """
        return self._perform(entity, self._owns_transaction())

    def _perform(self, entity: Any, owns: bool) -> Any:
        completed: list[RevisionEvent] = []
        visited: Visited = set()

        pending = self._prepare(entity, visited)
        if isinstance(pending, Skipped):
            return pending

        try:
            with atomic(self._session, "revision entity"):
                result = self._apply(pending, visited, completed)
            if owns:
                commit(self._session, f"revision {pending.spec.entity_type}")
        except Exception as e:
            if owns:
                self._session.rollback()
            self._reinstate(pending)
            pending.lifecycle.transition(RevisionState.FAILED)
            self._hooks.fire(RevisionEvent(RevisionState.FAILED, entity, error=e))
            raise

        for event in completed:
            self._hooks.fire(event)
        return result

    def _revise(self, entity: Any, visited: Visited, completed: list[RevisionEvent]) -> Any:
        """Revision an entity inside an already open transaction."""
        pending = self._prepare(entity, visited)
        if isinstance(pending, Skipped):
            return pending
        return self._apply(pending, visited, completed)

    def _prepare(self, entity: Any, visited: Visited) -> "_Pending | Skipped":
        spec = self._registry.spec_for(entity)
        lifecycle = RevisionLifecycle(entity)

        # Loading an expired attribute must not flush the pending values
        # onto the stored row.
        with self._session.no_autoflush:
            old_id = getattr(entity, spec.primary_key)
            if old_id is None:
                raise InvariantViolation(f"Cannot revision an unsaved {spec.entity_type}")
            visited.add((spec.entity_type, old_id))

            guard = spec.options.should_revision
            if guard is not None and not guard(entity):
                lifecycle.transition(RevisionState.SKIPPED)
                return Skipped("should_revision", entity)

            lifecycle.transition(RevisionState.REVISIONING)
            if not self._hooks.fire(RevisionEvent(RevisionState.REVISIONING, entity)):
                lifecycle.transition(RevisionState.SKIPPED)
                return Skipped("hook", entity)

            committed = self._committed_values(entity, spec)
            current = self._current_values(entity)

        # The loaded row goes back to what is stored; the copy gets the rest.
        for name, value in committed.items():
            set_committed_value(entity, name, value)

        return _Pending(entity, spec, old_id, committed, current, lifecycle)

    def _reinstate(self, pending: "_Pending") -> None:
        """Give a failed entity its pending values back."""
        for name, value in pending.current.items():
            if value != pending.committed.get(name):
                setattr(pending.entity, name, value)

    def _apply(
        self,
        pending: "_Pending",
        visited: Visited,
        completed: list[RevisionEvent],
    ) -> Any:
        entity, spec = pending.entity, pending.spec

        revision = self._ledger.revision_for(entity)
        if revision is None:
            revision = self._ledger.start(entity, created_at=self._created_at(spec, entity))

        if self._store_unique_columns and spec.options.unique:
            self._move_unique_columns(entity, spec, revision, pending.committed)

        copy = self._duplicate(spec, pending.current)
        self._session.add(copy)
        self._session.flush()
        new_id = getattr(copy, spec.primary_key)
        # A self-owning row must not pick up its own copy as a child.
        visited.add((spec.entity_type, new_id))

        for relation in spec.cascaded_relations():
            self._cascade(relation, spec, pending.old_id, new_id, visited, completed)

        new_revision = self._ledger.chain_to(
            revision, new_id, created_at=self._created_at(spec, copy)
        )

        pending.lifecycle.transition(RevisionState.REVISIONED)
        completed.append(
            RevisionEvent(
                RevisionState.REVISIONED, entity, result=copy, revision=new_revision
            )
        )
        logger.debug(
            "Revisioned %s#%s as #%s (lineage %s)",
            spec.entity_type,
            pending.old_id,
            new_id,
            revision.lineage_id,
        )
        return copy

    # -------------------------------------------------------------------------
    # Row handling
    # -------------------------------------------------------------------------

    def changed_columns(self, entity: Any) -> set[str]:
        """Column attributes with pending changes."""
        state = inspect(entity)
        return {
            attr.key
            for attr in state.mapper.column_attrs
            if state.attrs[attr.key].history.has_changes()
        }

    def _committed_values(self, entity: Any, spec: EntitySpec) -> dict[str, Any]:
        mapper = inspect(spec.model)
        attrs = list(mapper.column_attrs)
        key_column = mapper.primary_key[0]
        row = self._session.execute(
            select(*[attr.columns[0] for attr in attrs]).where(
                key_column == getattr(entity, spec.primary_key)
            )
        ).one_or_none()
        if row is None:
            raise InvariantViolation(
                f"{spec.entity_type}#{getattr(entity, spec.primary_key)} is not stored"
            )
        return {attr.key: value for attr, value in zip(attrs, row)}

    def _current_values(self, entity: Any) -> dict[str, Any]:
        mapper = inspect(entity).mapper
        return {attr.key: getattr(entity, attr.key) for attr in mapper.column_attrs}

    def _duplicate(self, spec: EntitySpec, values: dict[str, Any]) -> Any:
        copy = spec.model()
        for name, value in values.items():
            if name == spec.primary_key or name in spec.options.excluded:
                continue
            setattr(copy, name, value)
        for name, value in spec.options.defaults.items():
            setattr(copy, name, value)
        return copy

    def _move_unique_columns(
        self,
        entity: Any,
        spec: EntitySpec,
        revision: Revision,
        committed: dict[str, Any],
    ) -> None:
        # The old row gives up its unique values before the copy claims them.
        meta = dict(revision.meta or {})
        for name in sorted(spec.options.unique):
            meta[name] = committed.get(name)
            setattr(entity, name, None)
        revision.meta = meta
        self._session.flush()

    def _created_at(self, spec: EntitySpec, entity: Any) -> datetime:
        factory = spec.options.created_at
        value = factory(entity) if factory is not None else None
        return value or self._clock()

    # -------------------------------------------------------------------------
    # Cascade
    # -------------------------------------------------------------------------

    def _cascade(
        self,
        relation: Relation,
        spec: EntitySpec,
        old_id: int,
        new_id: int,
        visited: Visited,
        completed: list[RevisionEvent],
    ) -> None:
        kind = self._classifier.classify(relation)

        if kind == RelationKind.PARENT:
            return
        if kind.is_child:
            self._cascade_children(relation, kind, spec, old_id, new_id, visited, completed)
        elif kind.is_pivoted:
            self._reattach_pivot(relation, old_id, new_id)
        else:
            logger.debug(
                "Skipping duplication of %s.%s (%s)",
                spec.entity_type,
                relation.name,
                relation.kind,
            )

    def _cascade_children(
        self,
        relation: Relation,
        kind: RelationKind,
        spec: EntitySpec,
        old_id: int,
        new_id: int,
        visited: Visited,
        completed: list[RevisionEvent],
    ) -> None:
        target = relation.target
        if target is None or relation.foreign_key is None:
            raise InvariantViolation(
                f"Owned relation {spec.entity_type}.{relation.name} needs a target and foreign key"
            )

        query = self._session.query(target).filter(
            getattr(target, relation.foreign_key) == old_id
        )
        if relation.type_column is not None:
            query = query.filter(getattr(target, relation.type_column) == spec.entity_type)

        revisioned = self._registry.is_revisionable(target)
        if revisioned:
            child_spec = self._registry.spec_for(target)
            child_key = getattr(target, child_spec.primary_key)
            superseded = select(Revision.entity_id).where(
                Revision.entity_type == child_spec.entity_type,
                ~Revision.is_latest,
            )
            query = query.filter(~child_key.in_(superseded)).order_by(child_key)
        else:
            query = query.order_by(*inspect(target).primary_key)

        children = query.limit(1).all() if kind == RelationKind.OWNED_SINGLE else query.all()

        for child in children:
            if revisioned:
                self._follow(child, relation, new_id, visited, completed)
            else:
                duplicate = self._replicate(child)
                setattr(duplicate, relation.foreign_key, new_id)
                self._session.add(duplicate)
        self._session.flush()

    def _follow(
        self,
        child: Any,
        relation: Relation,
        new_id: int,
        visited: Visited,
        completed: list[RevisionEvent],
    ) -> None:
        """Re-point a revisioned child at the new owner and revision it."""
        child_spec = self._registry.spec_for(child)
        node = (child_spec.entity_type, getattr(child, child_spec.primary_key))
        if node in visited:
            return

        setattr(child, relation.foreign_key, new_id)
        changed = self.changed_columns(child)
        if any(child_spec.options.watches(column) for column in changed):
            result = self._revise(child, visited, completed)
            if not isinstance(result, Skipped):
                return
        # Not revisioned: the child moves over to the new owner in place.
        self._session.flush()

    def _replicate(self, row: Any) -> Any:
        mapper = inspect(row).mapper
        keys = {mapper.get_property_by_column(column).key for column in mapper.primary_key}
        duplicate = mapper.class_()
        for attr in mapper.column_attrs:
            if attr.key not in keys:
                setattr(duplicate, attr.key, getattr(row, attr.key))
        return duplicate

    def _reattach_pivot(self, relation: Relation, old_id: int, new_id: int) -> None:
        table = relation.table
        if table is None or relation.local_key is None:
            raise InvariantViolation(f"Pivot relation {relation.name} needs a table and local key")

        local = table.c[relation.local_key]
        surrogate = {
            column.name
            for column in table.primary_key.columns
            if column.name not in (relation.local_key, relation.remote_key)
        }
        rows = self._session.execute(select(table).where(local == old_id)).mappings().all()
        for row in rows:
            values = {name: value for name, value in row.items() if name not in surrogate}
            values[relation.local_key] = new_id
            self._session.execute(insert(table).values(**values))

    # =========================================================================
    # Metadata
    # =========================================================================

    def metadata_of(self, entity: Any) -> dict[str, Any]:
        """Metadata stored on the entity's revision; empty without one."""
        revision = self._ledger.revision_for(entity)
        if revision is None:
            return {}
        return dict(revision.meta or {})

    def attribute(self, entity: Any, name: str) -> Any:
        """Read a column, falling back to revision metadata for unique columns."""
        value = getattr(entity, name)
        spec = self._registry.spec_for(entity)
        if value is None and name in spec.options.unique:
            return self.metadata_of(entity).get(name)
        return value
