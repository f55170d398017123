"""Registration of models under revision control.

A model takes part in revisioning only once it is registered, together with
its revision options and the relations the revision engine cascades across.
Nothing is inferred from the model class.

Example:
    >>> registry = EntityRegistry()
    >>> registry.register(
    ...     Post,
    ...     options=RevisionOptions(unique={"slug"}, ignored={"views"}),
    ...     relations=[owned_many("comments", Comment, foreign_key="post_id")],
    ... )
    >>> registry.spec_for(Post).entity_type
    'posts'
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable, Iterator

from sqlalchemy import inspect

from chronicle.base import EntityNotRegistered, InvariantViolation
from chronicle.relations.base import Relation


# =============================================================================
# Options
# =============================================================================


@dataclass
class RevisionOptions:
    """Per-model revision behaviour.

    Attributes:
        ignored: Columns whose changes alone update the row in place instead
            of creating a revision.
        excluded: Columns never copied onto a new revision row.
        unique: Columns that cannot be duplicated. On revision their old
            values move into the previous revision's metadata.
        defaults: Values written onto every new revision row.
        excluded_relations: Relation names the cascade leaves alone.
        soft_delete_column: Timestamp column marking a soft-deleted row.
        should_revision: Guard deciding whether an entity gets revisioned.
        created_at: Timestamp for the revision created for an entity; the
            engine clock is used when unset or when it returns ``None``.
    """

    ignored: frozenset[str] = field(default_factory=frozenset)
    excluded: frozenset[str] = field(default_factory=frozenset)
    unique: frozenset[str] = field(default_factory=frozenset)
    defaults: dict[str, Any] = field(default_factory=dict)
    excluded_relations: frozenset[str] = field(default_factory=frozenset)
    soft_delete_column: str | None = None
    should_revision: Callable[[Any], bool] | None = None
    created_at: Callable[[Any], datetime | None] | None = None

    def __post_init__(self) -> None:
        self.ignored = frozenset(self.ignored)
        self.excluded = frozenset(self.excluded)
        self.unique = frozenset(self.unique)
        self.excluded_relations = frozenset(self.excluded_relations)
        self.defaults = dict(self.defaults)

    def watches(self, column: str) -> bool:
        """True when a change to ``column`` warrants a new revision."""
        return column not in self.ignored


# =============================================================================
# Entity Spec
# =============================================================================


@dataclass
class EntitySpec:
    """Everything the engine knows about one registered model."""

    model: type
    entity_type: str
    options: RevisionOptions = field(default_factory=RevisionOptions)
    relations: tuple[Relation, ...] = ()

    def relation(self, name: str) -> Relation:
        for rel in self.relations:
            if rel.name == name:
                return rel
        raise KeyError(f"Relation not registered on {self.entity_type}: {name}")

    def cascaded_relations(self) -> list[Relation]:
        """Relations taking part in a revision, in declaration order."""
        return [
            rel for rel in self.relations
            if rel.name not in self.options.excluded_relations
        ]

    @property
    def primary_key(self) -> str:
        """Attribute name of the model's single primary key column."""
        mapper = inspect(self.model)
        return mapper.get_property_by_column(mapper.primary_key[0]).key


# =============================================================================
# Registry
# =============================================================================


class EntityRegistry:
    """Registry of models under revision control, keyed by model and type name."""

    def __init__(self) -> None:
        self._by_model: dict[type, EntitySpec] = {}
        self._by_type: dict[str, EntitySpec] = {}

    def register(
        self,
        model: type,
        *,
        entity_type: str | None = None,
        options: RevisionOptions | None = None,
        relations: Iterable[Relation] = (),
        replace: bool = False,
    ) -> EntitySpec:
        """Register a model.

        Args:
            model: Mapped SQLAlchemy model class.
            entity_type: Name stored on revisions; defaults to the table name.
            options: Revision options.
            relations: Relations to cascade across.
            replace: Replace an existing registration.

        Returns:
            The registered spec.

        Raises:
            ValueError: If the model or type name is taken and ``replace`` is
                False.
        """
        name = entity_type or model.__table__.name
        if not replace and (model in self._by_model or name in self._by_type):
            raise ValueError(f"Entity already registered: {name}")

        if len(inspect(model).primary_key) != 1:
            raise InvariantViolation(
                f"{model.__name__} must have exactly one primary key column"
            )

        spec = EntitySpec(
            model=model,
            entity_type=name,
            options=options or RevisionOptions(),
            relations=tuple(relations),
        )
        self.unregister(model)
        # A replaced type name must not leave its old model behind.
        previous = self._by_type.get(name)
        if previous is not None:
            self.unregister(previous.model)
        self._by_model[model] = spec
        self._by_type[name] = spec
        return spec

    def add_relations(self, model: type, *relations: Relation) -> EntitySpec:
        """Append relations to a registered model.

        Useful when related classes are declared after the model itself.
        """
        spec = self.spec_for(model)
        spec.relations = spec.relations + tuple(relations)
        return spec

    def unregister(self, model: type) -> bool:
        spec = self._by_model.pop(model, None)
        if spec is None:
            return False
        self._by_type.pop(spec.entity_type, None)
        return True

    def spec_for(self, model_or_entity: Any) -> EntitySpec:
        """Spec of a model class or of an instance of one.

        Raises:
            EntityNotRegistered: If the model is not registered.
        """
        model = model_or_entity if isinstance(model_or_entity, type) else type(model_or_entity)
        spec = self._by_model.get(model)
        if spec is None:
            raise EntityNotRegistered(model)
        return spec

    def find(self, entity_type: str) -> EntitySpec | None:
        return self._by_type.get(entity_type)

    def is_revisionable(self, model_or_entity: Any) -> bool:
        model = model_or_entity if isinstance(model_or_entity, type) else type(model_or_entity)
        return model in self._by_model

    def entity_type_of(self, model_or_entity: Any) -> str:
        return self.spec_for(model_or_entity).entity_type

    def clear(self) -> None:
        self._by_model.clear()
        self._by_type.clear()

    def __iter__(self) -> Iterator[EntitySpec]:
        return iter(list(self._by_model.values()))

    def __len__(self) -> int:
        return len(self._by_model)

    def __contains__(self, model: type) -> bool:
        return model in self._by_model


default_registry = EntityRegistry()


def revisionable(
    *,
    registry: EntityRegistry | None = None,
    entity_type: str | None = None,
    options: RevisionOptions | None = None,
    relations: Iterable[Relation] = (),
) -> Callable[[type], type]:
    """Class decorator registering a model.

    Example:
        >>> @revisionable(options=RevisionOptions(ignored={"views"}))
        ... class Post(Base):
        ...     __tablename__ = "posts"
        ...     id = Column(Integer, primary_key=True)
    """

    def decorator(model: type) -> type:
        target = registry if registry is not None else default_registry
        target.register(
            model,
            entity_type=entity_type,
            options=options,
            relations=relations,
        )
        return model

    return decorator
