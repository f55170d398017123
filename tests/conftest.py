"""Shared fixtures: an in-memory SQLite store, sample models and a fixed clock."""

from __future__ import annotations

from typing import Iterator

import pytest
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from chronicle.api import Chronicle
from chronicle.checkpoints.context import BasicContextStore
from chronicle.database import DatabaseConfig, create_engine_for, create_schema
from chronicle.models.revision import Revision
from chronicle.registry import EntityRegistry
from chronicle.relations.classifier import RelationClassifier
from chronicle.revisions.lifecycle import HookRegistry
from tests.support import FakeClock, HostBase, register_all


@pytest.fixture
def engine() -> Iterator[Engine]:
    engine = create_engine_for(DatabaseConfig(url="sqlite://"))
    create_schema(engine, HostBase.metadata)
    yield engine
    engine.dispose()


@pytest.fixture
def file_engine(tmp_path) -> Iterator[Engine]:
    """A SQLite file store, for state that must outlive a session."""
    engine = create_engine_for(DatabaseConfig(url=f"sqlite:///{tmp_path / 'history.db'}"))
    create_schema(engine, HostBase.metadata)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine: Engine) -> Iterator[Session]:
    session = Session(engine)
    yield session
    session.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def registry() -> EntityRegistry:
    return register_all(EntityRegistry())


@pytest.fixture
def context() -> BasicContextStore:
    return BasicContextStore()


@pytest.fixture
def hooks() -> HookRegistry:
    return HookRegistry()


@pytest.fixture
def chronicle(
    session: Session,
    registry: EntityRegistry,
    context: BasicContextStore,
    hooks: HookRegistry,
    clock: FakeClock,
) -> Chronicle:
    return Chronicle(
        session,
        registry,
        context=context,
        classifier=RelationClassifier(),
        hooks=hooks,
        clock=clock,
    )


@pytest.fixture
def revision_count(session: Session):
    """Callable returning the number of revision rows."""

    def count() -> int:
        return session.query(Revision).count()

    return count
