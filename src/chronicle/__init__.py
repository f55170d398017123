"""chronicle - Revision history and point-in-time queries for SQLAlchemy models."""

from chronicle.api import Chronicle
from chronicle.base import (
    ANY_TIMELINE,
    INHERIT,
    SKIPPED,
    ChronicleError,
    ClassificationUnknown,
    Direction,
    EntityNotRegistered,
    InvariantViolation,
    PersistenceFailure,
    Skipped,
)
from chronicle.checkpoints import (
    ActiveContextStore,
    BasicContextStore,
    CheckpointStore,
    ContextVarStore,
    ThreadLocalStore,
    active_checkpoint,
    create_context_store,
)
from chronicle.config import ChronicleConfig, load_config
from chronicle.database import Database, DatabaseConfig, atomic, create_schema, transaction
from chronicle.models import Checkpoint, Revision, Timeline
from chronicle.query import TemporalQuery, TemporalSelect
from chronicle.registry import (
    EntityRegistry,
    RevisionOptions,
    default_registry,
    revisionable,
)
from chronicle.relations import (
    Relation,
    RelationClassifier,
    RelationKind,
    owned_many,
    owned_one,
    parent,
    pivot,
    relation,
)
from chronicle.report import HistoryReport
from chronicle.revisions import (
    HookRegistry,
    RevisionEngine,
    RevisionLedger,
    RevisionState,
    start_revisioning,
)

try:
    from importlib.metadata import version, PackageNotFoundError

    __version__ = version("chronicle")
except PackageNotFoundError:
    # Package not installed (development mode)
    __version__ = "0.0.0.dev"

__all__ = [
    # Core API
    "Chronicle",
    # Errors and sentinels
    "ChronicleError",
    "ClassificationUnknown",
    "EntityNotRegistered",
    "InvariantViolation",
    "PersistenceFailure",
    "Skipped",
    "SKIPPED",
    "ANY_TIMELINE",
    "INHERIT",
    "Direction",
    # Storage
    "Database",
    "DatabaseConfig",
    "atomic",
    "transaction",
    "create_schema",
    "Checkpoint",
    "Revision",
    "Timeline",
    # Registration
    "EntityRegistry",
    "RevisionOptions",
    "default_registry",
    "revisionable",
    "Relation",
    "RelationClassifier",
    "RelationKind",
    "owned_many",
    "owned_one",
    "parent",
    "pivot",
    "relation",
    # Components
    "RevisionEngine",
    "RevisionLedger",
    "HookRegistry",
    "RevisionState",
    "CheckpointStore",
    "ActiveContextStore",
    "BasicContextStore",
    "ContextVarStore",
    "ThreadLocalStore",
    "active_checkpoint",
    "create_context_store",
    "TemporalQuery",
    "TemporalSelect",
    "HistoryReport",
    "start_revisioning",
    # Configuration
    "ChronicleConfig",
    "load_config",
]
