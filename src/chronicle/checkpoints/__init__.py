"""Checkpoints, timelines and the active checkpoint context."""

from chronicle.checkpoints.context import (
    ActiveContextStore,
    BasicContextStore,
    ContextVarStore,
    ThreadLocalStore,
    active_checkpoint,
    create_context_store,
    list_context_stores,
    register_context_store,
)
from chronicle.checkpoints.store import CheckpointStore, timeline_id_of

__all__ = [
    "ActiveContextStore",
    "BasicContextStore",
    "ContextVarStore",
    "ThreadLocalStore",
    "active_checkpoint",
    "create_context_store",
    "list_context_stores",
    "register_context_store",
    "CheckpointStore",
    "timeline_id_of",
]
