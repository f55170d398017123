"""Revision chains and the copy-on-write write path."""

from chronicle.revisions.bulk import BulkStartResult, start_revisioning
from chronicle.revisions.engine import RevisionEngine
from chronicle.revisions.ledger import RevisionLedger
from chronicle.revisions.lifecycle import (
    HookRegistry,
    RevisionEvent,
    RevisionLifecycle,
    RevisionState,
)

__all__ = [
    "BulkStartResult",
    "start_revisioning",
    "RevisionEngine",
    "RevisionLedger",
    "HookRegistry",
    "RevisionEvent",
    "RevisionLifecycle",
    "RevisionState",
]
