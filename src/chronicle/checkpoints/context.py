"""Active checkpoint context.

The active checkpoint is tagged onto every revision created while it is set
and serves as the default upper bound of temporal queries. Where it lives
depends on the host: a plain attribute for scripts, a ``ContextVar`` for
request handlers and asyncio tasks, a thread-local for threaded workers.
Each backend implements ``ActiveContextStore`` and is handed to the engine
explicitly.

Example:
    >>> context = ContextVarStore()
    >>> with active_checkpoint(context, release):
    ...     engine.save(post)   # revision tagged with ``release``
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from contextvars import ContextVar
from typing import TYPE_CHECKING, Callable, Iterator
from weakref import WeakKeyDictionary

if TYPE_CHECKING:
    from chronicle.models.checkpoint import Checkpoint


# =============================================================================
# Interface
# =============================================================================


class ActiveContextStore(ABC):
    """Holds the checkpoint active for the current unit of work."""

    @abstractmethod
    def store(self, checkpoint: Checkpoint) -> None:
        """Make ``checkpoint`` the active one."""
        pass

    @abstractmethod
    def retrieve(self) -> Checkpoint | None:
        """Return the active checkpoint, if any."""
        pass

    @abstractmethod
    def clear(self) -> None:
        """Forget the active checkpoint."""
        pass

    def refers_to(self, checkpoint: Checkpoint) -> bool:
        """True when the active checkpoint is ``checkpoint``."""
        current = self.retrieve()
        return current is not None and current.id == checkpoint.id


# =============================================================================
# Backends
# =============================================================================


_context_registry: dict[str, type[ActiveContextStore]] = {}


def register_context_store(name: str) -> Callable[[type[ActiveContextStore]], type[ActiveContextStore]]:
    """Decorator registering a backend under ``name``."""

    def decorator(cls: type[ActiveContextStore]) -> type[ActiveContextStore]:
        _context_registry[name] = cls
        return cls

    return decorator


@register_context_store("basic")
class BasicContextStore(ActiveContextStore):
    """Keeps the checkpoint on the instance. Shared by every caller."""

    def __init__(self) -> None:
        self._checkpoint: Checkpoint | None = None

    def store(self, checkpoint: Checkpoint) -> None:
        self._checkpoint = checkpoint

    def retrieve(self) -> Checkpoint | None:
        return self._checkpoint

    def clear(self) -> None:
        self._checkpoint = None


# One variable for every store; each store keeps its own slot in the mapping.
# Slots are weak so a discarded store leaves nothing behind in the context.
_active_checkpoints: ContextVar[WeakKeyDictionary[ActiveContextStore, Checkpoint] | None] = (
    ContextVar("chronicle_active_checkpoints", default=None)
)


@register_context_store("contextvar")
class ContextVarStore(ActiveContextStore):
    """Request scoped storage, isolated per thread and per asyncio task."""

    def store(self, checkpoint: Checkpoint) -> None:
        # Copy before writing: other contexts may share the current mapping.
        active = WeakKeyDictionary(_active_checkpoints.get() or {})
        active[self] = checkpoint
        _active_checkpoints.set(active)

    def retrieve(self) -> Checkpoint | None:
        active = _active_checkpoints.get()
        return active.get(self) if active is not None else None

    def clear(self) -> None:
        active = _active_checkpoints.get()
        if active is not None and self in active:
            active = WeakKeyDictionary(active)
            del active[self]
            _active_checkpoints.set(active)


@register_context_store("thread")
class ThreadLocalStore(ActiveContextStore):
    """One active checkpoint per thread."""

    def __init__(self) -> None:
        self._local = threading.local()

    def store(self, checkpoint: Checkpoint) -> None:
        self._local.checkpoint = checkpoint

    def retrieve(self) -> Checkpoint | None:
        return getattr(self._local, "checkpoint", None)

    def clear(self) -> None:
        self._local.checkpoint = None


def create_context_store(name: str = "contextvar") -> ActiveContextStore:
    """Instantiate a registered backend.

    Raises:
        ValueError: If no backend is registered under ``name``.
    """
    if name not in _context_registry:
        available = ", ".join(sorted(_context_registry))
        raise ValueError(f"Unknown context backend: {name}. Available: {available}")
    return _context_registry[name]()


def list_context_stores() -> list[str]:
    return sorted(_context_registry)


@contextmanager
def active_checkpoint(
    context: ActiveContextStore, checkpoint: Checkpoint | None
) -> Iterator[Checkpoint | None]:
    """Activate ``checkpoint`` for the duration of the block.

    The previously active checkpoint is restored afterwards. Passing ``None``
    runs the block without an active checkpoint.
    """
    previous = context.retrieve()
    if checkpoint is None:
        context.clear()
    else:
        context.store(checkpoint)
    try:
        yield checkpoint
    finally:
        if previous is None:
            context.clear()
        else:
            context.store(previous)
