"""Revision lifecycle.

Writes drive an entity through ``CREATED -> REVISIONING -> REVISIONED``.
The engine moves a ``RevisionLifecycle`` through these states explicitly and
fires the callbacks registered for each transition; nothing is dispatched
implicitly by the ORM.

Example:
    >>> hooks = HookRegistry()
    >>> @hooks.on(RevisionState.REVISIONING, model=Post)
    ... def only_published(event: RevisionEvent) -> bool:
    ...     return event.entity.status == "published"
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from chronicle.base import InvariantViolation

logger = logging.getLogger(__name__)


class RevisionState(str, Enum):
    """State of an entity within one write."""

    CREATED = "created"            # Persisted with its initial revision
    REVISIONING = "revisioning"    # Copy-on-write in progress
    REVISIONED = "revisioned"      # New revision committed
    SKIPPED = "skipped"            # A guard declined
    FAILED = "failed"              # Rolled back

    def __str__(self) -> str:
        return self.value

    @property
    def is_terminal(self) -> bool:
        return self in (
            RevisionState.REVISIONED,
            RevisionState.SKIPPED,
            RevisionState.FAILED,
        )


_TRANSITIONS: dict[RevisionState, frozenset[RevisionState]] = {
    RevisionState.CREATED: frozenset({RevisionState.REVISIONING, RevisionState.SKIPPED}),
    RevisionState.REVISIONING: frozenset(
        {RevisionState.REVISIONED, RevisionState.SKIPPED, RevisionState.FAILED}
    ),
    # A revision applied in a savepoint can still fail to commit.
    RevisionState.REVISIONED: frozenset(
        {RevisionState.REVISIONING, RevisionState.SKIPPED, RevisionState.FAILED}
    ),
    RevisionState.SKIPPED: frozenset({RevisionState.REVISIONING, RevisionState.SKIPPED}),
    RevisionState.FAILED: frozenset({RevisionState.REVISIONING}),
}


@dataclass
class RevisionEvent:
    """Payload handed to lifecycle callbacks.

    Attributes:
        state: State just entered.
        entity: Entity the write started from.
        result: New entity row once revisioned.
        revision: Revision created by the transition, if any.
        error: Error that failed the write.
    """

    state: RevisionState
    entity: Any
    result: Any = None
    revision: Any = None
    error: BaseException | None = None


@dataclass
class RevisionLifecycle:
    """Tracks one entity through a write."""

    entity: Any
    state: RevisionState = RevisionState.CREATED
    history: list[RevisionState] = field(default_factory=list)

    def transition(self, target: RevisionState) -> None:
        """Move to ``target``.

        Raises:
            InvariantViolation: If the transition is not allowed.
        """
        if target not in _TRANSITIONS[self.state]:
            raise InvariantViolation(f"Cannot move from {self.state} to {target}")
        self.history.append(self.state)
        self.state = target


Hook = Callable[[RevisionEvent], Any]


class HookRegistry:
    """Callbacks per lifecycle state, optionally restricted to one model.

    Callbacks registered for ``REVISIONING`` act as guards: returning
    ``False`` from any of them cancels the revision.
    """

    def __init__(self) -> None:
        self._hooks: dict[RevisionState, list[tuple[type | None, Hook]]] = defaultdict(list)

    def on(
        self,
        state: RevisionState | str,
        callback: Hook | None = None,
        *,
        model: type | None = None,
    ) -> Any:
        """Register ``callback`` for ``state``. Usable as a decorator."""
        state = RevisionState(state)

        def register(fn: Hook) -> Hook:
            self._hooks[state].append((model, fn))
            return fn

        if callback is None:
            return register
        return register(callback)

    def off(self, state: RevisionState | str, callback: Hook) -> bool:
        hooks = self._hooks[RevisionState(state)]
        for index, (_, fn) in enumerate(hooks):
            if fn is callback:
                del hooks[index]
                return True
        return False

    def clear(self) -> None:
        self._hooks.clear()

    def fire(self, event: RevisionEvent) -> bool:
        """Run the callbacks for ``event.state``.

        Returns:
            False when a callback returned ``False``; remaining callbacks
            are not run.
        """
        for model, fn in list(self._hooks.get(event.state, ())):
            if model is not None and not isinstance(event.entity, model):
                continue
            if fn(event) is False:
                logger.debug("Hook %r declined %s", fn, event.state)
                return False
        return True
