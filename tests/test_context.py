"""Tests for active checkpoint context backends."""

from __future__ import annotations

import asyncio
import contextvars
import gc
import threading

import pytest

from chronicle.checkpoints.context import (
    ActiveContextStore,
    BasicContextStore,
    ContextVarStore,
    ThreadLocalStore,
    _active_checkpoints,
    active_checkpoint,
    create_context_store,
    list_context_stores,
    register_context_store,
)
from chronicle.models.checkpoint import Checkpoint


def checkpoint(id: int) -> Checkpoint:
    return Checkpoint(id=id, title=f"cp{id}")


BACKENDS = [BasicContextStore, ContextVarStore, ThreadLocalStore]


class TestBackends:
    """Every backend stores, retrieves and clears."""

    @pytest.mark.parametrize("backend", BACKENDS)
    def test_store_retrieve_clear(self, backend):
        store = backend()
        assert store.retrieve() is None

        cp = checkpoint(1)
        store.store(cp)
        assert store.retrieve() is cp
        assert store.refers_to(checkpoint(1))
        assert not store.refers_to(checkpoint(2))

        store.clear()
        assert store.retrieve() is None

    def test_context_var_stores_are_independent(self):
        first, second = ContextVarStore(), ContextVarStore()
        first.store(checkpoint(1))
        assert second.retrieve() is None

    def test_thread_local_isolated_per_thread(self):
        store = ThreadLocalStore()
        store.store(checkpoint(1))
        seen = []

        thread = threading.Thread(target=lambda: seen.append(store.retrieve()))
        thread.start()
        thread.join()

        assert seen == [None]
        assert store.retrieve().id == 1

    def test_context_var_isolated_per_task(self):
        store = ContextVarStore()

        async def activate(id: int) -> int:
            store.store(checkpoint(id))
            await asyncio.sleep(0)
            return store.retrieve().id

        async def main() -> list[int]:
            return await asyncio.gather(activate(1), activate(2))

        assert asyncio.run(main()) == [1, 2]
        assert store.retrieve() is None

    def test_context_var_stores_share_one_variable(self):
        ContextVarStore().store(checkpoint(1))
        entries = len(contextvars.copy_context())

        for i in range(100):
            ContextVarStore().store(checkpoint(i))

        assert len(contextvars.copy_context()) == entries

    def test_discarded_context_var_store_leaves_no_slot(self):
        def slots() -> int:
            return len(_active_checkpoints.get() or ())

        gc.collect()
        before = slots()
        for i in range(10):
            ContextVarStore().store(checkpoint(i))
        gc.collect()

        assert slots() == before


class TestActiveCheckpoint:
    """Tests for the active_checkpoint context manager."""

    def test_restores_previous(self):
        store = BasicContextStore()
        outer, inner = checkpoint(1), checkpoint(2)
        store.store(outer)

        with active_checkpoint(store, inner) as active:
            assert active is inner
            assert store.retrieve() is inner
        assert store.retrieve() is outer

    def test_none_suspends(self):
        store = BasicContextStore()
        store.store(checkpoint(1))
        with active_checkpoint(store, None):
            assert store.retrieve() is None
        assert store.retrieve().id == 1

    def test_restores_after_error(self):
        store = BasicContextStore()
        with pytest.raises(RuntimeError):
            with active_checkpoint(store, checkpoint(1)):
                raise RuntimeError("boom")
        assert store.retrieve() is None


class TestFactory:
    """Tests for the backend factory."""

    def test_builtin_backends(self):
        assert {"basic", "contextvar", "thread"} <= set(list_context_stores())
        assert isinstance(create_context_store(), ContextVarStore)
        assert isinstance(create_context_store("thread"), ThreadLocalStore)

    def test_unknown_backend(self):
        with pytest.raises(ValueError, match="Unknown context backend"):
            create_context_store("redis")

    def test_register_custom_backend(self):
        @register_context_store("test-fixed")
        class FixedStore(BasicContextStore):
            pass

        assert isinstance(create_context_store("test-fixed"), FixedStore)
        assert issubclass(FixedStore, ActiveContextStore)
