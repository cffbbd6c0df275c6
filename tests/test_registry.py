"""集合注册表测试"""

import asyncio

import pytest

from codecontext.core.exceptions import CollectionNotFound, DimensionMismatch
from codecontext.rag.retrieval.registry import CollectionRegistry, CollectionState
from codecontext.rag.vectordb.memory_store import MemoryVectorStore


class CountingStore(MemoryVectorStore):
    """记录 create_collection 调用次数，并在创建过程中让出事件循环。"""

    def __init__(self, fail_first: bool = False):
        super().__init__()
        self.create_calls = 0
        self.fail_first = fail_first

    async def create_collection(self, name, dimension, description=None):
        self.create_calls += 1
        await asyncio.sleep(0.01)
        if self.fail_first and self.create_calls == 1:
            raise RuntimeError("backend unavailable")
        await super().create_collection(name, dimension, description)


class TestEnsureCollection:
    """测试首次创建与维度校验"""

    def test_concurrent_first_create_hits_backend_once(self):
        store = CountingStore()
        registry = CollectionRegistry(store)

        async def scenario():
            await asyncio.gather(*[registry.ensure_collection("repo", 8) for _ in range(5)])

        asyncio.run(scenario())
        assert store.create_calls == 1
        assert registry.state("repo") == CollectionState.READY
        assert registry.dimension("repo") == 8

    def test_dimension_conflict(self, registry):
        async def scenario():
            await registry.ensure_collection("repo", 8)
            await registry.ensure_collection("repo", 16)

        with pytest.raises(DimensionMismatch) as exc_info:
            asyncio.run(scenario())
        assert exc_info.value.expected == 8
        assert exc_info.value.actual == 16

    def test_failed_create_restores_state(self):
        store = CountingStore(fail_first=True)
        registry = CollectionRegistry(store)

        with pytest.raises(RuntimeError):
            asyncio.run(registry.ensure_collection("repo", 4))
        assert registry.state("repo") == CollectionState.ABSENT

        asyncio.run(registry.ensure_collection("repo", 4))
        assert registry.state("repo") == CollectionState.READY
        assert store.create_calls == 2


class TestLifecycle:
    """测试删除与缓存重建"""

    def test_drop_then_recreate(self, registry, memory_store):
        async def scenario():
            await registry.ensure_collection("repo", 4)
            await registry.drop_collection("repo")
            dropped = registry.state("repo")
            exists = await memory_store.has_collection("repo")
            await registry.ensure_collection("repo", 6)
            return dropped, exists

        dropped, exists = asyncio.run(scenario())
        assert dropped == CollectionState.DROPPED
        assert exists is False
        assert registry.dimension("repo") == 6

    def test_drop_missing_is_noop(self, registry):
        asyncio.run(registry.drop_collection("never-created"))
        assert registry.state("never-created") == CollectionState.ABSENT

    def test_require_ready_rebuilds_from_backend(self, memory_store):
        async def scenario():
            await memory_store.create_collection("repo", 12)
            fresh = CollectionRegistry(memory_store)
            dimension = await fresh.require_ready("repo")
            return fresh, dimension

        fresh, dimension = asyncio.run(scenario())
        assert dimension == 12
        assert fresh.state("repo") == CollectionState.READY
        assert fresh.snapshot() == {"repo": {"state": "ready", "dimension": 12}}

    def test_require_ready_missing(self, registry):
        with pytest.raises(CollectionNotFound):
            asyncio.run(registry.require_ready("missing"))

    def test_forget_rebuilds_lazily(self, registry):
        async def scenario():
            await registry.ensure_collection("repo", 4)
            registry.forget("repo")
            assert registry.dimension("repo") is None
            return await registry.require_ready("repo")

        assert asyncio.run(scenario()) == 4
