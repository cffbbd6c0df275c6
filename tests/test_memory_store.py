"""内存向量库测试

按向量库契约验证：幂等建集合、维度不变式、自检索、upsert、删除往返与过滤正确性。
"""

import asyncio

import pytest

from codecontext.core.exceptions import CollectionNotFound, DimensionMismatch, UnsupportedFilter
from codecontext.rag.schemas import VectorDocument
from codecontext.rag.vectordb.memory_store import MemoryVectorStore


def doc(doc_id, vector, content="", **metadata):
    return VectorDocument(id=doc_id, content=content or f"content of {doc_id}", vector=vector, metadata=metadata)


def run(coro):
    return asyncio.run(coro)


class TestCollectionLifecycle:
    """测试集合生命周期"""

    def test_idempotent_create(self, memory_store):
        async def scenario():
            await memory_store.create_collection("c", 3)
            await memory_store.insert("c", [doc("a", [1.0, 0.0, 0.0])])
            await memory_store.create_collection("c", 3)
            return await memory_store.count("c")

        assert run(scenario()) == 1

    def test_create_with_other_dimension_fails(self, memory_store):
        async def scenario():
            await memory_store.create_collection("c", 3)
            await memory_store.create_collection("c", 4)

        with pytest.raises(DimensionMismatch) as exc_info:
            run(scenario())
        assert exc_info.value.expected == 3
        assert exc_info.value.actual == 4

    def test_drop_is_idempotent(self, memory_store):
        async def scenario():
            await memory_store.create_collection("c", 2)
            await memory_store.drop_collection("c")
            await memory_store.drop_collection("c")
            return await memory_store.has_collection("c"), await memory_store.list_collections()

        assert run(scenario()) == (False, [])

    def test_describe_missing(self, memory_store):
        with pytest.raises(CollectionNotFound):
            run(memory_store.describe_collection("missing"))


class TestDocuments:
    """测试文档读写"""

    def test_dimension_invariant_rejects_whole_batch(self, memory_store):
        async def scenario():
            await memory_store.create_collection("c", 3)
            try:
                await memory_store.insert("c", [doc("ok", [1.0, 0.0, 0.0]), doc("bad", [1.0, 0.0])])
            except DimensionMismatch:
                pass
            return await memory_store.count("c")

        assert run(scenario()) == 0

    def test_self_retrieval(self, memory_store):
        vectors = {"a": [1.0, 0.2, 0.0], "b": [0.0, 1.0, 0.3], "c": [0.4, 0.0, 1.0]}

        async def scenario():
            await memory_store.create_collection("c", 3)
            await memory_store.insert("c", [doc(k, v) for k, v in vectors.items()])
            return {k: await memory_store.search("c", v, limit=1) for k, v in vectors.items()}

        for doc_id, result in run(scenario()).items():
            assert result.ids() == [doc_id]
            assert result.results[0].score == pytest.approx(1.0, abs=1e-5)
            assert result.results[0].rank == 1

    def test_upsert_replaces_document(self, memory_store):
        async def scenario():
            await memory_store.create_collection("c", 2)
            await memory_store.insert("c", [doc("a", [1.0, 0.0], content="old")])
            await memory_store.insert("c", [doc("a", [0.0, 1.0], content="new")])
            listed = await memory_store.query("c")
            return await memory_store.count("c"), listed

        count, listed = run(scenario())
        assert count == 1
        assert listed[0].content == "new"

    def test_batch_dedupe_last_wins(self, memory_store):
        async def scenario():
            await memory_store.create_collection("c", 2)
            written = await memory_store.insert("c", [doc("a", [1.0, 0.0], content="first"),
                                                      doc("a", [0.0, 1.0], content="second")])
            return written, memory_store.get_document("c", "a")

        written, stored = run(scenario())
        assert written == 1
        assert stored.content == "second"

    def test_delete_round_trip(self, memory_store):
        async def scenario():
            await memory_store.create_collection("c", 2)
            await memory_store.insert("c", [doc("a", [1.0, 0.0]), doc("b", [0.0, 1.0])])
            await memory_store.delete("c", ["a", "missing"])
            result = await memory_store.search("c", [1.0, 0.0], limit=10)
            return result.ids()

        assert run(scenario()) == ["b"]

    def test_query_dimension_checked(self, memory_store):
        async def scenario():
            await memory_store.create_collection("c", 2)
            await memory_store.search("c", [1.0, 0.0, 0.0])

        with pytest.raises(DimensionMismatch):
            run(scenario())

    def test_insert_into_missing_collection(self, memory_store):
        with pytest.raises(CollectionNotFound):
            run(memory_store.insert("missing", [doc("a", [1.0])]))


class TestFilters:
    """测试过滤正确性"""

    @pytest.fixture
    def populated(self, memory_store):
        async def setup():
            await memory_store.create_collection("c", 2)
            await memory_store.insert("c", [
                doc("go-1", [1.0, 0.0], language="go"),
                doc("go-2", [0.9, 0.1], language="go"),
                doc("ts-1", [1.0, 0.1], language="ts"),
                doc("py-1", [0.8, 0.2], language="py", stars=3),
            ])

        run(setup())
        return memory_store

    @pytest.mark.parametrize("language,expected", [
        ("go", {"go-1", "go-2"}),
        ("ts", {"ts-1"}),
        ("py", {"py-1"}),
    ])
    def test_search_filter(self, populated, language, expected):
        result = run(populated.search("c", [1.0, 0.0], limit=10, filter={"language": language}))
        assert set(result.ids()) == expected

    def test_query_with_text_filter(self, populated):
        fragments = run(populated.query("c", "language = py and stars = 3"))
        assert [f.id for f in fragments] == ["py-1"]

    def test_unsupported_filter(self, populated):
        with pytest.raises(UnsupportedFilter):
            run(populated.search("c", [1.0, 0.0], filter={"language": {"$ne": "go"}}))

    def test_provenance_is_filterable(self, memory_store):
        async def scenario():
            await memory_store.create_collection("c", 2)
            await memory_store.insert("c", [
                VectorDocument(id="a", content="x", vector=[1.0, 0.0], relative_path="src/a.go"),
                VectorDocument(id="b", content="y", vector=[1.0, 0.0], relative_path="src/b.go"),
            ])
            return await memory_store.search("c", [1.0, 0.0], filter={"relative_path": "src/b.go"})

        assert run(scenario()).ids() == ["b"]


class TestL2Metric:

    def test_identical_vector_scores_one(self):
        store = MemoryVectorStore(metric="l2")

        async def scenario():
            await store.create_collection("c", 2)
            await store.insert("c", [doc("a", [3.0, 4.0]), doc("b", [0.0, 0.0])])
            return await store.search("c", [3.0, 4.0])

        result = run(scenario())
        assert result.ids() == ["a", "b"]
        assert result.results[0].score == pytest.approx(1.0)

    def test_unknown_metric(self):
        with pytest.raises(ValueError):
            MemoryVectorStore(metric="dot")
