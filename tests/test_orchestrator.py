"""检索编排测试

使用确定性的假嵌入提供商 + 内存向量库 + BM25，端到端验证入库、稠密检索、混合检索、
缺失集合策略与关键词索引同步失败时的部分失败语义。
"""

import asyncio

import pytest

from codecontext.core.exceptions import (
    CollectionNotFound,
    DimensionMismatch,
    InvalidRequest,
    PartialBatchFailure,
    RetrievalError,
    UnsupportedFilter,
)
from codecontext.rag.retrieval.keyword_retriever import BM25KeywordSearcher
from codecontext.rag.retrieval.orchestrator import RetrievalOrchestrator
from codecontext.rag.retrieval.registry import CollectionState
from codecontext.rag.schemas import Fragment
from codecontext.rag.vectordb.memory_store import MemoryVectorStore

from conftest import FakeEmbedding


FRAGMENTS = [
    {"id": "cfg-py", "content": "def parse_config(path): return load_json(path)",
     "relative_path": "src/config.py", "metadata": {"language": "py"}},
    {"id": "cfg-go", "content": "func ParseConfig(path string) (*Config, error)",
     "relative_path": "src/config.go", "metadata": {"language": "go"}},
    {"id": "btn-ts", "content": "export function renderButton(props: Props) { return null }",
     "relative_path": "web/button.ts", "metadata": {"language": "ts"}},
]


class FailingKeywordSearcher(BM25KeywordSearcher):
    """写入时总是失败的关键词检索器。"""

    async def index(self, collection, fragments):
        raise RetrievalError("lexical backend unavailable", "index", collection)


class MixedWidthEmbedding(FakeEmbedding):
    """以 "bad" 开头的文本返回 3 维向量。"""

    def _embed_sync(self, texts):
        self.requests.append(list(texts))
        return [[0.1, 0.2, 0.3] if t.startswith("bad") else self.vector_for(t) for t in texts]


class DriftingEmbedding(MixedWidthEmbedding):
    """不校验返回维度的提供商。"""

    def _check_dimension(self, width):
        return None


class GatedMemoryStore(MemoryVectorStore):
    """第 gate_call 次写入在 release 被设置前挂起。"""

    def __init__(self, gate_call=2):
        super().__init__()
        self.gate_call = gate_call
        self.calls = 0
        self.entered = None
        self.release = None

    async def insert(self, collection, documents):
        self.calls += 1
        if self.calls == self.gate_call:
            self.entered.set()
            await self.release.wait()
        return await super().insert(collection, documents)


class TestHelloWorldScenario:
    """768 维 "hello world" 端到端场景"""

    def test_dense_self_retrieval(self):
        embedder = FakeEmbedding(dimension=768)
        orchestrator = RetrievalOrchestrator(embedder=embedder, store=MemoryVectorStore())

        async def scenario():
            written = await orchestrator.index("demo", [Fragment(id="doc-1", content="hello world")])
            result = await orchestrator.query("demo", "hello world", limit=5, mode="dense")
            return written, result

        written, result = asyncio.run(scenario())
        assert written == 1
        assert len(result) == 1
        assert result.ids() == ["doc-1"]
        assert result.results[0].score >= 0.99
        assert result.results[0].rank == 1
        assert orchestrator.registry.dimension("demo") == 768


class TestIndex:
    """测试入库流程"""

    def test_index_creates_collection_and_batches(self, fake_embedder, memory_store):
        orchestrator = RetrievalOrchestrator(embedder=fake_embedder, store=memory_store, batch_size=2)

        written = asyncio.run(orchestrator.index("repo", FRAGMENTS))

        assert written == 3
        assert orchestrator.registry.state("repo") == CollectionState.READY
        assert [len(batch) for batch in fake_embedder.requests] == [2, 1]
        assert asyncio.run(memory_store.count("repo")) == 3

    def test_duplicate_ids_last_wins(self, orchestrator, memory_store):
        fragments = [Fragment(id="a", content="first"), Fragment(id="a", content="second")]
        assert asyncio.run(orchestrator.index("repo", fragments)) == 1
        assert memory_store.get_document("repo", "a").content == "second"

    def test_empty_batch(self, orchestrator, memory_store):
        assert asyncio.run(orchestrator.index("repo", [])) == 0
        assert asyncio.run(memory_store.has_collection("repo")) is False

    def test_dimension_conflict_with_existing_collection(self, memory_store):
        async def scenario():
            await memory_store.create_collection("repo", 8)
            orchestrator = RetrievalOrchestrator(embedder=FakeEmbedding(dimension=16), store=memory_store)
            await orchestrator.index("repo", FRAGMENTS)

        with pytest.raises(DimensionMismatch):
            asyncio.run(scenario())

    def test_dimension_mismatch_in_later_chunk_writes_nothing(self, memory_store):
        orchestrator = RetrievalOrchestrator(
            embedder=MixedWidthEmbedding(dimension=16), store=memory_store, batch_size=1,
        )
        fragments = [Fragment(id="a", content="good a"), Fragment(id="b", content="bad b")]

        with pytest.raises(DimensionMismatch):
            asyncio.run(orchestrator.index("repo", fragments))

        assert asyncio.run(memory_store.has_collection("repo")) is False

    def test_dimension_drift_across_chunks_writes_nothing(self, memory_store):
        fragments = [Fragment(id="a", content="good a"), Fragment(id="b", content="bad b")]

        async def scenario():
            await memory_store.create_collection("repo", 16)
            orchestrator = RetrievalOrchestrator(
                embedder=DriftingEmbedding(dimension=16), store=memory_store, batch_size=1,
            )
            with pytest.raises(DimensionMismatch) as exc_info:
                await orchestrator.index("repo", fragments)
            return exc_info.value, await memory_store.count("repo")

        error, count = asyncio.run(scenario())
        assert count == 0
        assert (error.expected, error.actual) == (16, 3)
        assert error.operation == "index"

    def test_lexical_failure_reports_partial_batch(self, fake_embedder, memory_store):
        orchestrator = RetrievalOrchestrator(
            embedder=fake_embedder, store=memory_store, lexical=FailingKeywordSearcher(), batch_size=2,
        )

        with pytest.raises(PartialBatchFailure) as exc_info:
            asyncio.run(orchestrator.index("repo", FRAGMENTS))

        assert exc_info.value.failed_ids == ["cfg-py", "cfg-go", "btn-ts"]
        assert isinstance(exc_info.value.__cause__, RetrievalError)
        # 向量写入不受影响
        assert asyncio.run(memory_store.count("repo")) == 3


class TestQuery:
    """测试检索流程"""

    def test_hybrid_query(self, orchestrator):
        async def scenario():
            await orchestrator.index("repo", FRAGMENTS)
            return await orchestrator.query("repo", "parse config", limit=2)

        result = asyncio.run(scenario())
        assert result.source == "hybrid"
        assert len(result) == 2
        assert set(result.ids()) == {"cfg-py", "cfg-go"}
        assert [r.rank for r in result.results] == [1, 2]

    def test_exact_content_ranks_first_in_hybrid(self, orchestrator):
        text = FRAGMENTS[2]["content"]

        async def scenario():
            await orchestrator.index("repo", FRAGMENTS)
            return await orchestrator.query("repo", text, limit=3)

        assert asyncio.run(scenario()).ids()[0] == "btn-ts"

    def test_filter(self, orchestrator):
        async def scenario():
            await orchestrator.index("repo", FRAGMENTS)
            return {
                lang: (await orchestrator.query("repo", "parse config", filter={"language": lang})).ids()
                for lang in ("go", "ts", "py")
            }

        result = asyncio.run(scenario())
        assert result["go"] == ["cfg-go"]
        assert result["py"] == ["cfg-py"]
        assert result["ts"] == ["btn-ts"]

    def test_unsupported_filter_rejected_before_backend(self, orchestrator, fake_embedder):
        with pytest.raises(UnsupportedFilter):
            asyncio.run(orchestrator.query("repo", "x", filter={"language": {"$in": ["go"]}}))
        assert fake_embedder.requests == []

    def test_missing_collection_returns_empty(self, orchestrator, fake_embedder):
        result = asyncio.run(orchestrator.query("missing", "anything"))
        assert len(result) == 0
        assert fake_embedder.requests == []

    def test_missing_collection_raises_when_configured(self, fake_embedder, memory_store):
        orchestrator = RetrievalOrchestrator(
            embedder=fake_embedder, store=memory_store, missing_collection_as_empty=False,
        )
        with pytest.raises(CollectionNotFound):
            asyncio.run(orchestrator.query("missing", "anything"))

    @pytest.mark.parametrize("text,limit,mode", [
        ("", 5, "dense"),
        ("   ", 5, "hybrid"),
        ("parse", 1001, "hybrid"),
        ("parse", -1, "hybrid"),
        ("parse", 5, "sparse"),
    ])
    def test_invalid_request(self, orchestrator, fake_embedder, text, limit, mode):
        with pytest.raises(InvalidRequest) as exc_info:
            asyncio.run(orchestrator.query("repo", text, limit=limit, mode=mode))

        assert isinstance(exc_info.value, RetrievalError)
        assert exc_info.value.operation == "query"
        assert exc_info.value.target == "repo"
        assert fake_embedder.requests == []

    def test_zero_limit_returns_empty(self, orchestrator, fake_embedder):
        async def scenario():
            await orchestrator.index("repo", FRAGMENTS)
            calls = len(fake_embedder.requests)
            dense = await orchestrator.query("repo", "parse config", limit=0, mode="dense")
            hybrid = await orchestrator.query("repo", "parse config", limit=0)
            by_vector = await orchestrator.search_by_vector("repo", fake_embedder.vector_for("x"), limit=0)
            return [len(dense), len(hybrid), len(by_vector)], len(fake_embedder.requests) - calls

        sizes, extra_calls = asyncio.run(scenario())
        assert sizes == [0, 0, 0]
        assert extra_calls == 0

    def test_default_limit_when_omitted(self, fake_embedder, memory_store):
        orchestrator = RetrievalOrchestrator(embedder=fake_embedder, store=memory_store, default_limit=2)

        async def scenario():
            await orchestrator.index("repo", FRAGMENTS)
            return await orchestrator.query("repo", "parse config", mode="dense")

        assert len(asyncio.run(scenario())) == 2

    def test_search_by_vector(self, orchestrator, fake_embedder):
        async def scenario():
            await orchestrator.index("repo", FRAGMENTS)
            vector = fake_embedder.vector_for(FRAGMENTS[0]["content"])
            return await orchestrator.search_by_vector("repo", vector, limit=1)

        assert asyncio.run(scenario()).ids() == ["cfg-py"]


class TestMaintenance:
    """测试删除、删集合与列表"""

    def test_delete_removes_from_both_indexes(self, orchestrator):
        async def scenario():
            await orchestrator.index("repo", FRAGMENTS)
            await orchestrator.delete("repo", ["cfg-go"])
            dense = await orchestrator.query("repo", "parse config", mode="dense")
            lexical = await orchestrator.lexical.search("repo", "parse config")
            return dense.ids(), lexical.ids()

        dense_ids, lexical_ids = asyncio.run(scenario())
        assert "cfg-go" not in dense_ids
        assert lexical_ids == ["cfg-py"]

    def test_drop_then_query_is_empty(self, orchestrator):
        async def scenario():
            await orchestrator.index("repo", FRAGMENTS)
            await orchestrator.drop("repo")
            return await orchestrator.query("repo", "parse config"), await orchestrator.collections()

        result, names = asyncio.run(scenario())
        assert len(result) == 0
        assert names == []
        assert orchestrator.registry.state("repo") == CollectionState.DROPPED

    def test_list_with_filter(self, orchestrator):
        async def scenario():
            await orchestrator.index("repo", FRAGMENTS)
            return await orchestrator.list("repo", filter={"language": "ts"})

        fragments = asyncio.run(scenario())
        assert [f.id for f in fragments] == ["btn-ts"]
        assert fragments[0].relative_path == "web/button.ts"

    def test_close(self, orchestrator):
        asyncio.run(orchestrator.close())


class TestCancellation:
    """取消进行中的入库：每个文档要么完整存在，要么不存在"""

    def test_cancelled_index_leaves_whole_documents(self, fake_embedder):
        store = GatedMemoryStore(gate_call=2)
        orchestrator = RetrievalOrchestrator(embedder=fake_embedder, store=store, batch_size=1)

        async def scenario():
            store.entered, store.release = asyncio.Event(), asyncio.Event()
            task = asyncio.create_task(orchestrator.index("repo", FRAGMENTS))
            await store.entered.wait()
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            return [store.get_document("repo", f["id"]) for f in FRAGMENTS]

        stored = asyncio.run(scenario())

        assert [doc.id for doc in stored if doc is not None] == ["cfg-py"]
        for doc, fragment in zip(stored, FRAGMENTS):
            if doc is None:
                continue
            assert doc.content == fragment["content"]
            assert doc.relative_path == fragment["relative_path"]
            assert doc.metadata == fragment["metadata"]
            assert len(doc.vector) == fake_embedder.width

    def test_index_after_cancellation_completes(self, fake_embedder):
        store = GatedMemoryStore(gate_call=1)
        orchestrator = RetrievalOrchestrator(embedder=fake_embedder, store=store)

        async def scenario():
            store.entered, store.release = asyncio.Event(), asyncio.Event()
            task = asyncio.create_task(orchestrator.index("repo", FRAGMENTS))
            await store.entered.wait()
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            before = await store.count("repo")
            written = await orchestrator.index("repo", FRAGMENTS)
            return before, written, await store.count("repo")

        assert asyncio.run(scenario()) == (0, 3, 3)


class TestFromConfig:
    """测试按配置装配"""

    def test_builds_components(self, tmp_path):
        from codecontext.config import ConfigManager
        from codecontext.rag.embedding.ollama import OllamaEmbedding

        manager = ConfigManager(str(tmp_path / "absent.json"), environ={
            "EMBEDDING_PROVIDER": "ollama",
            "EMBEDDING_BATCH_SIZE": "4",
            "VECTOR_DATABASE_PROVIDER": "memory",
            "LEXICAL_PROVIDER": "bm25",
            "HYBRID_RRF_K": "10",
        })
        orchestrator = RetrievalOrchestrator.from_config(manager)

        assert isinstance(orchestrator.embedder, OllamaEmbedding)
        assert orchestrator.embedder.get_dimension() == 768
        assert isinstance(orchestrator.store, MemoryVectorStore)
        assert isinstance(orchestrator.lexical, BM25KeywordSearcher)
        assert orchestrator.batch_size == 4
        assert orchestrator.rrf_k == 10
        assert orchestrator.missing_collection_as_empty is True
        asyncio.run(orchestrator.close())
