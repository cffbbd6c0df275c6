"""ChromaDB 适配器测试

使用进程内 EphemeralClient，不依赖外部服务；集合名带随机后缀，避免同进程内的客户端共享状态互相干扰。
"""

import asyncio
import uuid

import pytest

chromadb = pytest.importorskip("chromadb")

from codecontext.core.exceptions import CollectionNotFound, DimensionMismatch  # noqa: E402
from codecontext.infra.database.chroma.db_helper import ChromaDBHelper  # noqa: E402
from codecontext.rag.schemas import VectorDocument  # noqa: E402
from codecontext.rag.vectordb.chromadb_store import ChromaVectorStore  # noqa: E402

from conftest import FAST_RETRY  # noqa: E402


@pytest.fixture
def store():
    helper = ChromaDBHelper(client=chromadb.EphemeralClient())
    return ChromaVectorStore(helper=helper, retry_config=FAST_RETRY)


@pytest.fixture
def name():
    return f"test_{uuid.uuid4().hex[:12]}"


def doc(doc_id, vector, **metadata):
    return VectorDocument(id=doc_id, content=f"content of {doc_id}", vector=vector,
                          relative_path=f"src/{doc_id}.go", start_line=1, end_line=9,
                          file_extension=".go", metadata=metadata)


class TestChromaVectorStore:

    def test_idempotent_create_and_describe(self, store, name):
        async def scenario():
            await store.create_collection(name, 3, description="unit test")
            await store.insert(name, [doc("a", [1.0, 0.0, 0.0])])
            await store.create_collection(name, 3)
            return await store.count(name), await store.describe_collection(name), await store.list_collections()

        count, dimension, names = asyncio.run(scenario())
        assert count == 1
        assert dimension == 3
        assert name in names

    def test_create_with_other_dimension(self, store, name):
        async def scenario():
            await store.create_collection(name, 3)
            await store.create_collection(name, 5)

        with pytest.raises(DimensionMismatch):
            asyncio.run(scenario())

    def test_dimension_invariant(self, store, name):
        async def scenario():
            await store.create_collection(name, 3)
            with pytest.raises(DimensionMismatch):
                await store.insert(name, [doc("a", [1.0, 0.0, 0.0]), doc("b", [1.0])])
            return await store.count(name)

        assert asyncio.run(scenario()) == 0

    def test_self_retrieval_and_provenance(self, store, name):
        vectors = {"a": [1.0, 0.1, 0.0], "b": [0.0, 1.0, 0.2], "c": [0.3, 0.0, 1.0]}

        async def scenario():
            await store.create_collection(name, 3)
            await store.insert(name, [doc(k, v, language="go") for k, v in vectors.items()])
            return {k: await store.search(name, v, limit=1) for k, v in vectors.items()}

        for doc_id, result in asyncio.run(scenario()).items():
            top = result.results[0]
            assert top.id == doc_id
            assert top.score == pytest.approx(1.0, abs=1e-4)
            assert top.document.relative_path == f"src/{doc_id}.go"
            assert top.document.end_line == 9
            assert top.document.metadata == {"language": "go"}

    def test_upsert_and_delete(self, store, name):
        async def scenario():
            await store.create_collection(name, 2)
            await store.insert(name, [doc("a", [1.0, 0.0]), doc("b", [0.0, 1.0])])
            await store.insert(name, [VectorDocument(id="a", content="updated", vector=[1.0, 0.0])])
            listed = await store.query(name)
            await store.delete(name, ["b", "missing"])
            after = await store.search(name, [0.0, 1.0], limit=10)
            return listed, after

        listed, after = asyncio.run(scenario())
        assert {f.id: f.content for f in listed}["a"] == "updated"
        assert after.ids() == ["a"]

    def test_filter(self, store, name):
        async def scenario():
            await store.create_collection(name, 2)
            await store.insert(name, [
                doc("g", [1.0, 0.0], language="go"),
                doc("t", [1.0, 0.1], language="ts"),
                doc("p", [0.9, 0.1], language="py"),
            ])
            return {
                lang: (await store.search(name, [1.0, 0.0], limit=10, filter={"language": lang})).ids()
                for lang in ("go", "ts", "py")
            }

        assert asyncio.run(scenario()) == {"go": ["g"], "ts": ["t"], "py": ["p"]}

    def test_missing_collection(self, store, name):
        with pytest.raises(CollectionNotFound):
            asyncio.run(store.search(name, [1.0, 0.0]))

    def test_drop(self, store, name):
        async def scenario():
            await store.create_collection(name, 2)
            await store.drop_collection(name)
            await store.drop_collection(name)
            return await store.has_collection(name)

        assert asyncio.run(scenario()) is False
