"""
ChromaDB 向量库适配器。

- 集合以 cosine 空间创建，声明维度写入集合元数据 `dimension`，用于注册表重建维度缓存；
- 文档正文写入 documents，溯源字段与用户元数据合并写入 metadatas，一次 upsert 完成；
- 打分：Chroma 返回余弦距离 d = 1 - cos，score = 1 - d（见 scoring.score_from_distance），
  取值范围 [-1, 1]，完全相同的向量得 1.0。
"""

import time
from typing import Any, Dict, List, Optional, Sequence, Union

from codecontext.core.exceptions import CollectionNotFound, DimensionMismatch
from codecontext.core.retry import RetryConfig
from codecontext.infra.database.chroma.db_helper import ChromaDBHelper
from codecontext.rag.schemas import Fragment, RankedList, VectorDocument
from codecontext.rag.vectordb.base import (
    VectorStore,
    build_ranked_list,
    check_batch_dimensions,
    check_query_dimension,
    dedupe_by_id,
)
from codecontext.rag.vectordb.filters import (
    FilterExpression,
    parse_filter_expression,
    to_chroma_where,
)
from codecontext.rag.vectordb.scoring import score_from_distance

DIMENSION_KEY = "dimension"
DESCRIPTION_KEY = "description"
SPACE_KEY = "hnsw:space"


class ChromaVectorStore(VectorStore):
    """ChromaDB 适配器，阻塞调用经 ChromaDBHelper 在线程中执行。"""

    provider = "chromadb"

    def __init__(self, helper: Optional[ChromaDBHelper] = None, retry_config: Optional[RetryConfig] = None) -> None:
        super().__init__(retry_config)
        self.helper = helper or ChromaDBHelper()

    @classmethod
    def from_config(cls, config_manager=None, retry_config: Optional[RetryConfig] = None) -> "ChromaVectorStore":
        return cls(helper=ChromaDBHelper(config_manager), retry_config=retry_config)

    # 集合生命周期 ------------------------------------------------------
    async def create_collection(self, name: str, dimension: int, description: Optional[str] = None) -> None:
        """
        创建集合（幂等）。

        已存在时仅校验维度：元数据中记录的维度与请求不一致则抛出 DimensionMismatch，数据不做任何改动。
        """
        if int(dimension) <= 0:
            raise DimensionMismatch(f"集合维度必须为正整数: {dimension}", actual=dimension,
                                    operation="create_collection", target=name)

        metadata: Dict[str, Any] = {SPACE_KEY: "cosine", DIMENSION_KEY: int(dimension)}
        if description:
            metadata[DESCRIPTION_KEY] = description

        collection = await self._call("create_collection", name, self.helper.create_collection, name, metadata)
        existing = _declared_dimension(collection)
        if existing is not None and existing != int(dimension):
            raise DimensionMismatch(
                f"集合 '{name}' 已存在且维度为 {existing}，请求维度 {dimension}",
                expected=existing, actual=int(dimension),
                operation="create_collection", target=name,
            )
        self.logger.debug(f"集合就绪: {name} (dim={dimension})")

    async def drop_collection(self, name: str) -> None:
        dropped = await self._call("drop_collection", name, self.helper.delete_collection, name)
        if dropped:
            self.logger.info(f"删除 ChromaDB 集合: {name}")

    async def has_collection(self, name: str) -> bool:
        collection = await self._call("has_collection", name, self.helper.find_collection, name)
        return collection is not None

    async def list_collections(self) -> List[str]:
        return await self._call("list_collections", None, self.helper.list_collections)

    async def describe_collection(self, name: str) -> Optional[int]:
        collection = await self._call("describe_collection", name, self.helper.get_collection, name)
        return _declared_dimension(collection)

    # 文档读写 ----------------------------------------------------------
    async def insert(self, collection: str, documents: Sequence[VectorDocument]) -> int:
        batch = dedupe_by_id(documents)
        if not batch:
            return 0

        dimension = await self.describe_collection(collection)
        if dimension is not None:
            check_batch_dimensions(collection, batch, dimension)

        await self._call(
            "insert",
            collection,
            self.helper.upsert,
            collection,
            ids=[doc.id for doc in batch],
            embeddings=[list(doc.vector) for doc in batch],
            metadatas=[doc.flat_metadata() for doc in batch],
            documents=[doc.content for doc in batch],
        )
        return len(batch)

    async def search(
        self,
        collection: str,
        query_vector: Sequence[float],
        limit: int = 10,
        filter: Optional[FilterExpression] = None,
    ) -> RankedList:
        started = time.perf_counter()
        where = to_chroma_where(filter)
        dimension = await self.describe_collection(collection)
        check_query_dimension(collection, query_vector, dimension)
        if limit <= 0:
            return RankedList(source="dense")

        result = await self._call(
            "search",
            collection,
            self.helper.query,
            collection,
            query_embeddings=[list(query_vector)],
            n_results=int(limit),
            where=where,
        )

        ids = _first(result.get("ids"))
        docs = _first(result.get("documents"))
        metas = _first(result.get("metadatas"))
        distances = _first(result.get("distances"))

        scored = []
        for i, doc_id in enumerate(ids):
            fragment = Fragment.from_flat_metadata(
                doc_id,
                docs[i] if i < len(docs) else "",
                metas[i] if i < len(metas) else None,
            )
            distance = distances[i] if i < len(distances) else 2.0
            scored.append((fragment, score_from_distance(distance, "cosine_distance")))

        latency = int((time.perf_counter() - started) * 1000)
        return build_ranked_list(scored, limit=limit, source="dense", latency_ms=latency)

    async def delete(self, collection: str, ids: Sequence[str]) -> None:
        if not ids:
            return
        try:
            await self._call("delete", collection, self.helper.delete, collection, list(ids))
        except CollectionNotFound:
            self.logger.debug(f"集合 {collection} 不存在，忽略删除请求")

    async def query(
        self,
        collection: str,
        filter: Union[str, FilterExpression, None] = None,
        limit: int = 100,
    ) -> List[Fragment]:
        where = to_chroma_where(parse_filter_expression(filter))
        if limit <= 0:
            return []
        result = await self._call(
            "query", collection, self.helper.get, collection, where=where, limit=int(limit),
        )
        ids = result.get("ids") or []
        docs = result.get("documents") or []
        metas = result.get("metadatas") or []
        return [
            Fragment.from_flat_metadata(
                doc_id,
                docs[i] if i < len(docs) else "",
                metas[i] if i < len(metas) else None,
            )
            for i, doc_id in enumerate(ids)
        ]

    async def count(self, collection: str) -> int:
        return await self._call("count", collection, self.helper.count, collection)

    async def close(self) -> None:
        self.helper.disconnect()


def _declared_dimension(collection: Any) -> Optional[int]:
    metadata = getattr(collection, "metadata", None) or {}
    value = metadata.get(DIMENSION_KEY)
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _first(rows: Optional[List[Any]]) -> List[Any]:
    """Chroma 的 query 结果按查询向量分组，这里只取第一组。"""
    if not rows:
        return []
    return list(rows[0] or [])
