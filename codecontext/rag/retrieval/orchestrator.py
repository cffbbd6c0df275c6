from __future__ import annotations

"""
检索编排服务：片段入库（编码 → 建集合 → 写向量库 → 同步关键词索引）与查询（稠密召回 + 关键词召回 → 融合）。

单一职责：
- 对外提供 index / query / delete / drop / list 入口；内部协调嵌入提供商、向量库、集合注册表与关键词检索器。
- 所有依赖通过构造函数注入；from_config 按配置装配默认实现。
"""

import asyncio
import time
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from pydantic import ValidationError

from codecontext.config import get_config_manager
from codecontext.core.exceptions import (
    CollectionNotFound,
    DimensionMismatch,
    InvalidRequest,
    PartialBatchFailure,
    RetrievalError,
)
from codecontext.core.retry import RetryConfig
from codecontext.infra.logging import get_logger
from codecontext.rag.embedding.base import EmbeddingProvider
from codecontext.rag.embedding.factory import EmbeddingProviderFactory
from codecontext.rag.retrieval.hybrid import DEFAULT_RRF_K, HybridSearcher
from codecontext.rag.retrieval.keyword_retriever import KeywordSearcher, create_keyword_searcher
from codecontext.rag.retrieval.registry import CollectionRegistry
from codecontext.rag.schemas import Fragment, RankedList, SearchRequest, SearchResult, VectorDocument
from codecontext.rag.vectordb.base import VectorStore
from codecontext.rag.vectordb.factory import VectorStoreFactory
from codecontext.rag.vectordb.filters import FilterExpression, normalize_filter

FragmentInput = Union[Fragment, Mapping[str, Any]]


class RetrievalOrchestrator:
    """
    编排器：封装入库与混合检索流程。

    用途：
    - index(collection, fragments)：编码并写入，返回写入条数；关键词索引同步失败时抛出 PartialBatchFailure；
    - query(collection, text, ...)：dense 模式仅向量检索，hybrid 模式额外做关键词检索并融合。

    注意：
    - 两路召回各取 limit * candidate_factor 个候选，融合完成后才截断到 limit；
    - 查询不存在的集合时按 missing_collection_as_empty 返回空结果或抛出 CollectionNotFound。
    """

    def __init__(
        self,
        embedder: EmbeddingProvider,
        store: VectorStore,
        registry: Optional[CollectionRegistry] = None,
        lexical: Optional[KeywordSearcher] = None,
        batch_size: Optional[int] = None,
        default_limit: int = 10,
        candidate_factor: int = 3,
        dense_weight: float = 1.0,
        lexical_weight: float = 1.0,
        rrf_k: int = DEFAULT_RRF_K,
        missing_collection_as_empty: bool = True,
    ) -> None:
        self.embedder = embedder
        self.store = store
        self.registry = registry or CollectionRegistry(store)
        self.lexical = lexical
        self.batch_size = max(1, int(batch_size or embedder.max_batch_size))
        self.default_limit = max(1, int(default_limit))
        self.candidate_factor = max(1, int(candidate_factor))
        self.dense_weight = float(dense_weight)
        self.lexical_weight = float(lexical_weight)
        self.rrf_k = int(rrf_k)
        self.missing_collection_as_empty = bool(missing_collection_as_empty)
        self.logger = get_logger(__name__)

    @classmethod
    def from_config(cls, config_manager=None) -> "RetrievalOrchestrator":
        """
        按配置装配嵌入提供商、向量库、关键词检索器。

        读取：embedding.*、vector_database.provider、retrieval.*（hybrid / lexical / candidate_factor 等）、retry.*
        """
        config_manager = config_manager or get_config_manager()
        retry_config = RetryConfig.from_config_manager(config_manager)
        retrieval_cfg = config_manager.get_retrieval_config() or {}
        hybrid_cfg = retrieval_cfg.get("hybrid", {}) or {}

        embedder = EmbeddingProviderFactory.create(config_manager=config_manager, retry_config=retry_config)
        store = VectorStoreFactory.create(config_manager=config_manager, retry_config=retry_config)
        lexical = create_keyword_searcher(config_manager, retry_config=retry_config)
        return cls(
            embedder=embedder,
            store=store,
            lexical=lexical,
            batch_size=config_manager.get_settings().batch_size,
            default_limit=int(retrieval_cfg.get("default_limit", 10)),
            candidate_factor=int(retrieval_cfg.get("candidate_factor", 3)),
            dense_weight=float(hybrid_cfg.get("dense_weight", 1.0)),
            lexical_weight=float(hybrid_cfg.get("lexical_weight", 1.0)),
            rrf_k=int(hybrid_cfg.get("rrf_k", DEFAULT_RRF_K)),
            missing_collection_as_empty=bool(retrieval_cfg.get("missing_collection_as_empty", True)),
        )

    # 入库 --------------------------------------------------------------
    async def index(self, collection: str, fragments: Sequence[FragmentInput],
                    description: Optional[str] = None) -> int:
        """
        编码并写入片段（按 ID upsert）。

        Args:
            collection: 集合名
            fragments: Fragment 或等价字典
            description: 集合描述（仅首次创建时写入）

        Returns:
            int: 写入向量库的文档数

        Raises:
            DimensionMismatch: 任一向量维度与其余向量或集合维度不符；此时整批不写入
            PartialBatchFailure: 向量写入成功但关键词索引同步失败
        """
        batch = self._prepare(fragments)
        if not batch:
            return 0

        started = time.perf_counter()
        # 先编码全部片段并校验维度，任何写入都发生在校验之后
        chunks: List[Tuple[List[Fragment], List[VectorDocument]]] = []
        for start in range(0, len(batch), self.batch_size):
            chunk = batch[start:start + self.batch_size]
            vectors = await self.embedder.embed_batch([fragment.content for fragment in chunk])
            chunks.append((chunk, [VectorDocument.from_fragment(f, v) for f, v in zip(chunk, vectors)]))

        dimension = self._batch_dimension(collection, chunks)
        await self.registry.ensure_collection(collection, dimension, description)

        written = 0
        failed_ids: List[str] = []
        last_error: Optional[BaseException] = None
        for chunk, documents in chunks:
            written += await self.store.insert(collection, documents)

            if self.lexical is not None:
                try:
                    await self.lexical.index(collection, chunk)
                except RetrievalError as e:
                    self.logger.error(f"关键词索引同步失败: {collection}, {len(chunk)} 条: {e}")
                    failed_ids.extend(fragment.id for fragment in chunk)
                    last_error = e

        elapsed = int((time.perf_counter() - started) * 1000)
        self.logger.info(f"索引完成: {collection}, 写入 {written} 条, 维度 {dimension}, 耗时 {elapsed}ms")

        if failed_ids:
            raise PartialBatchFailure(
                f"向量写入成功，但 {len(failed_ids)} 条文档未同步到关键词索引",
                failed_ids=failed_ids, operation="index", target=collection,
            ) from last_error
        return written

    @staticmethod
    def _prepare(fragments: Sequence[FragmentInput]) -> List[Fragment]:
        latest: Dict[str, Fragment] = {}
        for item in fragments:
            fragment = item if isinstance(item, Fragment) else Fragment.model_validate(dict(item))
            latest[fragment.id] = fragment
        return list(latest.values())

    def _batch_dimension(self, collection: str,
                         chunks: Sequence[Tuple[List[Fragment], List[VectorDocument]]]) -> int:
        """整批向量必须同宽，并与注册表缓存的集合维度一致。"""
        expected = self.registry.dimension(collection)
        for _, documents in chunks:
            for document in documents:
                width = len(document.vector)
                if expected is None:
                    expected = width
                elif width != expected:
                    raise DimensionMismatch(
                        f"文档 {document.id} 向量维度 {width}，预期 {expected}，整批未写入",
                        expected=expected, actual=width, operation="index", target=collection,
                    )
        return expected

    def _search_request(self, operation: str, collection: str, **fields: Any) -> SearchRequest:
        try:
            return SearchRequest(**fields)
        except ValidationError as e:
            reasons = "; ".join(error["msg"] for error in e.errors())
            raise InvalidRequest(f"检索请求参数非法: {reasons}", operation, collection) from e

    # 查询 --------------------------------------------------------------
    async def query(
        self,
        collection: str,
        text: str,
        filter: Optional[FilterExpression] = None,
        limit: Optional[int] = None,
        mode: str = "hybrid",
    ) -> RankedList:
        """
        检索集合。

        Args:
            collection: 集合名
            text: 查询文本
            filter: 等值过滤条件
            limit: 返回数量上限，缺省使用 retrieval.default_limit；0 返回空结果
            mode: dense / hybrid

        Returns:
            RankedList: 排序后的结果（hybrid 模式为融合结果）

        Raises:
            InvalidRequest: 查询文本为空、limit 越界或 mode 未知
            UnsupportedFilter: 过滤条件包含等值以外的操作符
        """
        request = self._search_request(
            "query", collection, query_text=text, filter=filter,
            limit=self.default_limit if limit is None else limit, mode=mode,
        )
        normalize_filter(request.filter)
        if request.limit == 0:
            return RankedList(source=request.mode)

        if not await self._ready(collection):
            return RankedList(source=request.mode)

        started = time.perf_counter()
        hybrid = request.mode == "hybrid" and self.lexical is not None
        pool = request.limit * self.candidate_factor if hybrid else request.limit

        vector = await self.embedder.embed(request.query_text)
        try:
            if hybrid:
                dense, lexical = await asyncio.gather(
                    self.store.search(collection, vector, pool, request.filter),
                    self.lexical.search(collection, request.query_text, pool, request.filter),
                )
            else:
                dense = await self.store.search(collection, vector, pool, request.filter)
        except CollectionNotFound:
            # 查询期间集合被并发删除
            self.registry.forget(collection)
            if self.missing_collection_as_empty:
                return RankedList(source=request.mode)
            raise

        if hybrid:
            result = HybridSearcher.fuse(
                dense, lexical, limit=request.limit,
                w_dense=self.dense_weight, w_lexical=self.lexical_weight, rrf_k=self.rrf_k,
            )
        else:
            result = _truncate(dense, request.limit)

        result.latency_ms = int((time.perf_counter() - started) * 1000)
        self.logger.info(
            f"检索完成: {collection}, mode={request.mode}, 命中 {len(result)} 条, 耗时 {result.latency_ms}ms"
        )
        return result

    async def search_by_vector(
        self,
        collection: str,
        vector: Sequence[float],
        filter: Optional[FilterExpression] = None,
        limit: Optional[int] = None,
    ) -> RankedList:
        """直接以查询向量做稠密检索。"""
        request = self._search_request(
            "search", collection, query_vector=list(vector), filter=filter,
            limit=self.default_limit if limit is None else limit, mode="dense",
        )
        normalize_filter(request.filter)
        if request.limit == 0:
            return RankedList(source="dense")
        if not await self._ready(collection):
            return RankedList(source="dense")
        return await self.store.search(collection, request.query_vector, request.limit, request.filter)

    async def _ready(self, collection: str) -> bool:
        try:
            await self.registry.require_ready(collection)
        except CollectionNotFound:
            if self.missing_collection_as_empty:
                self.logger.debug(f"集合不存在，返回空结果: {collection}")
                return False
            raise
        return True

    # 维护 --------------------------------------------------------------
    async def delete(self, collection: str, ids: Sequence[str]) -> None:
        """按 ID 删除文档（向量库与关键词索引）；不存在的 ID 不报错。"""
        ids = list(ids)
        if not ids:
            return
        await self.store.delete(collection, ids)
        if self.lexical is not None:
            try:
                await self.lexical.delete(collection, ids)
            except RetrievalError as e:
                raise PartialBatchFailure(
                    f"向量库已删除，但关键词索引删除失败: {e}",
                    failed_ids=ids, operation="delete", target=collection,
                ) from e
        self.logger.info(f"删除完成: {collection}, {len(ids)} 条")

    async def drop(self, collection: str) -> None:
        """删除整个集合；集合不存在时为空操作。"""
        await self.registry.drop_collection(collection)
        if self.lexical is not None:
            await self.lexical.drop(collection)

    async def list(
        self,
        collection: str,
        filter: Union[str, FilterExpression, None] = None,
        limit: int = 100,
    ) -> List[Fragment]:
        """仅按元数据过滤列出片段。"""
        if not await self._ready(collection):
            return []
        return await self.store.query(collection, filter, limit)

    async def collections(self) -> List[str]:
        return await self.store.list_collections()

    async def close(self) -> None:
        """释放嵌入提供商、向量库与关键词检索器持有的连接。"""
        await self.embedder.close()
        await self.store.close()
        if self.lexical is not None:
            await self.lexical.close()

    async def __aenter__(self) -> "RetrievalOrchestrator":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


def _truncate(ranked: RankedList, limit: int) -> RankedList:
    results = [
        SearchResult(document=item.document, score=item.score, rank=idx + 1)
        for idx, item in enumerate(ranked.results[:limit])
    ]
    return RankedList(results=results, scale=ranked.scale, source=ranked.source, latency_ms=ranked.latency_ms)
