"""
进程内向量库（numpy 精确检索）。

用途：
- 单机/测试场景下替代外部向量库，行为与 ChromaDB 适配器保持同一契约；
- 同时保存可选的稀疏词法信号，便于调试混合检索。

打分：
- metric="cosine": score = cos(q, v)，完全相同的向量得 1.0（见 scoring.score_from_distance 的 cosine_similarity）；
- metric="l2": score = exp(-alpha * ||q - v||)，完全相同的向量得 1.0。
相同分数按 ID 升序排列，保证结果确定。
"""

import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Union

import numpy as np

from codecontext.core.exceptions import CollectionNotFound, DimensionMismatch
from codecontext.core.retry import RetryConfig
from codecontext.rag.schemas import Fragment, RankedList, VectorDocument
from codecontext.rag.vectordb.base import (
    VectorStore,
    build_ranked_list,
    check_batch_dimensions,
    check_query_dimension,
    dedupe_by_id,
)
from codecontext.rag.vectordb.filters import FilterExpression, parse_filter_expression, to_predicate
from codecontext.rag.vectordb.scoring import score_from_distance

_EPS = 1e-9


@dataclass
class _MemoryCollection:
    dimension: int
    description: Optional[str] = None
    documents: Dict[str, VectorDocument] = field(default_factory=dict)
    _matrix: Optional[np.ndarray] = None
    _ids: List[str] = field(default_factory=list)

    def invalidate(self) -> None:
        self._matrix = None
        self._ids = []

    def matrix(self) -> np.ndarray:
        """按需构建 (N, D) 矩阵，写入或删除后失效重建。"""
        if self._matrix is None:
            self._ids = list(self.documents.keys())
            if self._ids:
                self._matrix = np.asarray(
                    [self.documents[i].vector for i in self._ids], dtype=np.float32
                )
            else:
                self._matrix = np.zeros((0, self.dimension), dtype=np.float32)
        return self._matrix

    @property
    def ids(self) -> List[str]:
        self.matrix()
        return self._ids


class MemoryVectorStore(VectorStore):
    """基于 numpy 的精确检索向量库，数据仅保存在进程内存中。"""

    provider = "memory"

    def __init__(self, metric: str = "cosine", l2_alpha: float = 1.0,
                 retry_config: Optional[RetryConfig] = None) -> None:
        super().__init__(retry_config)
        if metric not in ("cosine", "l2"):
            raise ValueError(f"内存向量库不支持的度量: {metric}")
        self.metric = metric
        self.l2_alpha = l2_alpha
        self._collections: Dict[str, _MemoryCollection] = {}

    @classmethod
    def from_config(cls, config_manager=None, retry_config: Optional[RetryConfig] = None) -> "MemoryVectorStore":
        from codecontext.config import get_config_manager

        cfg = (config_manager or get_config_manager()).get_database_config("memory")
        return cls(
            metric=str(cfg.get("metric", "cosine")).lower(),
            l2_alpha=float(cfg.get("l2_alpha", 1.0)),
            retry_config=retry_config,
        )

    def _get(self, name: str, operation: str) -> _MemoryCollection:
        collection = self._collections.get(name)
        if collection is None:
            raise CollectionNotFound(f"集合 '{name}' 不存在", operation=operation, target=name)
        return collection

    async def create_collection(self, name: str, dimension: int, description: Optional[str] = None) -> None:
        if int(dimension) <= 0:
            raise DimensionMismatch(f"集合维度必须为正整数: {dimension}", actual=dimension,
                                    operation="create_collection", target=name)
        existing = self._collections.get(name)
        if existing is not None:
            if existing.dimension != int(dimension):
                raise DimensionMismatch(
                    f"集合 '{name}' 已存在且维度为 {existing.dimension}，请求维度 {dimension}",
                    expected=existing.dimension, actual=int(dimension),
                    operation="create_collection", target=name,
                )
            return
        self._collections[name] = _MemoryCollection(dimension=int(dimension), description=description)
        self.logger.info(f"创建内存集合: {name} (dim={dimension}, metric={self.metric})")

    async def drop_collection(self, name: str) -> None:
        if self._collections.pop(name, None) is not None:
            self.logger.info(f"删除内存集合: {name}")

    async def has_collection(self, name: str) -> bool:
        return name in self._collections

    async def list_collections(self) -> List[str]:
        return sorted(self._collections.keys())

    async def describe_collection(self, name: str) -> Optional[int]:
        return self._get(name, "describe_collection").dimension

    async def insert(self, collection: str, documents: Sequence[VectorDocument]) -> int:
        target = self._get(collection, "insert")
        batch = dedupe_by_id(documents)
        if not batch:
            return 0
        check_batch_dimensions(collection, batch, target.dimension)
        for doc in batch:
            target.documents[doc.id] = doc
        target.invalidate()
        return len(batch)

    async def search(
        self,
        collection: str,
        query_vector: Sequence[float],
        limit: int = 10,
        filter: Optional[FilterExpression] = None,
    ) -> RankedList:
        started = time.perf_counter()
        target = self._get(collection, "search")
        check_query_dimension(collection, query_vector, target.dimension)
        predicate = to_predicate(filter)

        matrix = target.matrix()
        if matrix.shape[0] == 0 or limit <= 0:
            return RankedList(source="dense")

        q = np.asarray(query_vector, dtype=np.float32)
        if self.metric == "cosine":
            qn = q / (np.linalg.norm(q) + _EPS)
            xn = matrix / (np.linalg.norm(matrix, axis=1, keepdims=True) + _EPS)
            raw = xn @ qn
            metric = "cosine_similarity"
        else:
            raw = np.linalg.norm(matrix - q, axis=1)
            metric = "l2"

        scored = []
        for idx, doc_id in enumerate(target.ids):
            doc = target.documents[doc_id]
            if not predicate(doc.flat_metadata()):
                continue
            score = score_from_distance(float(raw[idx]), metric, alpha=self.l2_alpha)
            scored.append((doc.to_fragment(), score))

        latency = int((time.perf_counter() - started) * 1000)
        return build_ranked_list(scored, limit=limit, source="dense", latency_ms=latency)

    async def delete(self, collection: str, ids: Sequence[str]) -> None:
        target = self._collections.get(collection)
        if target is None:
            return
        removed = 0
        for doc_id in ids:
            if target.documents.pop(doc_id, None) is not None:
                removed += 1
        if removed:
            target.invalidate()

    async def query(
        self,
        collection: str,
        filter: Union[str, FilterExpression, None] = None,
        limit: int = 100,
    ) -> List[Fragment]:
        target = self._get(collection, "query")
        predicate = to_predicate(parse_filter_expression(filter))
        matched = [
            doc.to_fragment()
            for doc_id, doc in sorted(target.documents.items())
            if predicate(doc.flat_metadata())
        ]
        return matched[: max(0, int(limit))]

    async def count(self, collection: str) -> int:
        return len(self._get(collection, "count").documents)

    def get_document(self, collection: str, doc_id: str) -> Optional[VectorDocument]:
        """读取单个文档（含向量与稀疏信号）。"""
        return self._get(collection, "get").documents.get(doc_id)
