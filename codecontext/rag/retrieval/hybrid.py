from __future__ import annotations

"""
混合检索融合器：提供 RRF 与加权求和两种基础融合策略。

说明：
- 输入为两个 RankedList（dense 与 lexical），输出为融合后的 RankedList（source="hybrid"）。
- 仅做融合与排序，不负责具体检索执行与路由决策。
- 融合结果的 score 即融合值，rank 从 1 开始连续编号；截断只在融合完成后进行。
"""

from typing import Dict, List, Optional, Tuple

from codecontext.rag.schemas import Fragment, RankedList, SearchResult
from codecontext.rag.vectordb.scoring import clamp01

DEFAULT_RRF_K = 60


def _finalize(scores: Dict[str, float], docs: Dict[str, Fragment], limit: Optional[int],
              latency_ms: int, scale: str) -> RankedList:
    """按 (融合得分降序, ID 升序) 排序，截断并编号。"""
    ordered: List[Tuple[str, float]] = sorted(scores.items(), key=lambda kv: (-kv[1], kv[0]))
    if limit is not None:
        ordered = ordered[: max(0, int(limit))]
    results = [
        SearchResult(document=docs[doc_id], score=score, rank=idx + 1)
        for idx, (doc_id, score) in enumerate(ordered)
    ]
    return RankedList(results=results, scale=scale, source="hybrid", latency_ms=latency_ms)


def _collect_documents(dense: RankedList, lexical: RankedList) -> Dict[str, Fragment]:
    # 优先保留稠密检索的文档信息（包含完整元数据）
    docs: Dict[str, Fragment] = {}
    for item in lexical.results:
        docs[item.id] = item.document
    for item in dense.results:
        docs[item.id] = item.document
    return docs


class HybridSearcher:
    """
    混合检索融合器。

    用处：将向量检索和关键词检索的结果进行融合，生成统一的排序结果。
    提供两种融合策略：RRF（Reciprocal Rank Fusion）和加权求和（Weighted Sum）。

    职责：
    - 融合两种检索方法的结果
    - 对融合后的结果进行排序，同分按文档 ID 升序
    - 返回 Top-K 结果

    不负责：
    - 具体检索执行（由 VectorStore 与关键词检索器负责）
    - 路由决策（由 RetrievalOrchestrator 负责）
    """

    @staticmethod
    def rrf(dense: RankedList, lexical: RankedList, k: int = DEFAULT_RRF_K,
            limit: Optional[int] = 10) -> RankedList:
        """
        Reciprocal Rank Fusion（RRF）融合算法。

        用处：基于排名融合两种检索结果，不依赖得分绝对值，适用于分数尺度不可比（如 BM25 原始分）的场景。

        算法原理：
        - score = Σ 1/(k + rank)，rank 为文档在各列表中的名次（从 1 开始）
        - 文档未出现在某个列表中时，该列表贡献 0

        Args:
            dense: 稠密检索结果
            lexical: 关键词检索结果
            k: RRF 常数，默认 60；值越大，名次差异对得分的影响越小
            limit: 返回数量上限，None 表示不截断

        Returns:
            RankedList: 融合结果，latency_ms 为两路延迟之和
        """
        scores: Dict[str, float] = {}
        for ranked in (dense, lexical):
            for position, item in enumerate(ranked.results, start=1):
                scores[item.id] = scores.get(item.id, 0.0) + 1.0 / (k + position)

        docs = _collect_documents(dense, lexical)
        return _finalize(scores, docs, limit, dense.latency_ms + lexical.latency_ms, scale="raw")

    @staticmethod
    def weighted_sum(dense: RankedList, lexical: RankedList, w_dense: float = 1.0,
                     w_lexical: float = 1.0, limit: Optional[int] = 10) -> RankedList:
        """
        加权求和融合算法。

        用处：两路分数均已归一化时，按权重直接相加，可以精细调整偏向。

        算法原理：
        - 各路得分先裁剪到 [0, 1]
        - final_score = w_dense * dense_score + w_lexical * lexical_score
        - 文档未出现在某个列表中时，该列表贡献 0

        Args:
            dense: 稠密检索结果
            lexical: 关键词检索结果
            w_dense: 稠密检索权重，默认 1.0
            w_lexical: 关键词检索权重，默认 1.0；两者之和不要求为 1
            limit: 返回数量上限，None 表示不截断

        Returns:
            RankedList: 融合结果
        """
        scores: Dict[str, float] = {}
        for item in dense.results:
            scores[item.id] = scores.get(item.id, 0.0) + w_dense * clamp01(item.score)
        for item in lexical.results:
            scores[item.id] = scores.get(item.id, 0.0) + w_lexical * clamp01(item.score)

        docs = _collect_documents(dense, lexical)
        return _finalize(scores, docs, limit, dense.latency_ms + lexical.latency_ms, scale="normalized")

    @classmethod
    def fuse(cls, dense: RankedList, lexical: RankedList, limit: Optional[int] = 10,
             w_dense: float = 1.0, w_lexical: float = 1.0, rrf_k: int = DEFAULT_RRF_K) -> RankedList:
        """
        按分数尺度自动选择融合策略。

        - 两路均为 normalized：加权求和；
        - 任一路为 raw（分数不可比）：RRF。

        Args:
            dense: 稠密检索结果
            lexical: 关键词检索结果
            limit: 返回数量上限（融合完成后截断）
            w_dense: 稠密检索权重
            w_lexical: 关键词检索权重
            rrf_k: RRF 常数

        Returns:
            RankedList: 融合结果
        """
        if dense.scale == "normalized" and lexical.scale == "normalized":
            return cls.weighted_sum(dense, lexical, w_dense=w_dense, w_lexical=w_lexical, limit=limit)
        return cls.rrf(dense, lexical, k=rrf_k, limit=limit)
