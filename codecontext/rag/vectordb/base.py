from __future__ import annotations

"""
向量库适配器基类与通用校验工具。

职责：
- 统一各后端的最小异步接口（VectorStore），便于工厂分发与替换；
- 提供整批维度校验、批内按 ID 去重、结果排序等与后端无关的公共逻辑；
- 统一阻塞 SDK 调用的执行方式：放入线程执行、瞬时错误按退避重试、厂商异常包装为带上下文的检索异常。

约定：
- create_collection / drop_collection / delete 均为幂等操作；
- insert 为 upsert 语义，任一向量维度不符时整批拒绝（DimensionMismatch），不写入任何文档；
- search 返回按归一化分数降序排列的 RankedList，分数公式由各适配器在文档中写明。
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, TypeVar, Union

from codecontext.core.exceptions import DimensionMismatch, RetrievalError
from codecontext.core.retry import RetryConfig, run_blocking
from codecontext.infra.database.errors import classify_database_error
from codecontext.infra.logging import get_logger
from codecontext.rag.schemas import Fragment, RankedList, SearchResult, VectorDocument
from codecontext.rag.vectordb.filters import FilterExpression

T = TypeVar("T")


class VectorStore(ABC):
    """
    向量库适配器协议。

    每种后端实现一次；实例在配置阶段创建，其客户端连接在整个生命周期内复用。
    """

    provider: str = "base"

    def __init__(self, retry_config: Optional[RetryConfig] = None) -> None:
        self.retry_config = retry_config or RetryConfig()
        self.logger = get_logger(self.__class__.__module__)

    @classmethod
    def from_config(cls, config_manager=None, retry_config: Optional[RetryConfig] = None) -> "VectorStore":
        """按配置构建实例；需要连接参数的适配器覆盖此方法。"""
        return cls(retry_config=retry_config)

    # 集合生命周期 ------------------------------------------------------
    @abstractmethod
    async def create_collection(self, name: str, dimension: int, description: Optional[str] = None) -> None:
        """创建集合；已存在且维度一致时直接成功且不改动数据，维度冲突抛出 DimensionMismatch。"""

    @abstractmethod
    async def drop_collection(self, name: str) -> None:
        """删除集合；集合不存在时视为成功。"""

    @abstractmethod
    async def has_collection(self, name: str) -> bool:
        """集合是否存在。"""

    @abstractmethod
    async def list_collections(self) -> List[str]:
        """列出全部集合名称。"""

    @abstractmethod
    async def describe_collection(self, name: str) -> Optional[int]:
        """返回集合声明的向量维度；集合不存在时抛出 CollectionNotFound，维度未知时返回 None。"""

    async def check_collection_limit(self) -> bool:
        """后端是否还能创建新集合；本项目支持的后端没有集合数量上限。"""
        return True

    # 文档读写 ----------------------------------------------------------
    @abstractmethod
    async def insert(self, collection: str, documents: Sequence[VectorDocument]) -> int:
        """按 ID upsert 一批文档，返回写入条数。"""

    @abstractmethod
    async def search(
        self,
        collection: str,
        query_vector: Sequence[float],
        limit: int = 10,
        filter: Optional[FilterExpression] = None,
    ) -> RankedList:
        """向量相似度检索。"""

    @abstractmethod
    async def delete(self, collection: str, ids: Sequence[str]) -> None:
        """按 ID 删除；不存在的 ID 不报错。"""

    @abstractmethod
    async def query(
        self,
        collection: str,
        filter: Union[str, FilterExpression, None] = None,
        limit: int = 100,
    ) -> List[Fragment]:
        """仅按元数据过滤列出文档（不做向量检索）。"""

    @abstractmethod
    async def count(self, collection: str) -> int:
        """集合内文档数量。"""

    async def close(self) -> None:
        """释放客户端资源。"""
        return None

    # 公共执行逻辑 ------------------------------------------------------
    async def _call(self, operation: str, target: Optional[str], fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """
        在线程中执行阻塞 SDK 调用，瞬时错误按退避重试，其余异常包装后抛出。

        Args:
            operation: 操作名（写入异常上下文与日志）
            target: 集合名
            fn: 阻塞调用
            *args, **kwargs: 调用参数

        Returns:
            fn 的返回值
        """
        return await run_blocking(
            fn, *args, config=self.retry_config, operation=operation,
            target=target or self.provider, translate=self._translate_error, **kwargs,
        )

    def _translate_error(self, error: Exception, operation: str, target: Optional[str]) -> RetrievalError:
        """
        将厂商异常映射为检索异常：连接/超时类为可重试的 DatabaseConnectionError，
        集合不存在为 CollectionNotFound，其余为永久错误。
        """
        return classify_database_error(error, f"{self.provider} {operation} 失败: {error}", operation, target)


def check_batch_dimensions(collection: str, documents: Iterable[VectorDocument], dimension: int) -> None:
    """
    整批校验向量维度，任一文档不符即抛出异常。

    Args:
        collection: 集合名（用于异常上下文）
        documents: 待写入文档
        dimension: 集合声明维度

    Raises:
        DimensionMismatch: 存在维度不符的文档
    """
    bad = [(doc.id, doc.dimension) for doc in documents if doc.dimension != dimension]
    if bad:
        sample = ", ".join(f"{doc_id}({dim})" for doc_id, dim in bad[:5])
        raise DimensionMismatch(
            f"批次中 {len(bad)} 个文档的向量维度与集合维度 {dimension} 不符: {sample}；整批拒绝写入",
            expected=dimension,
            actual=bad[0][1],
            operation="insert",
            target=collection,
        )


def check_query_dimension(collection: str, query_vector: Sequence[float], dimension: Optional[int]) -> None:
    """校验查询向量维度。"""
    if dimension is not None and len(query_vector) != dimension:
        raise DimensionMismatch(
            f"查询向量维度 {len(query_vector)} 与集合维度 {dimension} 不符",
            expected=dimension,
            actual=len(query_vector),
            operation="search",
            target=collection,
        )


def dedupe_by_id(documents: Sequence[VectorDocument]) -> List[VectorDocument]:
    """批内按 ID 去重，同一 ID 以最后一次出现为准。"""
    latest: Dict[str, VectorDocument] = {}
    for doc in documents:
        latest[doc.id] = doc
    return list(latest.values())


def build_ranked_list(
    scored: Iterable[Tuple[Fragment, float]],
    limit: Optional[int] = None,
    scale: str = "normalized",
    source: str = "dense",
    latency_ms: int = 0,
) -> RankedList:
    """
    按 (分数降序, ID 升序) 排序并生成带名次的结果集。

    Args:
        scored: (片段, 分数) 序列
        limit: 截断数量，None 表示不截断
        scale: 分数尺度
        source: 结果来源
        latency_ms: 耗时

    Returns:
        RankedList: 名次从 1 开始连续编号
    """
    ordered = sorted(scored, key=lambda item: (-item[1], item[0].id))
    if limit is not None:
        ordered = ordered[: max(0, int(limit))]
    results = [
        SearchResult(document=fragment, score=float(score), rank=idx + 1)
        for idx, (fragment, score) in enumerate(ordered)
    ]
    return RankedList(results=results, scale=scale, source=source, latency_ms=latency_ms)
