from __future__ import annotations

"""
关键词检索器：为混合检索提供词法相关性信号。

实现：
- BM25KeywordSearcher：进程内 rank_bm25（BM25Okapi），语料由编排器在写入/删除时同步，可随时重建；
  分数为 BM25 原始分（scale="raw"），融合时走 RRF。
- MeilisearchKeywordSearcher：外部 Meilisearch，每个集合对应一个索引；
  分数为 _rankingScore（[0, 1]，scale="normalized"），融合时可直接加权。

两者的过滤语义与向量库一致：字段 → 标量取值的等值交集。
"""

import hashlib
import re
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence, Tuple

from rank_bm25 import BM25Okapi

from codecontext.core.exceptions import CollectionNotFound
from codecontext.core.retry import RetryConfig, run_blocking
from codecontext.infra.database.errors import classify_database_error
from codecontext.infra.database.meilisearch.db_helper import MeilisearchDBHelper
from codecontext.infra.logging import get_logger
from codecontext.rag.schemas import Fragment, RankedList
from codecontext.rag.vectordb.base import build_ranked_list
from codecontext.rag.vectordb.filters import FilterExpression, normalize_filter, to_meilisearch_filter, to_predicate
from codecontext.rag.vectordb.scoring import clamp01

_CAMEL = re.compile(r"[A-Z]+(?=[A-Z][a-z])|[A-Z]?[a-z]+|[A-Z]+|[0-9]+")
_IDENT = re.compile(r"\w+", re.UNICODE)
_STOPWORDS = frozenset({"and", "the", "is", "in", "to", "of", "a", "for", "with", "on", "at"})


def tokenize(text: str) -> List[str]:
    """
    面向代码文本的分词。

    - 标识符整体保留（小写），同时拆出 snake_case / camelCase 的子词；
    - 去除少量英文停用词与标点。

    Args:
        text: 输入文本

    Returns:
        List[str]: 词项列表
    """
    tokens: List[str] = []
    for ident in _IDENT.findall(text or ""):
        lowered = ident.lower()
        parts = [p.lower() for piece in ident.split("_") if piece for p in _CAMEL.findall(piece)]
        if lowered not in _STOPWORDS:
            tokens.append(lowered)
        if len(parts) > 1:
            tokens.extend(p for p in parts if p not in _STOPWORDS)
    return tokens


class KeywordSearcher(ABC):
    """关键词检索协议，由编排器在写入、删除与删集合时同步。"""

    name: str = "keyword"
    scale: str = "raw"

    @abstractmethod
    async def index(self, collection: str, fragments: Sequence[Fragment]) -> None:
        """写入或覆盖片段。"""

    @abstractmethod
    async def search(self, collection: str, text: str, limit: int = 10,
                     filter: Optional[FilterExpression] = None) -> RankedList:
        """关键词检索，集合不存在时返回空结果。"""

    @abstractmethod
    async def delete(self, collection: str, ids: Sequence[str]) -> None:
        """按 ID 删除。"""

    @abstractmethod
    async def drop(self, collection: str) -> None:
        """删除整个集合的关键词索引。"""

    async def close(self) -> None:
        return None


class _Corpus:
    """单个集合的 BM25 语料；写入后标记失效，检索时按需重建。"""

    def __init__(self) -> None:
        self.fragments: Dict[str, Fragment] = {}
        self.tokens: Dict[str, List[str]] = {}
        self._ids: List[str] = []
        self._bm25: Optional[BM25Okapi] = None

    def invalidate(self) -> None:
        self._bm25 = None

    def model(self) -> Tuple[Optional[BM25Okapi], List[str]]:
        if self._bm25 is None and self.fragments:
            self._ids = sorted(self.fragments.keys())
            self._bm25 = BM25Okapi([self.tokens[i] or [""] for i in self._ids])
        return self._bm25, self._ids


class BM25KeywordSearcher(KeywordSearcher):
    """进程内 BM25 检索器。"""

    name = "bm25"
    scale = "raw"

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self._corpora: Dict[str, _Corpus] = {}

    async def index(self, collection: str, fragments: Sequence[Fragment]) -> None:
        corpus = self._corpora.setdefault(collection, _Corpus())
        for fragment in fragments:
            corpus.fragments[fragment.id] = fragment
            corpus.tokens[fragment.id] = tokenize(f"{fragment.relative_path} {fragment.content}")
        corpus.invalidate()

    async def search(self, collection: str, text: str, limit: int = 10,
                     filter: Optional[FilterExpression] = None) -> RankedList:
        started = time.perf_counter()
        predicate = to_predicate(filter)
        corpus = self._corpora.get(collection)
        query_tokens = tokenize(text)
        if corpus is None or not query_tokens or limit <= 0:
            return RankedList(scale=self.scale, source="lexical")

        bm25, ids = corpus.model()
        if bm25 is None:
            return RankedList(scale=self.scale, source="lexical")

        wanted = set(query_tokens)
        scores = bm25.get_scores(query_tokens)
        scored = []
        for position, doc_id in enumerate(ids):
            # 小语料下 BM25 的 IDF 可能为负，是否命中以词项交集判断
            if not wanted.intersection(corpus.tokens[doc_id]):
                continue
            fragment = corpus.fragments[doc_id]
            if not predicate(fragment.flat_metadata()):
                continue
            scored.append((fragment, float(scores[position])))

        latency = int((time.perf_counter() - started) * 1000)
        return build_ranked_list(scored, limit=limit, scale=self.scale, source="lexical", latency_ms=latency)

    async def delete(self, collection: str, ids: Sequence[str]) -> None:
        corpus = self._corpora.get(collection)
        if corpus is None:
            return
        for doc_id in ids:
            corpus.fragments.pop(doc_id, None)
            corpus.tokens.pop(doc_id, None)
        corpus.invalidate()

    async def drop(self, collection: str) -> None:
        self._corpora.pop(collection, None)

    def size(self, collection: str) -> int:
        corpus = self._corpora.get(collection)
        return len(corpus.fragments) if corpus else 0


class MeilisearchKeywordSearcher(KeywordSearcher):
    """Meilisearch 关键词检索器：每个集合一个索引。

    文档结构：
    - pk: 原始 ID 的 md5（Meilisearch 主键只允许字母数字、- 与 _）
    - doc_id / content: 原始 ID 与正文
    - metadata: 溯源字段与用户元数据（整体声明为可过滤，过滤时使用 metadata.<field>）
    """

    name = "meilisearch"
    scale = "normalized"

    PRIMARY_KEY = "pk"

    def __init__(self, helper: Optional[MeilisearchDBHelper] = None, index_prefix: str = "",
                 retry_config: Optional[RetryConfig] = None) -> None:
        self.helper = helper or MeilisearchDBHelper()
        self.index_prefix = index_prefix
        self.retry_config = retry_config or RetryConfig()
        self.logger = get_logger(__name__)
        self._ready: set = set()

    @classmethod
    def from_config(cls, config_manager=None,
                    retry_config: Optional[RetryConfig] = None) -> "MeilisearchKeywordSearcher":
        from codecontext.config import get_config_manager

        config_manager = config_manager or get_config_manager()
        cfg = config_manager.get_meilisearch_database_config()
        return cls(
            helper=MeilisearchDBHelper(config_manager),
            index_prefix=str(cfg.get("index_prefix", "")),
            retry_config=retry_config or RetryConfig.from_config_manager(config_manager),
        )

    def index_name(self, collection: str) -> str:
        return re.sub(r"[^A-Za-z0-9_-]", "_", f"{self.index_prefix}{collection}")

    @staticmethod
    def primary_key(doc_id: str) -> str:
        return hashlib.md5(doc_id.encode("utf-8")).hexdigest()

    async def _call(self, operation: str, collection: str, fn, *args: Any, **kwargs: Any) -> Any:
        return await run_blocking(
            fn, *args, config=self.retry_config, operation=operation, target=collection,
            translate=lambda e, op, target: classify_database_error(e, f"meilisearch {op} 失败: {e}", op, target),
            **kwargs,
        )

    async def _ensure(self, collection: str) -> str:
        name = self.index_name(collection)
        if name not in self._ready:
            await self._call(
                "ensure_index", collection, self.helper.ensure_index, name,
                searchable=["content", "metadata.relative_path"],
                filterable=["metadata"],
                primary_key=self.PRIMARY_KEY,
            )
            self._ready.add(name)
        return name

    def _to_document(self, fragment: Fragment) -> Dict[str, Any]:
        return {
            self.PRIMARY_KEY: self.primary_key(fragment.id),
            "doc_id": fragment.id,
            "content": fragment.content,
            "metadata": fragment.flat_metadata(),
        }

    async def index(self, collection: str, fragments: Sequence[Fragment]) -> None:
        if not fragments:
            return
        name = await self._ensure(collection)
        latest = {fragment.id: fragment for fragment in fragments}
        documents = [self._to_document(fragment) for fragment in latest.values()]
        await self._call(
            "index", collection, self.helper.add_documents, name, documents, primary_key=self.PRIMARY_KEY,
        )

    async def search(self, collection: str, text: str, limit: int = 10,
                     filter: Optional[FilterExpression] = None) -> RankedList:
        started = time.perf_counter()
        flt = normalize_filter(filter)
        meili_filter = to_meilisearch_filter({f"metadata.{k}": v for k, v in flt.items()})
        if not (text or "").strip() or limit <= 0:
            return RankedList(scale=self.scale, source="lexical")

        try:
            result = await self._call(
                "search", collection, self.helper.search, self.index_name(collection), text,
                limit=limit, filter=meili_filter,
            )
        except CollectionNotFound:
            self.logger.debug(f"Meilisearch 索引不存在: {collection}，关键词检索返回空结果")
            return RankedList(scale=self.scale, source="lexical")

        scored = []
        for hit in result.get("hits", []):
            doc_id = str(hit.get("doc_id") or "")
            if not doc_id:
                continue
            fragment = Fragment.from_flat_metadata(doc_id, hit.get("content") or "", hit.get("metadata"))
            scored.append((fragment, clamp01(float(hit.get("_rankingScore", 0.0)))))

        latency = int((time.perf_counter() - started) * 1000)
        return build_ranked_list(scored, limit=limit, scale=self.scale, source="lexical", latency_ms=latency)

    async def delete(self, collection: str, ids: Sequence[str]) -> None:
        if not ids:
            return
        await self._call(
            "delete", collection, self.helper.delete_documents, self.index_name(collection),
            [self.primary_key(doc_id) for doc_id in ids],
        )

    async def drop(self, collection: str) -> None:
        name = self.index_name(collection)
        self._ready.discard(name)
        await self._call("drop", collection, self.helper.delete_index, name)


def create_keyword_searcher(config_manager=None, retry_config: Optional[RetryConfig] = None) -> Optional[KeywordSearcher]:
    """
    按 retrieval.lexical.provider 构建关键词检索器。

    Returns:
        Optional[KeywordSearcher]: bm25 / meilisearch 对应实例；none 时返回 None
    """
    from codecontext.config import get_config_manager

    config_manager = config_manager or get_config_manager()
    lexical_cfg = (config_manager.get_retrieval_config() or {}).get("lexical", {}) or {}
    provider = str(lexical_cfg.get("provider", "bm25")).lower()
    if provider in ("none", "", "off", "disabled"):
        return None
    if provider == "bm25":
        return BM25KeywordSearcher()
    if provider == "meilisearch":
        return MeilisearchKeywordSearcher.from_config(config_manager, retry_config=retry_config)
    raise NotImplementedError(f"关键词检索器 '{provider}' 尚未注册，可用: bm25, meilisearch, none")
