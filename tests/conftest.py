# -*- coding: utf-8 -*-
"""
Pytest 全局配置：
- 确保 tests 运行时可以导入项目根目录下的 codecontext 包
- 提供确定性的假嵌入提供商（同一文本总是得到同一向量），避免依赖真实嵌入服务
- 提供内存向量库、集合注册表与编排器夹具
"""
import hashlib
import sys
from pathlib import Path
from typing import List

import numpy as np
import pytest


# 1) 确保将项目根目录加入 sys.path，便于 `from codecontext ...` 导入
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from codecontext.core.retry import RetryConfig  # noqa: E402
from codecontext.core.tokenization import byte_length_counter  # noqa: E402
from codecontext.rag.embedding.base import EmbeddingProvider  # noqa: E402
from codecontext.rag.retrieval.keyword_retriever import BM25KeywordSearcher  # noqa: E402
from codecontext.rag.retrieval.orchestrator import RetrievalOrchestrator  # noqa: E402
from codecontext.rag.retrieval.registry import CollectionRegistry  # noqa: E402
from codecontext.rag.vectordb.memory_store import MemoryVectorStore  # noqa: E402


FAST_RETRY = RetryConfig(max_attempts=3, initial_delay_ms=0, max_delay_ms=0, jitter=False)


class FakeEmbedding(EmbeddingProvider):
    """按文本哈希生成确定性向量的嵌入提供商，记录每次请求的批次。"""

    provider = "fake"

    def __init__(self, dimension: int = 16, **kwargs):
        kwargs.setdefault("retry_config", FAST_RETRY)
        kwargs.setdefault("token_counter", byte_length_counter())
        super().__init__("fake-model", dimension=dimension, **kwargs)
        self.width = dimension
        self.requests: List[List[str]] = []

    def vector_for(self, text: str) -> List[float]:
        seed = int.from_bytes(hashlib.sha256(text.encode("utf-8")).digest()[:8], "little")
        rng = np.random.default_rng(seed)
        return rng.standard_normal(self.width).astype(float).tolist()

    def _embed_sync(self, texts: List[str]) -> List[List[float]]:
        self.requests.append(list(texts))
        return [self.vector_for(t) for t in texts]


@pytest.fixture
def fake_embedder():
    return FakeEmbedding(dimension=16)


@pytest.fixture
def memory_store():
    return MemoryVectorStore(retry_config=FAST_RETRY)


@pytest.fixture
def registry(memory_store):
    return CollectionRegistry(memory_store)


@pytest.fixture
def orchestrator(fake_embedder, memory_store, registry):
    return RetrievalOrchestrator(
        embedder=fake_embedder,
        store=memory_store,
        registry=registry,
        lexical=BM25KeywordSearcher(),
    )
