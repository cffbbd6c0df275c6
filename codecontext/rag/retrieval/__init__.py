"""
检索编排层

集合注册表、关键词检索器、混合融合与编排服务
"""

from codecontext.rag.retrieval.hybrid import HybridSearcher  # noqa: F401
from codecontext.rag.retrieval.keyword_retriever import (  # noqa: F401
    BM25KeywordSearcher,
    KeywordSearcher,
    MeilisearchKeywordSearcher,
    create_keyword_searcher,
)
from codecontext.rag.retrieval.orchestrator import RetrievalOrchestrator  # noqa: F401
from codecontext.rag.retrieval.registry import CollectionRegistry, CollectionState  # noqa: F401
