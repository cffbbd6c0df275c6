"""
codecontext：代码片段的语义检索核心。

典型用法：

    from codecontext import RetrievalOrchestrator

    orchestrator = RetrievalOrchestrator.from_config()
    await orchestrator.index("my_repo", fragments)
    ranked = await orchestrator.query("my_repo", "parse config file", limit=5)
"""

__version__ = "0.1.0"

from codecontext.rag.retrieval.orchestrator import RetrievalOrchestrator  # noqa: E402,F401
from codecontext.rag.schemas import Fragment, RankedList, SearchResult, VectorDocument  # noqa: E402,F401
