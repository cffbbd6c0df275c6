"""
嵌入提供商层

统一的 EmbeddingProvider 协议，OpenAI/OpenRouter、Ollama 与本地 sentence-transformers 适配器
"""

from codecontext.rag.embedding.base import EmbeddingProvider  # noqa: F401
from codecontext.rag.embedding.dimensions import lookup_dimension  # noqa: F401
from codecontext.rag.embedding.factory import EmbeddingProviderFactory  # noqa: F401
