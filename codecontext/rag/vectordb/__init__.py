"""
向量库适配层

统一的 VectorStore 协议、ChromaDB 与内存适配器、过滤条件转换与打分公式
"""

from codecontext.rag.vectordb.base import VectorStore  # noqa: F401
from codecontext.rag.vectordb.factory import VectorStoreFactory  # noqa: F401
from codecontext.rag.vectordb.memory_store import MemoryVectorStore  # noqa: F401
