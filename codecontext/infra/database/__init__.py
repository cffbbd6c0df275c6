"""
数据库访问层

提供 ChromaDB 与 Meilisearch 的客户端管理、集合/索引操作与异常归类
"""

from codecontext.infra.database.meilisearch.db_helper import MeilisearchDBHelper  # noqa: F401
from codecontext.infra.database.chroma.db_helper import ChromaDBHelper  # noqa: F401
