from __future__ import annotations

"""
Meilisearch 数据库助手：集中管理客户端与索引获取，统一配置读取与异常包装。
"""

from typing import Any, Dict, Iterable, List, Optional, Set

import meilisearch

from codecontext.config import get_config_manager
from codecontext.core.exceptions import CollectionNotFound, DatabaseConnectionError, RetrievalError
from codecontext.infra.database.errors import classify_database_error, is_already_exists
from codecontext.infra.logging import get_logger


class MeilisearchDBHelper:
    """Meilisearch 助手，负责客户端与索引的获取、创建、写入与检索。"""

    def __init__(self, config_manager=None, client=None, task_timeout_ms: int = 30000) -> None:
        """初始化助手，读取 databases.meilisearch 配置。"""
        self.config_manager = config_manager or get_config_manager()
        cfg = self.config_manager.get_meilisearch_database_config() or {}
        self.url: str = self._build_url(cfg)  # Meilisearch 服务地址
        self.api_key: Optional[str] = str(cfg.get("token") or cfg.get("api_key") or "") or None  # API 密钥
        self.task_timeout_ms = task_timeout_ms
        self._client = client  # Meilisearch 客户端实例
        self._filterable: Dict[str, Set[str]] = {}  # 索引 → 已声明的可过滤字段
        self.logger = get_logger(__name__)  # 日志记录器

    @staticmethod
    def _build_url(cfg: Dict[str, Any]) -> str:
        """由 host/port/ssl 拼接服务地址；host 自带协议时原样使用。"""
        host = str(cfg.get("host") or "").strip().rstrip("/")
        if not host:
            return ""
        if "://" in host:
            return host
        scheme = "https" if cfg.get("ssl") else "http"
        port = cfg.get("port")
        return f"{scheme}://{host}:{port}" if port else f"{scheme}://{host}"

    def has_config(self) -> bool:
        """判断是否配置了 Meilisearch。"""
        return bool(self.url) or self._client is not None

    def get_client(self) -> meilisearch.Client:
        """获取或创建 Meilisearch 客户端。"""
        if self._client is not None:
            return self._client
        if not self.url:
            raise DatabaseConnectionError("Meilisearch 未配置 host", operation="connect", target="meilisearch")
        self._client = meilisearch.Client(url=self.url, api_key=self.api_key)
        return self._client

    def _raise(self, error: Exception, message: str, operation: str, index_name: Optional[str]) -> None:
        raise classify_database_error(error, f"{message}: {error}", operation, index_name) from error

    def _wait(self, task: Any, operation: str, index_name: str) -> None:
        """等待异步任务完成，任务失败时抛出异常。"""
        uid = getattr(task, "task_uid", None)
        if uid is None and isinstance(task, dict):
            uid = task.get("taskUid")
        if uid is None:
            return
        result = self.get_client().wait_for_task(uid, timeout_in_ms=self.task_timeout_ms)
        status = getattr(result, "status", None)
        if status == "failed":
            detail = getattr(result, "error", None) or {}
            code = detail.get("code") if isinstance(detail, dict) else None
            error_cls = CollectionNotFound if code == "index_not_found" else RetrievalError
            raise error_cls(f"Meilisearch 任务失败: {detail}", operation, index_name)

    def get_index(self, index_name: str):
        """获取索引对象，不存在时仅返回句柄。"""
        return self.get_client().index(index_name)

    def ensure_index(
        self,
        index_name: str,
        searchable: Optional[Iterable[str]] = None,
        filterable: Optional[Iterable[str]] = None,
        primary_key: str = "id",
    ) -> None:
        """确保索引存在并配置搜索/过滤字段。"""
        client = self.get_client()
        try:
            client.get_index(index_name)
        except Exception as e:
            wrapped = classify_database_error(e, str(e), "ensure_index", index_name)
            if not isinstance(wrapped, CollectionNotFound):
                raise wrapped from e
            try:
                self._wait(client.create_index(index_name, {"primaryKey": primary_key}), "ensure_index", index_name)
            except Exception as create_error:
                if not is_already_exists(create_error):
                    self._raise(create_error, f"创建索引 '{index_name}' 失败", "ensure_index", index_name)
            self.logger.info(f"已创建 Meilisearch 索引: {index_name}")

        index = client.index(index_name)
        try:
            if searchable:
                self._wait(index.update_searchable_attributes(list(searchable)), "ensure_index", index_name)
        except RetrievalError:
            raise
        except Exception as e:
            self._raise(e, f"配置索引 '{index_name}' 搜索字段失败", "ensure_index", index_name)
        if filterable:
            self.ensure_filterable(index_name, filterable)

    def ensure_filterable(self, index_name: str, fields: Iterable[str]) -> None:
        """追加声明可过滤字段（只增不减）。"""
        known = self._filterable.setdefault(index_name, set())
        wanted = set(fields)
        if wanted <= known:
            return
        index = self.get_index(index_name)
        try:
            current = set(index.get_filterable_attributes() or [])
            merged = sorted(current | known | wanted)
            if set(merged) != current:
                self._wait(index.update_filterable_attributes(merged), "ensure_filterable", index_name)
        except RetrievalError:
            raise
        except Exception as e:
            self._raise(e, f"配置索引 '{index_name}' 过滤字段失败", "ensure_filterable", index_name)
        known.update(merged)

    def add_documents(self, index_name: str, documents: List[Dict[str, Any]], primary_key: str = "id") -> None:
        """写入或覆盖文档并等待任务完成。"""
        if not documents:
            return
        try:
            task = self.get_index(index_name).add_documents(documents, primary_key=primary_key)
            self._wait(task, "add_documents", index_name)
        except RetrievalError:
            raise
        except Exception as e:
            self._raise(e, f"向索引 '{index_name}' 写入文档失败", "add_documents", index_name)

    def delete_documents(self, index_name: str, ids: List[str]) -> None:
        """按主键删除文档；索引不存在时视为成功。"""
        if not ids:
            return
        try:
            self._wait(self.get_index(index_name).delete_documents(ids), "delete_documents", index_name)
        except Exception as e:
            wrapped = classify_database_error(e, f"删除索引 '{index_name}' 文档失败: {e}", "delete_documents", index_name)
            if isinstance(wrapped, CollectionNotFound):
                return
            raise wrapped from e

    def delete_index(self, index_name: str) -> bool:
        """删除索引；索引不存在时返回 False。"""
        self._filterable.pop(index_name, None)
        try:
            self._wait(self.get_client().delete_index(index_name), "delete_index", index_name)
        except Exception as e:
            wrapped = classify_database_error(e, f"删除索引 '{index_name}' 失败: {e}", "delete_index", index_name)
            if isinstance(wrapped, CollectionNotFound):
                return False
            raise wrapped from e
        return True

    def search(
        self,
        index_name: str,
        query: str,
        limit: int = 10,
        filter: Optional[str] = None,
    ) -> Dict[str, Any]:
        """关键词检索，返回带 _rankingScore 的原始结果。"""
        params: Dict[str, Any] = {"limit": int(limit), "showRankingScore": True}
        if filter:
            params["filter"] = filter
        try:
            return self.get_index(index_name).search(query, params)
        except Exception as e:
            self._raise(e, f"检索索引 '{index_name}' 失败", "search", index_name)
