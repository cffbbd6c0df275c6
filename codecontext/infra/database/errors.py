"""
数据库客户端异常分类。

ChromaDB 与 Meilisearch 的 SDK 在不同版本中抛出的异常类型并不统一（ValueError、httpx 异常、
requests 异常、自定义 API 异常），这里按异常类型名与消息内容统一归类为检索异常。
"""

import socket
from typing import Optional

from codecontext.core.exceptions import (
    AuthenticationError,
    CollectionNotFound,
    DatabaseConnectionError,
    RetrievalError,
)

# 仅网络层异常视为可重试；本地文件系统错误（FileNotFoundError、PermissionError）不在此列
_CONNECTION_TYPES = (ConnectionError, TimeoutError, socket.gaierror, socket.herror)
_CONNECTION_NAME_MARKERS = ("connect", "timeout", "communication", "network", "transport")
_NOT_FOUND_MARKERS = ("does not exist", "not found", "not exist", "index_not_found")
_AUTH_MARKERS = ("unauthorized", "forbidden", "invalid_api_key", "missing_authorization")


def classify_database_error(
    error: BaseException,
    message: str,
    operation: Optional[str] = None,
    target: Optional[str] = None,
) -> RetrievalError:
    """
    将数据库 SDK 异常归类为检索异常。

    Args:
        error: 原始异常
        message: 包装后的异常消息
        operation: 操作名
        target: 集合/索引名

    Returns:
        RetrievalError: DatabaseConnectionError（可重试）、CollectionNotFound、
        AuthenticationError 或通用 RetrievalError
    """
    if isinstance(error, RetrievalError):
        return error.with_context(operation, target)

    type_name = type(error).__name__.lower()
    text = str(error).lower()
    status = getattr(error, "status_code", None) or getattr(error, "status", None)

    if isinstance(error, _CONNECTION_TYPES) or any(m in type_name for m in _CONNECTION_NAME_MARKERS):
        return DatabaseConnectionError(message, operation, target)
    if isinstance(status, int) and status >= 500:
        return DatabaseConnectionError(message, operation, target)
    if status in (401, 403) or any(m in text for m in _AUTH_MARKERS):
        return AuthenticationError(message, operation, target)
    if status == 404 or any(m in text for m in _NOT_FOUND_MARKERS):
        return CollectionNotFound(message, operation, target)
    return RetrievalError(message, operation, target)


def is_already_exists(error: BaseException) -> bool:
    """判断异常是否表示“集合/索引已存在”。"""
    text = str(error).lower()
    return "already exists" in text or "index_already_exists" in text
