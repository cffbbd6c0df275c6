# 文件: codecontext/core/exceptions.py

"""
检索核心的异常体系。

约定：
- 所有异常均继承 RetrievalError，并携带 operation（操作名）与 target（集合名或提供商标识）上下文；
- 瞬时错误（TransientError 子类）允许按退避策略重试，其余错误一律视为永久错误；
- 适配器捕获厂商异常后，必须包装为下列类型并使用 `raise ... from e` 重新抛出。
"""

from typing import List, Optional, Sequence


class RetrievalError(Exception):
    """检索核心异常基类。"""

    def __init__(self, message: str, operation: Optional[str] = None, target: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.target = target

    def with_context(self, operation: Optional[str] = None, target: Optional[str] = None) -> "RetrievalError":
        """补充缺失的上下文并返回自身，已有的上下文不会被覆盖。"""
        if self.operation is None:
            self.operation = operation
        if self.target is None:
            self.target = target
        return self

    def __str__(self) -> str:
        context = []
        if self.operation:
            context.append(f"operation={self.operation}")
        if self.target:
            context.append(f"target={self.target}")
        if context:
            return f"{self.message} [{' '.join(context)}]"
        return self.message


class TransientError(RetrievalError):
    """可重试的瞬时错误基类。"""
    pass


class DatabaseConnectionError(TransientError):
    """向量库/关键词库连接异常（网络不可达、超时、服务端 5xx）。"""
    pass


class NetworkError(TransientError):
    """嵌入服务网络异常（连接失败、超时、服务端 5xx）。"""
    pass


class RateLimited(TransientError):
    """后端限流（HTTP 429 等）。"""

    def __init__(self, message: str, operation: Optional[str] = None, target: Optional[str] = None,
                 retry_after: Optional[float] = None):
        super().__init__(message, operation, target)
        self.retry_after = retry_after


class AuthenticationError(RetrievalError):
    """凭证无效或权限不足，不重试。"""
    pass


class UnsupportedModel(RetrievalError):
    """后端不支持所配置的模型，不重试。"""
    pass


class ResponseFormatError(RetrievalError):
    """后端返回的数据格式不符合预期，不重试。"""
    pass


class DimensionMismatch(RetrievalError):
    """
    向量维度与集合声明维度不一致。

    出现在：
    - 对同名集合以不同维度重复创建；
    - 写入批次中任一向量长度与集合维度不符（整批拒绝）；
    - 查询向量长度与集合维度不符。
    """

    def __init__(self, message: str, expected: Optional[int] = None, actual: Optional[int] = None,
                 operation: Optional[str] = None, target: Optional[str] = None):
        super().__init__(message, operation, target)
        self.expected = expected
        self.actual = actual


class UnsupportedFilter(RetrievalError):
    """过滤表达式包含等值比较以外的操作符或非标量取值。"""
    pass


class CollectionNotFound(RetrievalError):
    """集合不存在或已被删除。"""
    pass


class PartialBatchFailure(RetrievalError):
    """
    批次部分失败。

    向量写入已成功，但关键词索引同步失败时抛出；failed_ids 列出未同步的文档。
    """

    def __init__(self, message: str, failed_ids: Optional[Sequence[str]] = None,
                 operation: Optional[str] = None, target: Optional[str] = None):
        super().__init__(message, operation, target)
        self.failed_ids: List[str] = list(failed_ids or [])


class InvalidRequest(RetrievalError, ValueError):
    """检索请求参数非法（查询文本为空、limit 越界、mode 未知等），不重试。"""
    pass
