"""
基于 HTTP 的嵌入提供商公共逻辑（requests.Session 复用、状态码到异常的映射）。

状态码映射：
- 401 / 403 → AuthenticationError
- 404，或 400 且响应体提及模型 → UnsupportedModel
- 429 → RateLimited（读取 Retry-After）
- 5xx、连接失败、超时 → NetworkError
- 响应不是合法 JSON → ResponseFormatError
"""

from typing import Any, Dict, Optional

import requests

from codecontext.core.exceptions import (
    AuthenticationError,
    NetworkError,
    RateLimited,
    ResponseFormatError,
    RetrievalError,
    UnsupportedModel,
)
from codecontext.rag.embedding.base import EmbeddingProvider

_MAX_BODY_IN_MESSAGE = 300


class HttpEmbeddingProvider(EmbeddingProvider):
    """HTTP 嵌入提供商基类，会话在实例生命周期内复用。"""

    def __init__(self, model: str, base_url: str, timeout: float = 60.0,
                 headers: Optional[Dict[str, str]] = None, session: Optional[requests.Session] = None,
                 **kwargs: Any) -> None:
        super().__init__(model, **kwargs)
        if not base_url:
            raise ValueError(f"{self.provider} 未配置 base_url")
        self.base_url = base_url.rstrip("/")
        self.timeout = float(timeout)
        self.session = session or requests.Session()
        self.session.headers.update({"Content-Type": "application/json"})
        if headers:
            self.session.headers.update(headers)

    def _post_json(self, path: str, payload: Dict[str, Any]) -> Any:
        """
        发送 POST 请求并解析 JSON 响应。

        Args:
            path: 以 / 开头的接口路径
            payload: 请求体

        Returns:
            Any: 解析后的 JSON

        Raises:
            RetrievalError 子类，见模块说明
        """
        url = f"{self.base_url}{path}"
        try:
            response = self.session.post(url, json=payload, timeout=self.timeout)
        except requests.Timeout as e:
            raise NetworkError(f"请求 {url} 超时: {e}", "embed", self.provider) from e
        except requests.ConnectionError as e:
            raise NetworkError(f"无法连接 {url}: {e}", "embed", self.provider) from e
        except requests.RequestException as e:
            raise NetworkError(f"请求 {url} 失败: {e}", "embed", self.provider) from e

        if response.status_code >= 400:
            raise self._error_for_status(response)

        try:
            return response.json()
        except ValueError as e:
            raise ResponseFormatError(f"{self.provider} 返回的不是合法 JSON: {e}", "embed", self.provider) from e

    def _error_for_status(self, response: requests.Response) -> RetrievalError:
        status = response.status_code
        body = (response.text or "")[:_MAX_BODY_IN_MESSAGE]
        message = f"{self.provider} API 错误 {status}: {body}"

        if status in (401, 403):
            return AuthenticationError(message, "embed", self.provider)
        if status == 404 or (status == 400 and "model" in body.lower()):
            return UnsupportedModel(f"{message}（模型: {self.model}）", "embed", self.provider)
        if status == 429:
            return RateLimited(message, "embed", self.provider, retry_after=_retry_after(response))
        if status >= 500:
            return NetworkError(message, "embed", self.provider)
        return ResponseFormatError(message, "embed", self.provider)

    async def close(self) -> None:
        self.session.close()


def _retry_after(response: requests.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None
