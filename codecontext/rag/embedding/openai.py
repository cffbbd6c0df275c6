from typing import Any, Dict, List, Optional

from codecontext.config import get_config_manager
from codecontext.core.exceptions import ResponseFormatError
from codecontext.core.retry import RetryConfig
from codecontext.rag.embedding.http_provider import HttpEmbeddingProvider


class OpenAIEmbedding(HttpEmbeddingProvider):
    """
    OpenAI 兼容的 /embeddings 接口。

    请求体为 {"model": ..., "input": [...]}，响应 data[*].embedding 按 index 还原顺序。
    同一实现也服务于 OpenRouter 等兼容网关（见 OpenRouterEmbedding）。
    """

    provider = "openai"
    default_base_url = "https://api.openai.com/v1"

    def __init__(self, model: str, api_key: Optional[str] = None, base_url: Optional[str] = None,
                 **kwargs: Any) -> None:
        headers = dict(kwargs.pop("headers", None) or {})
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        super().__init__(model, base_url=base_url or self.default_base_url, headers=headers, **kwargs)
        if not api_key:
            self.logger.warning(f"{self.provider} 未配置 api_key，请求可能被拒绝")

    @classmethod
    def from_config(cls, config_manager=None, retry_config: Optional[RetryConfig] = None) -> "OpenAIEmbedding":
        """按 embedding 与 providers.<provider> 配置构建实例。"""
        config_manager = config_manager or get_config_manager()
        settings = config_manager.get_settings()
        emb_cfg = config_manager.get_embedding_config()
        provider_cfg = config_manager.get_provider_config(cls.provider)
        return cls(
            model=settings.embedding_model,
            api_key=provider_cfg.get("api_key"),
            base_url=provider_cfg.get("base_url"),
            headers=provider_cfg.get("headers"),
            timeout=float(emb_cfg.get("request_timeout", 60)),
            dimension=settings.embedding_dimension,
            max_tokens=settings.max_tokens,
            max_batch_size=settings.batch_size,
            retry_config=retry_config or RetryConfig.from_config_manager(config_manager),
        )

    def _embed_sync(self, texts: List[str]) -> List[List[float]]:
        payload = self._post_json("/embeddings", {"model": self.model, "input": texts})
        return self._parse(payload)

    def _parse(self, payload: Any) -> List[List[float]]:
        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, list):
            raise ResponseFormatError(f"{self.provider} 响应缺少 data 字段", "embed", self.provider)

        items: List[Dict[str, Any]] = []
        for position, item in enumerate(data):
            if not isinstance(item, dict) or "embedding" not in item:
                raise ResponseFormatError(f"{self.provider} 响应第 {position} 项缺少 embedding", "embed", self.provider)
            items.append(item)

        # 兼容网关可能乱序返回，按 index 还原；缺少 index 时保持原顺序
        if all(isinstance(item.get("index"), int) for item in items):
            items.sort(key=lambda item: item["index"])
        return [item["embedding"] for item in items]


class OpenRouterEmbedding(OpenAIEmbedding):
    """OpenRouter 嵌入网关，协议与 OpenAI 一致，额外携带来源标识请求头。"""

    provider = "openrouter"
    default_base_url = "https://openrouter.ai/api/v1"
    default_headers = {
        "HTTP-Referer": "https://github.com/codecontext/codecontext",
        "X-Title": "codecontext",
    }

    def __init__(self, model: str, api_key: Optional[str] = None, base_url: Optional[str] = None,
                 **kwargs: Any) -> None:
        headers = dict(self.default_headers)
        headers.update(kwargs.pop("headers", None) or {})
        super().__init__(model, api_key=api_key, base_url=base_url, headers=headers, **kwargs)
