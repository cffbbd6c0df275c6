from typing import Any, List, Optional

from codecontext.config import get_config_manager
from codecontext.core.exceptions import ResponseFormatError
from codecontext.core.retry import RetryConfig
from codecontext.rag.embedding.http_provider import HttpEmbeddingProvider


class OllamaEmbedding(HttpEmbeddingProvider):
    """
    Ollama 本地嵌入服务（/api/embed）。

    请求体 {"model": ..., "input": [...]}，响应 {"embeddings": [[...], ...]}。
    未显式配置维度时先查维度表（nomic-embed-text → 768），仍未知则在首次使用时探测。
    """

    provider = "ollama"
    default_host = "http://localhost:11434"

    def __init__(self, model: str = "nomic-embed-text", host: Optional[str] = None, **kwargs: Any) -> None:
        super().__init__(model, base_url=host or self.default_host, **kwargs)

    @classmethod
    def from_config(cls, config_manager=None, retry_config: Optional[RetryConfig] = None) -> "OllamaEmbedding":
        config_manager = config_manager or get_config_manager()
        settings = config_manager.get_settings()
        emb_cfg = config_manager.get_embedding_config()
        provider_cfg = config_manager.get_provider_config(cls.provider)
        return cls(
            model=settings.embedding_model,
            host=provider_cfg.get("host"),
            timeout=float(emb_cfg.get("request_timeout", 60)),
            dimension=settings.embedding_dimension,
            max_tokens=settings.max_tokens,
            max_batch_size=settings.batch_size,
            retry_config=retry_config or RetryConfig.from_config_manager(config_manager),
        )

    def _embed_sync(self, texts: List[str]) -> List[List[float]]:
        payload = self._post_json("/api/embed", {"model": self.model, "input": texts})
        embeddings = payload.get("embeddings") if isinstance(payload, dict) else None
        if not isinstance(embeddings, list):
            raise ResponseFormatError("ollama 响应缺少 embeddings 字段", "embed", self.provider)
        return embeddings
