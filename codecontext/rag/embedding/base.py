from __future__ import annotations

"""
嵌入提供商基类。

职责：
- 统一文本预处理：空文本替换为单个空格，超出 token 预算的文本按分词器在 token 边界截断；
- 按 max_batch_size 拆分批次并按原顺序拼接结果，结果条数与请求不一致时抛出 ResponseFormatError；
- 维度解析：显式配置 > 静态维度表 > 探测调用（结果缓存）；
- 阻塞请求放入线程执行，瞬时错误（RateLimited / NetworkError）按退避策略重试。
"""

import math
from abc import ABC, abstractmethod
from typing import Any, List, Optional, Sequence

from codecontext.core.exceptions import DimensionMismatch, ResponseFormatError
from codecontext.core.retry import RetryConfig, run_blocking
from codecontext.core.tokenization import TokenCounter, get_token_counter
from codecontext.infra.logging import get_logger
from codecontext.rag.embedding.dimensions import lookup_dimension, supported_models as _supported_models
from codecontext.rag.schemas import EmbeddingBackendDescriptor

PROBE_TEXT = "dimension probe"


class EmbeddingProvider(ABC):
    """
    嵌入提供商协议。

    子类只需实现 `_embed_sync`：对不超过 max_batch_size 条的已预处理文本发起一次阻塞请求。
    """

    provider: str = "base"

    def __init__(
        self,
        model: str,
        dimension: Optional[int] = None,
        max_tokens: int = 8192,
        max_batch_size: int = 32,
        retry_config: Optional[RetryConfig] = None,
        token_counter: Optional[TokenCounter] = None,
    ) -> None:
        if not model:
            raise ValueError("嵌入模型名不能为空")
        self.model = model
        self.max_tokens = max(1, int(max_tokens))
        self.max_batch_size = max(1, int(max_batch_size))
        self.retry_config = retry_config or RetryConfig()
        self._token_counter = token_counter
        self.logger = get_logger(self.__class__.__module__)

        self._dimension: Optional[int] = None
        self._dimension_source: Optional[str] = None
        if dimension:
            self._dimension = int(dimension)
            self._dimension_source = "explicit"
        else:
            known = lookup_dimension(model)
            if known:
                self._dimension = known
                self._dimension_source = "static"

    @classmethod
    def from_config(cls, config_manager=None, retry_config: Optional[RetryConfig] = None) -> "EmbeddingProvider":
        """按配置构建实例，由各提供商实现。"""
        raise NotImplementedError(f"{cls.__name__} 未实现 from_config")

    # 预处理 ------------------------------------------------------------
    @property
    def token_counter(self) -> TokenCounter:
        """按提供商与模型解析的分词计数器，首次使用时加载。"""
        if self._token_counter is None:
            self._token_counter = get_token_counter(self.provider, self.model)
        return self._token_counter

    def preprocess_text(self, text: Optional[str]) -> str:
        """空文本替换为单个空格；超出 max_tokens 的文本截断到预算内的最长前缀。"""
        if text is None or text == "":
            return " "
        if len(text.encode("utf-8")) <= self.max_tokens:
            return text
        truncated = self.token_counter.truncate(text, self.max_tokens)
        if len(truncated) < len(text):
            self.logger.debug(
                f"文本超出 token 预算已截断: {len(text)} → {len(truncated)} 字符 "
                f"(max_tokens={self.max_tokens}, tokenizer={self.token_counter.name})"
            )
        return truncated or " "

    def preprocess_texts(self, texts: Sequence[Optional[str]]) -> List[str]:
        return [self.preprocess_text(t) for t in texts]

    # 编码 --------------------------------------------------------------
    @abstractmethod
    def _embed_sync(self, texts: List[str]) -> List[List[float]]:
        """对一个批次发起阻塞请求，返回与输入一一对应的向量。"""

    async def embed(self, text: str) -> List[float]:
        """
        编码单条文本。

        Args:
            text: 输入文本

        Returns:
            List[float]: 向量
        """
        vectors = await self.embed_batch([text])
        return vectors[0]

    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        """
        批量编码，保持输入顺序一一对应。

        Args:
            texts: 输入文本列表

        Returns:
            List[List[float]]: 向量列表

        Raises:
            ResponseFormatError: 返回条数与请求不一致或向量格式非法
            DimensionMismatch: 返回维度与显式配置/已探测维度不一致
        """
        if not texts:
            return []
        processed = self.preprocess_texts(texts)
        results: List[List[float]] = []
        for start in range(0, len(processed), self.max_batch_size):
            chunk = processed[start:start + self.max_batch_size]
            vectors = await self._request(chunk)
            results.extend(self._validate(chunk, vectors))
        return results

    async def _request(self, chunk: List[str]) -> List[List[float]]:
        return await run_blocking(self._embed_sync, chunk, config=self.retry_config, operation="embed", target=self.provider)

    def _validate(self, chunk: List[str], vectors: Any) -> List[List[float]]:
        if not isinstance(vectors, list) or len(vectors) != len(chunk):
            got = len(vectors) if isinstance(vectors, list) else type(vectors).__name__
            raise ResponseFormatError(
                f"{self.provider} 返回 {got} 个向量，请求 {len(chunk)} 条", "embed", self.provider
            )

        cleaned: List[List[float]] = []
        for vector in vectors:
            if not isinstance(vector, (list, tuple)) or not vector:
                raise ResponseFormatError(f"{self.provider} 返回了空向量或非法向量", "embed", self.provider)
            try:
                values = [float(v) for v in vector]
            except (TypeError, ValueError) as e:
                raise ResponseFormatError(f"{self.provider} 返回的向量包含非数值: {e}", "embed", self.provider) from e
            if not all(math.isfinite(v) for v in values):
                raise ResponseFormatError(f"{self.provider} 返回的向量包含 NaN/Inf", "embed", self.provider)
            cleaned.append(values)

        width = len(cleaned[0])
        if any(len(v) != width for v in cleaned):
            raise ResponseFormatError(f"{self.provider} 同一批次返回的向量维度不一致", "embed", self.provider)
        self._check_dimension(width)
        return cleaned

    def _check_dimension(self, width: int) -> None:
        if self._dimension is None:
            self._dimension = width
            self._dimension_source = "probe"
            return
        if width == self._dimension:
            return
        if self._dimension_source == "static":
            self.logger.warning(
                f"模型 {self.model} 实际维度 {width} 与维度表 {self._dimension} 不符，以实际返回为准"
            )
            self._dimension = width
            self._dimension_source = "probe"
            return
        raise DimensionMismatch(
            f"{self.provider}/{self.model} 返回维度 {width}，预期 {self._dimension}",
            expected=self._dimension, actual=width, operation="embed", target=self.provider,
        )

    # 维度 --------------------------------------------------------------
    def get_dimension(self) -> Optional[int]:
        """显式配置或静态已知的维度，或此前探测缓存的维度；均未知时返回 None。"""
        return self._dimension

    async def detect_dimension(self) -> int:
        """
        发起一次真实嵌入调用探测维度，结果缓存。

        Returns:
            int: 向量维度
        """
        if self._dimension is not None and self._dimension_source in ("probe", "model"):
            return self._dimension
        vector = await self.embed(PROBE_TEXT)
        if self._dimension_source != "explicit":
            self._dimension = len(vector)
            self._dimension_source = "probe"
        self.logger.info(f"探测到 {self.provider}/{self.model} 向量维度: {len(vector)}")
        return len(vector)

    async def resolve_dimension(self) -> int:
        """优先使用已知维度，未知时探测。"""
        known = self.get_dimension()
        if known is not None:
            return known
        return await self.detect_dimension()

    # 描述 --------------------------------------------------------------
    def get_provider(self) -> str:
        return self.provider

    def descriptor(self) -> EmbeddingBackendDescriptor:
        return EmbeddingBackendDescriptor(
            provider=self.provider,
            model=self.model,
            dimension=self._dimension,
            dimension_source=self._dimension_source,
            max_tokens=self.max_tokens,
            max_batch_size=self.max_batch_size,
        )

    @staticmethod
    def supported_models() -> List[str]:
        return _supported_models()

    async def close(self) -> None:
        """释放底层连接。"""
        return None
