from __future__ import annotations

"""
分词计数提供器（TokenCounter）。

目标：
- 对 OpenAI 兼容的在线模型（openai / openrouter）使用 tiktoken 计数；
- 对 HuggingFace/本地模型使用 transformers 的 AutoTokenizer 计数；
- 供嵌入提供商在发送前按真实 token 预算截断文本。
"""

from functools import lru_cache
from typing import Callable, Optional

import tiktoken

from codecontext.infra.logging import get_logger

# 使用 tiktoken 计数的提供商集合
PROVIDERS_USING_TIKTOKEN = {"openai", "openrouter", "azure_openai"}
# tiktoken 不识别模型名时使用的编码
DEFAULT_TIKTOKEN_ENCODING = "cl100k_base"


class TokenCounter:
    """通用分词计数器。"""

    def __init__(self, tokenizer_impl: Callable[[str], int], name: str = "utf8_bytes"):
        self._impl = tokenizer_impl
        self.name = name

    def count_tokens(self, text: Optional[str]) -> int:
        return self._impl(text or "")

    def truncate(self, text: str, max_tokens: int) -> str:
        """
        截断到不超过 max_tokens 个 token 的最长前缀。

        UTF-8 字节数是常见分词器 token 数的上界，字节数不超预算时无需加载分词器计数。
        """
        if len(text.encode("utf-8")) <= max_tokens or self.count_tokens(text) <= max_tokens:
            return text
        # 二分查找最长的合规前缀，始终保持 text[:lo] 在预算内
        lo, hi = 0, len(text)
        while lo < hi:
            mid = (lo + hi + 1) // 2
            if self.count_tokens(text[:mid]) <= max_tokens:
                lo = mid
            else:
                hi = mid - 1
        return text[:lo]


def byte_length_counter() -> TokenCounter:
    """按 UTF-8 字节数计数：分词器不可用时的保守降级。"""
    return TokenCounter(lambda s: len(s.encode("utf-8")), name="utf8_bytes")


def _tiktoken_counter(model: str) -> TokenCounter:
    name = model.rsplit("/", 1)[-1]
    try:
        enc = tiktoken.encoding_for_model(name)
    except KeyError:
        get_logger(__name__).info(f"tiktoken 不识别模型 {model}，使用 {DEFAULT_TIKTOKEN_ENCODING} 编码计数")
        enc = tiktoken.get_encoding(DEFAULT_TIKTOKEN_ENCODING)

    def _fn(text: str) -> int:
        return len(enc.encode(text, disallowed_special=()))

    return TokenCounter(_fn, name=f"tiktoken:{enc.name}")


@lru_cache(maxsize=32)
def get_token_counter(provider: Optional[str], model: str) -> TokenCounter:
    """根据嵌入提供商与模型名返回分词计数器。

    规则：
    - provider 属于 PROVIDERS_USING_TIKTOKEN → tiktoken.encoding_for_model(model)，不识别时用 cl100k_base；
    - 否则 → transformers.AutoTokenizer.from_pretrained(model)；
    - 分词器无法加载时（模型不在 HuggingFace Hub、离线等），降级为 UTF-8 字节计数。
    """
    provider_name = (provider or "").lower()
    if provider_name in PROVIDERS_USING_TIKTOKEN:
        return _tiktoken_counter(model)

    from transformers import AutoTokenizer

    try:
        tokenizer = AutoTokenizer.from_pretrained(model)
    except (OSError, ValueError) as e:
        get_logger(__name__).warning(f"无法加载分词器 {model}，分词计数降级为字节长度: {e}")
        return byte_length_counter()

    def _hf(text: str) -> int:
        return len(tokenizer.encode(text, add_special_tokens=False))

    return TokenCounter(_hf, name=f"hf:{model}")
