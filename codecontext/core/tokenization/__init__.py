"""分词计数：按提供商选择 tiktoken 或 HuggingFace 分词器。"""

from .provider import TokenCounter, byte_length_counter, get_token_counter

__all__ = ["TokenCounter", "byte_length_counter", "get_token_counter"]
