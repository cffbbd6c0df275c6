"""分词计数测试：token 边界截断、tiktoken 选择与分词器不可用时的字节降级。"""

import pytest
import transformers

from codecontext.core.tokenization import TokenCounter, byte_length_counter, get_token_counter

from conftest import FakeEmbedding


class TestTokenCounter:

    def test_truncate_keeps_longest_prefix_within_budget(self):
        words = TokenCounter(lambda s: len(s.split()), name="words")
        assert words.truncate("alpha beta gamma delta", 2) == "alpha beta "
        assert words.truncate("alpha beta", 2) == "alpha beta"

    def test_byte_counter_bounds_cjk(self):
        counter = byte_length_counter()
        truncated = counter.truncate("汉" * 40, 8)
        assert truncated == "汉" * 2
        assert counter.count_tokens(truncated) <= 8

    def test_fake_embedding_keeps_cjk_within_budget(self):
        provider = FakeEmbedding(dimension=4, max_tokens=8)
        sent = provider.preprocess_text("汉" * 40)
        assert provider.token_counter.count_tokens(sent) <= 8
        assert len(sent.encode("utf-8")) <= 8

    def test_short_text_untouched(self):
        provider = FakeEmbedding(dimension=4, max_tokens=8)
        assert provider.preprocess_text("abc") == "abc"
        assert provider.preprocess_text("") == " "


class TestGetTokenCounter:

    def test_openai_uses_tiktoken(self):
        counter = get_token_counter("openai", "text-embedding-3-small")
        assert counter.name.startswith("tiktoken:")
        assert counter.count_tokens("hello world") == 2

    def test_unknown_openrouter_model_uses_default_encoding(self):
        counter = get_token_counter("openrouter", "vendor/unknown-embedding-model")
        assert counter.name == "tiktoken:cl100k_base"

    def test_unloadable_tokenizer_falls_back_to_bytes(self, monkeypatch):
        def offline(*args, **kwargs):
            raise OSError("tokenizer unavailable")

        monkeypatch.setattr(transformers.AutoTokenizer, "from_pretrained", offline)
        counter = get_token_counter("ollama", "local-only-embedding-model")
        assert counter.name == "utf8_bytes"
        assert counter.count_tokens("汉") == 3

    @pytest.mark.parametrize("budget", [1, 5, 17])
    def test_truncate_never_exceeds_budget(self, budget):
        counter = byte_length_counter()
        text = "def 解析配置(path): return 加载(path)"
        assert counter.count_tokens(counter.truncate(text, budget)) <= budget
