from typing import Dict, Optional, Type
import importlib

from codecontext.config import get_config_manager
from codecontext.core.retry import RetryConfig
from codecontext.infra.logging import get_logger
from codecontext.rag.embedding.base import EmbeddingProvider

logger = get_logger(__name__)


class EmbeddingProviderFactory:
    """
    嵌入提供商工厂。

    职责：
    - 维护 provider → ProviderClass 的注册表
    - 懒注册内置提供商（openai / openrouter / ollama / sentence_transformers），缺少依赖的跳过
    - 按 embedding.provider 配置构建实例
    """

    _registry: Dict[str, Type[EmbeddingProvider]] = {}
    _bootstrapped: bool = False

    _DEFAULTS = {
        "openai": ("codecontext.rag.embedding.openai", "OpenAIEmbedding"),
        "openrouter": ("codecontext.rag.embedding.openai", "OpenRouterEmbedding"),
        "ollama": ("codecontext.rag.embedding.ollama", "OllamaEmbedding"),
        "sentence_transformers": ("codecontext.rag.embedding.sentence_transformer", "SentenceTransformerEmbedding"),
    }

    @classmethod
    def register(cls, name: str, provider_cls: Type[EmbeddingProvider]) -> None:
        """注册提供商类。

        参数：
        - name: 提供商名称（如 "openai"、"ollama"）。
        - provider_cls: EmbeddingProvider 子类，需实现 from_config。
        """
        cls._registry[name.lower()] = provider_cls

    @classmethod
    def unregister(cls, name: str) -> None:
        """注销提供商类。"""
        cls._registry.pop(name.lower(), None)

    @classmethod
    def _bootstrap_defaults(cls) -> None:
        """懒加载注册默认提供商。"""
        if cls._bootstrapped:
            return
        for name, (module_path, class_name) in cls._DEFAULTS.items():
            if name in cls._registry:
                continue
            try:
                mod = importlib.import_module(module_path)
                cls.register(name, getattr(mod, class_name))
            except ImportError as e:
                logger.info(f"嵌入提供商 {name} 未启用（缺少依赖）：{e}")
        cls._bootstrapped = True

    @classmethod
    def create(cls, provider: Optional[str] = None, config_manager=None,
               retry_config: Optional[RetryConfig] = None) -> EmbeddingProvider:
        """
        构建嵌入提供商实例。

        参数：
        - provider (str|None): 提供商名，None 时读取 embedding.provider。
        - config_manager: 配置管理器。
        - retry_config: 重试配置，None 时读取 retry 配置节。

        返回：
        - EmbeddingProvider: 提供商实例。
        """
        config_manager = config_manager or get_config_manager()
        name = (provider or config_manager.get_settings().embedding_provider).lower()
        cls._bootstrap_defaults()
        provider_cls = cls._registry.get(name)
        if provider_cls is None:
            raise NotImplementedError(
                f"嵌入提供商 '{name}' 尚未注册，可用: {', '.join(cls.get_registered_providers())}"
            )
        instance = provider_cls.from_config(
            config_manager, retry_config=retry_config or RetryConfig.from_config_manager(config_manager)
        )
        logger.info(f"使用嵌入提供商: {name}, 模型: {instance.model}, 维度: {instance.get_dimension() or '待探测'}")
        return instance

    @classmethod
    def get_registered_providers(cls) -> list:
        """获取已注册的提供商列表"""
        cls._bootstrap_defaults()
        return sorted(cls._registry.keys())
