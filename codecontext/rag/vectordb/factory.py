from typing import Dict, Optional, Type
import importlib

from codecontext.config import get_config_manager
from codecontext.core.retry import RetryConfig
from codecontext.infra.logging import get_logger
from codecontext.rag.vectordb.base import VectorStore

logger = get_logger(__name__)


class VectorStoreFactory:
    """
    向量库适配器工厂。

    职责：
    - 维护 provider → 适配器类 的注册表
    - 懒注册内置适配器（chromadb / memory）
    - 按 vector_database.provider 配置构建适配器实例
    """

    _registry: Dict[str, Type[VectorStore]] = {}
    _bootstrapped: bool = False

    _DEFAULTS = {
        "chromadb": ("codecontext.rag.vectordb.chromadb_store", "ChromaVectorStore"),
        "memory": ("codecontext.rag.vectordb.memory_store", "MemoryVectorStore"),
    }

    @classmethod
    def register(cls, name: str, store_cls: Type[VectorStore]) -> None:
        """注册适配器类。"""
        cls._registry[name.lower()] = store_cls

    @classmethod
    def unregister(cls, name: str) -> None:
        """注销适配器类。"""
        cls._registry.pop(name.lower(), None)

    @classmethod
    def _bootstrap_defaults(cls) -> None:
        """懒加载注册内置适配器，依赖缺失的适配器跳过注册。"""
        if cls._bootstrapped:
            return
        for name, (module_path, class_name) in cls._DEFAULTS.items():
            if name in cls._registry:
                continue
            try:
                mod = importlib.import_module(module_path)
                cls.register(name, getattr(mod, class_name))
            except ImportError as e:
                logger.info(f"向量库适配器 {name} 未启用（缺少依赖）：{e}")
        cls._bootstrapped = True

    @classmethod
    def create(cls, provider: Optional[str] = None, config_manager=None,
               retry_config: Optional[RetryConfig] = None) -> VectorStore:
        """
        构建向量库适配器。

        Args:
            provider: 适配器名称，None 时读取 vector_database.provider
            config_manager: 配置管理器
            retry_config: 重试配置，None 时读取 retry 配置节

        Returns:
            VectorStore: 适配器实例
        """
        config_manager = config_manager or get_config_manager()
        name = (provider or config_manager.get_settings().vector_database).lower()
        cls._bootstrap_defaults()
        store_cls = cls._registry.get(name)
        if store_cls is None:
            raise NotImplementedError(
                f"向量库 '{name}' 尚未注册，可用: {', '.join(cls.get_registered_providers())}"
            )
        retry_config = retry_config or RetryConfig.from_config_manager(config_manager)
        logger.info(f"使用向量库适配器: {name}")
        return store_cls.from_config(config_manager, retry_config=retry_config)

    @classmethod
    def get_registered_providers(cls) -> list:
        """获取已注册的适配器列表"""
        cls._bootstrap_defaults()
        return sorted(cls._registry.keys())
