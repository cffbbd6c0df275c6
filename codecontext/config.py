import copy
import json
import os
from dataclasses import dataclass
from typing import Optional, Dict, Any, Tuple
from pathlib import Path


# 环境变量 → 配置路径 的覆盖表；值按目标类型转换
_ENV_OVERRIDES: Tuple[Tuple[str, Tuple[str, ...], type], ...] = (
    ("EMBEDDING_PROVIDER", ("embedding", "provider"), str),
    ("EMBEDDING_MODEL", ("embedding", "model"), str),
    ("EMBEDDING_DIMENSION", ("embedding", "dimension"), int),
    ("EMBEDDING_BATCH_SIZE", ("embedding", "batch_size"), int),
    ("EMBEDDING_MAX_TOKENS", ("embedding", "max_tokens"), int),
    ("OPENAI_API_KEY", ("providers", "openai", "api_key"), str),
    ("OPENAI_BASE_URL", ("providers", "openai", "base_url"), str),
    ("OPENROUTER_API_KEY", ("providers", "openrouter", "api_key"), str),
    ("OPENROUTER_BASE_URL", ("providers", "openrouter", "base_url"), str),
    ("OLLAMA_HOST", ("providers", "ollama", "host"), str),
    ("VECTOR_DATABASE_PROVIDER", ("vector_database", "provider"), str),
    ("LEXICAL_PROVIDER", ("retrieval", "lexical", "provider"), str),
    ("HYBRID_DENSE_WEIGHT", ("retrieval", "hybrid", "dense_weight"), float),
    ("HYBRID_LEXICAL_WEIGHT", ("retrieval", "hybrid", "lexical_weight"), float),
    ("HYBRID_RRF_K", ("retrieval", "hybrid", "rrf_k"), int),
    ("RETRY_MAX_ATTEMPTS", ("retry", "max_attempts"), int),
    ("LOG_LEVEL", ("logging", "level"), str),
)

# 后端连接参数：<BACKEND>_HOST/_PORT/_PATH/_SSL/_TOKEN
_BACKENDS = ("chromadb", "meilisearch")
_BACKEND_FIELDS: Tuple[Tuple[str, type], ...] = (
    ("host", str),
    ("port", int),
    ("path", str),
    ("ssl", bool),
    ("token", str),
)


def _env_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _convert(value: str, target: type) -> Any:
    if target is bool:
        return _env_bool(value)
    return target(value)


@dataclass
class Settings:
    embedding_provider: str = "ollama"
    embedding_model: str = "nomic-embed-text"
    embedding_dimension: Optional[int] = None
    batch_size: int = 32
    max_tokens: int = 8192
    vector_database: str = "chromadb"


class ConfigManager:
    """配置管理器：读取 JSON 配置文件，并用环境变量覆盖同名配置项。

    说明：
    - 配置文件缺失时以空配置启动，全部依赖环境变量与代码默认值；
    - 覆盖规则见 _ENV_OVERRIDES 与 <BACKEND>_HOST/_PORT/_PATH/_SSL/_TOKEN。
    """

    def __init__(self, config_file: str = "config/app_config.json", environ: Optional[Dict[str, str]] = None):
        self.config_file = config_file
        self._environ = environ
        self._config_data = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        """加载配置文件并应用环境变量覆盖"""
        config_path = Path(self.config_file)
        if not config_path.is_absolute():
            # 相对路径以项目根目录为基准，避免受启动目录影响
            config_path = Path(__file__).parent.parent / self.config_file

        data: Dict[str, Any] = {}
        if config_path.exists():
            try:
                with open(config_path, 'r', encoding='utf-8') as f:
                    data = json.load(f)
            except Exception as e:
                raise RuntimeError(f"无法加载配置文件 {self.config_file}: {e}")

        self._apply_env_overrides(data, self._environ if self._environ is not None else os.environ)
        return data

    @staticmethod
    def _apply_env_overrides(data: Dict[str, Any], environ) -> None:
        """将环境变量写入配置字典（就地修改）"""
        def assign(path: Tuple[str, ...], value: Any) -> None:
            node = data
            for key in path[:-1]:
                node = node.setdefault(key, {})
            node[path[-1]] = value

        for env_name, path, target in _ENV_OVERRIDES:
            raw = environ.get(env_name)
            if raw not in (None, ""):
                try:
                    assign(path, _convert(raw, target))
                except ValueError as e:
                    raise ValueError(f"环境变量 {env_name} 取值非法: {raw!r}") from e

        for backend in _BACKENDS:
            for field, target in _BACKEND_FIELDS:
                env_name = f"{backend.upper()}_{field.upper()}"
                raw = environ.get(env_name)
                if raw not in (None, ""):
                    try:
                        assign(("databases", backend, field), _convert(raw, target))
                    except ValueError as e:
                        raise ValueError(f"环境变量 {env_name} 取值非法: {raw!r}") from e

    def get_config(self, section: str = None) -> Dict[str, Any]:
        """获取配置数据"""
        if section:
            return self._config_data.get(section, {})
        return self._config_data

    def get_settings(self) -> Settings:
        """汇总嵌入与向量库的关键选项"""
        emb = self.get_embedding_config()
        dimension = emb.get("dimension")
        return Settings(
            embedding_provider=str(emb.get("provider", Settings.embedding_provider)).lower(),
            embedding_model=str(emb.get("model", Settings.embedding_model)),
            embedding_dimension=int(dimension) if dimension else None,
            batch_size=int(emb.get("batch_size", Settings.batch_size)),
            max_tokens=int(emb.get("max_tokens", Settings.max_tokens)),
            vector_database=str(self.get_config("vector_database").get("provider", Settings.vector_database)).lower(),
        )

    def get_embedding_config(self) -> Dict[str, Any]:
        """获取嵌入配置"""
        return self._config_data.get("embedding", {})

    def get_providers_config(self) -> Dict[str, Any]:
        """获取提供商配置"""
        return self._config_data.get("providers", {})

    def get_provider_config(self, provider: str) -> Dict[str, Any]:
        """获取指定提供商的配置"""
        return self._config_data.get("providers", {}).get(provider, {})

    def get_database_config(self, backend: str) -> Dict[str, Any]:
        """获取指定后端（chromadb / meilisearch）的连接配置"""
        databases = self._config_data.get("databases", {})
        return databases.get(backend, {})

    def get_vector_database_config(self) -> Dict[str, Any]:
        """获取当前向量库的连接配置"""
        return self.get_database_config(self.get_settings().vector_database)

    def get_meilisearch_database_config(self) -> Dict[str, Any]:
        """获取 Meilisearch 连接配置"""
        return self.get_database_config("meilisearch")

    def get_retrieval_config(self) -> Dict[str, Any]:
        """获取检索配置（hybrid / lexical / 缺失集合策略等）"""
        return self._config_data.get("retrieval", {})

    def get_retry_config(self) -> Dict[str, Any]:
        """获取重试配置"""
        return self._config_data.get("retry", {})

    def get_logging_config(self) -> Dict[str, Any]:
        """获取日志配置"""
        return self._config_data.get("logging", {})

    def snapshot(self) -> Dict[str, Any]:
        """返回配置的深拷贝，便于调试输出"""
        return copy.deepcopy(self._config_data)

    def reload_config(self):
        """重新加载配置文件"""
        self._config_data = self._load_config()


# 全局配置管理器实例
_config_manager = ConfigManager()


def get_settings() -> Settings:
    """获取配置的便捷函数"""
    return _config_manager.get_settings()


def get_config_manager() -> ConfigManager:
    """获取配置管理器实例"""
    return _config_manager


def get_config(section: str = None) -> Dict[str, Any]:
    """获取配置数据的便捷函数"""
    return _config_manager.get_config(section)
