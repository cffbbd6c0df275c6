import asyncio
import threading
from typing import Any, Dict, List, Optional, Tuple

import torch

from codecontext.config import get_config_manager
from codecontext.core.exceptions import UnsupportedModel
from codecontext.core.retry import RetryConfig
from codecontext.rag.embedding.base import EmbeddingProvider


class SentenceTransformerEmbedding(EmbeddingProvider):
    """文本向量化器，基于 sentence-transformers 本地模型实现。

    功能：
    - 将文本列表转换为 L2 归一化的向量列表
    - 自动处理设备选择（CPU/GPU/MPS）
    - 同一进程内相同 (模型, 设备) 只加载一次
    - 维度由模型自报，无需探测调用
    """

    provider = "sentence_transformers"

    _model_cache: Dict[Tuple[str, str], Any] = {}
    _cache_lock = threading.Lock()

    def __init__(self, model: str = "sentence-transformers/all-MiniLM-L6-v2", device: str = "auto",
                 cache_folder: Optional[str] = None, **kwargs: Any) -> None:
        """
        初始化向量化器

        Args:
            model: 模型路径或 HuggingFace 模型名
            device: 计算设备，auto 时自动选择
            cache_folder: 模型缓存目录，None 使用默认目录

        说明：
            采用延迟加载策略，模型在首次编码或查询维度时才加载
        """
        super().__init__(model, **kwargs)
        self.device = device
        self.cache_folder = cache_folder
        self._model = None

    @classmethod
    def from_config(cls, config_manager=None,
                    retry_config: Optional[RetryConfig] = None) -> "SentenceTransformerEmbedding":
        config_manager = config_manager or get_config_manager()
        settings = config_manager.get_settings()
        provider_cfg = config_manager.get_provider_config(cls.provider)
        return cls(
            model=settings.embedding_model,
            device=str(provider_cfg.get("device", "auto")),
            cache_folder=provider_cfg.get("cache_folder") or None,
            dimension=settings.embedding_dimension,
            max_tokens=settings.max_tokens,
            max_batch_size=settings.batch_size,
            retry_config=retry_config or RetryConfig.from_config_manager(config_manager),
        )

    def _get_device(self) -> str:
        """
        确定计算设备

        Returns:
            str: 设备名称 ('cpu', 'cuda', 'mps' 等)
        """
        if self.device == "auto":
            if torch.cuda.is_available():
                return "cuda"
            elif hasattr(torch.backends, 'mps') and torch.backends.mps.is_available():
                return "mps"  # Apple Silicon
            else:
                return "cpu"
        return self.device

    def _load_model(self) -> Any:
        """
        加载 sentence-transformers 模型（带进程级缓存）

        说明：
        - 支持本地模型路径和 HuggingFace 模型名
        - 首次加载可能需要下载模型文件
        - 模型的 max_seq_length 不超过 max_tokens
        """
        if self._model is not None:
            return self._model

        device = self._get_device()
        key = (self.model, device)
        with self._cache_lock:
            model = self._model_cache.get(key)
            if model is None:
                from sentence_transformers import SentenceTransformer

                try:
                    model = SentenceTransformer(self.model, device=device, cache_folder=self.cache_folder)
                except OSError as e:
                    raise UnsupportedModel(
                        f"无法加载向量化模型 {self.model}: {e}", "load_model", self.provider
                    ) from e
                self._model_cache[key] = model
                self.logger.info(
                    f"模型加载成功: {self.model}, 设备: {device}, 向量维度: {model.get_sentence_embedding_dimension()}"
                )

        current = getattr(model, "max_seq_length", None)
        if current is None or current > self.max_tokens:
            model.max_seq_length = self.max_tokens
        self._model = model

        if self._dimension is None or self._dimension_source == "static":
            reported = model.get_sentence_embedding_dimension()
            if reported:
                self._dimension = int(reported)
                self._dimension_source = "model"
        return model

    def _embed_sync(self, texts: List[str]) -> List[List[float]]:
        model = self._load_model()
        embeddings = model.encode(
            texts,
            batch_size=self.max_batch_size,
            normalize_embeddings=True,  # L2 归一化
            show_progress_bar=False,
            convert_to_tensor=False,  # 返回 numpy 数组
        )
        result = [embedding.tolist() for embedding in embeddings]
        self.logger.debug(f"成功编码 {len(result)} 个文本，向量维度: {len(result[0]) if result else 0}")
        return result

    async def detect_dimension(self) -> int:
        """模型自报维度，不需要额外的编码调用。"""
        await asyncio.to_thread(self._load_model)
        if self._dimension is not None:
            return self._dimension
        return await super().detect_dimension()

    def get_model_info(self) -> Dict[str, Any]:
        """
        获取模型信息

        Returns:
            Dict[str, Any]: 包含模型名称、向量维度、设备等信息
        """
        if self._model is None:
            return {
                "model": self.model,
                "status": "not_loaded",
                "device": self._get_device(),
                "batch_size": self.max_batch_size,
            }
        return {
            "model": self.model,
            "embedding_dimension": self._model.get_sentence_embedding_dimension(),
            "device": self._get_device(),
            "batch_size": self.max_batch_size,
            "max_seq_length": self._model.max_seq_length,
            "status": "loaded",
        }
