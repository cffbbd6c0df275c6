"""
常见嵌入模型的向量维度表。

查表时依次尝试：原始名称、去掉厂商前缀（如 `nomic-ai/`）、去掉 Ollama 标签后缀（如 `:latest`）。
"""

from typing import Dict, List, Optional

MODEL_DIMENSIONS: Dict[str, int] = {
    "nomic-ai/nomic-embed-text-v1.5": 768,
    "nomic-ai/nomic-embed-text-v1": 768,
    "nomic-embed-text": 768,
    "nomic-embed-text-v1": 768,
    "nomic-embed-text-v1.5": 768,
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
    "voyage-01": 1024,
    "voyage-code-2": 1536,
    "voyage-code-3": 1536,
    "gte-large": 1024,
    "gte-base": 768,
    "gte-small": 384,
    "bge-large-en-v1.5": 1024,
    "bge-base-en-v1.5": 768,
    "bge-small-en-v1.5": 384,
    "mxbai-embed-large": 1024,
    "mxbai-embed-base": 768,
    "all-MiniLM-L6-v2": 384,
}


def _candidates(model: str) -> List[str]:
    name = (model or "").strip()
    names = [name]
    if ":" in name:
        names.append(name.split(":", 1)[0])
    for item in list(names):
        if "/" in item:
            names.append(item.rsplit("/", 1)[1])
    return names


def lookup_dimension(model: str) -> Optional[int]:
    """
    查询模型的已知维度。

    Args:
        model: 模型名，如 "text-embedding-3-small"、"nomic-ai/nomic-embed-text-v1.5"、"nomic-embed-text:latest"

    Returns:
        Optional[int]: 已知维度；未收录时返回 None
    """
    for name in _candidates(model):
        if name in MODEL_DIMENSIONS:
            return MODEL_DIMENSIONS[name]
    return None


def supported_models() -> List[str]:
    """返回维度表中收录的模型名称。"""
    return list(MODEL_DIMENSIONS.keys())
