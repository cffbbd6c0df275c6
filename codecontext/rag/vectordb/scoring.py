"""
检索打分映射工具。

职责：
- 将不同后端/度量的原生返回值（距离或相似度）统一映射为“越大越相关”的分数；
- 每种度量的公式固定且有文档说明，测试可以直接断言。

公式：
- cosine_distance（ChromaDB cosine 空间）: score = 1 - d，d∈[0,2] → score∈[-1,1]，完全相同的向量得 1.0；
- cosine_similarity（内存库 cosine）: score = s，恒等映射，完全相同的向量得 1.0；
- l2（欧氏距离）: score = exp(-alpha * d)，d=0 时得 1.0，单调递减；
- inner_product: score = s，恒等映射（向量已归一化时等价于余弦相似度）。
"""

from __future__ import annotations

from math import exp
from typing import Dict, Literal


# 类型别名：度量名称
Metric = Literal["cosine_distance", "cosine_similarity", "l2", "inner_product"]

# 每种度量在“完全相同向量”时可取得的最大分数
MAX_SCORE: Dict[str, float] = {
    "cosine_distance": 1.0,
    "cosine_similarity": 1.0,
    "l2": 1.0,
    "inner_product": 1.0,
}


def clamp01(value: float) -> float:
    """将输入数值裁剪到 [0,1] 区间。

    Args:
        value: 任意浮点数。

    Returns:
        被裁剪到 [0,1] 的浮点数。
    """
    if value < 0.0:
        return 0.0
    if value > 1.0:
        return 1.0
    return value


def score_from_distance(value: float, metric: Metric, alpha: float = 1.0) -> float:
    """将不同度量的返回值映射为统一分数。

    Args:
        value: 底层检索返回的原始数值（距离或相似度）。
        metric: 度量名称。
        alpha: 指数衰减的系数，仅在 l2 下有效。

    Returns:
        映射后的分数，越大越相关。

    Raises:
        ValueError: 未知度量。
    """
    raw = float(value)
    if metric == "cosine_distance":
        return 1.0 - raw

    if metric in ("cosine_similarity", "inner_product"):
        return raw

    if metric == "l2":
        return exp(-raw * float(alpha))

    raise ValueError(f"未知的度量: {metric}")
