from __future__ import annotations

"""
检索核心数据结构定义（Pydantic 模型）。

设计原则：
- 元数据与过滤值限定为封闭的标量集合（str / int / float / bool），其它形态在边界处直接拒绝；
- 分数统一为“越大越相关”，由各适配器负责把原生距离/相似度转换到该约定；
- 所有字段使用基础类型，方便序列化与日志记录。
"""

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator


Scalar = Union[str, int, float, bool]
SCALAR_TYPES = (str, int, float, bool)

# 溯源字段在各后端中与用户元数据存放在一起，因此保留这些键名
PROVENANCE_FIELDS = ("relative_path", "start_line", "end_line", "file_extension")
RESERVED_METADATA_KEYS = frozenset(PROVENANCE_FIELDS + ("content",))

SearchMode = Literal["dense", "hybrid"]
ScoreScale = Literal["normalized", "raw"]


def is_scalar(value: Any) -> bool:
    """判断取值是否属于允许的标量集合（None 不属于）。"""
    return isinstance(value, SCALAR_TYPES)


class Fragment(BaseModel):
    """待入库的文本片段（外部分块层的产物）。

    Attributes:
        id: 调用方分配的唯一 ID（集合内唯一）。
        content: 片段文本。
        metadata: 标量元数据，键不得与溯源字段重名。
        relative_path / start_line / end_line / file_extension: 溯源信息。
    """

    id: str = Field(..., min_length=1)
    content: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)
    relative_path: str = ""
    start_line: int = Field(0, ge=0)
    end_line: int = Field(0, ge=0)
    file_extension: str = ""

    @field_validator("metadata")
    @classmethod
    def _check_metadata(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        for key, item in value.items():
            if not isinstance(key, str) or not key:
                raise ValueError(f"元数据键必须为非空字符串: {key!r}")
            if key in RESERVED_METADATA_KEYS:
                raise ValueError(f"元数据键 '{key}' 为保留字段")
            if not is_scalar(item):
                raise ValueError(f"元数据 '{key}' 的取值必须为 str/int/float/bool，实际为 {type(item).__name__}")
        return value

    def provenance(self) -> Dict[str, Any]:
        """返回溯源字段字典。"""
        return {
            "relative_path": self.relative_path,
            "start_line": self.start_line,
            "end_line": self.end_line,
            "file_extension": self.file_extension,
        }

    def flat_metadata(self) -> Dict[str, Scalar]:
        """溯源字段与用户元数据合并后的扁平字典（写入后端时使用）。"""
        merged: Dict[str, Scalar] = dict(self.provenance())
        merged.update(self.metadata)
        return merged

    @classmethod
    def from_flat_metadata(cls, doc_id: str, content: str, metadata: Optional[Dict[str, Any]]) -> "Fragment":
        """从后端返回的扁平元数据还原片段，非标量或保留字段会被丢弃。"""
        meta = dict(metadata or {})
        user_meta = {
            k: v for k, v in meta.items()
            if k not in RESERVED_METADATA_KEYS and isinstance(k, str) and is_scalar(v)
        }
        return cls(
            id=doc_id,
            content=content or "",
            metadata=user_meta,
            relative_path=str(meta.get("relative_path") or ""),
            start_line=_as_int(meta.get("start_line")),
            end_line=_as_int(meta.get("end_line")),
            file_extension=str(meta.get("file_extension") or ""),
        )


class VectorDocument(Fragment):
    """带向量的文档。

    Attributes:
        vector: 稠密向量。
        sparse: 可选的词项 → 权重词法信号（仅部分后端保存）。
    """

    vector: List[float] = Field(default_factory=list)
    sparse: Optional[Dict[str, float]] = None

    @property
    def dimension(self) -> int:
        return len(self.vector)

    @classmethod
    def from_fragment(cls, fragment: Fragment, vector: List[float],
                      sparse: Optional[Dict[str, float]] = None) -> "VectorDocument":
        return cls(vector=list(vector), sparse=sparse, **fragment.model_dump(exclude={"vector", "sparse"}))

    def to_fragment(self) -> Fragment:
        return Fragment(**self.model_dump(exclude={"vector", "sparse"}))


class SearchResult(BaseModel):
    """单条命中项。score 越大越相关；rank 从 1 开始。"""

    document: Fragment
    score: float
    rank: int = Field(1, ge=1)

    @property
    def id(self) -> str:
        return self.document.id


class RankedList(BaseModel):
    """有序结果集。

    Attributes:
        results: 按相关性降序排列的命中项。
        scale: 分数尺度；normalized 表示可与其它 normalized 列表直接加权比较，raw 表示后端原生尺度。
        source: 结果来源（dense / lexical / hybrid）。
        latency_ms: 检索耗时。
    """

    results: List[SearchResult] = Field(default_factory=list)
    scale: ScoreScale = "normalized"
    source: str = "dense"
    latency_ms: int = 0

    def ids(self) -> List[str]:
        return [r.id for r in self.results]

    def __len__(self) -> int:
        return len(self.results)


class SearchRequest(BaseModel):
    """检索请求参数。

    Attributes:
        query_text: 查询文本（稠密路径需先编码；混合模式同时用于词法检索）。
        query_vector: 直接给出的查询向量。
        filter: 等值过滤条件（字段 → 标量取值，多个字段取交集）。
        limit: 返回数量上限（0 表示不返回结果）。
        mode: dense 仅稠密检索；hybrid 稠密 + 词法融合。
    """

    query_text: Optional[str] = None
    query_vector: Optional[List[float]] = None
    filter: Optional[Dict[str, Any]] = None
    limit: int = Field(10, ge=0, le=1000)
    mode: SearchMode = "hybrid"

    @model_validator(mode="after")
    def _check_query(self) -> "SearchRequest":
        if not (self.query_text and self.query_text.strip()) and not self.query_vector:
            raise ValueError("query_text 与 query_vector 至少提供一个")
        return self


class EmbeddingBackendDescriptor(BaseModel):
    """嵌入后端描述。

    dimension_source 取值：explicit（显式配置）、static（模型维度表）、probe（探测调用）、model（本地模型自报）。
    """

    provider: str
    model: str
    dimension: Optional[int] = None
    dimension_source: Optional[str] = None
    max_tokens: int = 8192
    max_batch_size: int = 32


def _as_int(value: Any) -> int:
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        return 0
