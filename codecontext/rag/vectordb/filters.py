"""过滤条件转换工具函数。

职责：
- 校验与后端无关的过滤表达式：字段名 → 标量取值的扁平映射，语义为各字段等值比较的交集；
- 将其转换为 ChromaDB 的 where 字典、Meilisearch 的 filter 字符串以及进程内谓词函数；
- 解析文本形式的过滤表达式（JSON 或 `field = value and ...`）。

说明：
- 仅支持等值比较；`{"field": {"$eq": value}}` 视为等值的显式写法；
- 其它操作符（$ne、$in、$gt、$and、$or 等）、嵌套结构、列表或 None 取值一律抛出 UnsupportedFilter，
  不做静默忽略。
"""

import json
import re
from typing import Any, Callable, Dict, Mapping, Optional, Union

from codecontext.core.exceptions import UnsupportedFilter
from codecontext.rag.schemas import Scalar, is_scalar

FilterExpression = Mapping[str, Any]

_FIELD_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_.\-]*$")
_CLAUSE_SPLIT = re.compile(r"\s+(?:and|AND|&&)\s+")
_CLAUSE_PATTERN = re.compile(r"^\s*([A-Za-z_][A-Za-z0-9_.\-]*)\s*(==|=)\s*(.+?)\s*$")


def normalize_filter(expr: Optional[FilterExpression]) -> Dict[str, Scalar]:
    """校验并规范化过滤表达式。

    Args:
        expr: 过滤映射，如 {"language": "go"} 或 {"language": {"$eq": "go"}}

    Returns:
        Dict[str, Scalar]: 字段 → 取值；无条件时返回空字典

    Raises:
        UnsupportedFilter: 出现等值以外的操作符、非标量取值或非法字段名
    """
    if expr is None:
        return {}
    if not isinstance(expr, Mapping):
        raise UnsupportedFilter(f"过滤条件必须是映射，实际为 {type(expr).__name__}")

    normalized: Dict[str, Scalar] = {}
    for field, condition in expr.items():
        if not isinstance(field, str) or not field:
            raise UnsupportedFilter(f"过滤字段名必须为非空字符串: {field!r}")
        if field.startswith("$"):
            raise UnsupportedFilter(f"不支持的逻辑操作符: {field}")
        if not _FIELD_PATTERN.match(field):
            raise UnsupportedFilter(f"非法的过滤字段名: {field!r}")
        normalized[field] = _extract_equality(field, condition)
    return normalized


def _extract_equality(field: str, condition: Any) -> Scalar:
    """从单字段条件中取出等值比较的取值。"""
    if isinstance(condition, Mapping):
        if len(condition) != 1 or "$eq" not in condition:
            ops = ", ".join(str(k) for k in condition.keys()) or "(空)"
            raise UnsupportedFilter(f"字段 '{field}' 使用了不支持的操作符: {ops}")
        condition = condition["$eq"]
    if not is_scalar(condition):
        raise UnsupportedFilter(
            f"字段 '{field}' 的过滤取值必须为 str/int/float/bool，实际为 {type(condition).__name__}"
        )
    return condition


def to_chroma_where(expr: Optional[FilterExpression]) -> Optional[Dict[str, Any]]:
    """转换为 ChromaDB where 条件。

    Args:
        expr: 过滤映射

    Returns:
        Optional[Dict[str, Any]]: 单字段为 {"f": {"$eq": v}}，多字段包裹在 $and 中；无条件返回 None
    """
    flt = normalize_filter(expr)
    if not flt:
        return None
    clauses = [{field: {"$eq": value}} for field, value in flt.items()]
    if len(clauses) == 1:
        return clauses[0]
    return {"$and": clauses}


def to_meilisearch_filter(expr: Optional[FilterExpression]) -> Optional[str]:
    """转换为 Meilisearch filter 字符串。

    Args:
        expr: 过滤映射

    Returns:
        Optional[str]: 形如 "language = 'go' AND stars = 3" 的表达式；无条件返回 None
    """
    flt = normalize_filter(expr)
    if not flt:
        return None
    return " AND ".join(_format_filter(field, "=", value) for field, value in flt.items())


def to_predicate(expr: Optional[FilterExpression]) -> Callable[[Mapping[str, Any]], bool]:
    """转换为进程内谓词函数，供内存向量库与本地 BM25 使用。

    Args:
        expr: 过滤映射

    Returns:
        Callable: 输入元数据字典，全部字段等值匹配时返回 True
    """
    flt = normalize_filter(expr)

    def _match(metadata: Mapping[str, Any]) -> bool:
        for field, expected in flt.items():
            if field not in metadata:
                return False
            if not _scalar_equal(metadata[field], expected):
                return False
        return True

    return _match


def _scalar_equal(actual: Any, expected: Scalar) -> bool:
    # bool 是 int 的子类，需单独比较避免 True == 1
    if isinstance(expected, bool) or isinstance(actual, bool):
        return isinstance(actual, bool) and isinstance(expected, bool) and actual == expected
    return actual == expected


def parse_filter_expression(expr: Union[str, FilterExpression, None]) -> Dict[str, Scalar]:
    """解析文本或映射形式的过滤表达式。

    支持：
    - 映射：直接交由 normalize_filter 校验；
    - JSON 文本：'{"language": "go"}'；
    - 等式文本：'language = go and stars = 3'，取值可加单/双引号，数字与 true/false 自动转换。

    Args:
        expr: 过滤表达式

    Returns:
        Dict[str, Scalar]: 规范化后的过滤映射

    Raises:
        UnsupportedFilter: 无法解析或包含不支持的操作符
    """
    if expr is None or isinstance(expr, Mapping):
        return normalize_filter(expr)
    if not isinstance(expr, str):
        raise UnsupportedFilter(f"过滤条件类型不受支持: {type(expr).__name__}")

    text = expr.strip()
    if not text:
        return {}
    if text.startswith("{"):
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise UnsupportedFilter(f"过滤表达式不是合法 JSON: {e}") from e
        return normalize_filter(data)

    result: Dict[str, Scalar] = {}
    for clause in _CLAUSE_SPLIT.split(text):
        match = _CLAUSE_PATTERN.match(clause)
        if not match:
            raise UnsupportedFilter(f"无法解析的过滤子句（仅支持等值比较）: {clause!r}")
        field, _, raw_value = match.groups()
        result[field] = _parse_literal(raw_value)
    return normalize_filter(result)


def _parse_literal(raw: str) -> Scalar:
    """把等式右侧文本转换为标量取值。"""
    if len(raw) >= 2 and raw[0] == raw[-1] and raw[0] in ("'", '"'):
        return raw[1:-1]
    lowered = raw.lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    try:
        return int(raw)
    except ValueError:
        pass
    try:
        return float(raw)
    except ValueError:
        pass
    if any(op in raw for op in ("!=", ">", "<", " in ", " IN ", " or ", " OR ")):
        raise UnsupportedFilter(f"不支持的过滤操作: {raw!r}")
    return raw


def _format_filter(field: str, operator: str, value: Any) -> str:
    """格式化单个 filter 表达式。

    Args:
        field: 字段名
        operator: 操作符
        value: 值

    Returns:
        str: 格式化后的 filter 表达式，如 "field = 'value'"
    """
    return f"{field} {operator} {_format_value(value)}"


def _format_value(value: Any) -> str:
    """格式化值为 Meilisearch filter 中的字符串表示。"""
    if isinstance(value, str):
        escaped = value.replace("\\", "\\\\").replace("'", "\\'")
        return f"'{escaped}'"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)
