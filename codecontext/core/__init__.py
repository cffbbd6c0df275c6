"""核心公共能力：异常体系与重试策略。"""

from .exceptions import (
    RetrievalError,
    TransientError,
    DatabaseConnectionError,
    NetworkError,
    RateLimited,
    AuthenticationError,
    UnsupportedModel,
    ResponseFormatError,
    DimensionMismatch,
    UnsupportedFilter,
    CollectionNotFound,
    PartialBatchFailure,
    InvalidRequest,
)

__all__ = [
    "RetrievalError",
    "TransientError",
    "DatabaseConnectionError",
    "NetworkError",
    "RateLimited",
    "AuthenticationError",
    "UnsupportedModel",
    "ResponseFormatError",
    "DimensionMismatch",
    "UnsupportedFilter",
    "CollectionNotFound",
    "PartialBatchFailure",
    "InvalidRequest",
]
