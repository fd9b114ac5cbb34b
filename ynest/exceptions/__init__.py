"""异常模块

使用示例:
    from ynest.exceptions import Err, ErrorCode, NestedSetException

    raise Err.not_found(node_id=42)
"""

from .exceptions import (
    ErrorCode,
    ErrorCodeType,
    NestedSetException,
    CyclicMoveError,
    NodeNotFoundError,
    ScopeMismatchError,
    InvalidNodeError,
    ContentionError,
    PRECONDITION_ERRORS,
    Err,
)

__all__ = [
    "ErrorCode",
    "ErrorCodeType",
    "NestedSetException",
    "CyclicMoveError",
    "NodeNotFoundError",
    "ScopeMismatchError",
    "InvalidNodeError",
    "ContentionError",
    "PRECONDITION_ERRORS",
    "Err",
]
