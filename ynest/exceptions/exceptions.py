"""嵌套集合异常类定义

定义树变更引擎使用的异常类体系。

结构性前置条件错误（循环移动、节点不存在、跨 scope 操作、非法节点）
都在写入之前抛出；存储层的锁冲突被转换为可重试的 ContentionError。
树结构损坏不会以异常形式抛出，而是由 count_errors 报告。
"""

import copy
from enum import Enum
from http import HTTPStatus
from typing import Optional, List, Any, Dict, Union


class ErrorCode(str, Enum):
    """错误代码枚举

    继承自 str，可以直接作为字符串使用。

    使用示例:
        from ynest.exceptions import ErrorCode, NestedSetException

        try:
            tree.move(node_id, Position.append_to(child_id))
        except NestedSetException as e:
            if e.code == ErrorCode.CYCLIC_MOVE:
                ...
    """

    # ==================== 通用错误 ====================
    NESTED_SET_ERROR = "NESTED_SET_ERROR"

    # ==================== 前置条件错误 ====================
    CYCLIC_MOVE = "CYCLIC_MOVE"
    NODE_NOT_FOUND = "NODE_NOT_FOUND"
    SCOPE_MISMATCH = "SCOPE_MISMATCH"
    INVALID_NODE = "INVALID_NODE"
    INVALID_POSITION = "INVALID_POSITION"
    PARENT_DELETED = "PARENT_DELETED"

    # ==================== 并发相关 ====================
    CONTENTION = "CONTENTION"
    LOCK_TIMEOUT = "LOCK_TIMEOUT"


# 类型别名，支持枚举和字符串
ErrorCodeType = Union[str, ErrorCode]


class NestedSetException(Exception):
    """嵌套集合异常基类

    属性:
        message: 错误消息
        code: 错误代码（ErrorCode 枚举或字符串）
        status_code: 对应的 HTTP 状态码，便于上层接口直接映射
        details: 详细错误信息列表
        extra: 额外的上下文信息（如 node_id、position）
        retryable: 整个操作是否可以安全重试
    """

    retryable: bool = False

    def __init__(
        self,
        message: str,
        code: ErrorCodeType = ErrorCode.NESTED_SET_ERROR,
        status_code: int = HTTPStatus.BAD_REQUEST,
        details: Optional[List[str]] = None,
        **extra: Any
    ):
        self.message = message
        self.code = code
        self.status_code = int(status_code)
        self.details = details or []
        self.extra = extra
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典格式

        Returns:
            包含异常信息的字典
        """
        return {
            "message": self.message,
            "code": self.code,
            "status_code": self.status_code,
            "details": copy.deepcopy(self.details),
            "extra": copy.deepcopy(self.extra),
            "retryable": self.retryable,
        }

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"code={self.code!r}, "
            f"status_code={self.status_code})"
        )


class CyclicMoveError(NestedSetException):
    """循环移动异常

    目标位置位于被移动节点自身的区间内（节点本身或其后代）时抛出。

    使用示例:
        raise CyclicMoveError(node_id=3, position=5)
    """

    def __init__(
        self,
        message: str = "不能将节点移动到自身或其后代之下",
        code: ErrorCodeType = ErrorCode.CYCLIC_MOVE,
        details: Optional[List[str]] = None,
        **extra: Any
    ):
        super().__init__(message, code=code, status_code=HTTPStatus.CONFLICT, details=details, **extra)


class NodeNotFoundError(NestedSetException):
    """节点不存在异常

    引用的节点（或重建数据中带主键的条目）在当前 scope 中不存在时抛出。
    """

    def __init__(
        self,
        message: str = "节点不存在",
        code: ErrorCodeType = ErrorCode.NODE_NOT_FOUND,
        details: Optional[List[str]] = None,
        **extra: Any
    ):
        super().__init__(message, code=code, status_code=HTTPStatus.NOT_FOUND, details=details, **extra)


class ScopeMismatchError(NestedSetException):
    """scope 不匹配异常

    节点与目标属于不同的 scope，或者 scope 取值不完整时抛出。
    """

    def __init__(
        self,
        message: str = "节点与目标不在同一个 scope 中",
        code: ErrorCodeType = ErrorCode.SCOPE_MISMATCH,
        details: Optional[List[str]] = None,
        **extra: Any
    ):
        super().__init__(message, code=code, status_code=HTTPStatus.CONFLICT, details=details, **extra)


class InvalidNodeError(NestedSetException):
    """非法节点异常

    边界不合法（高度为奇数、非正数）、插入高度不合法、
    或在已删除的父节点下恢复节点时抛出。
    """

    def __init__(
        self,
        message: str = "节点状态不合法",
        code: ErrorCodeType = ErrorCode.INVALID_NODE,
        details: Optional[List[str]] = None,
        **extra: Any
    ):
        super().__init__(
            message, code=code, status_code=HTTPStatus.UNPROCESSABLE_ENTITY, details=details, **extra
        )


class ContentionError(NestedSetException):
    """并发冲突异常

    存储层报告锁等待超时、死锁或序列化失败，或进程内 scope 锁等待超时。
    事务已经整体回滚，调用方可以重试整个操作。
    """

    retryable = True

    def __init__(
        self,
        message: str = "树正在被其他事务修改，请稍后重试",
        code: ErrorCodeType = ErrorCode.CONTENTION,
        details: Optional[List[str]] = None,
        **extra: Any
    ):
        super().__init__(
            message, code=code, status_code=HTTPStatus.SERVICE_UNAVAILABLE, details=details, **extra
        )


# 不触发外层事务回滚的前置条件异常
PRECONDITION_ERRORS = (CyclicMoveError, NodeNotFoundError, ScopeMismatchError, InvalidNodeError)


class Err:
    """异常快捷创建类

    使用示例:
        from ynest.exceptions import Err

        raise Err.cyclic(node_id=3)
        raise Err.not_found("父节点不存在", node_id=7)
        raise Err.scope_mismatch(expected={"menu_id": 1}, actual={"menu_id": 2})
        raise Err.invalid("高度必须为正偶数", height=3)
        raise Err.contention()
    """

    @staticmethod
    def cyclic(message: str = "不能将节点移动到自身或其后代之下", **kwargs) -> CyclicMoveError:
        """循环移动"""
        return CyclicMoveError(message, **kwargs)

    @staticmethod
    def not_found(message: str = "节点不存在", **kwargs) -> NodeNotFoundError:
        """节点不存在"""
        return NodeNotFoundError(message, **kwargs)

    @staticmethod
    def scope_mismatch(message: str = "节点与目标不在同一个 scope 中", **kwargs) -> ScopeMismatchError:
        """scope 不匹配"""
        return ScopeMismatchError(message, **kwargs)

    @staticmethod
    def invalid(message: str = "节点状态不合法", **kwargs) -> InvalidNodeError:
        """非法节点或非法参数"""
        return InvalidNodeError(message, **kwargs)

    @staticmethod
    def contention(message: str = "树正在被其他事务修改，请稍后重试", **kwargs) -> ContentionError:
        """并发冲突（可重试）"""
        return ContentionError(message, **kwargs)
