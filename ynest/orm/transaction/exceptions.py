"""事务异常类

定义事务管理相关的异常层次结构，以及存储层锁冲突的识别
"""

from sqlalchemy.exc import DBAPIError, OperationalError


class TransactionError(Exception):
    """事务错误基类"""
    pass


class TransactionNotActiveError(TransactionError):
    """事务未激活错误"""

    def __init__(self, message: str = "事务未激活"):
        super().__init__(message)


class TransactionAlreadyCommittedError(TransactionError):
    """事务已提交错误"""

    def __init__(self, message: str = "事务已提交，无法执行此操作"):
        super().__init__(message)


class TransactionAlreadyRolledBackError(TransactionError):
    """事务已回滚错误

    内层操作失败导致整个事务回滚后，外层继续提交时抛出。
    """

    def __init__(self, message: str = "事务已回滚，无法执行此操作"):
        super().__init__(message)


class PropagationError(TransactionError):
    """事务传播错误

    当事务传播行为不满足条件时抛出
    """

    def __init__(self, propagation: str, message: str):
        self.propagation = propagation
        super().__init__(f"[{propagation}] {message}")


# 各数据库驱动报告锁等待 / 死锁 / 序列化失败时的消息特征
CONTENTION_SIGNATURES = (
    "database is locked",
    "database table is locked",
    "lock wait timeout",
    "lock timeout",
    "lock_timeout",
    "deadlock",
    "could not serialize",
    "could not obtain lock",
    "canceling statement due to lock timeout",
)

# PostgreSQL SQLSTATE: serialization_failure / deadlock_detected / lock_not_available
CONTENTION_SQLSTATES = ("40001", "40P01", "55P03")


def is_contention_error(exc: BaseException) -> bool:
    """判断存储层异常是否为可重试的锁冲突"""
    if not isinstance(exc, (OperationalError, DBAPIError)):
        return False
    orig = getattr(exc, "orig", None)
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in CONTENTION_SQLSTATES:
        return True
    message = str(orig if orig is not None else exc).lower()
    return any(signature in message for signature in CONTENTION_SIGNATURES)
