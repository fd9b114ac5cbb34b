"""树事务的生命周期状态"""

from enum import Enum


class TransactionState(str, Enum):
    """树事务状态

    上下文创建时为 INACTIVE，进入后为 ACTIVE。正常结束变为 COMMITTED，
    任何异常变为 ROLLED_BACK；提交或回滚本身失败时为 FAILED，
    此时 session 处于未知状态，只能丢弃。
    """

    INACTIVE = "inactive"
    ACTIVE = "active"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"

    def is_terminal(self) -> bool:
        """事务是否已经结束"""
        return self not in (TransactionState.INACTIVE, TransactionState.ACTIVE)
