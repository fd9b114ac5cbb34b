"""事务管理模块

提供树变更所需的事务管理功能：
- 整体提交 / 整体回滚（包括 KeyboardInterrupt 等中断）
- 事务传播行为（REQUIRED, MANDATORY, NEVER）
- 存储层锁冲突到 ContentionError 的转换与重试

使用示例:
    from ynest.orm import transaction_manager as tm

    with tm.transaction(session) as tx:
        tree.move(3, Position.root())

        @tx.after_commit
        def on_committed(ctx):
            clear_menu_cache()
"""

from .state import TransactionState
from .exceptions import (
    TransactionError,
    TransactionNotActiveError,
    TransactionAlreadyCommittedError,
    TransactionAlreadyRolledBackError,
    PropagationError,
    is_contention_error,
)
from .propagation import TransactionPropagation
from .context import TransactionContext
from .manager import (
    TransactionManager,
    transaction_manager,
    get_current_transaction,
)
from .retry import transaction_with_retry

__all__ = [
    "TransactionState",
    "TransactionError",
    "TransactionNotActiveError",
    "TransactionAlreadyCommittedError",
    "TransactionAlreadyRolledBackError",
    "PropagationError",
    "is_contention_error",
    "TransactionPropagation",
    "TransactionContext",
    "TransactionManager",
    "transaction_manager",
    "get_current_transaction",
    "transaction_with_retry",
]
