"""ORM模块

提供嵌套集合树的完整支持：
- 数据库会话管理（db_manager）
- 事务管理（transaction_manager，整体提交 / 整体回滚、锁冲突重试）
- 嵌套集合门面、Mixin 与底层组件

使用示例:
    from ynest.orm import init_database, db_session_scope, transaction_manager
    from ynest.orm.nestedset import Position

    init_database("sqlite:///./tree.db")

    with db_session_scope() as session:
        tree = Category.nested_set(session)
        tree.move(5, Position.append_to(1))
"""

from .db_session import (
    DatabaseManager,
    db_manager,
    init_database,
    get_engine,
    db_session_scope,
)
from .transaction import (
    TransactionState,
    TransactionPropagation,
    TransactionContext,
    TransactionManager,
    transaction_manager,
    get_current_transaction,
    transaction_with_retry,
    TransactionError,
    PropagationError,
)
from .nestedset import (
    NestedSet,
    NestedSetMixin,
    NestedSetFieldsMixin,
    NestedSetFieldsWithParentMixin,
    nested_set_indexes,
    Position,
    TreeErrorReport,
)

__all__ = [
    # 数据库会话
    "DatabaseManager",
    "db_manager",
    "init_database",
    "get_engine",
    "db_session_scope",

    # 事务
    "TransactionState",
    "TransactionPropagation",
    "TransactionContext",
    "TransactionManager",
    "transaction_manager",
    "get_current_transaction",
    "transaction_with_retry",
    "TransactionError",
    "PropagationError",

    # 嵌套集合
    "NestedSet",
    "NestedSetMixin",
    "NestedSetFieldsMixin",
    "NestedSetFieldsWithParentMixin",
    "nested_set_indexes",
    "Position",
    "TreeErrorReport",
]
