"""事务传播行为

定义树操作在已有事务上下文中被调用时的行为
"""

from enum import Enum


class TransactionPropagation(str, Enum):
    """事务传播行为

    树变更只依赖整体提交 / 整体回滚，不使用 savepoint，
    因此只保留不需要嵌套事务的三种传播方式。

    使用示例:
        with tm.transaction(session, propagation=TransactionPropagation.MANDATORY):
            engine.move(node_id, Position.root())
    """

    REQUIRED = "required"
    """如果当前有事务则加入，没有则新建（默认）"""

    MANDATORY = "mandatory"
    """必须在事务中执行，否则抛出 PropagationError

    变更引擎的所有写操作都以此方式运行，事务边界由外层决定。
    """

    NEVER = "never"
    """必须不在事务中执行，否则抛出 PropagationError"""
