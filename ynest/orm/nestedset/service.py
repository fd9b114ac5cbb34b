"""嵌套集合门面

NestedSet 把仓储、变更引擎、一致性检查、重建与查询组合成一个对象，
绑定到 (模型, session, scope)。

每个变更方法都在一个树事务中执行:
- 当前没有事务时开启新事务，方法返回前提交；任何异常都会整体回滚
- 已经在同一个 session 的事务中时加入该事务，由外层决定提交；
  前置条件异常（循环移动、节点不存在等）在写入前抛出，不会回滚外层事务
- 事务内第一次变更前获取 scope 写锁，事务结束时释放

使用示例:
    tree = NestedSet(Category, session)

    phone = tree.create({"title": "手机"}, Position.append_to(1))
    tree.move(phone.id, Position.before(2))
    tree.delete_subtree(phone.id)

    # 多个操作作为一个事务
    with tree.transaction():
        tree.append_to(5, 1)
        tree.append_to(6, 1)
"""

from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Union

from sqlalchemy import inspect as sa_inspect
from sqlalchemy.orm import Session

from ynest.config import NestedSetSettings
from ynest.exceptions import (
    PRECONDITION_ERRORS,
    ErrorCode,
    InvalidNodeError,
    ScopeMismatchError,
)
from ynest.log import get_logger
from ynest.orm.transaction import TransactionContext, transaction_manager

from .checker import ConsistencyChecker, TreeErrorReport
from .engine import MutationEngine
from .locks import ScopeLockRegistry, hold_scope_lock
from .meta import TreeColumns
from .node import NodeHandle, Placement
from .position import Position
from .query import TreeQuery
from .rebuilder import TreeNodeInput, TreeRebuilder
from .repository import NodeRepository
from .scope import ScopePartitioner

logger = get_logger()


class NestedSet:
    """嵌套集合门面

    Args:
        model: 使用了 NestedSetMixin（或提供同名类属性）的 SQLAlchemy 模型
        session: 数据库会话
        scope: scope 取值（dict）或 ScopePartitioner；模型没有 scope 列时为空
        settings: NestedSetSettings，默认从环境变量读取
        lock_registry: 进程内锁注册表，默认使用全局单例
    """

    def __init__(
        self,
        model,
        session: Session,
        scope: Union[Mapping[str, Any], ScopePartitioner, None] = None,
        settings: NestedSetSettings = None,
        lock_registry: ScopeLockRegistry = None,
    ):
        self.model = model
        self.session = session
        self.settings = settings or NestedSetSettings()
        self.lock_registry = lock_registry
        self.columns = TreeColumns.from_model(model)

        if isinstance(scope, ScopePartitioner):
            if scope.columns != self.columns.scope:
                raise ScopeMismatchError(
                    "scope 列与模型声明不一致",
                    expected=list(self.columns.scope),
                    actual=list(scope.columns),
                )
            self.scope = scope
        else:
            self.scope = ScopePartitioner(self.columns.scope, scope)

        self.repository = NodeRepository(model, session, self.scope, self.columns)
        self.engine = MutationEngine(
            self.repository,
            soft_delete_by_default=self.settings.soft_delete_by_default,
        )
        self.checker = ConsistencyChecker(
            self.repository,
            include_deleted=self.settings.include_deleted_in_checks,
        )
        self.rebuilder = TreeRebuilder(self.repository)

    @classmethod
    def of(cls, session: Session, node, settings: NestedSetSettings = None) -> 'NestedSet':
        """绑定到 node 所在的树"""
        model = type(node)
        columns = TreeColumns.from_model(model)
        scope = ScopePartitioner.from_node(columns.scope, node)
        return cls(model, session, scope, settings=settings)

    def __repr__(self) -> str:
        return f"NestedSet({self.columns.table.name}, {self.scope!r})"

    # ==================== 事务 ====================

    @contextmanager
    def transaction(self) -> Iterator[TransactionContext]:
        """开启（或加入）树事务，并持有 scope 写锁"""
        with transaction_manager.transaction(
            self.session,
            no_rollback_for=PRECONDITION_ERRORS,
        ) as tx:
            hold_scope_lock(tx, self.repository, self.settings, self.lock_registry)
            yield tx

    # ==================== 插入 ====================

    def insert(self, position: Position, height: int = 2) -> Placement:
        """开出空间，返回新节点应写入的边界与父节点（由调用方写入）"""
        with self.transaction():
            return self.engine.insert(position, height)

    def insert_node(self, obj, position: Optional[Position] = None):
        """把一个尚未持久化的模型实例插入到 position（默认作为新的根节点）"""
        if position is None:
            position = Position.root()

        state = sa_inspect(obj)
        if state.persistent or state.detached:
            raise InvalidNodeError(
                "节点已持久化，请使用 move 调整位置",
                code=ErrorCode.INVALID_POSITION,
                node_id=getattr(obj, self.columns.key, None),
            )

        for name, value in self.scope.values.items():
            current = getattr(obj, name, None)
            if current is None:
                setattr(obj, name, value)
            elif current != value:
                raise ScopeMismatchError(
                    expected=dict(self.scope.values),
                    actual=self.scope.values_of(obj),
                )

        with self.transaction():
            placement = self.engine.insert(position)
            setattr(obj, self.columns.lft, placement.lft)
            setattr(obj, self.columns.rgt, placement.rgt)
            setattr(obj, self.columns.parent_id, placement.parent_id)
            self.session.add(obj)
            self.session.flush()
        return obj

    def create(self, attributes: Dict[str, Any], position: Optional[Position] = None):
        """创建节点（attributes 中的 children 递归创建为子节点）

        写入任何一行之前先检查整棵待创建子树的 scope 值，
        校验失败时不会留下已写入的父节点。

        使用示例:
            tree.create({"title": "家电", "children": [{"title": "电视"}, {"title": "冰箱"}]})
        """
        self._check_scope_values(attributes)
        with self.transaction():
            return self._create(attributes, position)

    def _check_scope_values(self, attributes: Dict[str, Any]) -> None:
        pending = [attributes]
        while pending:
            item = pending.pop()
            actual = {name: item[name] for name in self.scope.values if item.get(name) is not None}
            if any(value != self.scope.values[name] for name, value in actual.items()):
                raise ScopeMismatchError(expected=dict(self.scope.values), actual=actual)
            pending.extend(item.get("children") or [])

    def _create(self, attributes: Dict[str, Any], position: Optional[Position]):
        attributes = dict(attributes)
        children = attributes.pop("children", None) or []
        for name in self.columns.structural():
            if name not in self.columns.scope:
                attributes.pop(name, None)

        obj = self.insert_node(self.model(**attributes), position)
        for child in children:
            self._create(child, Position.append_to(getattr(obj, self.columns.key)))
        return obj

    # ==================== 移动 ====================

    def move(self, key: Any, position: Position) -> int:
        """移动节点（连同子树），返回受影响的行数"""
        with self.transaction():
            return self.engine.move(self._key(key), position)

    def append_to(self, key: Any, parent: Any) -> int:
        return self.move(key, Position.append_to(parent))

    def prepend_to(self, key: Any, parent: Any) -> int:
        return self.move(key, Position.prepend_to(parent))

    def insert_before(self, key: Any, sibling: Any) -> int:
        return self.move(key, Position.before(sibling))

    def insert_after(self, key: Any, sibling: Any) -> int:
        return self.move(key, Position.after(sibling))

    def make_root(self, key: Any) -> int:
        with self.transaction():
            return self.engine.make_root(self._key(key))

    def up(self, key: Any, amount: int = 1) -> bool:
        """与前面的第 amount 个兄弟交换位置"""
        with self.transaction():
            return self.engine.shift(self._key(key), -amount)

    def down(self, key: Any, amount: int = 1) -> bool:
        """与后面的第 amount 个兄弟交换位置"""
        with self.transaction():
            return self.engine.shift(self._key(key), amount)

    # ==================== 删除与恢复 ====================

    def delete_subtree(self, key: Any, hard: Optional[bool] = None) -> int:
        """删除节点及其所有后代，返回删除（或标记删除）的行数"""
        with self.transaction():
            return self.engine.delete_subtree(self._key(key), hard=hard)

    def delete_descendants(self, key: Any) -> int:
        """物理删除所有后代，节点本身成为新的根节点"""
        with self.transaction():
            return self.engine.delete_subtree(self._key(key), hard=True, reuse=True)

    def restore(self, key: Any) -> int:
        with self.transaction():
            return self.engine.restore(self._key(key))

    # ==================== 检查与修复 ====================

    def count_errors(self) -> TreeErrorReport:
        return self.checker.count_errors()

    def total_errors(self) -> int:
        return self.count_errors().total

    def is_broken(self) -> bool:
        return self.checker.is_broken()

    def fix_tree(self, root: Any = None) -> int:
        """按 parent_id 重新计算左右值，返回变更的行数"""
        with self.transaction():
            return self.rebuilder.fix_tree(self._key(root))

    def rebuild_tree(
        self,
        data: Sequence[Union[TreeNodeInput, Dict[str, Any]]],
        delete_missing: bool = False,
        root: Any = None,
    ) -> int:
        with self.transaction():
            return self.rebuilder.rebuild_tree(data, delete_missing=delete_missing, root=self._key(root))

    def dump_hierarchy(self, root: Any = None, fields: Sequence[str] = ()) -> List[Dict[str, Any]]:
        return self.rebuilder.dump_hierarchy(self._key(root), fields)

    # ==================== 查询与句柄 ====================

    @property
    def queries(self) -> TreeQuery:
        return TreeQuery(self.repository)

    def handle(self, key: Any) -> NodeHandle:
        return self.engine.handle(self._key(key))

    def working_set(self, *handles: NodeHandle):
        """见 MutationEngine.working_set"""
        return self.engine.working_set(*handles)

    def refresh(self, handle: NodeHandle) -> NodeHandle:
        return self.engine.refresh(handle)

    @staticmethod
    def _key(node: Any) -> Any:
        """允许直接传入实现了 get_key 的节点对象"""
        get_key = getattr(node, "get_key", None)
        return get_key() if callable(get_key) else node


