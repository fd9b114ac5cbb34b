"""变更引擎

把区间编解码与节点仓储组合成插入、移动、删除、恢复、设为根等操作。
每个操作都必须运行在一个已经开启的树事务中（由 NestedSet 门面或
调用方通过 transaction_manager 开启），任何一步失败都会使整个事务回滚，
树保持操作之前的样子。

移动与删除总是从存储中重新读取节点的最新边界，不信任内存中的副本；
只有显式登记到工作集中的句柄，才会被当作新鲜的目标直接使用。
"""

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Iterator, List, Optional, Tuple
from weakref import WeakSet

from ynest.exceptions import (
    CyclicMoveError,
    ErrorCode,
    InvalidNodeError,
    NodeNotFoundError,
    ScopeMismatchError,
)
from ynest.log import get_logger
from ynest.orm.transaction import PropagationError, transaction_manager

from .bounds import compute_move, make_gap, node_height
from .node import NodeHandle, NodeRecord, Placement, WorkingSet
from .position import Position, PositionKind
from .repository import NodeRepository

logger = get_logger()

_WORKING_SET_HOOKED = "ynest.working_set_hooked"


class MutationEngine:
    """变更引擎

    使用示例:
        engine = MutationEngine(repository)
        with transaction_manager.transaction(session):
            placement = engine.insert(Position.append_to(1))
            engine.move(5, Position.before(placement_key))
    """

    def __init__(
        self,
        repository: NodeRepository,
        soft_delete_by_default: bool = True,
        clock: Callable[[], Any] = datetime.now,
    ):
        self.repository = repository
        self.soft_delete_by_default = soft_delete_by_default
        self.clock = clock
        self._working_sets: List[WorkingSet] = []
        self._issued: "WeakSet[NodeHandle]" = WeakSet()

    # ==================== 事务与句柄 ====================

    def _require_transaction(self) -> None:
        if not transaction_manager.is_in_transaction(self.repository.session):
            raise PropagationError("MANDATORY", "树变更必须在事务中执行")

    @property
    def working_set_active(self) -> Optional[WorkingSet]:
        return self._working_sets[-1] if self._working_sets else None

    @contextmanager
    def working_set(self, *handles: NodeHandle) -> Iterator[WorkingSet]:
        """开启一个工作集，其中的句柄在每次变更后被原地修补"""
        ws = WorkingSet(handles)
        for handle in handles:
            self._issued.add(handle)
        self._working_sets.append(ws)
        try:
            yield ws
        finally:
            self._working_sets.remove(ws)

    def handle(self, key: Any) -> NodeHandle:
        """读取节点并发出一个句柄；若有活动的工作集，句柄自动登记到其中"""
        handle = NodeHandle.from_record(self.repository.get_record(key), self.repository.scope.values)
        self._issued.add(handle)
        ws = self.working_set_active
        if ws is not None:
            ws.add(handle)
        return handle

    def refresh(self, handle: NodeHandle) -> NodeHandle:
        """从存储重新读取句柄的边界，清除 dirty 标记"""
        handle.update_from(self.repository.get_record(handle.key))
        handle.scope = dict(self.repository.scope.values)
        return handle

    def _after_patch(self, patch) -> None:
        ws = self.working_set_active
        if ws is not None:
            ws.apply(patch)
            self._hook_rollback(ws)
        for handle in list(self._issued):
            if ws is None or handle not in ws:
                handle.dirty = True

    def _after_parent_change(self, key: Any, parent_id: Any) -> None:
        ws = self.working_set_active
        if ws is not None:
            ws.set_parent(key, parent_id)
        for handle in list(self._issued):
            if handle.key == key and (ws is None or handle not in ws):
                handle.dirty = True

    def _after_tombstone(self, lft: int, rgt: int, sync: Callable[[WorkingSet], Any]) -> None:
        """[lft, rgt] 内的节点被删除或恢复后，同步工作集，其余句柄标记为 dirty"""
        ws = self.working_set_active
        if ws is not None:
            sync(ws)
            self._hook_rollback(ws)
        for handle in list(self._issued):
            if (ws is None or handle not in ws) and lft <= handle.lft <= rgt:
                handle.dirty = True

    def _hook_rollback(self, ws: WorkingSet) -> None:
        tx = transaction_manager.current_transaction
        if tx is None:
            return
        hooked = tx.data.setdefault(_WORKING_SET_HOOKED, set())
        if id(ws) in hooked:
            return
        hooked.add(id(ws))
        tx.after_rollback(lambda ctx: ws.invalidate())

    # ==================== 目标解析 ====================

    def _trusted_handle(self, target: Any) -> Optional[NodeRecord]:
        """工作集中由本 scope 发出且未过期的句柄，直接作为目标使用"""
        ws = self.working_set_active
        if not isinstance(target, NodeHandle) or ws is None or target not in ws:
            return None
        if target.dirty or target.scope is None:
            return None
        if target.scope != self.repository.scope.values:
            raise ScopeMismatchError(
                node_id=target.key,
                expected=dict(self.repository.scope.values),
                actual=dict(target.scope),
            )
        return NodeRecord(target.key, target.lft, target.rgt, target.parent_id, target.deleted_at)

    def _target_record(self, position: Position) -> NodeRecord:
        record = self._trusted_handle(position.target)
        if record is None:
            record = self.repository.get_record(position.target_key)
        if record.deleted:
            raise InvalidNodeError(
                "目标节点已被删除",
                code=ErrorCode.PARENT_DELETED,
                node_id=record.key,
            )
        return record

    def resolve(self, position: Position) -> Tuple[int, Any, Optional[NodeRecord]]:
        """把位置描述换算为 (切入点, 新父节点主键, 目标节点)"""
        if position.kind == PositionKind.ROOT:
            return self.repository.max_rgt() + 1, None, None

        target = self._target_record(position)
        if position.kind == PositionKind.APPEND:
            return target.rgt, target.key, target
        if position.kind == PositionKind.PREPEND:
            return target.lft + 1, target.key, target
        if position.kind == PositionKind.BEFORE:
            return target.lft, target.parent_id, target
        if position.kind == PositionKind.AFTER:
            return target.rgt + 1, target.parent_id, target
        raise InvalidNodeError(f"未知的位置类型: {position.kind}", code=ErrorCode.INVALID_POSITION)

    # ==================== 插入 ====================

    def insert(self, position: Position, height: int = 2) -> Placement:
        """为高度为 height 的新节点（或新子树）开出空间

        Returns:
            Placement(lft, rgt, parent_id)，调用方据此写入新节点

        Raises:
            InvalidNodeError: height 不是正偶数，或目标已被删除
            NodeNotFoundError / ScopeMismatchError: 目标不存在或不在当前 scope
        """
        self._require_transaction()
        if not isinstance(height, int) or height <= 0 or height % 2:
            raise InvalidNodeError("插入高度必须为正偶数", height=height)

        cut, parent_id, _ = self.resolve(position)
        patch = make_gap(cut, height)
        affected = self.repository.apply_patch(patch)
        self._after_patch(patch)
        logger.debug(f"插入 {position!r}: 在 {cut} 处开出 {height}，移动 {affected} 行")
        return Placement(cut, cut + height - 1, parent_id)

    # ==================== 移动 ====================

    def _load_movable(self, key: Any) -> NodeRecord:
        record = self.repository.get_record(key)
        if record.deleted:
            raise InvalidNodeError("已删除的节点不能移动，请先恢复", node_id=key)
        return record

    def move(self, key: Any, position: Position) -> int:
        """把节点（连同子树）移动到 position

        Returns:
            受影响的行数；节点已在目标位置时为 0

        Raises:
            CyclicMoveError: 目标是节点自身或其后代
        """
        self._require_transaction()
        if position.kind == PositionKind.ROOT:
            return self.make_root(key)

        node = self._load_movable(key)
        if position.is_child_position and position.target_key == key:
            raise CyclicMoveError(node_id=key, position=repr(position))

        cut, parent_id, target = self.resolve(position)
        if target is not None and target.key != key and node.contains(target):
            raise CyclicMoveError(node_id=key, target_id=target.key)

        try:
            patch = compute_move(node.lft, node.rgt, cut)
        except CyclicMoveError as e:
            e.extra.setdefault("node_id", key)
            raise

        affected = 0
        if patch is not None:
            affected = self.repository.apply_patch(patch)
            self._after_patch(patch)

        if node.parent_id != parent_id:
            self.repository.set_parent(key, parent_id)
            self._after_parent_change(key, parent_id)
            affected = affected or 1

        logger.debug(f"移动节点 {key!r} 到 {position!r}，影响 {affected} 行")
        return affected

    def make_root(self, key: Any) -> int:
        """把节点移动到 scope 末尾成为根节点；已经是根节点时不做任何事"""
        self._require_transaction()
        node = self._load_movable(key)
        if node.parent_id is None:
            return 0

        patch = compute_move(node.lft, node.rgt, self.repository.max_rgt() + 1)
        affected = 0
        if patch is not None:
            affected = self.repository.apply_patch(patch)
            self._after_patch(patch)
        self.repository.set_parent(key, None)
        self._after_parent_change(key, None)
        return affected or 1

    def shift(self, key: Any, amount: int) -> bool:
        """在兄弟之间移动 amount 个位置（负数向前）

        Returns:
            目标兄弟不存在时返回 False
        """
        self._require_transaction()
        if amount == 0:
            return False
        node = self._load_movable(key)
        sibling = self.repository.sibling_record(node, forward=amount > 0, offset=abs(amount) - 1)
        if sibling is None:
            return False
        position = Position.after(sibling.key) if amount > 0 else Position.before(sibling.key)
        return self.move(key, position) > 0

    # ==================== 删除与恢复 ====================

    def _use_soft_delete(self, hard: Optional[bool]) -> bool:
        if not self.repository.columns.supports_soft_delete:
            return False
        if hard is None:
            return self.soft_delete_by_default
        return not hard

    def delete_subtree(self, key: Any, hard: Optional[bool] = None, reuse: bool = False) -> int:
        """删除节点及其所有后代

        Args:
            key: 节点主键
            hard: True 物理删除；False 软删除；None 按配置（模型支持软删除时默认软删除）
            reuse: 只删除后代并把节点本身保留为新的根节点（仅物理删除）

        Returns:
            被删除（或标记删除）的行数
        """
        self._require_transaction()
        node = self.repository.get_record(key)

        if not reuse and self._use_soft_delete(hard):
            if node.deleted:
                return 0
            stamp = self.clock()
            affected = self.repository.soft_delete_range(node.lft, node.rgt, stamp)
            self._after_tombstone(node.lft, node.rgt, lambda ws: ws.mark_deleted(node.lft, node.rgt, stamp))
            logger.debug(f"软删除子树 {key!r}，标记 {affected} 行")
            return affected

        if reuse:
            if node.deleted:
                raise InvalidNodeError("已删除的节点不能保留为根节点", node_id=key)
            inner = (node.lft + 1, node.rgt - 1)
            affected = self.repository.delete_range(*inner)
            self._after_tombstone(*inner, lambda ws: ws.drop_range(*inner))
            closed = node_height(node.lft, node.rgt) - 2
            if closed:
                patch = make_gap(node.rgt, -closed)
                self.repository.apply_patch(patch)
                self._after_patch(patch)
            self.make_root(key)
            return affected

        affected = self.repository.delete_range(node.lft, node.rgt)
        self._after_tombstone(node.lft, node.rgt, lambda ws: ws.drop_range(node.lft, node.rgt))
        patch = make_gap(node.rgt + 1, -node_height(node.lft, node.rgt))
        self.repository.apply_patch(patch)
        self._after_patch(patch)
        logger.debug(f"物理删除子树 {key!r}，删除 {affected} 行")
        return affected

    def restore(self, key: Any) -> int:
        """恢复软删除的子树（不改变边界）

        只恢复与节点一起（或之后）被删除的后代。

        Raises:
            InvalidNodeError: 父节点仍处于删除状态
        """
        self._require_transaction()
        if not self.repository.columns.supports_soft_delete:
            raise InvalidNodeError("模型不支持软删除", node_id=key)

        node = self.repository.get_record(key)
        if not node.deleted:
            return 0

        if node.parent_id is not None:
            try:
                parent = self.repository.get_record(node.parent_id)
            except NodeNotFoundError:
                parent = None
            if parent is None or parent.deleted:
                raise InvalidNodeError(
                    "父节点已被删除，请先恢复父节点",
                    code=ErrorCode.PARENT_DELETED,
                    node_id=key,
                    parent_id=node.parent_id,
                )

        affected = self.repository.restore_range(node.lft, node.rgt, node.deleted_at)
        self._after_tombstone(
            node.lft, node.rgt, lambda ws: ws.mark_restored(node.lft, node.rgt, node.deleted_at)
        )
        logger.debug(f"恢复子树 {key!r}，恢复 {affected} 行")
        return affected
