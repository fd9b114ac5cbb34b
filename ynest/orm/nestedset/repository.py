"""节点仓储

嵌套集合引擎中唯一直接读写存储的组件。所有语句都基于模型的
Core Table 构建，并统一带上 scope 过滤条件。

读取分为两种视图:
- 服务视图（include_deleted=True）: 包含软删除的节点，变更与修复都使用它，
  因为软删除的节点仍然占据着区间
- 在线视图（include_deleted=False）: 排除软删除的节点，供查询使用

每次写入之后，session 中已加载的该模型实例的结构字段都会被 expire，
下次访问时从数据库重新读取权威值。
"""

from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import bindparam, delete, func, select, true, update
from sqlalchemy.orm import Session

from ynest.exceptions import NodeNotFoundError
from ynest.log import get_logger
from ynest.orm.transaction import get_current_transaction

from .locks import LOCKING_READ_DIALECTS, holds_scope_lock
from .meta import TreeColumns
from .node import NodeRecord
from .scope import ScopePartitioner

logger = get_logger()


class NodeRepository:
    """节点仓储

    使用示例:
        repo = NodeRepository(Category, session, ScopePartitioner())
        lft, rgt = repo.get_bounds(3)
        repo.apply_patch(make_gap(rgt, 2))
    """

    def __init__(self, model, session: Session, scope: ScopePartitioner, columns: TreeColumns = None):
        self.model = model
        self.session = session
        self.scope = scope
        self.columns = columns or TreeColumns.from_model(model)

        t = self.table = self.columns.table
        self.c_key = t.c[self.columns.key]
        self.c_lft = t.c[self.columns.lft]
        self.c_rgt = t.c[self.columns.rgt]
        self.c_parent = t.c[self.columns.parent_id]
        self.c_deleted = t.c[self.columns.soft_delete] if self.columns.soft_delete else None

    # ==================== 过滤条件 ====================

    def scoped(self, table=None):
        return self.scope.clause(self.table if table is None else table)

    def live_clause(self, table=None):
        """在线视图条件（排除软删除）"""
        if self.c_deleted is None:
            return true()
        t = self.table if table is None else table
        return t.c[self.columns.soft_delete].is_(None)

    def _structure_columns(self, table=None):
        t = self.table if table is None else table
        cols = [
            t.c[self.columns.key],
            t.c[self.columns.lft],
            t.c[self.columns.rgt],
            t.c[self.columns.parent_id],
        ]
        if self.c_deleted is not None:
            cols.append(t.c[self.columns.soft_delete])
        return cols

    def _record(self, row) -> NodeRecord:
        deleted_at = row[4] if self.c_deleted is not None else None
        return NodeRecord(row[0], row[1], row[2], row[3], deleted_at)

    @property
    def dialect_name(self) -> str:
        return self.session.get_bind().dialect.name

    def locking(self, stmt):
        """持有 scope 写锁时，MySQL / MariaDB 上的结构读取改为锁定读（SELECT ... FOR UPDATE）"""
        if self.dialect_name not in LOCKING_READ_DIALECTS:
            return stmt
        if not holds_scope_lock(get_current_transaction(), self):
            return stmt
        return stmt.with_for_update()

    # ==================== 读取 ====================

    def get_record(self, key: Any, required: bool = True) -> Optional[NodeRecord]:
        """读取节点的最新结构字段（服务视图）

        Raises:
            NodeNotFoundError: 节点不存在（required=True 时）
            ScopeMismatchError: 节点存在但属于其它 scope
        """
        self.session.flush()
        scope_cols = [self.table.c[name] for name in self.scope.columns]
        row = self.session.execute(
            self.locking(select(*self._structure_columns(), *scope_cols).where(self.c_key == key))
        ).first()

        if row is None:
            if required:
                raise NodeNotFoundError(node_id=key)
            return None

        self.scope.ensure_same(row, key=key)
        return self._record(row)

    def get_bounds(self, key: Any) -> Tuple[int, int]:
        """读取节点的 (lft, rgt)"""
        record = self.get_record(key)
        return record.lft, record.rgt

    def max_rgt(self) -> int:
        """scope 内最大的 rgt（包含软删除的节点），空树为 0"""
        self.session.flush()
        value = self.session.execute(
            self.locking(select(func.max(self.c_rgt)).where(self.scoped()))
        ).scalar()
        return value or 0

    def fetch_records(
        self,
        lft_between: Optional[Tuple[int, int]] = None,
        include_deleted: bool = True,
    ) -> List[NodeRecord]:
        """按 lft 顺序读取 scope 内的节点

        Args:
            lft_between: 只读取 lft 落在闭区间内的节点
            include_deleted: 是否包含软删除的节点
        """
        self.session.flush()
        stmt = select(*self._structure_columns()).where(self.scoped())
        if lft_between is not None:
            stmt = stmt.where(self.c_lft.between(*lft_between))
        if not include_deleted:
            stmt = stmt.where(self.live_clause())
        stmt = stmt.order_by(self.c_lft, self.c_key)
        return [self._record(row) for row in self.session.execute(self.locking(stmt))]

    @staticmethod
    def children_adjacency(records: Iterable[NodeRecord]) -> Dict[Any, List[NodeRecord]]:
        """parent_id -> 子节点列表（保持输入顺序）"""
        adjacency: Dict[Any, List[NodeRecord]] = {}
        for record in records:
            adjacency.setdefault(record.parent_id, []).append(record)
        return adjacency

    def get_children_adjacency(self, include_deleted: bool = True) -> Dict[Any, List[NodeRecord]]:
        return self.children_adjacency(self.fetch_records(include_deleted=include_deleted))

    def sibling_record(self, record: NodeRecord, forward: bool, offset: int = 0) -> Optional[NodeRecord]:
        """同一父节点下、在 record 之前（或之后）的第 offset + 1 个在线兄弟"""
        self.session.flush()
        parent_cond = (
            self.c_parent.is_(None) if record.parent_id is None else self.c_parent == record.parent_id
        )
        stmt = (
            select(*self._structure_columns())
            .where(self.scoped(), self.live_clause(), parent_cond)
        )
        if forward:
            stmt = stmt.where(self.c_lft > record.rgt).order_by(self.c_lft)
        else:
            stmt = stmt.where(self.c_rgt < record.lft).order_by(self.c_lft.desc())
        row = self.session.execute(self.locking(stmt.offset(offset).limit(1))).first()
        return self._record(row) if row is not None else None

    # ==================== 写入 ====================

    def apply_patch(self, patch, exclude: Iterable[Any] = ()) -> int:
        """把一个 GapPatch / MovePatch 作为一条 UPDATE 应用到 scope 内的受影响行

        Args:
            exclude: 不参与平移的节点主键（例如随后会整体回写的子树）
        """
        self.session.flush()
        conditions = [self.scoped(), patch.predicate(self.c_lft, self.c_rgt)]
        excluded = list(exclude)
        if excluded:
            conditions.append(self.c_key.not_in(excluded))
        stmt = (
            update(self.table)
            .where(*conditions)
            .values({
                self.c_lft: patch.column_expression(self.c_lft),
                self.c_rgt: patch.column_expression(self.c_rgt),
            })
        )
        affected = self.session.execute(stmt).rowcount
        logger.debug(f"{self.table.name} 应用补丁 {patch}，影响 {affected} 行")
        self.expire_loaded()
        return affected

    def set_parent(self, key: Any, parent_id: Any) -> int:
        self.session.flush()
        affected = self.session.execute(
            update(self.table)
            .where(self.scoped(), self.c_key == key)
            .values({self.c_parent: parent_id})
        ).rowcount
        self.expire_loaded()
        return affected

    def write_bounds(self, rows: Sequence[Tuple[Any, int, int, Any]]) -> int:
        """批量写入 (key, lft, rgt, parent_id)"""
        if not rows:
            return 0
        self.session.flush()
        stmt = (
            update(self.table)
            .where(self.scoped(), self.c_key == bindparam("_key"))
            .values({
                self.c_lft: bindparam("_lft"),
                self.c_rgt: bindparam("_rgt"),
                self.c_parent: bindparam("_parent"),
            })
        )
        self.session.execute(
            stmt,
            [
                {"_key": key, "_lft": lft, "_rgt": rgt, "_parent": parent_id}
                for key, lft, rgt, parent_id in rows
            ],
        )
        self.expire_loaded()
        return len(rows)

    def delete_range(self, lft: int, rgt: int) -> int:
        """物理删除 lft 落在 [lft, rgt] 内的所有行"""
        self.session.flush()
        keys = list(self.session.execute(
            select(self.c_key).where(self.scoped(), self.c_lft.between(lft, rgt))
        ).scalars())
        return self.delete_keys(keys)

    def delete_keys(self, keys: Sequence[Any]) -> int:
        if not keys:
            return 0
        self.session.flush()
        affected = self.session.execute(
            delete(self.table).where(self.scoped(), self.c_key.in_(list(keys)))
        ).rowcount
        self.forget(keys)
        return affected

    def soft_delete_range(self, lft: int, rgt: int, stamp: Any) -> int:
        """给 [lft, rgt] 内尚未删除的行打上删除时间戳，边界保持不变"""
        self.session.flush()
        affected = self.session.execute(
            update(self.table)
            .where(self.scoped(), self.c_lft.between(lft, rgt), self.c_deleted.is_(None))
            .values({self.c_deleted: stamp})
        ).rowcount
        self.expire_loaded()
        return affected

    def soft_delete_keys(self, keys: Sequence[Any], stamp: Any) -> int:
        if not keys:
            return 0
        self.session.flush()
        affected = self.session.execute(
            update(self.table)
            .where(self.scoped(), self.c_key.in_(list(keys)), self.c_deleted.is_(None))
            .values({self.c_deleted: stamp})
        ).rowcount
        self.expire_loaded()
        return affected

    def restore_range(self, lft: int, rgt: int, since: Any) -> int:
        """撤销 [lft, rgt] 内在 since 及之后被删除的行的删除标记

        比 since 更早删除的后代是单独删除的，保持删除状态。
        """
        self.session.flush()
        affected = self.session.execute(
            update(self.table)
            .where(self.scoped(), self.c_lft.between(lft, rgt), self.c_deleted >= since)
            .values({self.c_deleted: None})
        ).rowcount
        self.expire_loaded()
        return affected

    # ==================== identity map 同步 ====================

    def _loaded_instances(self):
        return [obj for obj in list(self.session.identity_map.values()) if isinstance(obj, self.model)]

    def expire_loaded(self) -> None:
        """让已加载实例的结构字段在下次访问时重新读取"""
        names = [self.columns.lft, self.columns.rgt, self.columns.parent_id]
        if self.columns.soft_delete:
            names.append(self.columns.soft_delete)
        for obj in self._loaded_instances():
            self.session.expire(obj, names)

    def forget(self, keys: Iterable[Any]) -> None:
        """把已被物理删除的行对应的实例移出 session"""
        doomed = set(keys)
        for obj in self._loaded_instances():
            if getattr(obj, self.columns.key, None) in doomed:
                self.session.expunge(obj)
