"""树查询

基于左右值的区间查询，返回模型实例，默认只包含当前 scope 的在线节点（排除软删除）。

    descendants: lft ∈ (node.lft, node.rgt)
    ancestors:   lft < node.lft 且 rgt > node.rgt
    depth:       祖先的个数
"""

from typing import Any, Dict, List, Optional

from sqlalchemy import func, select

from ynest.exceptions import ErrorCode, InvalidNodeError

from .node import NodeRecord
from .repository import NodeRepository

SIBLING_DIRECTIONS = ("all", "next", "prev")


class TreeQuery:
    """树查询

    使用示例:
        query = TreeQuery(repository)
        for category in query.descendants_of(1):
            print(category.title)
        depth = query.depth_of(5)
    """

    def __init__(self, repository: NodeRepository, include_deleted: bool = False):
        self.repository = repository
        self.include_deleted = include_deleted

    def _select(self):
        repo = self.repository
        stmt = select(repo.model).where(repo.scoped())
        if not self.include_deleted:
            stmt = stmt.where(repo.live_clause())
        return stmt

    def _all(self, stmt) -> List[Any]:
        self.repository.session.flush()
        return list(self.repository.session.scalars(stmt.order_by(self.repository.c_lft)))

    def _first(self, stmt) -> Optional[Any]:
        self.repository.session.flush()
        return self.repository.session.scalars(stmt.limit(1)).first()

    def _node(self, key: Any) -> NodeRecord:
        return self.repository.get_record(key)

    # ==================== 区间查询 ====================

    def roots(self) -> List[Any]:
        """所有根节点"""
        return self._all(self._select().where(self.repository.c_parent.is_(None)))

    def descendants_of(self, key: Any, and_self: bool = False) -> List[Any]:
        """所有后代（按前序）"""
        node = self._node(key)
        c_lft = self.repository.c_lft
        if and_self:
            cond = c_lft.between(node.lft, node.rgt)
        else:
            cond = (c_lft > node.lft) & (c_lft < node.rgt)
        return self._all(self._select().where(cond))

    def ancestors_of(self, key: Any, and_self: bool = False) -> List[Any]:
        """所有祖先（从根到父节点）"""
        node = self._node(key)
        repo = self.repository
        if and_self:
            cond = (repo.c_lft <= node.lft) & (repo.c_rgt >= node.rgt)
        else:
            cond = (repo.c_lft < node.lft) & (repo.c_rgt > node.rgt)
        return self._all(self._select().where(cond))

    def children_of(self, key: Any) -> List[Any]:
        """直接子节点"""
        node = self._node(key)
        return self._all(self._select().where(self.repository.c_parent == node.key))

    def siblings_of(self, key: Any, direction: str = "all") -> List[Any]:
        """兄弟节点（不含自身）

        Args:
            direction: "all" 全部；"next" 之后的；"prev" 之前的
        """
        if direction not in SIBLING_DIRECTIONS:
            raise InvalidNodeError(
                f"未知的兄弟方向: {direction}",
                code=ErrorCode.INVALID_POSITION,
                direction=direction,
            )
        node = self._node(key)
        repo = self.repository
        parent_cond = repo.c_parent.is_(None) if node.parent_id is None else repo.c_parent == node.parent_id
        stmt = self._select().where(parent_cond, repo.c_key != node.key)
        if direction == "next":
            stmt = stmt.where(repo.c_lft > node.rgt)
        elif direction == "prev":
            stmt = stmt.where(repo.c_rgt < node.lft)
        return self._all(stmt)

    def next_node(self, key: Any) -> Optional[Any]:
        """前序遍历中的下一个节点"""
        node = self._node(key)
        c_lft = self.repository.c_lft
        return self._first(self._select().where(c_lft > node.lft).order_by(c_lft))

    def prev_node(self, key: Any) -> Optional[Any]:
        """前序遍历中的上一个节点"""
        node = self._node(key)
        c_lft = self.repository.c_lft
        return self._first(self._select().where(c_lft < node.lft).order_by(c_lft.desc()))

    def leaves(self) -> List[Any]:
        """所有叶子节点（rgt = lft + 1）"""
        repo = self.repository
        return self._all(self._select().where(repo.c_rgt == repo.c_lft + 1))

    # ==================== 深度 ====================

    def depth_of(self, key: Any) -> int:
        """节点深度，根节点为 0"""
        node = self._node(key)
        repo = self.repository
        stmt = select(func.count()).select_from(repo.table).where(
            repo.scoped(),
            repo.c_lft < node.lft,
            repo.c_rgt > node.rgt,
        )
        if not self.include_deleted:
            stmt = stmt.where(repo.live_clause())
        return self.repository.session.execute(stmt).scalar() or 0

    def with_depth(self) -> Dict[Any, int]:
        """主键 -> 深度（一次读取，按前序用栈计算）"""
        records = self.repository.fetch_records(include_deleted=self.include_deleted)
        depths: Dict[Any, int] = {}
        stack: List[NodeRecord] = []
        for record in records:
            while stack and stack[-1].rgt < record.lft:
                stack.pop()
            depths[record.key] = len(stack)
            stack.append(record)
        return depths
