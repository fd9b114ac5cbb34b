"""嵌套集合（Nested Set）模块

用左右值（lft / rgt）加 parent_id 保存层级数据，提供事务化的插入、移动、
删除、恢复，以及一致性检查和树重建。

主要组件:
- NestedSet: 门面，绑定 (模型, session, scope)
- NestedSetMixin / NestedSetFieldsMixin: 模型 Mixin 与标准字段
- Position: 位置描述（append_to / prepend_to / before / after / root）
- MutationEngine / ConsistencyChecker / TreeRebuilder / TreeQuery: 底层组件
- bounds: 区间编解码（make_gap / compute_move）

使用示例:
    from ynest.orm.nestedset import NestedSetFieldsWithParentMixin, NestedSetMixin, Position

    class Category(Base, NestedSetFieldsWithParentMixin, NestedSetMixin):
        __tablename__ = "category"

        id = mapped_column(Integer, primary_key=True)
        title = mapped_column(String(100))

    tree = Category.nested_set(session)
    root = tree.create({"title": "全部"})
    phone = tree.create({"title": "手机"}, Position.append_to(root.id))

    tree.move(phone.id, Position.root())
    assert not tree.is_broken()
"""

from .bounds import (
    GapPatch,
    MovePatch,
    compute_move,
    descendant_count,
    make_gap,
    node_height,
)
from .position import Position, PositionKind
from .node import NestedSetNode, NodeHandle, NodeRecord, Placement, WorkingSet
from .fields import NestedSetFieldsMixin, NestedSetFieldsWithParentMixin, nested_set_indexes
from .meta import TreeColumns
from .scope import ScopePartitioner
from .repository import NodeRepository
from .locks import ScopeLockRegistry, hold_scope_lock, scope_lock_registry, scope_lock_statement
from .engine import MutationEngine
from .checker import ConsistencyChecker, TreeErrorReport
from .rebuilder import TreeNodeInput, TreeRebuilder
from .query import TreeQuery
from .service import NestedSet
from .mixin import NestedSetMixin

__all__ = [
    # 区间编解码
    "GapPatch",
    "MovePatch",
    "compute_move",
    "descendant_count",
    "make_gap",
    "node_height",

    # 位置与节点
    "Position",
    "PositionKind",
    "NestedSetNode",
    "NodeHandle",
    "NodeRecord",
    "Placement",
    "WorkingSet",

    # 模型
    "NestedSetMixin",
    "NestedSetFieldsMixin",
    "NestedSetFieldsWithParentMixin",
    "nested_set_indexes",
    "TreeColumns",

    # 组件
    "ScopePartitioner",
    "NodeRepository",
    "ScopeLockRegistry",
    "scope_lock_registry",
    "hold_scope_lock",
    "scope_lock_statement",
    "MutationEngine",
    "ConsistencyChecker",
    "TreeErrorReport",
    "TreeRebuilder",
    "TreeNodeInput",
    "TreeQuery",

    # 门面
    "NestedSet",
]
