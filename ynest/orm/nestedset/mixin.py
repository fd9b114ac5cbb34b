"""嵌套集合 Mixin

为 SQLAlchemy 模型提供嵌套集合的列名配置与基于左右值的节点判断方法。
变更操作通过 nested_set(session) 得到的 NestedSet 门面执行。

左右值模式说明：
    - 每个节点保存前序遍历的进入序号 lft 和离开序号 rgt
    - 后代的区间严格落在祖先的区间之内
    - 优点：子树、祖先查询都是一次区间查询
    - 缺点：插入、移动需要平移其后的区间（由引擎在一个事务中完成）

使用示例:
    from ynest.orm.nestedset import NestedSetFieldsWithParentMixin, NestedSetMixin, Position

    class MenuItem(Base, NestedSetFieldsWithParentMixin, NestedSetMixin):
        __tablename__ = "menu_item"
        __nested_set_scope__ = ("menu_id",)

        id = mapped_column(Integer, primary_key=True)
        menu_id = mapped_column(Integer, nullable=False)
        title = mapped_column(String(100))

    tree = MenuItem.nested_set(session, menu_id=1)
    tree.create({"title": "首页"})

    item = session.get(MenuItem, 3)
    item.is_descendant_of(session.get(MenuItem, 1))
"""

from typing import Any, Dict, Optional, Tuple

from .bounds import descendant_count, node_height


class NestedSetMixin:
    """嵌套集合 Mixin

    字段要求（使用者需定义，或使用 NestedSetFieldsWithParentMixin）:
        - 主键（单列，或通过 __nested_set_key__ 指定）
        - lft / rgt: 整数左右值
        - parent_id: 父节点主键（与主键类型一致）

    可配置属性（子类可覆盖）:
        - __lft_name__ / __rgt_name__ / __parent_id_name__: 结构列名
        - __nested_set_key__: 主键列名
        - __nested_set_scope__: scope 列名元组
        - __soft_delete_field__: 软删除时间戳列名（如 "deleted_at"）
    """

    # ==================== 可配置属性 ====================

    __lft_name__: str = "lft"
    __rgt_name__: str = "rgt"
    __parent_id_name__: str = "parent_id"
    __nested_set_key__: Optional[str] = None
    __nested_set_scope__: Tuple[str, ...] = ()
    __soft_delete_field__: Optional[str] = None

    # ==================== 门面 ====================

    @classmethod
    def nested_set(cls, session, settings=None, **scope):
        """绑定到指定 scope 的树

        Args:
            session: 数据库会话
            settings: NestedSetSettings
            **scope: scope 取值，如 menu_id=1
        """
        from .service import NestedSet
        return NestedSet(cls, session, scope, settings=settings)

    def tree(self, session, settings=None):
        """绑定到当前节点所在的树"""
        from .service import NestedSet
        return NestedSet.of(session, self, settings=settings)

    # ==================== NestedSetNode 协议 ====================

    def get_key(self) -> Any:
        name = self.__nested_set_key__
        if name is None:
            from .meta import TreeColumns
            name = TreeColumns.from_model(type(self)).key
        return getattr(self, name)

    def get_lft(self) -> int:
        return getattr(self, self.__lft_name__)

    def get_rgt(self) -> int:
        return getattr(self, self.__rgt_name__)

    def get_parent_id(self) -> Any:
        return getattr(self, self.__parent_id_name__)

    def get_bounds(self) -> Tuple[int, int]:
        return self.get_lft(), self.get_rgt()

    def get_height(self) -> int:
        return node_height(*self.get_bounds())

    def get_descendant_count(self) -> int:
        """后代数量，由左右值直接计算，不查询数据库"""
        return descendant_count(*self.get_bounds())

    def scope_values(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in self.__nested_set_scope__}

    # ==================== 节点状态判断 ====================

    def is_root(self) -> bool:
        """判断是否为根节点"""
        return self.get_parent_id() is None

    def is_leaf(self) -> bool:
        """判断是否为叶子节点（rgt = lft + 1）"""
        return self.get_rgt() - self.get_lft() == 1

    def is_deleted(self) -> bool:
        if not self.__soft_delete_field__:
            return False
        return getattr(self, self.__soft_delete_field__) is not None

    def _same_tree(self, node) -> bool:
        return type(node) is type(self) and node.scope_values() == self.scope_values()

    def is_descendant_of(self, node) -> bool:
        """判断当前节点是否为指定节点的子孙

        Args:
            node: 要判断的节点

        Returns:
            是否为子孙（不同 scope 的节点永远返回 False）
        """
        if not self._same_tree(node):
            return False
        return node.get_lft() < self.get_lft() < node.get_rgt()

    def is_ancestor_of(self, node) -> bool:
        """判断当前节点是否为指定节点的祖先"""
        return node.is_descendant_of(self)

    def is_child_of(self, node) -> bool:
        return self._same_tree(node) and self.get_parent_id() == node.get_key()

    def is_sibling_of(self, node) -> bool:
        return (
            self._same_tree(node)
            and node.get_key() != self.get_key()
            and node.get_parent_id() == self.get_parent_id()
        )


__all__ = ["NestedSetMixin"]
