"""嵌套集合字段定义

提供标准的左右值字段 Mixin 与推荐索引，简化模型定义。

使用示例:
    from sqlalchemy import ForeignKey, Integer, String
    from sqlalchemy.orm import DeclarativeBase, mapped_column

    from ynest.orm.nestedset import NestedSetFieldsMixin, NestedSetMixin, nested_set_indexes

    class Category(Base, NestedSetFieldsMixin, NestedSetMixin):
        __tablename__ = "category"
        __table_args__ = nested_set_indexes("category")

        id = mapped_column(Integer, primary_key=True)
        # parent_id 需要自行定义（因为外键目标表名不同）
        parent_id = mapped_column(Integer, ForeignKey("category.id"), nullable=True)
        title = mapped_column(String(100))
"""

from typing import Optional, Tuple

from sqlalchemy import Index, Integer
from sqlalchemy.orm import Mapped, mapped_column


class NestedSetFieldsMixin:
    """左右值字段 Mixin

    提供 lft / rgt 两列。新节点在 insert 之前为 0，表示尚未分配边界。

    注意：
    - parent_id 字段需要用户自行定义，因为外键目标表名因模型而异
    - 列名可以通过 __lft_name__ / __rgt_name__ 改写，此时需要自行声明列
    """

    lft: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
        comment="左值（前序遍历进入序号）"
    )

    rgt: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
        comment="右值（前序遍历离开序号）"
    )


class NestedSetFieldsWithParentMixin(NestedSetFieldsMixin):
    """带 parent_id 的左右值字段 Mixin（不带外键约束）"""

    parent_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
        default=None,
        comment="父节点ID"
    )


def nested_set_indexes(
    table_name: str,
    *scope_columns: str,
    lft: str = "lft",
    rgt: str = "rgt",
    parent_id: str = "parent_id",
) -> Tuple[Index, Index]:
    """推荐的两个索引: (scope..., lft, rgt) 用于区间查询，(parent_id) 用于邻接查询

    Args:
        table_name: 表名，用于生成索引名
        *scope_columns: scope 列名

    使用示例:
        __table_args__ = nested_set_indexes("menu_item", "menu_id")
    """
    return (
        Index(f"ix_{table_name}_nested_bounds", *scope_columns, lft, rgt),
        Index(f"ix_{table_name}_nested_parent", parent_id),
    )


__all__ = [
    "NestedSetFieldsMixin",
    "NestedSetFieldsWithParentMixin",
    "nested_set_indexes",
]
