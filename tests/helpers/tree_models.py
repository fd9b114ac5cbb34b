"""嵌套集合测试模型

- Category: 整数主键、无 scope
- MenuItem: 按 menu_id 分为多棵树
- Document: 支持软删除（deleted_at）
- Region: 字符串（UUID）主键、自定义结构列名
"""

import uuid

from sqlalchemy import DateTime, Integer, String
from sqlalchemy.orm import DeclarativeBase, mapped_column

from ynest.orm.nestedset import (
    NestedSetFieldsWithParentMixin,
    NestedSetMixin,
    nested_set_indexes,
)


class Base(DeclarativeBase):
    pass


class Category(Base, NestedSetFieldsWithParentMixin, NestedSetMixin):
    """分类（单棵树）"""
    __tablename__ = "test_ns_category"
    __table_args__ = nested_set_indexes("test_ns_category")

    id = mapped_column(Integer, primary_key=True)
    title = mapped_column(String(100), nullable=True)


class MenuItem(Base, NestedSetFieldsWithParentMixin, NestedSetMixin):
    """菜单项（按菜单分树）"""
    __tablename__ = "test_ns_menu_item"
    __table_args__ = nested_set_indexes("test_ns_menu_item", "menu_id")
    __nested_set_scope__ = ("menu_id",)

    id = mapped_column(Integer, primary_key=True)
    menu_id = mapped_column(Integer, nullable=False)
    title = mapped_column(String(100), nullable=True)


class Document(Base, NestedSetFieldsWithParentMixin, NestedSetMixin):
    """文档目录（软删除）"""
    __tablename__ = "test_ns_document"
    __soft_delete_field__ = "deleted_at"

    id = mapped_column(Integer, primary_key=True)
    title = mapped_column(String(100), nullable=True)
    deleted_at = mapped_column(DateTime, nullable=True)


class Region(Base, NestedSetMixin):
    """行政区域（UUID 主键、自定义列名）"""
    __tablename__ = "test_ns_region"
    __lft_name__ = "left_value"
    __rgt_name__ = "right_value"
    __parent_id_name__ = "parent_code"

    code = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    left_value = mapped_column(Integer, nullable=False, default=0)
    right_value = mapped_column(Integer, nullable=False, default=0)
    parent_code = mapped_column(String(36), nullable=True)
    name = mapped_column(String(100), nullable=True)
