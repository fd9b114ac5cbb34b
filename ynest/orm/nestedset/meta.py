"""模型上的嵌套集合配置

从模型类的类属性中读取列名配置：

    __lft_name__          左值列名，默认 "lft"
    __rgt_name__          右值列名，默认 "rgt"
    __parent_id_name__    父节点列名，默认 "parent_id"
    __nested_set_key__    主键列名，默认取表的单列主键
    __nested_set_scope__  scope 列名元组，默认 ()
    __soft_delete_field__ 软删除列名，默认 None（不支持软删除）
"""

from dataclasses import dataclass
from typing import Optional, Tuple

from sqlalchemy import Table


@dataclass(frozen=True)
class TreeColumns:
    """一个模型的嵌套集合列配置"""

    table: Table
    key: str
    lft: str
    rgt: str
    parent_id: str
    scope: Tuple[str, ...]
    soft_delete: Optional[str]

    @classmethod
    def from_model(cls, model) -> 'TreeColumns':
        table = getattr(model, "__table__", None)
        if table is None:
            raise TypeError(f"{model!r} 不是一个已映射的 SQLAlchemy 模型")

        key = getattr(model, "__nested_set_key__", None)
        if key is None:
            primary = list(table.primary_key.columns)
            if len(primary) != 1:
                raise TypeError(f"{table.name} 需要单列主键，或通过 __nested_set_key__ 指定")
            key = primary[0].name

        columns = cls(
            table=table,
            key=key,
            lft=getattr(model, "__lft_name__", "lft"),
            rgt=getattr(model, "__rgt_name__", "rgt"),
            parent_id=getattr(model, "__parent_id_name__", "parent_id"),
            scope=tuple(getattr(model, "__nested_set_scope__", ()) or ()),
            soft_delete=getattr(model, "__soft_delete_field__", None),
        )
        for name in columns.structural():
            if name not in table.c:
                raise TypeError(f"{table.name} 缺少列 {name!r}")
        return columns

    @property
    def supports_soft_delete(self) -> bool:
        return self.soft_delete is not None

    def structural(self) -> Tuple[str, ...]:
        """由引擎维护、不允许通过重建数据直接写入的列"""
        names = (self.key, self.lft, self.rgt, self.parent_id) + self.scope
        if self.soft_delete:
            names += (self.soft_delete,)
        return names
