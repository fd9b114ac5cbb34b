"""位置描述

描述"把节点放到哪里"，与具体的区间数值无关；
由变更引擎在读取目标的最新边界后换算成切入点。
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class PositionKind(str, Enum):
    """位置类型"""

    APPEND = "append"      # 作为目标的最后一个子节点
    PREPEND = "prepend"    # 作为目标的第一个子节点
    BEFORE = "before"      # 作为目标的前一个兄弟
    AFTER = "after"        # 作为目标的后一个兄弟
    ROOT = "root"          # 作为新的根节点，排在所有根之后


@dataclass(frozen=True)
class Position:
    """位置描述符

    target 可以是节点主键，也可以是实现了 NestedSetNode 的对象。

    使用示例:
        Position.append_to(parent_id)
        Position.prepend_to(parent)
        Position.before(sibling_id)
        Position.after(sibling)
        Position.root()
    """

    kind: PositionKind
    target: Any = None

    def __post_init__(self):
        if self.kind != PositionKind.ROOT and self.target is None:
            raise ValueError(f"{self.kind.value} 位置需要指定目标节点")

    @classmethod
    def append_to(cls, parent: Any) -> 'Position':
        return cls(PositionKind.APPEND, parent)

    @classmethod
    def prepend_to(cls, parent: Any) -> 'Position':
        return cls(PositionKind.PREPEND, parent)

    @classmethod
    def before(cls, sibling: Any) -> 'Position':
        return cls(PositionKind.BEFORE, sibling)

    @classmethod
    def after(cls, sibling: Any) -> 'Position':
        return cls(PositionKind.AFTER, sibling)

    @classmethod
    def root(cls) -> 'Position':
        return cls(PositionKind.ROOT)

    @property
    def is_child_position(self) -> bool:
        """目标是否作为父节点（append / prepend）"""
        return self.kind in (PositionKind.APPEND, PositionKind.PREPEND)

    @property
    def target_key(self) -> Optional[Any]:
        """目标主键"""
        target = self.target
        if target is None:
            return None
        get_key = getattr(target, "get_key", None)
        return get_key() if callable(get_key) else target

    def __repr__(self) -> str:
        if self.kind == PositionKind.ROOT:
            return "Position.root()"
        return f"Position.{self.kind.value}({self.target_key!r})"
