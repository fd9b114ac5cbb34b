"""区间编解码

把一次结构变更描述为一个纯函数式的"补丁"，同一个补丁既可以
渲染为一条集合式 ``UPDATE ... SET lft = CASE ...`` 语句，也可以在内存中
逐个整数地应用到调用方持有的节点副本上。两种用法得到的结果完全一致。

两种补丁:

- GapPatch（开 / 关缝隙）: ``lft >= cut`` 的行 lft 加 height，
  ``rgt >= cut`` 的行 rgt 加 height。height 为负时用于删除后合拢缝隙。

- MovePatch（区间搬移）: 节点原区间 [lft, rgt] 内的值整体平移 distance，
  受影响窗口 [from, to] 中其余的值平移 height（方向相反），窗口外不变。

使用示例:
    patch = make_gap(cut=4, height=2)
    patch.apply(5)                  # -> 7
    patch.column_expression(t.c.lft)  # CASE WHEN lft >= 4 THEN lft + 2 ELSE lft END

    move = compute_move(lft=2, rgt=3, position=6)
    move.apply(2)                   # -> 4
"""

from dataclasses import dataclass
from typing import Optional, Tuple

from sqlalchemy import case, or_
from sqlalchemy.sql.elements import ColumnElement

from ynest.exceptions import CyclicMoveError, InvalidNodeError


def node_height(lft: int, rgt: int) -> int:
    """节点高度（rgt - lft + 1），合法节点恒为正偶数"""
    return rgt - lft + 1


def descendant_count(lft: int, rgt: int) -> int:
    """后代数量

    只对合法（高度为正偶数）的节点有定义；高度为奇数说明树已损坏，
    此时抛出 InvalidNodeError，而不是四舍五入出一个看似合理的数字。

    Raises:
        InvalidNodeError: 高度为奇数或非正数
    """
    height = node_height(lft, rgt)
    if height <= 0 or height % 2:
        raise InvalidNodeError(
            f"节点边界 [{lft}, {rgt}] 不合法，无法计算后代数量",
            lft=lft,
            rgt=rgt,
        )
    return height // 2 - 1


@dataclass(frozen=True)
class GapPatch:
    """缝隙补丁"""

    cut: int
    height: int

    @property
    def is_noop(self) -> bool:
        return self.height == 0

    def apply(self, value: int) -> int:
        if value >= self.cut:
            return value + self.height
        return value

    def apply_bounds(self, lft: int, rgt: int) -> Tuple[int, int]:
        return self.apply(lft), self.apply(rgt)

    def column_expression(self, column) -> ColumnElement:
        return case((column >= self.cut, column + self.height), else_=column)

    def predicate(self, lft_column, rgt_column) -> ColumnElement:
        return or_(lft_column >= self.cut, rgt_column >= self.cut)


@dataclass(frozen=True)
class MovePatch:
    """区间搬移补丁

    属性:
        lft, rgt: 被移动节点的原始边界
        from_, to: 受影响窗口
        height: 窗口内其它值的平移量（向后移动时为负）
        distance: 节点自身区间的平移量（向前移动时为负）
    """

    lft: int
    rgt: int
    from_: int
    to: int
    height: int
    distance: int

    @property
    def is_noop(self) -> bool:
        return self.distance == 0

    def apply(self, value: int) -> int:
        if self.lft <= value <= self.rgt:
            return value + self.distance
        if self.from_ <= value <= self.to:
            return value + self.height
        return value

    def apply_bounds(self, lft: int, rgt: int) -> Tuple[int, int]:
        return self.apply(lft), self.apply(rgt)

    def column_expression(self, column) -> ColumnElement:
        return case(
            (column.between(self.lft, self.rgt), column + self.distance),
            (column.between(self.from_, self.to), column + self.height),
            else_=column,
        )

    def predicate(self, lft_column, rgt_column) -> ColumnElement:
        return or_(
            lft_column.between(self.from_, self.to),
            rgt_column.between(self.from_, self.to),
        )


def make_gap(cut: int, height: int) -> GapPatch:
    """在 cut 处开出（height > 0）或合拢（height < 0）一段缝隙"""
    return GapPatch(cut=cut, height=height)


def compute_move(lft: int, rgt: int, position: int) -> Optional[MovePatch]:
    """计算把 [lft, rgt] 搬到以 position 为新起点（搬移前坐标）的补丁

    Args:
        lft: 节点当前左值
        rgt: 节点当前右值
        position: 目标切入点（append 时为父节点 rgt，prepend 为父 lft + 1，
                  before 为兄弟 lft，after 为兄弟 rgt + 1）

    Returns:
        MovePatch；节点已在目标位置时返回 None

    Raises:
        CyclicMoveError: position 落在节点自身区间内（移动到自身或后代之下）
        InvalidNodeError: 节点边界不合法
    """
    if lft >= rgt:
        raise InvalidNodeError(f"节点边界 [{lft}, {rgt}] 不合法", lft=lft, rgt=rgt)

    # position == rgt 相当于 append 到节点自身
    if lft < position <= rgt:
        raise CyclicMoveError(lft=lft, rgt=rgt, position=position)

    from_ = min(lft, position)
    to = max(rgt, position - 1)
    height = node_height(lft, rgt)
    distance = to - from_ + 1 - height

    if distance == 0:
        return None

    if position > lft:
        height = -height
    else:
        distance = -distance

    return MovePatch(lft=lft, rgt=rgt, from_=from_, to=to, height=height, distance=distance)
