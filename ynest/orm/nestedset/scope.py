"""Scope 分区

一张表中可以存放多棵相互独立的树，由一个或多个 scope 列区分
（例如菜单项按 menu_id 分组）。所有查询、所有区间更新、
所有自连接的别名都必须带上同一个 scope 过滤条件，
区间数值的比较永远不会跨越 scope 边界。
"""

import hashlib
import json
from typing import Any, Dict, Mapping, Optional, Sequence

from sqlalchemy import and_, true
from sqlalchemy.sql.elements import ColumnElement

from ynest.exceptions import ScopeMismatchError


class ScopePartitioner:
    """Scope 过滤器

    使用示例:
        scope = ScopePartitioner(["menu_id"], {"menu_id": 1})
        stmt = select(t).where(scope.clause(t))
        scope.ensure_same(other_row, key=5)   # 不同 menu_id 时抛出 ScopeMismatchError
    """

    def __init__(self, columns: Sequence[str] = (), values: Optional[Mapping[str, Any]] = None):
        self.columns = tuple(columns)
        values = dict(values or {})

        unknown = set(values) - set(self.columns)
        if unknown:
            raise ScopeMismatchError(
                f"未声明的 scope 列: {', '.join(sorted(unknown))}",
                columns=list(self.columns),
            )
        missing = [name for name in self.columns if name not in values]
        if missing:
            raise ScopeMismatchError(
                f"缺少 scope 取值: {', '.join(missing)}",
                columns=list(self.columns),
            )
        self.values: Dict[str, Any] = {name: values[name] for name in self.columns}

    @classmethod
    def from_node(cls, columns: Sequence[str], node: Any) -> 'ScopePartitioner':
        """从一个已有节点（ORM 实例或行映射）推导 scope"""
        return cls(columns, _extract(node, columns))

    @property
    def is_scoped(self) -> bool:
        return bool(self.columns)

    def clause(self, table) -> ColumnElement:
        """作用于表或别名的过滤条件"""
        if not self.columns:
            return true()
        conditions = []
        for name in self.columns:
            value = self.values[name]
            column = table.c[name]
            conditions.append(column.is_(None) if value is None else column == value)
        return and_(*conditions)

    def values_of(self, row: Any) -> Dict[str, Any]:
        return _extract(row, self.columns)

    def matches(self, row: Any) -> bool:
        return self.values_of(row) == self.values

    def ensure_same(self, row: Any, key: Any = None) -> None:
        """目标节点必须在当前 scope 中

        Raises:
            ScopeMismatchError: scope 不同
        """
        actual = self.values_of(row)
        if actual != self.values:
            raise ScopeMismatchError(
                node_id=key,
                expected=dict(self.values),
                actual=actual,
            )

    def lock_key(self, table_name: str) -> str:
        """进程内锁的键，不同 scope 的键互不相同"""
        payload = json.dumps(
            [[name, self.values[name]] for name in self.columns],
            default=str,
            separators=(",", ":"),
        )
        return f"{table_name}:{payload}"

    def advisory_lock_id(self, table_name: str) -> int:
        """PostgreSQL 咨询锁使用的有符号 64 位整数"""
        digest = hashlib.blake2b(self.lock_key(table_name).encode("utf-8"), digest_size=8).digest()
        return int.from_bytes(digest, "big", signed=True)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ScopePartitioner):
            return NotImplemented
        return self.columns == other.columns and self.values == other.values

    def __hash__(self) -> int:
        return hash((self.columns, json.dumps(self.values, sort_keys=True, default=str)))

    def __repr__(self) -> str:
        return f"ScopePartitioner({self.values!r})"


def _extract(row: Any, columns: Sequence[str]) -> Dict[str, Any]:
    mapping = getattr(row, "_mapping", None)
    if mapping is None and isinstance(row, Mapping):
        mapping = row
    if mapping is not None:
        return {name: mapping[name] for name in columns}
    return {name: getattr(row, name) for name in columns}
