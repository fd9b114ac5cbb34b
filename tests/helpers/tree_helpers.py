"""嵌套集合测试辅助工具

直接通过 Core 语句读写结构列，绕过 ORM identity map，
用于准备数据、制造损坏以及断言数据库中的真实取值。
"""

from typing import Any, Dict, Iterable, Tuple

from sqlalchemy import insert, select, update

from ynest.orm.nestedset import TreeColumns


def seed_rows(session, model, rows: Iterable[Tuple], **extra) -> None:
    """按 (key, lft, rgt, parent_id[, title]) 写入行

    Args:
        extra: 每一行都带上的额外列（如 menu_id=1）
    """
    columns = TreeColumns.from_model(model)
    label = "name" if "name" in columns.table.c else "title"
    values = []
    for row in rows:
        item = {
            columns.key: row[0],
            columns.lft: row[1],
            columns.rgt: row[2],
            columns.parent_id: row[3],
        }
        if len(row) > 4:
            item[label] = row[4]
        item.update(extra)
        values.append(item)
    session.execute(insert(columns.table), values)
    session.commit()


def seed_sample_tree(session, model, **extra) -> None:
    """准备标准示例树

        1 root [1, 10]
        ├── 2 A [2, 5]
        │   └── 3 A1 [3, 4]
        └── 4 B [6, 9]
            └── 5 B1 [7, 8]
    """
    seed_rows(session, model, [
        (1, 1, 10, None, "root"),
        (2, 2, 5, 1, "A"),
        (3, 3, 4, 2, "A1"),
        (4, 6, 9, 1, "B"),
        (5, 7, 8, 4, "B1"),
    ], **extra)


def read_bounds(session, model, **where) -> Dict[Any, Tuple[int, int, Any]]:
    """读取数据库中的 {key: (lft, rgt, parent_id)}"""
    columns = TreeColumns.from_model(model)
    t = columns.table
    stmt = select(t.c[columns.key], t.c[columns.lft], t.c[columns.rgt], t.c[columns.parent_id])
    for name, value in where.items():
        stmt = stmt.where(t.c[name] == value)
    return {row[0]: (row[1], row[2], row[3]) for row in session.execute(stmt)}


def set_columns(session, model, key: Any, **values) -> None:
    """直接修改某一行（用于制造损坏）"""
    columns = TreeColumns.from_model(model)
    t = columns.table
    session.execute(update(t).where(t.c[columns.key] == key).values(**values))
    session.commit()


def total_span(session, model, **where) -> int:
    """scope 内最大 rgt"""
    bounds = read_bounds(session, model, **where)
    return max((rgt for _, rgt, _ in bounds.values()), default=0)


def is_preorder(bounds: Dict[Any, Tuple[int, int, Any]]) -> bool:
    """按 lft 排序后，每个节点都落在声明的父节点区间内"""
    for key, (lft, rgt, parent_id) in bounds.items():
        if parent_id is None:
            continue
        plft, prgt, _ = bounds[parent_id]
        if not plft < lft < rgt < prgt:
            return False
    return True
