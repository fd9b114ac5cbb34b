"""树重建

根据 parent_id 邻接关系（或外部提供的层级数据）重新计算前序遍历的左右值，
只回写真正发生变化的行。

- fix_tree: 用现有的 parent_id 修复整棵树或某个子树的左右值
- rebuild_tree: 用外部层级数据（可带主键）创建 / 更新 / 删除节点后重算左右值
- dump_hierarchy: 把当前树导出为可以再交给 rebuild_tree 的嵌套结构
"""

from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select

from ynest.exceptions import NodeNotFoundError
from ynest.log import get_logger

from .bounds import make_gap
from .node import NodeRecord
from .repository import NodeRepository

logger = get_logger()


class TreeNodeInput(BaseModel):
    """rebuild_tree 的输入节点

    key 为空表示新建节点；其它字段（除结构字段外）直接写入模型属性。
    也可以使用模型主键的字段名（如 "id"）代替 key。

    使用示例:
        data = [
            {"title": "家电", "children": [
                {"id": 7, "title": "电视"},
                {"title": "冰箱"},
            ]},
        ]
    """

    model_config = ConfigDict(extra="allow")

    key: Optional[Any] = None
    children: List["TreeNodeInput"] = Field(default_factory=list)

    def resolve_key(self, key_name: str) -> Any:
        if self.key is not None:
            return self.key
        return (self.model_extra or {}).get(key_name)

    def attributes(self, excluded: Iterable[str]) -> Dict[str, Any]:
        excluded = set(excluded)
        return {name: value for name, value in (self.model_extra or {}).items() if name not in excluded}


TreeNodeInput.model_rebuild()

# (record, lft, rgt, parent_id)
Assignment = Tuple[NodeRecord, int, int, Any]


class TreeRebuilder:
    """树重建器

    使用示例:
        rebuilder = TreeRebuilder(repository)
        changed = rebuilder.fix_tree()
    """

    def __init__(self, repository: NodeRepository, clock: Callable[[], Any] = datetime.now):
        self.repository = repository
        self.clock = clock

    # ==================== 前序编号 ====================

    @staticmethod
    def _reorder(
        adjacency: Dict[Any, List[NodeRecord]],
        parent_key: Any,
        cut: int,
        assigned: List[Assignment],
    ) -> int:
        """从 parent_key 的子节点开始做前序编号，返回下一个可用的切入点

        处理过的分组会从 adjacency 中移除，每个节点只会被访问一次。
        """
        stack = [(iter(adjacency.pop(parent_key, ())), parent_key, None)]
        while stack:
            children, group_key, owner = stack[-1]
            child = next(children, None)
            if child is None:
                stack.pop()
                if owner is not None:
                    record, lft, owner_parent = owner
                    assigned.append((record, lft, cut, owner_parent))
                    cut += 1
                continue
            stack.append((iter(adjacency.pop(child.key, ())), child.key, (child, cut, group_key)))
            cut += 1
        return cut

    def fix_nodes(
        self,
        adjacency: Dict[Any, List[NodeRecord]],
        parent: Optional[NodeRecord] = None,
    ) -> int:
        """按邻接关系重新编号并回写

        Args:
            adjacency: parent_id -> 有序子节点列表（会被消耗）
            parent: 修复子树时的子树根；为空表示整个 scope

        Returns:
            回写的行数，加上子树容量变化时外部区间平移的行数
        """
        parent_key = parent.key if parent is not None else None
        cut = parent.lft + 1 if parent is not None else 1
        assigned: List[Assignment] = []

        cut = self._reorder(adjacency, parent_key, cut, assigned)

        # 父节点不在本次处理范围内（悬空或成环）的分组，挂到顶层继续编号
        while adjacency:
            orphan_parent = next(iter(adjacency))
            group = adjacency.pop(orphan_parent)
            logger.info(
                f"{self.repository.table.name}: {len(group)} 个节点的父节点 {orphan_parent!r} 无效，"
                f"重新挂到 {parent_key!r} 下"
            )
            adjacency[parent_key] = group
            cut = self._reorder(adjacency, parent_key, cut, assigned)

        changed = [
            (record.key, lft, rgt, parent_id)
            for record, lft, rgt, parent_id in assigned
            if (record.lft, record.rgt, record.parent_id) != (lft, rgt, parent_id)
        ]

        moved = 0
        if parent is not None:
            grown = cut - parent.rgt
            if grown != 0:
                # 只平移子树外的行；子树内未变化的行不会被回写，不能跟着平移
                moved = self.repository.apply_patch(
                    make_gap(parent.rgt + 1, grown),
                    exclude=[record.key for record, _, _, _ in assigned],
                )
                changed.append((parent.key, parent.lft, cut, parent.parent_id))

        self.repository.write_bounds(changed)
        return len(changed) + moved

    def fix_tree(self, root: Any = None) -> int:
        """用现有的 parent_id 修复整个 scope（或 root 的子树）的左右值"""
        repo = self.repository
        if root is None:
            parent = None
            records = repo.fetch_records(include_deleted=True)
        else:
            parent = repo.get_record(root)
            records = repo.fetch_records(lft_between=(parent.lft + 1, parent.rgt), include_deleted=True)
            records = [r for r in records if r.key != parent.key]

        changed = self.fix_nodes(repo.children_adjacency(records), parent)
        logger.info(f"{repo.table.name} {repo.scope!r} 修复完成，变更 {changed} 行")
        return changed

    # ==================== 外部数据重建 ====================

    def rebuild_tree(
        self,
        data: Sequence[Union[TreeNodeInput, Dict[str, Any]]],
        delete_missing: bool = False,
        root: Any = None,
    ) -> int:
        """用外部层级数据重建树

        - 不带主键的条目创建为新节点
        - 带主键的条目必须已存在于当前 scope（否则 NodeNotFoundError），更新其非结构字段
        - 输入中没有出现的现有节点: delete_missing 时删除（支持软删除的模型做软删除，
          仍保留在结构中），否则保留在原父节点下
        - 最后对所有节点重新编号

        Args:
            data: 节点列表（dict 或 TreeNodeInput），可嵌套 children
            delete_missing: 是否删除输入中没有出现的现有节点
            root: 只重建该节点的子树

        Returns:
            变更的行数（包括新建、删除和重新编号的行）
        """
        repo = self.repository
        columns = repo.columns
        session = repo.session
        model = repo.model

        items = [TreeNodeInput.model_validate(item) for item in data]

        parent = repo.get_record(root) if root is not None else None
        stmt = select(model).where(repo.scoped())
        if parent is not None:
            stmt = stmt.where(repo.c_lft > parent.lft, repo.c_lft <= parent.rgt)
        stmt = stmt.order_by(repo.c_lft)
        session.flush()
        existing = {getattr(obj, columns.key): obj for obj in session.scalars(stmt)}
        self._validate_keys(items, existing)

        adjacency: Dict[Any, List[NodeRecord]] = {}
        created = self._collect(items, parent.key if parent else None, existing, adjacency)

        removed = 0
        if existing:
            keys = list(existing)
            if delete_missing and not columns.supports_soft_delete:
                removed = repo.delete_keys(keys)
            else:
                for key, obj in existing.items():
                    adjacency.setdefault(getattr(obj, columns.parent_id), []).append(self._record_of(obj))
                if delete_missing:
                    removed = repo.soft_delete_keys(keys, self.clock())

        changed = self.fix_nodes(adjacency, parent)
        logger.info(
            f"{repo.table.name} {repo.scope!r} 重建完成: 新建 {created}，删除 {removed}，重新编号 {changed}"
        )
        return changed + removed

    def _validate_keys(self, items: List[TreeNodeInput], existing: Dict[Any, Any]) -> None:
        """写入之前检查所有带主键的条目都存在且只出现一次"""
        key_name = self.repository.columns.key
        seen = set()
        pending = list(items)
        while pending:
            item = pending.pop()
            key = item.resolve_key(key_name)
            if key is not None:
                if key not in existing or key in seen:
                    raise NodeNotFoundError(
                        "重建数据引用了不存在（或重复）的节点",
                        node_id=key,
                    )
                seen.add(key)
            pending.extend(item.children)

    def _record_of(self, obj, parent_id: Any = ...) -> NodeRecord:
        columns = self.repository.columns
        deleted_at = getattr(obj, columns.soft_delete) if columns.soft_delete else None
        return NodeRecord(
            getattr(obj, columns.key),
            getattr(obj, columns.lft) or 0,
            getattr(obj, columns.rgt) or 0,
            getattr(obj, columns.parent_id) if parent_id is ... else parent_id,
            deleted_at,
        )

    def _collect(
        self,
        items: List[TreeNodeInput],
        parent_key: Any,
        existing: Dict[Any, Any],
        adjacency: Dict[Any, List[NodeRecord]],
    ) -> int:
        """把输入写入模型实例并登记到邻接表，返回新建的节点数"""
        repo = self.repository
        columns = repo.columns
        session = repo.session
        structural = columns.structural()
        created = 0

        for item in items:
            key = item.resolve_key(columns.key)
            attributes = item.attributes(structural)

            if key is None:
                obj = repo.model(**attributes)
                for name, value in repo.scope.values.items():
                    setattr(obj, name, value)
                setattr(obj, columns.lft, 0)
                setattr(obj, columns.rgt, 0)
                setattr(obj, columns.parent_id, parent_key)
                session.add(obj)
                session.flush()
                created += 1
            else:
                obj = existing.pop(key, None)
                if obj is None:
                    raise NodeNotFoundError(
                        "重建数据引用了不存在（或重复）的节点",
                        node_id=key,
                    )
                for name, value in attributes.items():
                    setattr(obj, name, value)

            adjacency.setdefault(parent_key, []).append(self._record_of(obj, getattr(obj, columns.parent_id)))
            if item.children:
                created += self._collect(item.children, getattr(obj, columns.key), existing, adjacency)

        return created

    # ==================== 导出 ====================

    def dump_hierarchy(self, root: Any = None, fields: Sequence[str] = ()) -> List[Dict[str, Any]]:
        """导出在线节点的嵌套结构

        Args:
            root: 只导出该节点的子树（不含自身）
            fields: 额外导出的列

        Returns:
            [{"key": ..., <fields>..., "children": [...]}, ...]，可直接交给 rebuild_tree
        """
        repo = self.repository
        table = repo.table
        stmt = select(repo.c_key, repo.c_parent, *[table.c[name] for name in fields]).where(
            repo.scoped(), repo.live_clause()
        )
        top_parent = None
        if root is not None:
            parent = repo.get_record(root)
            top_parent = parent.key
            stmt = stmt.where(repo.c_lft > parent.lft, repo.c_lft < parent.rgt)
        stmt = stmt.order_by(repo.c_lft)

        repo.session.flush()
        node_map: Dict[Any, Dict[str, Any]] = {}
        parents: Dict[Any, Any] = {}
        for row in repo.session.execute(stmt):
            node = {"key": row[0]}
            for index, name in enumerate(fields):
                node[name] = row[2 + index]
            node["children"] = []
            node_map[row[0]] = node
            parents[row[0]] = row[1]

        roots: List[Dict[str, Any]] = []
        for key, node in node_map.items():
            parent_id = parents[key]
            if parent_id == top_parent or parent_id not in node_map:
                roots.append(node)
            else:
                node_map[parent_id]["children"].append(node)
        return roots
