"""节点能力接口与节点句柄

- NestedSetNode: 任何实体只要能提供主键、左右值和父节点主键，就能参与树操作
- NodeRecord: 仓储层读出的只读行快照
- NodeHandle: 调用方持有的可变节点副本，带 dirty 标记
- WorkingSet: 批量变更期间由引擎原地修补的句柄集合
"""

from typing import Any, Dict, Iterable, Iterator, List, NamedTuple, Optional, Protocol, runtime_checkable

from .bounds import descendant_count, node_height


@runtime_checkable
class NestedSetNode(Protocol):
    """嵌套集合节点协议

    引擎只依赖这四个方法，而不是具体的模型类层次。
    NestedSetMixin 为 SQLAlchemy 模型提供默认实现。
    """

    def get_key(self) -> Any: ...

    def get_lft(self) -> int: ...

    def get_rgt(self) -> int: ...

    def get_parent_id(self) -> Any: ...


class NodeRecord(NamedTuple):
    """一行的结构字段快照"""

    key: Any
    lft: int
    rgt: int
    parent_id: Any = None
    deleted_at: Any = None

    @property
    def deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def height(self) -> int:
        return node_height(self.lft, self.rgt)

    def contains(self, other: 'NodeRecord') -> bool:
        """other 是否是本节点的后代"""
        return self.lft < other.lft < self.rgt


class Placement(NamedTuple):
    """insert 的结果: 新节点应写入的边界与父节点"""

    lft: int
    rgt: int
    parent_id: Any = None


class NodeHandle:
    """调用方持有的节点副本

    每次变更后，引擎把同一个补丁应用到工作集中的句柄上（保持新鲜），
    并把它发出的其余句柄标记为 dirty。dirty 的句柄在下一次使用前
    应通过 refresh 重新读取。

    句柄本身也实现了 NestedSetNode，可以直接作为位置目标。
    """

    __slots__ = ("key", "lft", "rgt", "parent_id", "dirty", "scope", "deleted_at", "__weakref__")

    def __init__(
        self,
        key: Any,
        lft: int,
        rgt: int,
        parent_id: Any = None,
        scope: Optional[Dict[str, Any]] = None,
        deleted_at: Any = None,
    ):
        self.key = key
        self.lft = lft
        self.rgt = rgt
        self.parent_id = parent_id
        self.dirty = False
        # 发出句柄的 scope；手工构造的句柄为 None，引擎不会直接信任它的边界
        self.scope = scope
        self.deleted_at = deleted_at

    @classmethod
    def from_record(cls, record: NodeRecord, scope: Optional[Dict[str, Any]] = None) -> 'NodeHandle':
        return cls(
            record.key,
            record.lft,
            record.rgt,
            record.parent_id,
            scope=dict(scope) if scope is not None else None,
            deleted_at=record.deleted_at,
        )

    @property
    def deleted(self) -> bool:
        return self.deleted_at is not None

    def get_key(self) -> Any:
        return self.key

    def get_lft(self) -> int:
        return self.lft

    def get_rgt(self) -> int:
        return self.rgt

    def get_parent_id(self) -> Any:
        return self.parent_id

    @property
    def height(self) -> int:
        return node_height(self.lft, self.rgt)

    @property
    def descendant_count(self) -> int:
        return descendant_count(self.lft, self.rgt)

    def apply_patch(self, patch) -> None:
        self.lft, self.rgt = patch.apply_bounds(self.lft, self.rgt)

    def update_from(self, record: NodeRecord) -> None:
        self.lft = record.lft
        self.rgt = record.rgt
        self.parent_id = record.parent_id
        self.deleted_at = record.deleted_at
        self.dirty = False

    def __repr__(self) -> str:
        flag = " dirty" if self.dirty else ""
        return f"<NodeHandle {self.key!r} [{self.lft}, {self.rgt}] parent={self.parent_id!r}{flag}>"


class WorkingSet:
    """批量变更的工作集

    只有显式登记的句柄会被引擎原地修补；不在工作集中的句柄不受影响
    （但会被标记为 dirty）。

    使用示例:
        parent = tree.handle(1)
        with tree.working_set(parent) as ws:
            tree.insert(Position.append_to(parent))
            tree.insert(Position.append_to(parent))   # 直接使用已修补的 parent.rgt
    """

    def __init__(self, handles: Iterable[NodeHandle] = ()):
        self._handles: List[NodeHandle] = []
        for handle in handles:
            self.add(handle)

    def add(self, handle: NodeHandle) -> NodeHandle:
        if not any(h is handle for h in self._handles):
            self._handles.append(handle)
        return handle

    def discard(self, handle: NodeHandle) -> None:
        self._handles = [h for h in self._handles if h is not handle]

    def find(self, key: Any) -> Optional[NodeHandle]:
        for handle in self._handles:
            if handle.key == key:
                return handle
        return None

    def __contains__(self, handle: object) -> bool:
        return any(h is handle for h in self._handles)

    def __iter__(self) -> Iterator[NodeHandle]:
        return iter(list(self._handles))

    def __len__(self) -> int:
        return len(self._handles)

    def apply(self, patch) -> None:
        for handle in self._handles:
            handle.apply_patch(patch)

    def set_parent(self, key: Any, parent_id: Any) -> None:
        handle = self.find(key)
        if handle is not None:
            handle.parent_id = parent_id

    def set_bounds(self, key: Any, lft: int, rgt: int) -> None:
        handle = self.find(key)
        if handle is not None:
            handle.lft, handle.rgt = lft, rgt

    def mark_deleted(self, lft: int, rgt: int, stamp: Any) -> None:
        """软删除 [lft, rgt] 后同步句柄的删除标记"""
        for handle in self._handles:
            if lft <= handle.lft <= rgt and handle.deleted_at is None:
                handle.deleted_at = stamp

    def mark_restored(self, lft: int, rgt: int, since: Any) -> None:
        for handle in self._handles:
            if lft <= handle.lft <= rgt and handle.deleted_at is not None and handle.deleted_at >= since:
                handle.deleted_at = None

    def drop_range(self, lft: int, rgt: int) -> List[NodeHandle]:
        """物理删除 [lft, rgt] 后移出对应的句柄并标记为 dirty"""
        dropped = [h for h in self._handles if lft <= h.lft <= rgt]
        for handle in dropped:
            handle.dirty = True
        self._handles = [h for h in self._handles if not lft <= h.lft <= rgt]
        return dropped

    def invalidate(self) -> None:
        """事务回滚后，工作集中的数值不再可信"""
        for handle in self._handles:
            handle.dirty = True
