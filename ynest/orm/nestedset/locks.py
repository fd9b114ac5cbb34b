"""Scope 写锁

同一个 scope 上的两次变更不能交错执行各自的"读边界 - 写边界"，
不同 scope 之间互不阻塞。

- 进程内: 每个 (表, scope 取值) 一把可重入锁，等待超过 lock_timeout 抛出 ContentionError；
  没有事务持有时锁对象随之回收，注册表不会无限增长
- 跨进程（在进程内锁之后，事务第一次读边界之前获取，事务结束时由数据库释放）:
    - PostgreSQL: pg_advisory_xact_lock，同时把 lock_timeout 设为本事务的等待上限
    - SQLite: 一条不匹配任何行的 UPDATE，提前取得数据库写锁
    - 其它后端（MySQL / MariaDB 等）: SELECT ... FOR UPDATE 锁住 scope 内的全部行，
      仓储随后的读取也使用锁定读，不会读到可重复读快照里的旧边界

锁在事务内第一次写操作前获取，在事务提交或回滚后释放。
"""

import threading
import weakref

from sqlalchemy import false, select, text, update

from ynest.exceptions import ContentionError, ErrorCode
from ynest.log import get_logger

logger = get_logger()

HELD_LOCKS_KEY = "ynest.scope_locks"

# 可重复读快照可能落后于已提交数据、需要锁定读的后端
LOCKING_READ_DIALECTS = ("mysql", "mariadb")


class ScopeLockRegistry:
    """进程内 scope 锁注册表

    只保存弱引用：持有锁的事务通过释放回调引用着锁对象，
    所有事务结束后条目自动消失。
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks = weakref.WeakValueDictionary()

    def __len__(self) -> int:
        return len(self._locks)

    def get(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    def acquire(self, key: str, timeout: float) -> threading.RLock:
        """获取锁

        Raises:
            ContentionError: 等待超时
        """
        lock = self.get(key)
        if not lock.acquire(timeout=timeout):
            raise ContentionError(
                f"等待树写锁超时（{timeout}s）",
                code=ErrorCode.LOCK_TIMEOUT,
                lock_key=key,
            )
        return lock


# 全局单例
scope_lock_registry = ScopeLockRegistry()


def scope_lock_statement(repository, dialect_name: str):
    """没有咨询锁可用时，在事务内锁住整个 scope 的语句"""
    if dialect_name == "sqlite":
        return (
            update(repository.table)
            .where(repository.scoped(), false())
            .values({repository.c_lft: repository.c_lft})
        )
    return select(repository.c_key).where(repository.scoped()).with_for_update()


def _lock_in_database(session, repository, settings) -> None:
    dialect_name = repository.dialect_name
    if dialect_name == "postgresql" and settings.use_advisory_lock:
        session.execute(
            text("SELECT set_config('lock_timeout', :timeout, true)"),
            {"timeout": f"{int(settings.lock_timeout * 1000)}ms"},
        )
        session.execute(
            text("SELECT pg_advisory_xact_lock(:lock_id)"),
            {"lock_id": repository.scope.advisory_lock_id(repository.table.name)},
        )
        return
    session.execute(scope_lock_statement(repository, dialect_name)).close()


def hold_scope_lock(tx, repository, settings, registry: ScopeLockRegistry = None) -> None:
    """在当前事务中持有 repository 所在 scope 的写锁，直到事务结束

    同一事务内重复调用只加锁一次。
    """
    registry = registry or scope_lock_registry
    key = repository.scope.lock_key(repository.table.name)
    held = tx.data.setdefault(HELD_LOCKS_KEY, set())
    if key in held:
        return

    lock = registry.acquire(key, settings.lock_timeout)
    held.add(key)

    @tx.on_close
    def _release(ctx):
        held.discard(key)
        lock.release()

    _lock_in_database(tx.session, repository, settings)
    logger.debug(f"获取树写锁 {key}")


def holds_scope_lock(tx, repository) -> bool:
    """tx 是否已持有 repository 所在 scope 的写锁"""
    if tx is None:
        return False
    return repository.scope.lock_key(repository.table.name) in tx.data.get(HELD_LOCKS_KEY, ())
