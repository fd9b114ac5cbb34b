"""树事务与并发控制测试

1. 整体提交 / 整体回滚、加入外层事务
2. 前置条件异常不回滚外层事务
3. 存储层锁冲突转换为 ContentionError 并可重试
4. scope 写锁：超时、不同 scope 互不阻塞、事务结束后释放、空闲后回收
5. 数据库锁：各后端的加锁语句与锁定读
"""

import gc
import threading

import pytest
from sqlalchemy import event, select
from sqlalchemy.dialects import mysql
from sqlalchemy.exc import IntegrityError, OperationalError

from ynest.config import NestedSetSettings
from ynest.exceptions import ContentionError, CyclicMoveError, ErrorCode, NodeNotFoundError, ScopeMismatchError
from ynest.orm.nestedset import NestedSet, Position, ScopeLockRegistry, scope_lock_statement
from ynest.orm.nestedset.repository import NodeRepository
from ynest.orm.transaction import (
    PropagationError,
    TransactionAlreadyRolledBackError,
    TransactionPropagation,
    is_contention_error,
    transaction_manager,
    transaction_with_retry,
)

from tests.helpers.tree_helpers import read_bounds, seed_rows, seed_sample_tree
from tests.helpers.tree_models import Category, MenuItem


def locked_error():
    return OperationalError("UPDATE test_ns_category SET lft = ...", {}, Exception("database is locked"))


def acquirable_elsewhere(registry: ScopeLockRegistry, key: str, timeout: float = 0.05) -> bool:
    """在另一个线程中尝试获取锁（RLock 对本线程总是可重入）"""
    result = {}

    def _try():
        lock = registry.get(key)
        result["ok"] = lock.acquire(timeout=timeout)
        if result["ok"]:
            lock.release()

    worker = threading.Thread(target=_try)
    worker.start()
    worker.join(5)
    return result.get("ok", False)


class LockHolder:
    """在后台线程中持有某个 scope 锁，直到 release() 被调用"""

    def __init__(self, registry: ScopeLockRegistry, key: str):
        self.registry = registry
        self.key = key
        self._held = threading.Event()
        self._release = threading.Event()
        self._thread = threading.Thread(target=self._run)

    def _run(self):
        lock = self.registry.acquire(self.key, timeout=1)
        self._held.set()
        self._release.wait(5)
        lock.release()

    def __enter__(self):
        self._thread.start()
        assert self._held.wait(5)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self._release.set()
        self._thread.join(5)
        return False


@pytest.fixture
def registry():
    return ScopeLockRegistry()


@pytest.fixture
def tree(db_session, registry):
    seed_sample_tree(db_session, Category)
    return NestedSet(
        Category,
        db_session,
        settings=NestedSetSettings(lock_timeout=0.05),
        lock_registry=registry,
    )


@pytest.fixture
def lock_key(tree):
    return tree.scope.lock_key(Category.__tablename__)


class TestTreeTransaction:
    """整体提交与回滚"""

    def test_multiple_moves_roll_back_together(self, tree, db_session):
        before = read_bounds(db_session, Category)

        with pytest.raises(RuntimeError):
            with tree.transaction():
                tree.append_to(5, 2)
                tree.append_to(3, 4)
                raise RuntimeError("中断")

        assert read_bounds(db_session, Category) == before

    def test_multiple_moves_commit_together(self, tree, db_session):
        with tree.transaction():
            tree.append_to(5, 2)
            tree.append_to(3, 4)

        bounds = read_bounds(db_session, Category)
        assert bounds[5][2] == 2
        assert bounds[3][2] == 4
        assert tree.total_errors() == 0

    def test_precondition_error_keeps_outer_transaction(self, tree, db_session):
        with tree.transaction():
            tree.append_to(5, 2)
            with pytest.raises(CyclicMoveError):
                tree.append_to(2, 3)
            with pytest.raises(NodeNotFoundError):
                tree.append_to(404, 1)

        assert read_bounds(db_session, Category)[5] == (5, 6, 2)
        assert tree.total_errors() == 0

    def test_failed_nested_create_writes_nothing(self, db_session):
        """子节点 scope 不一致时整个 create 不写入，外层事务照常提交"""
        seed_rows(db_session, MenuItem, [(1, 1, 2, None)], menu_id=1)
        menu1 = MenuItem.nested_set(db_session, menu_id=1)

        with transaction_manager.transaction(db_session):
            with pytest.raises(ScopeMismatchError):
                menu1.create(
                    {"title": "p", "children": [{"title": "x", "menu_id": 2}]},
                    Position.append_to(1),
                )

        assert read_bounds(db_session, MenuItem) == {1: (1, 2, None)}
        assert menu1.total_errors() == 0

    def test_inner_failure_rolls_back_outer_transaction(self, tree, db_session):
        before = read_bounds(db_session, Category)

        with pytest.raises(TransactionAlreadyRolledBackError):
            with tree.transaction():
                tree.append_to(5, 2)
                with pytest.raises(RuntimeError):
                    with tree.transaction():
                        raise RuntimeError("内层失败")

        assert read_bounds(db_session, Category) == before

    def test_joins_caller_transaction(self, tree, db_session):
        with transaction_manager.transaction(db_session) as tx:
            tree.append_to(5, 2)
            assert transaction_manager.current_transaction is tx
            assert tx.is_active

        assert read_bounds(db_session, Category)[5][2] == 2

    def test_mandatory_outside_transaction(self, db_session):
        with pytest.raises(PropagationError):
            with transaction_manager.transaction(db_session, propagation=TransactionPropagation.MANDATORY):
                pass

    def test_never_inside_transaction(self, tree, db_session):
        with tree.transaction():
            with pytest.raises(PropagationError):
                with transaction_manager.transaction(db_session, propagation=TransactionPropagation.NEVER):
                    pass

    def test_after_commit_callback(self, tree):
        events = []
        with tree.transaction() as tx:
            tx.after_commit(lambda ctx: events.append("committed"))
            tree.append_to(5, 2)

        assert events == ["committed"]


class TestContentionTranslation:
    """存储层锁冲突"""

    def test_is_contention_error_by_message(self):
        assert is_contention_error(locked_error())
        assert not is_contention_error(ValueError("database is locked"))
        assert not is_contention_error(IntegrityError("INSERT ...", {}, Exception("UNIQUE constraint failed")))

    def test_is_contention_error_by_sqlstate(self):
        class FakeDriverError(Exception):
            pgcode = "40P01"

        assert is_contention_error(OperationalError("UPDATE ...", {}, FakeDriverError("boom")))

    def test_operational_error_becomes_contention(self, tree, db_session, monkeypatch):
        before = read_bounds(db_session, Category)

        def fail(*args, **kwargs):
            raise locked_error()

        monkeypatch.setattr(tree.engine, "move", fail)

        with pytest.raises(ContentionError) as exc_info:
            tree.append_to(5, 2)

        assert isinstance(exc_info.value.__cause__, OperationalError)
        assert exc_info.value.retryable
        assert read_bounds(db_session, Category) == before

    def test_contention_releases_scope_lock(self, tree, db_session, registry, lock_key, monkeypatch):
        def fail(*args, **kwargs):
            raise locked_error()

        monkeypatch.setattr(tree.engine, "move", fail)
        with pytest.raises(ContentionError):
            tree.append_to(5, 2)

        assert acquirable_elsewhere(registry, lock_key)


class TestTransactionWithRetry:
    """锁冲突重试"""

    def test_retry_until_success(self, tree, db_session):
        calls = []

        @transaction_with_retry(max_retries=3, retry_delay=0, session_getter=lambda: db_session)
        def attach():
            calls.append(1)
            if len(calls) == 1:
                raise locked_error()
            if len(calls) == 2:
                raise ContentionError()
            return tree.append_to(5, 2)

        assert attach() > 0
        assert len(calls) == 3
        assert read_bounds(db_session, Category)[5][2] == 2

    def test_retry_exhausted(self, db_session):
        calls = []

        @transaction_with_retry(max_retries=2, retry_delay=0, session_getter=lambda: db_session)
        def always_fail():
            calls.append(1)
            raise ContentionError()

        with pytest.raises(ContentionError):
            always_fail()
        assert len(calls) == 3

    def test_retry_settings(self, db_session):
        calls = []
        settings = NestedSetSettings(retry_max_retries=1, retry_delay=0)

        @transaction_with_retry(session_getter=lambda: db_session, settings=settings)
        def always_fail():
            calls.append(1)
            raise ContentionError()

        with pytest.raises(ContentionError):
            always_fail()
        assert len(calls) == 2

    def test_no_retry_inside_active_transaction(self, tree, db_session):
        calls = []

        @transaction_with_retry(max_retries=3, retry_delay=0, session_getter=lambda: db_session)
        def always_fail():
            calls.append(1)
            raise ContentionError()

        with tree.transaction():
            with pytest.raises(ContentionError):
                always_fail()

        assert len(calls) == 1

    def test_other_errors_are_not_retried(self, tree, db_session):
        calls = []

        @transaction_with_retry(max_retries=3, retry_delay=0, session_getter=lambda: db_session)
        def cyclic():
            calls.append(1)
            return tree.append_to(2, 3)

        with pytest.raises(CyclicMoveError):
            cyclic()
        assert len(calls) == 1


class TestScopeLock:
    """scope 写锁"""

    def test_lock_timeout(self, tree, db_session, registry, lock_key):
        before = read_bounds(db_session, Category)

        with LockHolder(registry, lock_key):
            with pytest.raises(ContentionError) as exc_info:
                tree.append_to(5, 2)

        assert exc_info.value.code == ErrorCode.LOCK_TIMEOUT
        assert exc_info.value.retryable
        assert read_bounds(db_session, Category) == before

    def test_different_scopes_do_not_block(self, db_session, registry):
        seed_rows(db_session, MenuItem, [(1, 1, 4, None), (2, 2, 3, 1)], menu_id=1)
        seed_rows(db_session, MenuItem, [(3, 1, 4, None), (4, 2, 3, 3)], menu_id=2)
        settings = NestedSetSettings(lock_timeout=0.05)
        menu1 = NestedSet(MenuItem, db_session, scope={"menu_id": 1}, settings=settings, lock_registry=registry)
        menu2 = NestedSet(MenuItem, db_session, scope={"menu_id": 2}, settings=settings, lock_registry=registry)

        with LockHolder(registry, menu1.scope.lock_key(MenuItem.__tablename__)):
            menu2.create({"title": "x"}, Position.append_to(3))
            with pytest.raises(ContentionError):
                menu1.create({"title": "y"}, Position.append_to(1))

        assert read_bounds(db_session, MenuItem, menu_id=2)[3] == (1, 6, None)
        assert read_bounds(db_session, MenuItem, menu_id=1)[1] == (1, 4, None)

    def test_lock_held_until_transaction_ends(self, tree, registry, lock_key):
        with tree.transaction():
            tree.append_to(5, 2)
            assert not acquirable_elsewhere(registry, lock_key)
            tree.append_to(3, 4)

        assert acquirable_elsewhere(registry, lock_key)

    def test_lock_acquired_once_per_transaction(self, tree, lock_key):
        with tree.transaction() as tx:
            tree.append_to(5, 2)
            tree.append_to(3, 4)
            held = set(tx.data["ynest.scope_locks"])

        assert held == {lock_key}

    def test_lock_released_after_rollback(self, tree, registry, lock_key):
        with pytest.raises(RuntimeError):
            with tree.transaction():
                tree.append_to(5, 2)
                raise RuntimeError("中断")

        assert acquirable_elsewhere(registry, lock_key)

    def test_idle_locks_are_dropped(self, tree, db_session, registry):
        with tree.transaction():
            tree.append_to(5, 2)
            assert len(registry) == 1

        gc.collect()
        assert len(registry) == 0

        with tree.transaction():
            tree.append_to(5, 4)
        assert read_bounds(db_session, Category)[5][2] == 4


class TestDatabaseLock:
    """跨进程的数据库锁"""

    def test_row_lock_statement_covers_scope(self, db_session):
        repo = NestedSet(MenuItem, db_session, scope={"menu_id": 1}).repository

        sql = str(scope_lock_statement(repo, "mysql").compile(dialect=mysql.dialect()))

        assert sql.rstrip().endswith("FOR UPDATE")
        assert "menu_id" in sql

    def test_sqlite_takes_write_lock_before_reading(self, tree, db_session, memory_engine):
        statements = []

        def record(conn, cursor, statement, parameters, context, executemany):
            statements.append(statement)

        event.listen(memory_engine, "before_cursor_execute", record)
        try:
            tree.append_to(5, 2)
        finally:
            event.remove(memory_engine, "before_cursor_execute", record)

        assert statements[0].lstrip().upper().startswith("UPDATE")
        assert read_bounds(db_session, Category)[5] == (5, 6, 2)
        assert tree.total_errors() == 0

    def test_locking_reads_only_inside_locked_transaction(self, db_session, monkeypatch):
        monkeypatch.setattr(NodeRepository, "dialect_name", property(lambda self: "mysql"))
        seed_sample_tree(db_session, Category)
        tree = NestedSet(Category, db_session)
        repo = tree.repository
        stmt = select(repo.c_lft).where(repo.c_key == 2)

        assert repo.locking(stmt) is stmt
        with tree.transaction():
            locked = repo.locking(stmt)
            assert repo.get_bounds(2) == (2, 5)

        assert str(locked.compile(dialect=mysql.dialect())).rstrip().endswith("FOR UPDATE")

    def test_sqlite_reads_are_plain(self, tree):
        repo = tree.repository
        stmt = select(repo.c_lft)

        with tree.transaction():
            assert repo.locking(stmt) is stmt
