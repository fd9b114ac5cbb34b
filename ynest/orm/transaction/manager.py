"""树事务管理器

所有树写操作都经过 ``transaction_manager.transaction()``：
没有外层事务时开启一个新的，外层已经在同一 session 上开启时直接加入。
"""

from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from functools import wraps
from typing import Callable, Iterator, Optional, TypeVar

from sqlalchemy.orm import Session

from ynest.exceptions import ContentionError
from ynest.log import get_logger

from .context import TransactionContext
from .exceptions import PropagationError, is_contention_error
from .propagation import TransactionPropagation

logger = get_logger("ynest.orm.transaction")

T = TypeVar('T')

# 每个线程 / 协程各自的当前事务
_active_tx: ContextVar[Optional[TransactionContext]] = ContextVar("ynest_active_tx", default=None)


def get_current_transaction() -> Optional[TransactionContext]:
    """当前线程 / 协程所在的树事务，没有时为 None"""
    return _active_tx.get()


def _as_contention(e: BaseException) -> BaseException:
    """存储层锁冲突转换为 ContentionError，其他异常原样返回"""
    if isinstance(e, ContentionError) or not is_contention_error(e):
        return e
    return ContentionError(detail=str(e))


class TransactionManager:
    """树事务管理器（进程内单例）

    语义:
    - 同一 session 上的嵌套调用共享最外层事务，只有最外层提交
    - 内层抛出 rollback_for 中的异常时整个事务立即回滚
    - no_rollback_for 中的异常（例如 NotFound 这类前置条件错误）原样抛出，
      外层事务保持可用
    - 存储层锁冲突统一转换为 ContentionError，事务已经回滚，调用方可以重试

    使用示例:
        from ynest.orm import transaction_manager as tm

        with tm.transaction(session):
            tree.move(3, Position.append_to(7))
            tree.move(4, Position.after(3))
    """

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def get_session(self) -> Session:
        """未显式传入 session 时使用 db_manager 的线程 session"""
        from ..db_session import db_manager
        return db_manager.get_session()

    @property
    def current_transaction(self) -> Optional[TransactionContext]:
        return _active_tx.get()

    def is_in_transaction(self, session: Session = None) -> bool:
        """是否处于活动事务中；传入 session 时还要求是同一个 session"""
        tx = _active_tx.get()
        if tx is None or not tx.is_active:
            return False
        return session is None or tx.session is session

    @contextmanager
    def transaction(
        self,
        session: Session = None,
        propagation: TransactionPropagation = TransactionPropagation.REQUIRED,
        auto_commit: bool = True,
        rollback_for: tuple = (BaseException,),
        no_rollback_for: tuple = (),
    ) -> Iterator[TransactionContext]:
        """进入树事务

        Args:
            session: 不传时取 db_manager 的当前 session
            propagation: REQUIRED / MANDATORY / NEVER
            auto_commit: False 时正常退出也回滚，用于预演
            rollback_for: 加入外层事务时，哪些异常回滚整个事务
            no_rollback_for: 加入外层事务时，哪些异常不影响外层

        Raises:
            ContentionError: 存储层锁冲突，事务已回滚
            PropagationError: 传播行为的前提不成立
        """
        session = session if session is not None else self.get_session()
        joinable = self.is_in_transaction(session)

        if propagation == TransactionPropagation.MANDATORY and not joinable:
            raise PropagationError("MANDATORY", "必须在事务中执行")
        if propagation == TransactionPropagation.NEVER and joinable:
            raise PropagationError("NEVER", "不能在事务中执行")

        if joinable:
            scope = self._join(_active_tx.get(), rollback_for, no_rollback_for)
        else:
            scope = self._open(session, propagation, auto_commit)
        with scope as tx:
            yield tx

    @contextmanager
    def _join(
        self,
        outer: TransactionContext,
        rollback_for: tuple,
        no_rollback_for: tuple,
    ) -> Iterator[TransactionContext]:
        outer._nesting_level += 1
        logger.debug(f"加入外层树事务 (level={outer.nesting_level})")
        try:
            yield outer
        except no_rollback_for:
            raise
        except rollback_for as e:
            if outer.is_active:
                logger.debug(f"内层失败，回滚整个事务: {type(e).__name__}")
                outer.rollback()
            converted = _as_contention(e)
            if converted is e:
                raise
            raise converted from e
        finally:
            outer._nesting_level = max(outer._nesting_level - 1, 0)

    @contextmanager
    def _open(
        self,
        session: Session,
        propagation: TransactionPropagation,
        auto_commit: bool,
    ) -> Iterator[TransactionContext]:
        tx = TransactionContext(session, auto_commit=auto_commit, propagation=propagation)
        token = _active_tx.set(tx)
        try:
            with tx:
                yield tx
        except Exception as e:
            converted = _as_contention(e)
            if converted is e:
                raise
            logger.info(f"存储层锁冲突，树事务已回滚: {e}")
            raise converted from e
        finally:
            _active_tx.reset(token)

    def transactional(
        self,
        propagation: TransactionPropagation = TransactionPropagation.REQUIRED,
        rollback_for: tuple = (BaseException,),
        no_rollback_for: tuple = (),
        session_getter: Callable[..., Session] = None,
    ):
        """把整个函数包进一个树事务

        session_getter 从被装饰函数的参数里取 session，不传时使用 db_manager。

            @tm.transactional(session_getter=lambda session, *a, **kw: session)
            def regroup(session, ids, parent_id):
                tree = Category.nested_set(session)
                for key in ids:
                    tree.move(key, Position.append_to(parent_id))
        """
        def decorator(func: Callable[..., T]) -> Callable[..., T]:
            @wraps(func)
            def wrapper(*args, **kwargs) -> T:
                with self.transaction(
                    session=session_getter(*args, **kwargs) if session_getter else None,
                    propagation=propagation,
                    rollback_for=rollback_for,
                    no_rollback_for=no_rollback_for,
                ):
                    return func(*args, **kwargs)
            return wrapper

        return decorator


transaction_manager = TransactionManager()
