"""树事务上下文

一个 TransactionContext 对应一次整体提交 / 整体回滚的树操作。
同一 session 上的内层调用由 TransactionManager 加入到最外层上下文，
只增加 nesting_level，不会再创建新的上下文。
"""

from __future__ import annotations

from typing import Any, Callable, Dict, List

from sqlalchemy.orm import Session

from ynest.log import get_logger

from .exceptions import (
    TransactionAlreadyCommittedError,
    TransactionAlreadyRolledBackError,
    TransactionNotActiveError,
)
from .propagation import TransactionPropagation
from .state import TransactionState

logger = get_logger("ynest.orm.transaction")

Callback = Callable[["TransactionContext"], Any]


class TransactionContext:
    """树事务上下文

    - 退出时没有异常则提交，有异常则回滚（包括 KeyboardInterrupt）
    - after_commit / after_rollback 回调在对应结果之后执行
    - on_close 回调无论结果如何都会执行，按注册的逆序，用于释放 scope 锁
    - data 供同一事务内的多次树操作共享状态（例如已经持有的锁）

    使用示例:
        with TransactionContext(session) as tx:
            placement = engine.insert(Position.append_to(parent_id))

            @tx.after_commit
            def drop_cache(ctx):
                menu_cache.clear()
    """

    def __init__(
        self,
        session: Session,
        auto_commit: bool = True,
        propagation: TransactionPropagation = None,
    ):
        self._session = session
        self._auto_commit = auto_commit
        self._propagation = propagation or TransactionPropagation.REQUIRED
        self._state = TransactionState.INACTIVE
        self._nesting_level = 0
        self._callbacks: Dict[str, List[Callback]] = {
            "after_commit": [],
            "after_rollback": [],
            "on_close": [],
        }
        self.data: Dict[str, Any] = {}

    @property
    def session(self) -> Session:
        return self._session

    @property
    def state(self) -> TransactionState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state == TransactionState.ACTIVE

    @property
    def nesting_level(self) -> int:
        """加入本事务的调用层数，最外层为 1"""
        return self._nesting_level

    @property
    def propagation(self) -> TransactionPropagation:
        return self._propagation

    # ==================== 生命周期 ====================

    def begin(self) -> 'TransactionContext':
        if self._state.is_terminal():
            raise TransactionNotActiveError(f"事务已结束（{self._state.value}），不能重新开始")
        # session 自动开启数据库事务，这里只记录状态
        self._state = TransactionState.ACTIVE
        self._nesting_level = max(self._nesting_level, 1)
        logger.debug("树事务开始")
        return self

    def commit(self) -> None:
        """提交；由内层（nesting_level > 1）调用时推迟到最外层"""
        if self._state == TransactionState.COMMITTED:
            raise TransactionAlreadyCommittedError()
        if self._state == TransactionState.ROLLED_BACK:
            raise TransactionAlreadyRolledBackError()
        if not self.is_active:
            raise TransactionNotActiveError(f"无法提交: 事务状态为 {self._state.value}")
        if self._nesting_level > 1:
            return

        try:
            self._session.commit()
        except BaseException:
            self._state = TransactionState.FAILED
            raise
        self._state = TransactionState.COMMITTED
        self._nesting_level = 0
        logger.debug("树事务已提交")
        self._fire("after_commit")
        self._close()

    def rollback(self) -> None:
        """回滚整个事务，重复调用无副作用"""
        if self._state == TransactionState.COMMITTED:
            raise TransactionAlreadyCommittedError("无法回滚: 事务已提交")
        if self._state not in (TransactionState.ACTIVE, TransactionState.FAILED):
            return

        try:
            self._session.rollback()
        except Exception as e:
            self._state = TransactionState.FAILED
            logger.error(f"树事务回滚失败: {e}")
            self._close()
            raise
        self._state = TransactionState.ROLLED_BACK
        self._nesting_level = 0
        logger.debug("树事务已回滚")
        self._fire("after_rollback")
        self._close()

    def flush(self) -> None:
        if not self.is_active:
            raise TransactionNotActiveError("无法刷新: 事务未激活")
        self._session.flush()

    # ==================== 回调 ====================

    def after_commit(self, func: Callback) -> Callback:
        self._callbacks["after_commit"].append(func)
        return func

    def after_rollback(self, func: Callback) -> Callback:
        self._callbacks["after_rollback"].append(func)
        return func

    def on_close(self, func: Callback) -> Callback:
        """事务结束（提交或回滚）后执行"""
        self._callbacks["on_close"].append(func)
        return func

    def _fire(self, name: str, reverse: bool = False) -> None:
        callbacks, self._callbacks[name] = self._callbacks[name], []
        if reverse:
            callbacks.reverse()
        # 事务已经结束，回调失败只能记录
        for func in callbacks:
            try:
                func(self)
            except Exception as e:
                logger.warning(f"{name} 回调 {getattr(func, '__name__', func)!r} 失败: {e}")

    def _close(self) -> None:
        self._fire("on_close", reverse=True)

    # ==================== 上下文管理器 ====================

    def __enter__(self) -> 'TransactionContext':
        return self.begin()

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        if exc_type is not None:
            self.rollback()
            return False

        if self._state == TransactionState.ROLLED_BACK:
            # 内层失败已经回滚了整个事务，外层吞掉异常也不能算作提交
            raise TransactionAlreadyRolledBackError("事务已被内层操作回滚，变更未提交")
        if self._state.is_terminal():
            return False

        if not self._auto_commit:
            self.rollback()
            return False
        try:
            self.commit()
        except BaseException:
            self.rollback()
            raise
        return False

    def __repr__(self) -> str:
        return f"TransactionContext(state={self._state.value}, nesting_level={self._nesting_level})"
