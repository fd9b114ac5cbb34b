"""锁冲突重试

ContentionError 表示整个树事务已回滚、什么都没写入，
因此可以放心地把同一个操作在新事务里再跑一遍。
"""

import time
from functools import wraps
from typing import Callable, Iterator, Tuple, Type, TypeVar

from sqlalchemy.orm import Session

from ynest.exceptions import ContentionError
from ynest.log import get_logger

logger = get_logger("ynest.orm.transaction")

T = TypeVar('T')


def _backoff(first: float, multiplier: float, ceiling: float) -> Iterator[float]:
    delay = first
    while True:
        yield min(delay, ceiling)
        delay *= multiplier


def transaction_with_retry(
    max_retries: int = 3,
    retry_delay: float = 0.1,
    retry_on: Tuple[Type[BaseException], ...] = (ContentionError,),
    backoff_multiplier: float = 2.0,
    max_delay: float = 10.0,
    session_getter: Callable[..., Session] = None,
    settings=None,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """每次尝试都在独立事务中执行被装饰函数，遇到 retry_on 时退避重试

    已经处在同一 session 的事务里时只执行一次：外层事务已随失败回滚，
    重试必须由最外层调用方决定。

    Args:
        max_retries: 首次之外最多再试几次
        retry_delay: 第一次重试前等待的秒数
        retry_on: 触发重试的异常类型
        backoff_multiplier: 每次重试后等待时间的倍数
        max_delay: 单次等待的上限（秒）
        session_getter: 用被装饰函数的参数取 session，不传时使用 db_manager
        settings: NestedSetSettings，提供时以其 retry_* 配置为准

    使用示例:
        @transaction_with_retry(max_retries=5, session_getter=lambda s, *a: s)
        def attach(session, node_id, parent_id):
            Category.nested_set(session).move(node_id, Position.append_to(parent_id))
    """
    if settings is not None:
        max_retries = settings.retry_max_retries
        retry_delay = settings.retry_delay
        backoff_multiplier = settings.retry_backoff

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args, **kwargs) -> T:
            from .manager import transaction_manager

            session = session_getter(*args, **kwargs) if session_getter else None
            if transaction_manager.is_in_transaction(session):
                return func(*args, **kwargs)

            delays = _backoff(retry_delay, backoff_multiplier, max_delay)
            attempt = 0
            while True:
                attempt += 1
                try:
                    with transaction_manager.transaction(session=session):
                        return func(*args, **kwargs)
                except retry_on as e:
                    if attempt > max_retries:
                        logger.error(f"{func.__name__} 共尝试 {attempt} 次仍然失败: {e!r}")
                        raise
                    delay = next(delays)
                    logger.warning(
                        f"{func.__name__} 第 {attempt} 次尝试遇到 {type(e).__name__}，"
                        f"{delay:.2f}s 后重试"
                    )
                    time.sleep(delay)

        return wrapper

    return decorator
