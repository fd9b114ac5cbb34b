"""
数据库连接与 session

树服务本身只依赖传入的 Session；这里提供的是脚本、定时任务以及
``transaction_manager`` 在没有显式 session 时使用的全局连接。

公开 API:
- db_manager: 全局单例
- init_database(): 创建引擎和线程级 scoped_session
- get_engine(): 当前引擎
- db_session_scope(): 成功提交、失败回滚的 session 上下文
"""

import logging
import os
import time
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, scoped_session, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from ynest.log import get_logger

_logger = get_logger("ynest.orm.session")

__all__ = [
    'DatabaseManager',
    'db_manager',
    'init_database',
    'get_engine',
    'db_session_scope',
]

_NOT_READY = "数据库未初始化，请先调用 init_database()"

# DatabaseSettings 中与 init() 同名的参数
_CONFIG_FIELDS = ("echo", "pool_size", "max_overflow", "pool_timeout", "pool_recycle", "pool_pre_ping")


def _engine_options(url: str, pool: Dict[str, Any]) -> Dict[str, Any]:
    """按数据库类型选择连接池参数"""
    if not url.startswith("sqlite"):
        return dict(pool)

    path = url.split(":///", 1)[1] if ":///" in url else ""
    if path in ("", ":memory:"):
        # 内存库只有一个连接，所有线程共享
        return {"poolclass": StaticPool, "connect_args": {"check_same_thread": False}}

    _logger.info(f"SQLite 数据库文件: {os.path.abspath(path)}")
    return {
        "poolclass": QueuePool,
        "connect_args": {"check_same_thread": False, "timeout": pool["pool_timeout"]},
        **pool,
    }


def _attach_sql_timer(engine: Engine) -> None:
    """每条语句执行后把耗时写到 sqlalchemy.engine 日志器"""
    sql_logger = logging.getLogger("sqlalchemy.engine")

    @event.listens_for(engine, "before_cursor_execute")
    def _started(conn, cursor, statement, parameters, context, executemany):
        conn.info.setdefault("ynest_query_started", []).append(time.perf_counter())

    @event.listens_for(engine, "after_cursor_execute")
    def _finished(conn, cursor, statement, parameters, context, executemany):
        elapsed = time.perf_counter() - conn.info["ynest_query_started"].pop()
        sql_logger.debug(f"[执行耗时: {elapsed * 1000:.2f}ms]")


class DatabaseManager:
    """全局数据库连接（单例）

    使用示例:
        from ynest.orm import db_manager

        db_manager.init(database_url="sqlite:///./tree.db")
        session = db_manager.get_session()
    """
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            instance = super().__new__(cls)
            instance._engine = None
            instance._sessions = None
            cls._instance = instance
        return cls._instance

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise RuntimeError(_NOT_READY)
        return self._engine

    @property
    def is_initialized(self) -> bool:
        return self._engine is not None and self._sessions is not None

    def init(
        self,
        database_url: str = None,
        echo: bool = False,
        pool_size: int = 5,
        max_overflow: int = 10,
        pool_timeout: int = 30,
        pool_recycle: int = 3600,
        pool_pre_ping: bool = True,
        sql_log_enabled: bool = False,
        logger: logging.Logger = None,
        scopefunc: Callable = None,
        config: Any = None,
        logging_config: Any = None,
    ):
        """创建引擎和 scoped_session

        传入 config（DatabaseSettings）时，连接参数以 config 为准；
        传入 logging_config（LoggingSettings）时，sql_log_enabled 以其为准。
        scopefunc 默认按线程隔离 session。

        Returns:
            tuple: (engine, session_scope)

        使用示例:
            engine, session_scope = init_database("sqlite:///./tree.db")
            engine, session_scope = init_database(config=settings.database, logging_config=settings.logging)
        """
        options = {
            "echo": echo,
            "pool_size": pool_size,
            "max_overflow": max_overflow,
            "pool_timeout": pool_timeout,
            "pool_recycle": pool_recycle,
            "pool_pre_ping": pool_pre_ping,
        }
        if config is not None:
            database_url = getattr(config, "url", database_url)
            for name in _CONFIG_FIELDS:
                options[name] = getattr(config, name, options[name])
        if logging_config is not None:
            sql_log_enabled = getattr(logging_config, "sql_log_enabled", sql_log_enabled)

        if not database_url:
            raise ValueError("缺少 database_url，请通过参数或 config.url 提供")

        log = logger or _logger
        log.info(f"连接数据库: {database_url}")

        echo = options.pop("echo")
        self._engine = create_engine(
            database_url,
            echo="debug" if sql_log_enabled else echo,
            **_engine_options(database_url, options),
        )
        if sql_log_enabled:
            _attach_sql_timer(self._engine)

        self._sessions = scoped_session(
            sessionmaker(bind=self._engine, autoflush=True),
            scopefunc=scopefunc,
        )
        log.info(f"数据库引擎就绪 (pool={type(self._engine.pool).__name__})")
        return self._engine, self._sessions

    def get_session(self) -> Session:
        """当前线程（或 scopefunc 指定作用域）的 session"""
        if self._sessions is None:
            raise RuntimeError(_NOT_READY)
        return self._sessions()

    def remove_session(self) -> None:
        """关闭当前作用域的 session，连接归还连接池"""
        if self._sessions is not None:
            self._sessions.remove()

    def dispose(self) -> None:
        """释放连接池并回到未初始化状态"""
        self.remove_session()
        if self._engine is not None:
            self._engine.dispose()
        self._engine = None
        self._sessions = None


db_manager = DatabaseManager()


def init_database(*args, **kwargs):
    """同 DatabaseManager.init"""
    return db_manager.init(*args, **kwargs)


def get_engine() -> Engine:
    return db_manager.engine


@contextmanager
def db_session_scope() -> Iterator[Session]:
    """脚本 / 定时任务用的 session

    块正常结束时提交，抛出异常时回滚，最后移除 session。

        with db_session_scope() as session:
            Category.nested_set(session).fix_tree()
    """
    session = db_manager.get_session()
    try:
        yield session
        session.commit()
    except BaseException:
        session.rollback()
        raise
    finally:
        db_manager.remove_session()
