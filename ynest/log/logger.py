"""
日志工具

ynest 内部统一通过 get_logger() 取日志器，不主动安装任何处理器；
应用可以用 setup_root_logger() / setup_sql_logger() 一次配置好输出。
"""

import inspect
import logging
import os
import time
from logging.handlers import RotatingFileHandler
from typing import Any, List, Optional


DEFAULT_LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(filename)s:%(lineno)d - %(message)s"

# SQL 日志只关心语句本身
SQL_LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"

_SQL_LOGGER_NAMES = ("sqlalchemy.engine", "sqlalchemy.pool")


class MicrosecondFormatter(logging.Formatter):
    """时间戳带 6 位微秒的格式化器，区间补丁常在同一毫秒内连续执行"""

    def formatTime(self, record, datefmt=None):
        stamp = time.strftime(datefmt or "%Y-%m-%d %H:%M:%S", self.converter(record.created))
        micros = int(round((record.created % 1) * 1_000_000)) % 1_000_000
        return f"{stamp}.{micros:06d}"


def create_formatter(
    log_format: str = None,
    datefmt: str = "%Y-%m-%d %H:%M:%S",
    use_microseconds: bool = True
) -> logging.Formatter:
    formatter_class = MicrosecondFormatter if use_microseconds else logging.Formatter
    return formatter_class(fmt=log_format or DEFAULT_LOG_FORMAT, datefmt=datefmt)


def _level(value) -> int:
    """"debug" / "INFO" 等转换为数值，无法识别时取 INFO"""
    resolved = getattr(logging, str(value).upper(), None)
    return resolved if isinstance(resolved, int) else logging.INFO


def _build_handlers(
    log_file: Optional[str],
    console: bool,
    file_handler_options: Optional[dict],
) -> List[logging.Handler]:
    handlers: List[logging.Handler] = []
    if console:
        handlers.append(logging.StreamHandler())
    if not log_file:
        return handlers

    folder = os.path.dirname(log_file)
    if folder:
        os.makedirs(folder, exist_ok=True)

    if file_handler_options:
        options = {"maxBytes": 10 * 1024 * 1024, "backupCount": 5, "encoding": "utf-8"}
        options.update(file_handler_options)
        handlers.append(RotatingFileHandler(log_file, **options))
    else:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    return handlers


def setup_logger(
    name: str = None,
    level: str = "INFO",
    log_file: str = None,
    log_format: str = None,
    console: bool = True,
    use_microseconds: bool = True,
    propagate: bool = True,
    file_handler_options: dict = None
) -> logging.Logger:
    """配置一个日志器，已有的处理器会被替换

    Args:
        name: 日志器名称，None 为根日志器
        level: DEBUG / INFO / WARNING / ERROR / CRITICAL
        log_file: 写入的文件，目录不存在时自动创建
        log_format: 默认 DEFAULT_LOG_FORMAT
        console: 是否输出到 stderr
        use_microseconds: 时间戳是否带微秒
        propagate: 是否继续交给父日志器
        file_handler_options: 提供时使用 RotatingFileHandler，
            键为 maxBytes / backupCount / encoding

    使用示例:
        from ynest.log import setup_logger

        setup_logger("ynest.orm.nestedset", level="DEBUG", log_file="logs/tree.log",
                     file_handler_options={"maxBytes": 10 * 1024 * 1024, "backupCount": 5})
    """
    target = logging.getLogger(name) if name else logging.getLogger()
    target.setLevel(_level(level))
    target.propagate = propagate

    for old in list(target.handlers):
        target.removeHandler(old)

    formatter = create_formatter(log_format, use_microseconds=use_microseconds)
    for handler in _build_handlers(log_file, console, file_handler_options):
        handler.setFormatter(formatter)
        target.addHandler(handler)
    return target


def _configure_sql(level: str, log_file: Optional[str], console: bool) -> logging.Logger:
    """sqlalchemy.engine 与 sqlalchemy.pool 使用相同的输出"""
    configured = [
        setup_logger(
            name=name,
            level=level,
            log_file=log_file,
            log_format=SQL_LOG_FORMAT,
            console=console,
            propagate=False,
        )
        for name in _SQL_LOGGER_NAMES
    ]
    return configured[0]


def setup_root_logger(
    level: str = "INFO",
    log_file: str = None,
    console: bool = True,
    use_microseconds: bool = True,
    file_handler_options: dict = None,
    config: Any = None,
    config_path: str = None,
    config_base_dir: str = None,
    setup_sql_logger: bool = True
) -> logging.Logger:
    """配置根日志器

    config（LoggingSettings）或 config_path（包含 ``logging:`` 段的 YAML）
    提供时，级别和文件输出以配置为准；config_path 还决定是否输出到控制台。
    配置中 sql_log_enabled 为真且 setup_sql_logger 为真时，同时配置 SQL 日志器。

    使用示例:
        setup_root_logger(level="INFO", log_file="logs/app.log")
        setup_root_logger(config=settings.logging)
        setup_root_logger(config_path="config/settings.yaml")
    """
    if config_path is not None:
        from ..config import ConfigLoader, LoggingSettings

        raw = ConfigLoader.load(config_path, base_dir=config_base_dir)
        config = LoggingSettings(**(raw.get("logging") or {}))
        console = config.enable_console

    if config is not None:
        level = getattr(config, "level", level)
        log_file = getattr(config, "file_path", None) or None
        file_handler_options = {
            "maxBytes": getattr(config, "parsed_file_max_bytes", 10 * 1024 * 1024),
            "backupCount": getattr(config, "file_backup_count", 5),
            "encoding": getattr(config, "file_encoding", "utf-8"),
        }
        if setup_sql_logger and getattr(config, "sql_log_enabled", False):
            _configure_sql(
                getattr(config, "sql_log_level", "DEBUG"),
                getattr(config, "sql_log_file_path", None) or None,
                console=False,
            )

    return setup_logger(
        level=level,
        log_file=log_file,
        console=console,
        use_microseconds=use_microseconds,
        propagate=False,
        file_handler_options=file_handler_options,
    )


def setup_sql_logger(
    level: str = "DEBUG",
    log_file: str = None,
    console: bool = False,
    config: Any = None,
) -> Optional[logging.Logger]:
    """配置 SQLAlchemy 的语句日志

    每次区间补丁都是一条 ``UPDATE ... CASE``，排查树结构问题时打开它最直接。
    config.sql_log_enabled 为假时不做任何事并返回 None。
    """
    if config is not None:
        if not getattr(config, "sql_log_enabled", True):
            return None
        level = getattr(config, "sql_log_level", level)
        log_file = getattr(config, "sql_log_file_path", None) or log_file

    return _configure_sql(level, log_file, console)


def get_logger(name: str = None) -> logging.Logger:
    """取日志器

    - 不传 name: 使用调用方模块的 ``__name__``
    - 不带点号的简写: 加上 ``ynest.`` 前缀，如 "tree" -> "ynest.tree"
    - 其他名称原样使用

        logger = get_logger()                     # ynest/orm/nestedset/engine.py -> "ynest.orm.nestedset.engine"
        logger = get_logger("sqlalchemy.engine")  # -> "sqlalchemy.engine"
    """
    if name is None:
        caller = inspect.currentframe().f_back
        name = caller.f_globals.get("__name__", "ynest") if caller is not None else "ynest"
    elif "." not in name and name != "ynest":
        name = f"ynest.{name}"
    return logging.getLogger(name)


tree_logger = get_logger("tree")
transaction_logger = get_logger("ynest.orm.transaction")

logger = logging.getLogger("ynest")
