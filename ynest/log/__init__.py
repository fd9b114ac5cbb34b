"""日志模块

提供嵌套集合引擎使用的日志配置：
- 日志记录器创建与自动命名
- 根日志器 / SQL 日志器的快捷配置

使用示例:
    from ynest.log import get_logger, setup_root_logger

    logger = get_logger()
    setup_root_logger(level="DEBUG")
"""

from .logger import (
    setup_logger,
    setup_root_logger,
    setup_sql_logger,
    create_formatter,
    MicrosecondFormatter,
    DEFAULT_LOG_FORMAT,
    SQL_LOG_FORMAT,
    tree_logger,
    transaction_logger,
    logger,
    get_logger,
)

__all__ = [
    "setup_logger",
    "setup_root_logger",
    "setup_sql_logger",
    "create_formatter",
    "MicrosecondFormatter",
    "DEFAULT_LOG_FORMAT",
    "SQL_LOG_FORMAT",
    "tree_logger",
    "transaction_logger",
    "logger",
    "get_logger",
]
