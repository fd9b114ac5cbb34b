"""
ynest - 嵌套集合树基础类库

基于 SQLAlchemy 的左右值树：事务化的插入 / 移动 / 删除 / 恢复、一致性检查与树重建，
以及配套的日志、配置和异常体系
"""

__version__ = "0.1.0"
__description__ = "嵌套集合树基础类库"

# 导出异常
from .exceptions import (
    ErrorCode,
    NestedSetException,
    CyclicMoveError,
    NodeNotFoundError,
    ScopeMismatchError,
    InvalidNodeError,
    ContentionError,
    Err,
)

# 导出配置
from .config import (
    AppSettings,
    NestedSetSettings,
    ConfigLoader,
    load_yaml_config,
)

# 导出日志
from .log import get_logger, setup_logger

# 导出ORM
from .orm import (
    db_manager,
    init_database,
    db_session_scope,
    transaction_manager,
    transaction_with_retry,
    NestedSet,
    NestedSetMixin,
    NestedSetFieldsMixin,
    NestedSetFieldsWithParentMixin,
    Position,
)

__all__ = [
    "__version__",
    "__description__",
    # 异常
    "ErrorCode",
    "NestedSetException",
    "CyclicMoveError",
    "NodeNotFoundError",
    "ScopeMismatchError",
    "InvalidNodeError",
    "ContentionError",
    "Err",
    # 配置
    "AppSettings",
    "NestedSetSettings",
    "ConfigLoader",
    "load_yaml_config",
    # 日志
    "get_logger",
    "setup_logger",
    # ORM
    "db_manager",
    "init_database",
    "db_session_scope",
    "transaction_manager",
    "transaction_with_retry",
    "NestedSet",
    "NestedSetMixin",
    "NestedSetFieldsMixin",
    "NestedSetFieldsWithParentMixin",
    "Position",
]
