"""
测试公共 fixtures

- db_session: 每个测试一个全新的内存库，已建好树模型的表
- temp_dir / temp_file: 配置与日志测试用的临时文件
"""

import os
import tempfile
from typing import Iterator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from tests.helpers.tree_models import Base


@pytest.fixture(scope="session")
def temp_dir():
    with tempfile.TemporaryDirectory() as path:
        yield path


@pytest.fixture
def temp_file(temp_dir):
    """写入一个临时文件并返回绝对路径，测试结束后删除"""
    written = []

    def write(filename: str, content: str = "") -> str:
        path = os.path.join(temp_dir, filename)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            f.write(content)
        written.append(path)
        return path

    yield write

    for path in written:
        if os.path.exists(path):
            os.remove(path)


@pytest.fixture
def memory_engine():
    """单连接内存库，锁测试里的其他线程也能看到同一份数据"""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(memory_engine) -> Iterator[Session]:
    session = Session(bind=memory_engine, autoflush=False)
    try:
        yield session
    finally:
        session.close()
