"""YAML 配置加载

使用示例:
    from ynest.config import ConfigLoader, load_yaml_config, AppSettings

    raw = ConfigLoader.load("config/settings.yaml")              # 原始字典，带缓存
    settings = load_yaml_config("config/settings.yaml", AppSettings)
"""

import copy
import os
from typing import Any, Dict, List, Optional, Type, TypeVar

import yaml
from pydantic_settings import BaseSettings


T = TypeVar("T")


class ConfigLoader:
    """按绝对路径缓存的 YAML 读取器

    缓存的是解析后的字典本身，调用方不要原地修改它；
    load_yaml_config 会先深拷贝再合并。
    """

    _cache: Dict[str, Dict[str, Any]] = {}

    @staticmethod
    def resolve(config_path: str, base_dir: Optional[str] = None) -> str:
        """相对路径优先相对 base_dir，否则相对当前工作目录"""
        if not os.path.isabs(config_path) and base_dir:
            config_path = os.path.join(base_dir, config_path)
        return os.path.abspath(config_path)

    @classmethod
    def load(
        cls,
        config_path: str,
        base_dir: Optional[str] = None,
        use_cache: bool = True
    ) -> Dict[str, Any]:
        """读取 YAML，空文件返回 {}

        Raises:
            FileNotFoundError: 文件不存在
            yaml.YAMLError: 内容不是合法 YAML
        """
        path = cls.resolve(config_path, base_dir)
        if use_cache and path in cls._cache:
            return cls._cache[path]

        if not os.path.isfile(path):
            raise FileNotFoundError(f"配置文件不存在: {path}")
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        if use_cache:
            cls._cache[path] = data
        return data

    @classmethod
    def reload(cls, config_path: str, base_dir: Optional[str] = None) -> Dict[str, Any]:
        """丢弃缓存重新读取"""
        cls._cache.pop(cls.resolve(config_path, base_dir), None)
        return cls.load(config_path, base_dir)

    @classmethod
    def clear_cache(cls):
        cls._cache.clear()

    @classmethod
    def get_cached_paths(cls) -> List[str]:
        return list(cls._cache)


def _is_settings_class(candidate) -> bool:
    return isinstance(candidate, type) and issubclass(candidate, BaseSettings)


def _env_values(settings_class: Type[BaseSettings]) -> Dict[str, Any]:
    """环境变量里明确设置了的字段"""
    current = settings_class()
    return {name: getattr(current, name) for name in current.model_fields_set}


def load_yaml_config(
    config_path: str,
    settings_class: Type[T],
    base_dir: Optional[str] = None,
    **overrides
) -> T:
    """YAML 加载为 Settings 实例

    优先级从高到低: overrides、环境变量、YAML、默认值。
    嵌套的子配置段（如 ``tree:``）同样会被对应前缀的环境变量覆盖，
    例如 YNEST_TREE_LOCK_TIMEOUT 覆盖 YAML 中的 tree.lock_timeout。

        settings = load_yaml_config("config/settings.yaml", AppSettings)
        tree_settings = load_yaml_config("config/tree.yaml", NestedSetSettings, lock_timeout=1)
    """
    data = copy.deepcopy(ConfigLoader.load(config_path, base_dir))

    fields = getattr(settings_class, "model_fields", {})
    for name, section in data.items():
        field = fields.get(name)
        if isinstance(section, dict) and field is not None and _is_settings_class(field.annotation):
            section.update(_env_values(field.annotation))

    if _is_settings_class(settings_class):
        data.update(_env_values(settings_class))
    data.update(overrides)
    return settings_class(**data)
