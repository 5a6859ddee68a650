"""配置加载器模块

分离默认值、YAML 文件、环境变量等不同配置源的加载逻辑，
按优先级深度合并后交给 ConfigParser 转换为 Settings。
"""

from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional, Type

import yaml
from pydantic import BaseModel, ValidationError

from .settings import KeeperConfig, LoggingConfig, SchedulerConfig, Settings

logger = logging.getLogger("keeper.config.loaders")

CONFIG_FILE_NAME = "keeper.yaml"
CONFIG_PATH_ENV = "KEEPER_CONFIG"


class ConfigLoader(ABC):
    """配置加载器抽象基类"""

    @abstractmethod
    def load(self) -> Dict[str, Any]:
        """加载配置数据

        Returns:
            配置数据字典
        """
        raise NotImplementedError

    @abstractmethod
    def is_available(self) -> bool:
        """检查配置源是否可用"""
        raise NotImplementedError


class YamlConfigLoader(ConfigLoader):
    """YAML 配置文件加载器

    路径优先取构造参数，其次取环境变量 KEEPER_CONFIG，最后向上递归查找 keeper.yaml。
    """

    def __init__(self, file_path: Path | str | None = None):
        if file_path is None and os.environ.get(CONFIG_PATH_ENV):
            file_path = os.environ[CONFIG_PATH_ENV]
        self.file_path = Path(file_path) if file_path else self._discover_config_path()
        logger.debug("YAML配置文件路径: %s", self.file_path)

    def _discover_config_path(self) -> Path:
        start = Path(__file__).resolve()
        for parent in start.parents:
            candidate = parent / CONFIG_FILE_NAME
            if candidate.exists():
                logger.info("发现配置文件: %s", candidate)
                return candidate

        return Path.cwd() / CONFIG_FILE_NAME

    def is_available(self) -> bool:
        return self.file_path.exists()

    def load(self) -> Dict[str, Any]:
        if not self.is_available():
            logger.warning("配置文件不存在: %s", self.file_path)
            return {}

        try:
            content = self.file_path.read_text(encoding="utf-8")
            data = yaml.safe_load(content) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.error("加载配置文件失败: %s", e)
            return {}

        if not isinstance(data, dict):
            logger.error("配置文件顶层必须是映射: %s", self.file_path)
            return {}

        logger.info("成功加载配置文件: %s", self.file_path)
        return data


class EnvironmentConfigLoader(ConfigLoader):
    """环境变量配置加载器，用于覆盖个别配置项"""

    # 环境变量名（去掉前缀后）-> (配置段, 字段)
    ENV_MAPPING = {
        "timer_backend": ("scheduler", "timer_backend"),
        "overlap_policy": ("scheduler", "overlap_policy"),
        "timezone": ("scheduler", "timezone"),
        "interval_ms": ("keeper", "interval_ms"),
        "enabled": ("keeper", "enabled"),
        "log_level": ("logging", "level"),
    }

    def __init__(self, prefix: str = "KEEPER_"):
        self.prefix = prefix

    def is_available(self) -> bool:
        return any(key.startswith(self.prefix) for key in os.environ)

    def load(self) -> Dict[str, Any]:
        config: Dict[str, Any] = {}

        for key, value in os.environ.items():
            if not key.startswith(self.prefix):
                continue
            target = self.ENV_MAPPING.get(key[len(self.prefix):].lower())
            if target is None:
                continue
            section, field_name = target
            config.setdefault(section, {})[field_name] = value

        if config:
            logger.info("从环境变量加载了 %d 个配置段", len(config))

        return config


class DefaultConfigLoader(ConfigLoader):
    """默认配置加载器"""

    def is_available(self) -> bool:
        return True

    def load(self) -> Dict[str, Any]:
        return Settings().model_dump(mode="json")


class CompositeConfigLoader(ConfigLoader):
    """组合配置加载器

    按优先级顺序合并多个配置源的数据。
    """

    def __init__(self, loaders: List[ConfigLoader]):
        """初始化组合加载器

        Args:
            loaders: 配置加载器列表，按优先级从低到高排序
        """
        self.loaders = loaders

    def is_available(self) -> bool:
        return any(loader.is_available() for loader in self.loaders)

    def load(self) -> Dict[str, Any]:
        merged_config: Dict[str, Any] = {}

        for loader in self.loaders:
            if loader.is_available():
                merged_config = self._deep_merge(merged_config, loader.load())
                logger.debug("合并配置: %s", type(loader).__name__)

        return merged_config

    def _deep_merge(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result


class ConfigParser:
    """将原始配置数据转换为 Settings 对象

    每个配置段单独校验，无效的配置段记录警告后回退为默认值，
    避免因个别配置问题导致系统无法启动。
    """

    SECTIONS: Dict[str, Type[BaseModel]] = {
        "scheduler": SchedulerConfig,
        "keeper": KeeperConfig,
        "logging": LoggingConfig,
    }

    @staticmethod
    def parse(config_data: Dict[str, Any]) -> Settings:
        sections = {
            name: ConfigParser._parse_section(name, model, config_data.get(name))
            for name, model in ConfigParser.SECTIONS.items()
        }
        settings = Settings(**sections)
        logger.info(
            "配置解析完成: timer_backend=%s keeper_enabled=%s interval_ms=%d",
            settings.scheduler.timer_backend,
            settings.keeper.enabled,
            settings.keeper.interval_ms,
        )
        return settings

    @staticmethod
    def _parse_section(
        name: str, model: Type[BaseModel], data: Optional[Any]
    ) -> BaseModel:
        if data is None:
            return model()
        if not isinstance(data, dict):
            logger.warning("配置段 %s 不是映射，使用默认配置", name)
            return model()
        try:
            return model(**data)
        except ValidationError as e:
            logger.warning("配置段 %s 解析失败，使用默认配置: %s", name, e)
            return model()


def create_default_config_loader() -> CompositeConfigLoader:
    """创建默认的配置加载器

    按优先级顺序：默认配置 < YAML文件 < 环境变量
    """
    loaders = [
        DefaultConfigLoader(),  # 最低优先级
        YamlConfigLoader(),  # 中等优先级
        EnvironmentConfigLoader(),  # 最高优先级
    ]

    return CompositeConfigLoader(loaders)
