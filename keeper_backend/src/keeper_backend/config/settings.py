from __future__ import annotations

import logging
from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, Field

from ..scheduling.types import OverlapPolicy

logger = logging.getLogger("keeper.config")


class SchedulerConfig(BaseModel):
    timer_backend: Literal["asyncio", "apscheduler"] = Field(default="asyncio")
    overlap_policy: OverlapPolicy = Field(default=OverlapPolicy.Allow)
    # 以下仅对 apscheduler 后端生效
    misfire_grace_seconds: Optional[int] = Field(default=30, ge=1)
    coalesce: bool = Field(default=True)
    max_instances: int = Field(default=1, ge=1)
    timezone: str = Field(default="UTC")


class KeeperConfig(BaseModel):
    enabled: bool = Field(default=True)
    interval_ms: int = Field(default=120_000, gt=0)  # 2 分钟
    run_on_start: bool = Field(default=True)
    task_id: str = Field(default="keeper.cycle", min_length=1)


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO")


class Settings(BaseModel):
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    keeper: KeeperConfig = Field(default_factory=KeeperConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @staticmethod
    def from_yaml(path: Optional[Path | str] = None) -> "Settings":
        """从 YAML 文件加载配置（叠加默认值，不读取环境变量）"""
        from .loaders import (
            CompositeConfigLoader,
            ConfigParser,
            DefaultConfigLoader,
            YamlConfigLoader,
        )

        loader = CompositeConfigLoader([DefaultConfigLoader(), YamlConfigLoader(path)])
        return ConfigParser.parse(loader.load())


def load_settings() -> Settings:
    """按 默认值 < YAML < 环境变量 的优先级加载配置"""
    from .loaders import ConfigParser, create_default_config_loader

    return ConfigParser.parse(create_default_config_loader().load())


_settings: Settings | None = None


def get_settings() -> Settings:
    """获取全局配置实例"""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """清除缓存的配置，下次 get_settings 时重新加载"""
    global _settings
    _settings = None
