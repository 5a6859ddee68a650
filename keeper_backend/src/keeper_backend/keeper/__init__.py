"""Keeper 组件集合

- Keeper: 基于 TaskScheduler 的周期性自动化循环
- KeeperStep: 周期内执行的步骤基类
- FunctionStep / ReadyActionsStep: 常用步骤实现
"""

from .keeper import Keeper, KeeperStatus
from .steps import FunctionStep, KeeperStep, ReadyActionsStep

__all__ = [
    "Keeper",
    "KeeperStatus",
    "KeeperStep",
    "FunctionStep",
    "ReadyActionsStep",
]
