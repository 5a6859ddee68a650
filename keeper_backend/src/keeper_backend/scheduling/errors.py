"""调度器异常定义"""

from __future__ import annotations

from typing import Any, Optional


class SchedulerError(Exception):
    """调度器异常基类"""


class InvalidCadenceError(SchedulerError, ValueError):
    """间隔或延迟不是正数时在注册阶段抛出，从不静默修正。"""

    def __init__(self, task_id: str, value: Any):
        self.task_id = task_id
        self.value = value
        super().__init__(
            f"Invalid cadence for task '{task_id}': {value!r} (must be > 0 ms)"
        )


class ArmFailureError(SchedulerError):
    """底层计时器创建失败，注册调用以此异常失败。"""

    def __init__(self, task_id: str, reason: Optional[str] = None):
        self.task_id = task_id
        self.reason = reason
        message = f"Failed to arm timer for task '{task_id}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
