from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

TaskId = str

# 零参数的异步动作；普通同步可调用对象同样接受，返回值被忽略
AsyncAction = Callable[[], Union[Awaitable[Any], Any]]


class TaskKind(str, Enum):
    """调度条目类型。

    - recurring: 按固定间隔反复触发，直到被显式取消
    - one_shot: 延迟触发一次，执行结束后自动移除
    """

    Recurring = "recurring"
    OneShot = "one_shot"


class OverlapPolicy(str, Enum):
    """同一注册的周期任务在上一次执行未结束时再次到期的处理方式。

    - allow: 照常派发，允许并发重叠（默认）
    - skip: 丢弃本次触发，并通过观察者上报
    """

    Allow = "allow"
    Skip = "skip"


@dataclass(eq=False)
class ActiveTimer:
    """调度器内部的一条活动计时器记录。

    以对象身份区分不同的注册：同一 id 重新注册会产生新的记录，
    旧记录的执行结束后不会误删新记录。

    Attributes:
        task_id: 任务标识
        kind: 条目类型
        handle: 计时器后端返回的不透明令牌
        cadence_ms: 周期任务的间隔或一次性任务的延迟（毫秒）
        created_at: 注册时间（UTC）
        running: 当前仍在执行中的调用次数
        fired: 已派发的次数
    """

    task_id: TaskId
    kind: TaskKind
    handle: Any
    cadence_ms: float
    created_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    running: int = 0
    fired: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "kind": self.kind.value,
            "cadence_ms": self.cadence_ms,
            "created_at": self.created_at.isoformat(),
            "running": self.running,
            "fired": self.fired,
        }


@dataclass(frozen=True)
class InvocationOutcome:
    """一次动作调用的结果（成功或失败），由调用边界统一产出。"""

    task_id: TaskId
    ok: bool
    elapsed_ms: float
    error: Optional[BaseException] = None
