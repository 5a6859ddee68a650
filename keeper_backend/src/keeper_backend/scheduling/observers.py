"""调度事件观察者

调度器通过观察者上报注册、失败、清除等事件，具体如何落地（日志、统计、
指标）由观察者决定。
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from .types import TaskId, TaskKind

logger = logging.getLogger("keeper.scheduler")


class SchedulerObserver:
    """观察者基类，所有钩子默认为空操作"""

    def on_scheduled(self, task_id: TaskId, kind: TaskKind, cadence_ms: float) -> None:
        pass

    def on_success(self, task_id: TaskId, elapsed_ms: float) -> None:
        pass

    def on_failure(self, task_id: TaskId, error: BaseException) -> None:
        pass

    def on_skipped(self, task_id: TaskId) -> None:
        pass

    def on_cleared(self, task_id: TaskId) -> None:
        pass


class LoggingObserver(SchedulerObserver):
    """将调度事件写入日志"""

    def __init__(self, log: Optional[logging.Logger] = None):
        self._log = log or logger

    def on_scheduled(self, task_id: TaskId, kind: TaskKind, cadence_ms: float) -> None:
        if kind is TaskKind.Recurring:
            self._log.info("Scheduled recurring task: %s (every %sms)", task_id, cadence_ms)
        else:
            self._log.info("Scheduled one-time task: %s (in %sms)", task_id, cadence_ms)

    def on_success(self, task_id: TaskId, elapsed_ms: float) -> None:
        self._log.debug("Task completed: %s (%.1fms)", task_id, elapsed_ms)

    def on_failure(self, task_id: TaskId, error: BaseException) -> None:
        self._log.error(
            "Error in scheduled task %s: %s",
            task_id,
            error,
            exc_info=(type(error), error, error.__traceback__),
        )

    def on_skipped(self, task_id: TaskId) -> None:
        self._log.warning("Skipped firing, previous run still in flight: %s", task_id)

    def on_cleared(self, task_id: TaskId) -> None:
        self._log.info("Cleared schedule: %s", task_id)


@dataclass(frozen=True)
class ExecutionStats:
    """单个任务的执行统计"""

    runs: int = 0
    failures: int = 0
    skipped: int = 0
    last_run_at: Optional[datetime] = None
    last_elapsed_ms: Optional[float] = None
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "runs": self.runs,
            "failures": self.failures,
            "skipped": self.skipped,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_elapsed_ms": self.last_elapsed_ms,
            "last_error": self.last_error,
        }


class ExecutionTracker(SchedulerObserver):
    """内存中的任务执行统计。

    记录每个任务的执行次数、失败次数、最近一次执行时间与错误，
    供状态接口展示。不做持久化，进程重启后清零。
    """

    def __init__(self) -> None:
        self._stats: Dict[TaskId, ExecutionStats] = {}
        self._lock = threading.Lock()

    def _update(
        self, task_id: TaskId, change: Callable[[ExecutionStats], ExecutionStats]
    ) -> None:
        with self._lock:
            self._stats[task_id] = change(self._stats.get(task_id, ExecutionStats()))

    def on_success(self, task_id: TaskId, elapsed_ms: float) -> None:
        now = datetime.now(timezone.utc)
        self._update(
            task_id,
            lambda s: replace(
                s,
                runs=s.runs + 1,
                last_run_at=now,
                last_elapsed_ms=elapsed_ms,
                last_error=None,
            ),
        )

    def on_failure(self, task_id: TaskId, error: BaseException) -> None:
        now = datetime.now(timezone.utc)
        message = f"{type(error).__name__}: {error}"
        self._update(
            task_id,
            lambda s: replace(
                s,
                runs=s.runs + 1,
                failures=s.failures + 1,
                last_run_at=now,
                last_error=message,
            ),
        )

    def on_skipped(self, task_id: TaskId) -> None:
        self._update(task_id, lambda s: replace(s, skipped=s.skipped + 1))

    def get(self, task_id: TaskId) -> ExecutionStats:
        with self._lock:
            return self._stats.get(task_id, ExecutionStats())

    def snapshot(self) -> Dict[TaskId, Dict[str, Any]]:
        with self._lock:
            return {task_id: stats.to_dict() for task_id, stats in self._stats.items()}

    def reset(self) -> None:
        with self._lock:
            self._stats.clear()


class CompositeObserver(SchedulerObserver):
    """将事件分发给多个观察者，单个观察者出错不影响其余观察者"""

    def __init__(self, *observers: SchedulerObserver):
        self.observers = list(observers)

    def _each(self, hook: str, *args: Any) -> None:
        for observer in self.observers:
            try:
                getattr(observer, hook)(*args)
            except Exception:
                logger.exception("Observer %r failed in %s", observer, hook)

    def on_scheduled(self, task_id: TaskId, kind: TaskKind, cadence_ms: float) -> None:
        self._each("on_scheduled", task_id, kind, cadence_ms)

    def on_success(self, task_id: TaskId, elapsed_ms: float) -> None:
        self._each("on_success", task_id, elapsed_ms)

    def on_failure(self, task_id: TaskId, error: BaseException) -> None:
        self._each("on_failure", task_id, error)

    def on_skipped(self, task_id: TaskId) -> None:
        self._each("on_skipped", task_id)

    def on_cleared(self, task_id: TaskId) -> None:
        self._each("on_cleared", task_id)
