"""TaskScheduler: 按 ID 管理周期/一次性异步动作的调度器

- 每个任务 ID 同一时刻最多只有一个活动计时器，重复注册时先取消旧计时器再布置新计时器
- 每次触发都作为独立的 asyncio Task 执行，异常在调用边界被捕获并上报给观察者
- 周期任务失败后继续按节拍触发；一次性任务无论成败，执行结束后都会自动移除
- 注册、取消、清空均为同步操作，立即返回，不等待任何动作执行

调度器没有全局单例，调用方持有显式引用，并可注入计时器后端与观察者。
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import logging
import math
import threading
import time
from typing import Any, Dict, List, Optional, Union

from .errors import ArmFailureError, InvalidCadenceError
from .observers import LoggingObserver, SchedulerObserver
from .timers import AsyncioTimerBackend, TimerBackend
from .types import (
    ActiveTimer,
    AsyncAction,
    InvocationOutcome,
    OverlapPolicy,
    TaskId,
    TaskKind,
)


def _validate_cadence(task_id: TaskId, value: Any) -> None:
    if (
        isinstance(value, bool)
        or not isinstance(value, (int, float))
        or not math.isfinite(value)
        or value <= 0
    ):
        raise InvalidCadenceError(task_id, value)


class TaskScheduler:
    """按 ID 管理定时动作的调度器

    Attributes:
        timer_backend: 计时器后端
        observer: 调度事件观察者
        overlap_policy: 周期任务执行重叠时的处理策略
    """

    def __init__(
        self,
        timer_backend: Optional[TimerBackend] = None,
        observer: Optional[SchedulerObserver] = None,
        overlap_policy: Union[OverlapPolicy, str] = OverlapPolicy.Allow,
    ):
        """初始化调度器

        Args:
            timer_backend: 计时器后端，默认使用基于事件循环的 AsyncioTimerBackend
            observer: 观察者，默认仅写日志
            overlap_policy: allow 允许重叠执行；skip 在上一次执行未结束时跳过本次触发
        """
        self.timer_backend = timer_backend or AsyncioTimerBackend()
        self.observer = observer or LoggingObserver()
        self.overlap_policy = OverlapPolicy(overlap_policy)

        self._entries: Dict[TaskId, ActiveTimer] = {}
        # 多线程调用方也能保证“每个 ID 至多一个计时器”
        self._lock = threading.RLock()
        # 持有执行中 Task 的强引用，直到其完成
        self._inflight: set[asyncio.Task] = set()

        self._log = logging.getLogger("keeper.scheduler")

    # ------------------------------------------------------------------
    # 注册
    # ------------------------------------------------------------------

    def schedule_recurring(
        self, task_id: TaskId, action: AsyncAction, interval_ms: float
    ) -> None:
        """注册周期任务

        Args:
            task_id: 任务 ID，已存在时先取消旧任务
            action: 零参数异步动作
            interval_ms: 触发间隔（毫秒），必须大于 0

        Raises:
            InvalidCadenceError: interval_ms 不是正数
            ArmFailureError: 计时器布置失败
        """
        self._register(task_id, action, interval_ms, TaskKind.Recurring)

    def schedule_once(self, task_id: TaskId, action: AsyncAction, delay_ms: float) -> None:
        """注册一次性任务

        Args:
            task_id: 任务 ID，已存在时先取消旧任务
            action: 零参数异步动作
            delay_ms: 延迟（毫秒），必须大于 0

        Raises:
            InvalidCadenceError: delay_ms 不是正数
            ArmFailureError: 计时器布置失败
        """
        self._register(task_id, action, delay_ms, TaskKind.OneShot)

    def _register(
        self, task_id: TaskId, action: AsyncAction, cadence_ms: float, kind: TaskKind
    ) -> None:
        # 先校验，非法注册不影响已有条目
        _validate_cadence(task_id, cadence_ms)
        if not callable(action):
            raise TypeError(f"action for task '{task_id}' must be callable")

        arm_error: Optional[Exception] = None
        with self._lock:
            replaced = self._remove_locked(task_id)

            entry = ActiveTimer(
                task_id=task_id, kind=kind, handle=None, cadence_ms=cadence_ms
            )
            callback = functools.partial(self._fire, entry, action)
            try:
                if kind is TaskKind.Recurring:
                    entry.handle = self.timer_backend.arm_interval(cadence_ms, callback)
                else:
                    entry.handle = self.timer_backend.arm_once(cadence_ms, callback)
            except Exception as exc:
                arm_error = exc
            else:
                self._entries[task_id] = entry

        if replaced:
            self._notify("on_cleared", task_id)
        if arm_error is not None:
            self._log.error("Failed to arm timer: id=%s error=%s", task_id, arm_error)
            raise ArmFailureError(task_id, str(arm_error)) from arm_error
        self._notify("on_scheduled", task_id, kind, cadence_ms)

    # ------------------------------------------------------------------
    # 取消
    # ------------------------------------------------------------------

    def cancel(self, task_id: TaskId) -> bool:
        """取消任务，不会中断已在执行中的动作

        Returns:
            任务存在并被取消时返回 True，不存在时返回 False
        """
        with self._lock:
            removed = self._remove_locked(task_id)
        if removed:
            self._notify("on_cleared", task_id)
        return removed

    def clear_all(self) -> None:
        """取消全部任务（周期与一次性）"""
        with self._lock:
            entries = list(self._entries.values())
            self._entries.clear()
            for entry in entries:
                self._disarm(entry)

        for entry in entries:
            self._notify("on_cleared", entry.task_id)
        if entries:
            self._log.info("All schedules cleared (%d)", len(entries))

    def _remove_locked(self, task_id: TaskId) -> bool:
        entry = self._entries.pop(task_id, None)
        if entry is None:
            return False
        self._disarm(entry)
        return True

    def _disarm(self, entry: ActiveTimer) -> None:
        try:
            self.timer_backend.cancel(entry.handle)
        except Exception:
            # 条目已移除，残留的触发会因身份校验被丢弃
            self._log.exception("Failed to cancel timer: id=%s", entry.task_id)

    # ------------------------------------------------------------------
    # 查询
    # ------------------------------------------------------------------

    def active_count(self) -> int:
        return len(self._entries)

    def active_ids(self) -> List[TaskId]:
        with self._lock:
            return list(self._entries)

    def has(self, task_id: TaskId) -> bool:
        return task_id in self._entries

    def get_entry(self, task_id: TaskId) -> Optional[Dict[str, Any]]:
        """返回单个条目的只读视图，不存在时返回 None"""
        with self._lock:
            entry = self._entries.get(task_id)
            return entry.to_dict() if entry else None

    def snapshot(self) -> Dict[TaskId, Dict[str, Any]]:
        """返回调度表快照，方便对外暴露"""
        with self._lock:
            return {task_id: entry.to_dict() for task_id, entry in self._entries.items()}

    def inflight_count(self) -> int:
        return sum(1 for task in self._inflight if not task.done())

    def __len__(self) -> int:
        return self.active_count()

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._entries

    # ------------------------------------------------------------------
    # 触发与执行
    # ------------------------------------------------------------------

    def _fire(self, entry: ActiveTimer, action: AsyncAction) -> None:
        skipped = False
        with self._lock:
            if self._entries.get(entry.task_id) is not entry:
                # 已被取消或替换，迟到的触发直接丢弃
                return
            if self.overlap_policy is OverlapPolicy.Skip and entry.running > 0:
                skipped = True
            else:
                entry.running += 1
                entry.fired += 1

        if skipped:
            self._notify("on_skipped", entry.task_id)
            return

        task = asyncio.get_running_loop().create_task(
            self._invoke(entry, action), name=f"keeper-task:{entry.task_id}"
        )
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _invoke(self, entry: ActiveTimer, action: AsyncAction) -> None:
        started = time.perf_counter()
        try:
            try:
                result = action()
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                outcome = InvocationOutcome(
                    task_id=entry.task_id,
                    ok=False,
                    elapsed_ms=(time.perf_counter() - started) * 1000,
                    error=exc,
                )
            else:
                outcome = InvocationOutcome(
                    task_id=entry.task_id,
                    ok=True,
                    elapsed_ms=(time.perf_counter() - started) * 1000,
                )
            self._report(outcome)
        finally:
            self._settle(entry)

    def _report(self, outcome: InvocationOutcome) -> None:
        """把调用结果转交给观察者"""
        if outcome.ok:
            self._notify("on_success", outcome.task_id, outcome.elapsed_ms)
        else:
            self._notify("on_failure", outcome.task_id, outcome.error)

    def _settle(self, entry: ActiveTimer) -> None:
        removed = False
        with self._lock:
            entry.running -= 1
            if (
                entry.kind is TaskKind.OneShot
                and self._entries.get(entry.task_id) is entry
            ):
                del self._entries[entry.task_id]
                removed = True
        if removed:
            self._notify("on_cleared", entry.task_id)

    def _notify(self, hook: str, *args: Any) -> None:
        try:
            getattr(self.observer, hook)(*args)
        except Exception:
            self._log.exception("Observer hook %s failed: args=%s", hook, args)

    # ------------------------------------------------------------------
    # 生命周期
    # ------------------------------------------------------------------

    async def wait_idle(self) -> None:
        """等待所有执行中的动作结束，不抛出动作异常"""
        while True:
            pending = [task for task in self._inflight if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def shutdown(self) -> None:
        """清空调度表、等待执行中的动作结束并关闭计时器后端"""
        self.clear_all()
        await self.wait_idle()
        self.timer_backend.close()
        self._log.info("Task scheduler shut down")
