"""计时器后端

调度器只依赖一个极小的接口 {arm(间隔|延迟, 回调) -> 令牌, cancel(令牌)}，
具体的计时原语由后端提供：

- AsyncioTimerBackend: 直接基于事件循环的 call_at
- APSchedulerTimerBackend: 基于 APScheduler 的 AsyncIOScheduler
- VirtualTimerBackend: 虚拟时钟，测试时快进时间而无需真实等待

回调均为同步、零参数，并且总是在事件循环所在线程中被调用。
AsyncioTimerBackend 允许从其他线程布置和取消计时器。
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Callable, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

if TYPE_CHECKING:
    from ..config.settings import SchedulerConfig

TimerCallback = Callable[[], None]

logger = logging.getLogger("keeper.timers")


class TimerBackend(ABC):
    """计时器后端抽象基类

    Attributes:
        name: 后端名称，用于状态展示
    """

    name = "custom"

    @abstractmethod
    def arm_interval(self, interval_ms: float, callback: TimerCallback) -> Any:
        """布置周期计时器，返回可取消的令牌"""
        raise NotImplementedError

    @abstractmethod
    def arm_once(self, delay_ms: float, callback: TimerCallback) -> Any:
        """布置一次性计时器，返回可取消的令牌"""
        raise NotImplementedError

    @abstractmethod
    def cancel(self, token: Any) -> None:
        """取消计时器。对已触发或已取消的令牌必须是空操作。"""
        raise NotImplementedError

    def close(self) -> None:
        """释放后端持有的资源"""


class _LoopTimer:
    __slots__ = ("interval", "callback", "repeat", "deadline", "handle", "cancelled")

    def __init__(self, interval: float, callback: TimerCallback, repeat: bool):
        self.interval = interval
        self.callback = callback
        self.repeat = repeat
        self.deadline = 0.0
        self.handle: Optional[asyncio.TimerHandle] = None
        self.cancelled = False


class AsyncioTimerBackend(TimerBackend):
    """基于 loop.call_at 的计时器后端。

    周期计时器以上一个截止时间为基准重新布置，避免漂移累积；
    若已落后一个周期以上，则从当前时间重新起算，不做补发。

    可以在其他线程中布置或取消计时器，此时通过 call_soon_threadsafe
    转交给事件循环线程，前提是事件循环已知（构造时传入 loop，
    或此前已在事件循环中布置过计时器）。
    """

    name = "asyncio"

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            # 没有运行中的事件循环时抛出 RuntimeError，由调度器转换为 ArmFailureError
            self._loop = asyncio.get_running_loop()
        return self._loop

    @staticmethod
    def _on_loop_thread(loop: asyncio.AbstractEventLoop) -> bool:
        try:
            return asyncio.get_running_loop() is loop
        except RuntimeError:
            return False

    def arm_interval(self, interval_ms: float, callback: TimerCallback) -> _LoopTimer:
        return self._arm(interval_ms, callback, repeat=True)

    def arm_once(self, delay_ms: float, callback: TimerCallback) -> _LoopTimer:
        return self._arm(delay_ms, callback, repeat=False)

    def _arm(self, ms: float, callback: TimerCallback, *, repeat: bool) -> _LoopTimer:
        loop = self._get_loop()
        timer = _LoopTimer(ms / 1000.0, callback, repeat)
        if self._on_loop_thread(loop):
            self._schedule(loop, timer)
        else:
            loop.call_soon_threadsafe(self._schedule, loop, timer)
        return timer

    def _schedule(self, loop: asyncio.AbstractEventLoop, timer: _LoopTimer) -> None:
        if timer.cancelled:
            return
        timer.deadline = loop.time() + timer.interval
        timer.handle = loop.call_at(timer.deadline, self._fire, timer)

    def _fire(self, timer: _LoopTimer) -> None:
        if timer.cancelled:
            return
        if timer.repeat:
            loop = self._get_loop()
            timer.deadline += timer.interval
            now = loop.time()
            if timer.deadline <= now:
                timer.deadline = now + timer.interval
            # 先重新布置再派发，回调异常不会中断周期
            timer.handle = loop.call_at(timer.deadline, self._fire, timer)
        else:
            timer.cancelled = True
        timer.callback()

    def cancel(self, token: _LoopTimer) -> None:
        # 标记后即使句柄仍到期，_fire 也不会再派发
        token.cancelled = True
        handle, token.handle = token.handle, None
        if handle is None:
            return
        loop = self._loop
        if loop is None or self._on_loop_thread(loop):
            handle.cancel()
        else:
            loop.call_soon_threadsafe(handle.cancel)


async def _dispatch(callback: TimerCallback) -> None:
    # 以协程形式提交给 AsyncIOExecutor，保证回调运行在事件循环线程中
    callback()


class APSchedulerTimerBackend(TimerBackend):
    """基于 APScheduler AsyncIOScheduler 的计时器后端。

    令牌即 APScheduler 的 job id。调度器在首次布置计时器时惰性启动，
    以便在事件循环内绑定。

    Attributes:
        scheduler: 底层 AsyncIOScheduler 实例
    """

    name = "apscheduler"

    def __init__(
        self,
        scheduler: Optional[AsyncIOScheduler] = None,
        *,
        coalesce: bool = True,
        max_instances: int = 1,
        misfire_grace_time: Optional[int] = 30,
        timezone: str = "UTC",
    ):
        self.scheduler = scheduler or AsyncIOScheduler(
            job_defaults={
                "coalesce": coalesce,  # 多个待执行实例合并
                "max_instances": max_instances,
                "misfire_grace_time": misfire_grace_time,
            },
            timezone=timezone,
        )
        # shutdown 在事件循环中异步完成，running 不能作为是否已关闭的依据
        self._closed = False

    def _ensure_started(self) -> None:
        if self._closed:
            raise RuntimeError("APScheduler backend is closed")
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("APScheduler backend started")

    def arm_interval(self, interval_ms: float, callback: TimerCallback) -> str:
        self._ensure_started()
        job = self.scheduler.add_job(
            _dispatch,
            trigger=IntervalTrigger(seconds=interval_ms / 1000.0),
            args=[callback],
            id=uuid.uuid4().hex,
        )
        return job.id

    def arm_once(self, delay_ms: float, callback: TimerCallback) -> str:
        self._ensure_started()
        run_date = datetime.now(timezone.utc) + timedelta(milliseconds=delay_ms)
        job = self.scheduler.add_job(
            _dispatch,
            trigger=DateTrigger(run_date=run_date),
            args=[callback],
            id=uuid.uuid4().hex,
            # 一次性任务无论多晚都要执行，否则调度表中会残留条目
            misfire_grace_time=None,
        )
        return job.id

    def cancel(self, token: str) -> None:
        try:
            self.scheduler.remove_job(token)
        except JobLookupError:
            # 一次性 job 触发后已被 APScheduler 自动移除
            logger.debug("APScheduler job already gone: %s", token)

    def close(self) -> None:
        """关闭底层调度器（幂等）"""
        if self._closed:
            return
        self._closed = True
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("APScheduler backend stopped")


class _VirtualTimer:
    __slots__ = ("interval", "callback", "repeat", "deadline", "cancelled")

    def __init__(
        self, interval: float, callback: TimerCallback, repeat: bool, deadline: float
    ):
        self.interval = interval
        self.callback = callback
        self.repeat = repeat
        self.deadline = deadline
        self.cancelled = False


class VirtualTimerBackend(TimerBackend):
    """虚拟时钟计时器后端。

    时间只在调用 ``advance`` 时前进；到期计时器按截止时间顺序触发，
    每次触发后让出一次事件循环，使被派发的动作得以开始执行。

    Example:
        clock = VirtualTimerBackend()
        scheduler = TaskScheduler(timer_backend=clock)
        scheduler.schedule_recurring("ping", ping, 100)
        await clock.advance(250)   # ping 触发两次
        await scheduler.wait_idle()
    """

    name = "virtual"

    def __init__(self) -> None:
        self._now = 0.0
        self._heap: list[tuple[float, int, _VirtualTimer]] = []
        self._seq = itertools.count()

    @property
    def now_ms(self) -> float:
        return self._now

    def arm_interval(self, interval_ms: float, callback: TimerCallback) -> _VirtualTimer:
        timer = _VirtualTimer(interval_ms, callback, True, self._now + interval_ms)
        self._push(timer)
        return timer

    def arm_once(self, delay_ms: float, callback: TimerCallback) -> _VirtualTimer:
        timer = _VirtualTimer(delay_ms, callback, False, self._now + delay_ms)
        self._push(timer)
        return timer

    def cancel(self, token: _VirtualTimer) -> None:
        token.cancelled = True

    def pending(self) -> int:
        """尚未取消、尚未触发完毕的计时器数量"""
        return sum(1 for _, _, timer in self._heap if not timer.cancelled)

    def _push(self, timer: _VirtualTimer) -> None:
        heapq.heappush(self._heap, (timer.deadline, next(self._seq), timer))

    async def advance(self, ms: float) -> None:
        """将虚拟时间前进 ms 毫秒，并触发期间到期的所有计时器"""
        target = self._now + ms
        while self._heap and self._heap[0][0] <= target:
            deadline, _, timer = heapq.heappop(self._heap)
            if timer.cancelled:
                continue
            self._now = deadline
            if timer.repeat:
                timer.deadline = deadline + timer.interval
                self._push(timer)
            else:
                timer.cancelled = True
            timer.callback()
            await asyncio.sleep(0)
        self._now = target


def create_timer_backend(config: "SchedulerConfig") -> TimerBackend:
    """根据配置创建计时器后端

    Args:
        config: 调度器配置

    Returns:
        计时器后端实例

    Raises:
        ValueError: 未知的后端名称
    """
    name = config.timer_backend
    if name == "asyncio":
        return AsyncioTimerBackend()
    if name == "apscheduler":
        return APSchedulerTimerBackend(
            coalesce=config.coalesce,
            max_instances=config.max_instances,
            misfire_grace_time=config.misfire_grace_seconds,
            timezone=config.timezone,
        )
    raise ValueError(f"Unknown timer backend: {name}")
