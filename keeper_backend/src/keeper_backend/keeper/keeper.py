"""Keeper: 基于 TaskScheduler 的周期性自动化循环

keeper 启动时先执行一次完整周期，然后在调度器中注册一个周期任务，
按固定间隔重复执行。每个周期依次运行所有步骤，单个步骤失败只记录错误，
不影响后续步骤，也不影响下一个周期。
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from ..config.settings import KeeperConfig
from ..scheduling import TaskScheduler
from .steps import KeeperStep

logger = logging.getLogger("keeper.keeper")


@dataclass
class KeeperStatus:
    """keeper 运行状态"""

    is_running: bool
    task_id: str
    interval_ms: int
    cycles_run: int = 0
    last_execution: Optional[datetime] = None
    last_errors: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_running": self.is_running,
            "task_id": self.task_id,
            "interval_ms": self.interval_ms,
            "cycles_run": self.cycles_run,
            "last_execution": (
                self.last_execution.isoformat() if self.last_execution else None
            ),
            "last_errors": dict(self.last_errors),
        }


class Keeper:
    """周期性自动化循环"""

    def __init__(
        self,
        scheduler: TaskScheduler,
        steps: Iterable[KeeperStep] = (),
        interval_ms: int = 120_000,
        task_id: str = "keeper.cycle",
        run_on_start: bool = True,
    ):
        """初始化 keeper

        Args:
            scheduler: 用于注册周期任务的调度器
            steps: 每个周期依次执行的步骤
            interval_ms: 周期间隔（毫秒），默认 2 分钟
            task_id: 周期任务在调度器中的 ID
            run_on_start: 启动时是否立即执行一次周期
        """
        self.scheduler = scheduler
        self.steps: List[KeeperStep] = list(steps)
        self.interval_ms = interval_ms
        self.task_id = task_id
        self.run_on_start = run_on_start

        self._running = False
        # 每次 start/stop 递增，用于识别过期的 start
        self._generation = 0
        self._cycles_run = 0
        self._last_execution: Optional[datetime] = None
        self._last_errors: Dict[str, str] = {}
        # 定时周期与手动触发不并发执行
        self._cycle_lock = asyncio.Lock()

    @classmethod
    def from_config(
        cls,
        scheduler: TaskScheduler,
        config: KeeperConfig,
        steps: Iterable[KeeperStep] = (),
    ) -> "Keeper":
        return cls(
            scheduler,
            steps,
            interval_ms=config.interval_ms,
            task_id=config.task_id,
            run_on_start=config.run_on_start,
        )

    def is_running(self) -> bool:
        """keeper 已启动且周期任务仍在调度器中

        周期任务被外部取消（如通过 API）后视为未运行，可以再次 start。
        """
        return self._running and self.scheduler.has(self.task_id)

    async def start(self) -> None:
        """启动 keeper（幂等）"""
        if self.is_running():
            logger.warning("Keeper is already running")
            return

        logger.info("Starting keeper automation (every %dms)", self.interval_ms)
        self._running = True
        self._generation += 1
        generation = self._generation

        try:
            if self.run_on_start:
                await self._execute_cycle()
            if not self._running or generation != self._generation:
                # 首个周期执行期间被 stop 或被新的 start 接管
                logger.info("Keeper start superseded, not scheduling")
                return
            self.scheduler.schedule_recurring(
                self.task_id, self._execute_cycle, self.interval_ms
            )
        except BaseException:
            if generation == self._generation:
                self._running = False
            raise

        logger.info("Keeper started successfully")

    async def stop(self) -> None:
        """停止 keeper（幂等），只取消 keeper 自己的周期任务"""
        if not self._running and not self.scheduler.has(self.task_id):
            logger.warning("Keeper is not running")
            return

        logger.info("Stopping keeper automation")
        self._running = False
        self._generation += 1
        self.scheduler.cancel(self.task_id)
        logger.info("Keeper stopped successfully")

    async def emergency_stop(self) -> None:
        """紧急停止：停止 keeper 并清空调度器中的全部任务"""
        logger.warning("Emergency stop triggered for keeper")
        if self._running:
            await self.stop()
        self.scheduler.clear_all()

    async def trigger_manual_execution(self) -> KeeperStatus:
        """立即执行一次周期"""
        logger.info("Manual keeper execution triggered")
        await self._execute_cycle()
        return self.get_status()

    def get_status(self) -> KeeperStatus:
        return KeeperStatus(
            is_running=self.is_running(),
            task_id=self.task_id,
            interval_ms=self.interval_ms,
            cycles_run=self._cycles_run,
            last_execution=self._last_execution,
            last_errors=dict(self._last_errors),
        )

    async def _execute_cycle(self) -> None:
        async with self._cycle_lock:
            logger.info("Executing keeper cycle (%d steps)", len(self.steps))
            for step in self.steps:
                try:
                    await step.run()
                except Exception as exc:
                    logger.exception("Keeper step failed: step=%s error=%s", step.name, exc)
                    self._last_errors[step.name] = f"{type(exc).__name__}: {exc}"
                else:
                    self._last_errors.pop(step.name, None)

            self._cycles_run += 1
            self._last_execution = datetime.now(timezone.utc)
            logger.info("Keeper cycle completed (cycle=%d)", self._cycles_run)
