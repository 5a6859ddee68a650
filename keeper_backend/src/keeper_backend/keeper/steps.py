"""KeeperStep: keeper 每个周期依次执行的步骤"""

from __future__ import annotations

import inspect
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Union

logger = logging.getLogger("keeper.keeper")


class KeeperStep(ABC):
    """keeper 步骤基类

    每个步骤代表一个周期内要完成的一项检查或动作，具体做什么（链上读取、
    通知用户等）由派生类决定。

    Attributes:
        name: 唯一标识符，用于记录错误
    """

    def __init__(self, name: str):
        self.name = name

    @abstractmethod
    async def run(self) -> None:
        """执行一次该步骤"""
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name='{self.name}')"


class FunctionStep(KeeperStep):
    """将零参数的（异步）函数包装为步骤"""

    def __init__(self, name: str, func: Callable[[], Any]):
        super().__init__(name)
        self._func = func

    async def run(self) -> None:
        result = self._func()
        if inspect.isawaitable(result):
            await result


class ReadyActionsStep(KeeperStep):
    """检查已到期可执行的自动化动作（止损、止盈等），有则通知

    Args:
        fetch_ready: 返回到期动作 ID 列表的异步函数
        notify: 收到非空 ID 列表时调用，可为同步或异步函数
    """

    def __init__(
        self,
        fetch_ready: Callable[[], Awaitable[Sequence[int]]],
        notify: Optional[Callable[[List[int]], Union[Awaitable[None], None]]] = None,
        name: str = "ready_actions",
    ):
        super().__init__(name)
        self._fetch_ready = fetch_ready
        self._notify = notify
        self.last_ready: List[int] = []

    async def run(self) -> None:
        ready = [int(action_id) for action_id in (await self._fetch_ready() or [])]
        self.last_ready = ready

        if not ready:
            logger.info("No actions ready for execution")
            return

        logger.info(
            "Found %d ready actions: %s", len(ready), ", ".join(map(str, ready))
        )
        if self._notify is not None:
            result = self._notify(ready)
            if inspect.isawaitable(result):
                await result
