"""依赖注入：从 app.state 读取运行时对象"""

from __future__ import annotations

from typing import Optional

from fastapi import Request

from ..keeper import Keeper
from ..scheduling import ExecutionTracker, TaskScheduler


def get_scheduler(request: Request) -> TaskScheduler:
    return request.app.state.scheduler


def get_tracker(request: Request) -> ExecutionTracker:
    return request.app.state.tracker


def get_keeper(request: Request) -> Optional[Keeper]:
    return request.app.state.keeper
