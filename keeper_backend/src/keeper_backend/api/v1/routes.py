"""API v1 路由定义。

提供调度条目的查询、取消，以及 keeper 的手动触发。
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, status

from ...keeper import Keeper
from ...scheduling import ExecutionTracker, TaskScheduler
from ..dependencies import get_keeper, get_scheduler, get_tracker
from ..schemas import (
    CancelResponse,
    KeeperStatusResponse,
    ScheduleEntry,
    ScheduleListResponse,
)

logger = logging.getLogger("keeper.api")

router = APIRouter(prefix="/api/v1", tags=["schedules"])


def _build_entry(entry: Dict[str, Any], tracker: ExecutionTracker) -> ScheduleEntry:
    return ScheduleEntry(**entry, stats=tracker.get(entry["task_id"]).to_dict())


@router.get(
    "/schedules",
    response_model=ScheduleListResponse,
    summary="列出调度条目",
)
async def list_schedules(
    scheduler: TaskScheduler = Depends(get_scheduler),
    tracker: ExecutionTracker = Depends(get_tracker),
):
    entries = [_build_entry(entry, tracker) for entry in scheduler.snapshot().values()]
    return ScheduleListResponse(total_count=len(entries), schedules=entries)


@router.get(
    "/schedules/{task_id}",
    response_model=ScheduleEntry,
    summary="获取单个调度条目",
)
async def get_schedule(
    task_id: str,
    scheduler: TaskScheduler = Depends(get_scheduler),
    tracker: ExecutionTracker = Depends(get_tracker),
):
    entry = scheduler.get_entry(task_id)
    if entry is None:
        raise HTTPException(status_code=404, detail=f"调度条目 {task_id} 不存在")
    return _build_entry(entry, tracker)


@router.delete(
    "/schedules/{task_id}",
    response_model=CancelResponse,
    summary="取消调度条目",
)
async def cancel_schedule(
    task_id: str,
    scheduler: TaskScheduler = Depends(get_scheduler),
):
    if not scheduler.cancel(task_id):
        raise HTTPException(status_code=404, detail=f"调度条目 {task_id} 不存在")
    logger.info("Schedule cancelled via API: %s", task_id)
    return CancelResponse(task_id=task_id, cancelled=True)


@router.post(
    "/keeper/trigger",
    response_model=KeeperStatusResponse,
    summary="手动触发一次 keeper 周期",
)
async def trigger_keeper(keeper: Optional[Keeper] = Depends(get_keeper)):
    if keeper is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Keeper is disabled",
        )
    keeper_status = await keeper.trigger_manual_execution()
    return KeeperStatusResponse(**keeper_status.to_dict())
