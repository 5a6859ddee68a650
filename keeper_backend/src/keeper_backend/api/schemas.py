"""API 响应模型定义

本模块定义了 Keeper API 的响应模型，使用 Pydantic 实现数据验证和序列化。
"""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class ScheduleStats(BaseModel):
    """任务执行统计"""
    runs: int = Field(0, description="执行次数")
    failures: int = Field(0, description="失败次数")
    skipped: int = Field(0, description="因重叠被跳过的触发次数")
    last_run_at: Optional[datetime] = Field(None, description="最近一次执行时间")
    last_elapsed_ms: Optional[float] = Field(None, description="最近一次成功执行耗时（毫秒）")
    last_error: Optional[str] = Field(None, description="最近一次错误")


class ScheduleEntry(BaseModel):
    """调度条目"""
    task_id: str = Field(..., description="任务 ID")
    kind: str = Field(..., description="recurring 或 one_shot")
    cadence_ms: float = Field(..., description="间隔或延迟（毫秒）")
    created_at: datetime = Field(..., description="注册时间")
    running: int = Field(0, description="执行中的调用数")
    fired: int = Field(0, description="已派发次数")
    stats: ScheduleStats = Field(default_factory=ScheduleStats, description="执行统计")


class ScheduleListResponse(BaseModel):
    """调度条目列表"""
    total_count: int = Field(..., description="条目总数")
    schedules: List[ScheduleEntry] = Field(..., description="条目列表")


class CancelResponse(BaseModel):
    """取消结果"""
    task_id: str = Field(..., description="任务 ID")
    cancelled: bool = Field(..., description="是否已取消")


class KeeperStatusResponse(BaseModel):
    """keeper 状态"""
    is_running: bool = Field(..., description="是否运行中")
    task_id: str = Field(..., description="周期任务 ID")
    interval_ms: int = Field(..., description="周期间隔（毫秒）")
    cycles_run: int = Field(0, description="已执行周期数")
    last_execution: Optional[datetime] = Field(None, description="最近一次周期完成时间")
    last_errors: Dict[str, str] = Field(default_factory=dict, description="各步骤最近一次错误")


class StatusResponse(BaseModel):
    """系统状态"""
    message: str = Field(..., description="状态说明")
    timestamp: datetime = Field(..., description="当前时间")
    timer_backend: str = Field(..., description="计时器后端")
    overlap_policy: str = Field(..., description="重叠执行策略")
    active_schedules: int = Field(..., description="活动调度条目数")
    inflight: int = Field(..., description="执行中的调用数")
    keeper: Optional[KeeperStatusResponse] = Field(None, description="keeper 状态")
