"""Keeper 后端服务骨架

- FastAPI 实例
- TaskScheduler 与 Keeper 的生命周期管理（应用启动/关闭）
- 调度条目查询与管理接口

调度器不是模块级单例：由 lifespan 创建并挂在 app.state 上，路由通过依赖注入获取。
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Iterable, Optional

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.dependencies import get_keeper, get_scheduler
from .api.schemas import KeeperStatusResponse, StatusResponse
from .api.v1 import router as api_v1_router
from .config.settings import Settings, get_settings
from .keeper import Keeper, KeeperStep
from .scheduling import (
    CompositeObserver,
    ExecutionTracker,
    LoggingObserver,
    TaskScheduler,
    TimerBackend,
    create_timer_backend,
)
from .utils.logging import setup_logging


def create_app(
    settings: Optional[Settings] = None,
    steps: Optional[Iterable[KeeperStep]] = None,
    timer_backend: Optional[TimerBackend] = None,
) -> FastAPI:
    """创建应用实例

    Args:
        settings: 配置，默认通过 get_settings() 加载
        steps: keeper 每个周期执行的步骤
        timer_backend: 计时器后端，默认按配置创建
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        cfg = settings or get_settings()
        logger = setup_logging(cfg.logging.level)
        logger.info("Application starting ...")

        tracker = ExecutionTracker()
        scheduler = TaskScheduler(
            timer_backend=timer_backend or create_timer_backend(cfg.scheduler),
            observer=CompositeObserver(LoggingObserver(), tracker),
            overlap_policy=cfg.scheduler.overlap_policy,
        )
        keeper = None
        if cfg.keeper.enabled:
            keeper = Keeper.from_config(scheduler, cfg.keeper, steps or ())

        app.state.settings = cfg
        app.state.scheduler = scheduler
        app.state.tracker = tracker
        app.state.keeper = keeper

        try:
            if keeper is not None:
                await keeper.start()
        except Exception as exc:
            logger.exception("Failed to start keeper: %s", exc)
            await scheduler.shutdown()
            raise

        logger.info(
            "Application started with %d schedules", scheduler.active_count()
        )

        try:
            yield
        finally:
            logger.info("Application shutting down ...")
            if keeper is not None and keeper.is_running():
                await keeper.stop()
            await scheduler.shutdown()

    app = FastAPI(
        title="Keeper Backend",
        description="按 ID 管理周期/一次性异步任务的调度服务",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_v1_router)

    @app.get("/", summary="健康检查 / Hello")
    async def root():
        return {"message": "Hello Keeper"}

    @app.get("/status", response_model=StatusResponse, summary="系统状态")
    async def get_status(
        scheduler: TaskScheduler = Depends(get_scheduler),
        keeper: Optional[Keeper] = Depends(get_keeper),
    ):
        keeper_status = None
        if keeper is not None:
            keeper_status = KeeperStatusResponse(**keeper.get_status().to_dict())

        return StatusResponse(
            message="Keeper Backend Service is running",
            timestamp=datetime.now(timezone.utc),
            timer_backend=scheduler.timer_backend.name,
            overlap_policy=scheduler.overlap_policy.value,
            active_schedules=scheduler.active_count(),
            inflight=scheduler.inflight_count(),
            keeper=keeper_status,
        )

    return app


app = create_app()


# 可选：uvicorn 直接运行入口
if __name__ == "__main__":  # pragma: no cover
    import uvicorn

    uvicorn.run("keeper_backend.app:app", host="0.0.0.0", port=8000, reload=True)
