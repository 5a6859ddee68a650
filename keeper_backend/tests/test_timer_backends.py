from __future__ import annotations

import asyncio

import pytest

from keeper_backend.config.settings import SchedulerConfig
from keeper_backend.scheduling import (
    APSchedulerTimerBackend,
    AsyncioTimerBackend,
    TaskScheduler,
    VirtualTimerBackend,
    create_timer_backend,
)


@pytest.mark.asyncio
async def test_virtual_backend_fires_in_deadline_order():
    clock = VirtualTimerBackend()
    fired = []

    clock.arm_once(30, lambda: fired.append(("once", clock.now_ms)))
    clock.arm_interval(20, lambda: fired.append(("every", clock.now_ms)))

    await clock.advance(60)

    assert fired == [
        ("every", 20),
        ("once", 30),
        ("every", 40),
        ("every", 60),
    ]
    assert clock.now_ms == 60


@pytest.mark.asyncio
async def test_virtual_backend_cancel_and_pending():
    clock = VirtualTimerBackend()
    fired = []

    once = clock.arm_once(10, lambda: fired.append("once"))
    every = clock.arm_interval(10, lambda: fired.append("every"))
    assert clock.pending() == 2

    clock.cancel(once)
    assert clock.pending() == 1

    await clock.advance(10)
    clock.cancel(every)
    clock.cancel(every)
    await clock.advance(100)

    assert fired == ["every"]
    assert clock.pending() == 0


@pytest.mark.asyncio
async def test_asyncio_backend_recurring_timer():
    backend = AsyncioTimerBackend()
    fired = []

    token = backend.arm_interval(10, lambda: fired.append(1))
    await asyncio.sleep(0.08)
    backend.cancel(token)
    count = len(fired)

    assert count >= 2
    await asyncio.sleep(0.04)
    assert len(fired) == count


@pytest.mark.asyncio
async def test_asyncio_backend_one_shot_timer():
    backend = AsyncioTimerBackend()
    fired = []
    cancelled = []

    token = backend.arm_once(10, lambda: fired.append(1))
    pending = backend.arm_once(20, lambda: cancelled.append(1))
    backend.cancel(pending)

    await asyncio.sleep(0.06)

    assert fired == [1]
    assert cancelled == []
    # 已触发的令牌再次取消是空操作
    backend.cancel(token)


@pytest.mark.asyncio
async def test_asyncio_backend_with_scheduler():
    scheduler = TaskScheduler(timer_backend=AsyncioTimerBackend())
    calls = []

    async def action():
        calls.append(1)

    scheduler.schedule_once("once", action, 10)
    await asyncio.sleep(0.05)
    await scheduler.wait_idle()

    assert calls == [1]
    assert not scheduler.has("once")
    await scheduler.shutdown()


@pytest.mark.asyncio
async def test_apscheduler_backend_runs_recurring_and_one_shot():
    backend = APSchedulerTimerBackend()
    scheduler = TaskScheduler(timer_backend=backend)
    once_calls = []
    every_calls = []

    async def once():
        once_calls.append(1)

    async def every():
        every_calls.append(1)

    scheduler.schedule_once("once", once, 20)
    scheduler.schedule_recurring("every", every, 40)
    assert backend.scheduler.running

    await asyncio.sleep(0.3)
    await scheduler.wait_idle()

    assert once_calls == [1]
    assert not scheduler.has("once")
    assert len(every_calls) >= 2
    assert scheduler.has("every")

    await scheduler.shutdown()
    # AsyncIOScheduler 的 shutdown 在事件循环的下一轮才完成
    await asyncio.sleep(0.01)
    assert not backend.scheduler.running


@pytest.mark.asyncio
async def test_apscheduler_backend_cancel_removes_job():
    backend = APSchedulerTimerBackend()
    fired = []

    token = backend.arm_interval(1000, lambda: fired.append(1))
    assert backend.scheduler.get_job(token) is not None

    backend.cancel(token)
    assert backend.scheduler.get_job(token) is None

    # 未知或已移除的 job 取消时不报错
    backend.cancel(token)
    backend.cancel("missing")

    backend.close()
    await asyncio.sleep(0.01)
    assert fired == []


@pytest.mark.asyncio
async def test_apscheduler_backend_close_is_idempotent():
    backend = APSchedulerTimerBackend()
    backend.arm_once(1000, lambda: None)

    backend.close()
    backend.close()
    await asyncio.sleep(0.01)
    backend.close()

    assert not backend.scheduler.running
    with pytest.raises(RuntimeError):
        backend.arm_once(10, lambda: None)


@pytest.mark.asyncio
async def test_apscheduler_backend_close_before_start():
    backend = APSchedulerTimerBackend()

    backend.close()

    assert not backend.scheduler.running


@pytest.mark.asyncio
async def test_asyncio_backend_arm_and_cancel_from_other_thread():
    backend = AsyncioTimerBackend(loop=asyncio.get_running_loop())
    fired = []
    skipped = []

    await asyncio.to_thread(backend.arm_once, 10, lambda: fired.append(1))
    token = await asyncio.to_thread(backend.arm_once, 30, lambda: skipped.append(1))
    await asyncio.to_thread(backend.cancel, token)

    await asyncio.sleep(0.08)

    assert fired == [1]
    assert skipped == []


@pytest.mark.asyncio
async def test_scheduler_registration_from_other_thread():
    scheduler = TaskScheduler(
        timer_backend=AsyncioTimerBackend(loop=asyncio.get_running_loop())
    )
    calls = []

    async def action():
        calls.append(1)

    await asyncio.to_thread(scheduler.schedule_once, "worker.once", action, 10)
    assert scheduler.has("worker.once")

    await asyncio.sleep(0.06)
    await scheduler.wait_idle()

    assert calls == [1]
    assert not scheduler.has("worker.once")
    await scheduler.shutdown()


def test_backend_names():
    assert AsyncioTimerBackend.name == "asyncio"
    assert APSchedulerTimerBackend.name == "apscheduler"
    assert VirtualTimerBackend.name == "virtual"


def test_create_timer_backend_from_config():
    assert isinstance(
        create_timer_backend(SchedulerConfig(timer_backend="asyncio")),
        AsyncioTimerBackend,
    )

    backend = create_timer_backend(
        SchedulerConfig(timer_backend="apscheduler", max_instances=3)
    )
    assert isinstance(backend, APSchedulerTimerBackend)
    assert backend.scheduler._job_defaults["max_instances"] == 3
