from __future__ import annotations

import logging

import pytest

from keeper_backend.scheduling import (
    CompositeObserver,
    ExecutionTracker,
    LoggingObserver,
    SchedulerObserver,
    TaskKind,
    TaskScheduler,
    VirtualTimerBackend,
)


@pytest.mark.asyncio
async def test_execution_tracker_records_runs_and_failures():
    tracker = ExecutionTracker()
    clock = VirtualTimerBackend()
    scheduler = TaskScheduler(timer_backend=clock, observer=tracker)
    calls = []

    async def flaky():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("first run fails")

    scheduler.schedule_recurring("flaky", flaky, 100)
    await clock.advance(300)
    await scheduler.wait_idle()

    stats = tracker.get("flaky")
    assert stats.runs == 3
    assert stats.failures == 1
    assert stats.last_error is None
    assert stats.last_run_at is not None
    assert stats.last_elapsed_ms is not None

    snapshot = tracker.snapshot()
    assert snapshot["flaky"]["runs"] == 3

    tracker.reset()
    assert tracker.get("flaky").runs == 0


def test_execution_tracker_keeps_last_error():
    tracker = ExecutionTracker()

    tracker.on_failure("job", ValueError("bad input"))
    tracker.on_skipped("job")

    stats = tracker.get("job")
    assert stats.last_error == "ValueError: bad input"
    assert stats.skipped == 1
    assert tracker.get("unknown").runs == 0


class ExplodingObserver(SchedulerObserver):
    def on_cleared(self, task_id):
        raise RuntimeError("exploded")


def test_composite_observer_isolates_children(caplog):
    tracker = ExecutionTracker()
    seen = []

    class Recorder(SchedulerObserver):
        def on_cleared(self, task_id):
            seen.append(task_id)

    composite = CompositeObserver(ExplodingObserver(), tracker, Recorder())

    with caplog.at_level(logging.ERROR, logger="keeper.scheduler"):
        composite.on_cleared("a")
        composite.on_success("a", 1.5)

    assert seen == ["a"]
    assert tracker.get("a").runs == 1
    assert "exploded" in caplog.text


def test_logging_observer_writes_records(caplog):
    observer = LoggingObserver()

    with caplog.at_level(logging.DEBUG, logger="keeper.scheduler"):
        observer.on_scheduled("ping", TaskKind.Recurring, 100)
        observer.on_scheduled("sync", TaskKind.OneShot, 10)
        try:
            raise RuntimeError("rpc timeout")
        except RuntimeError as exc:
            observer.on_failure("ping", exc)
        observer.on_skipped("ping")
        observer.on_cleared("ping")

    messages = [record.getMessage() for record in caplog.records]
    assert "Scheduled recurring task: ping (every 100ms)" in messages
    assert "Scheduled one-time task: sync (in 10ms)" in messages
    assert "Cleared schedule: ping" in messages

    failure = next(r for r in caplog.records if r.levelno == logging.ERROR)
    assert "rpc timeout" in failure.getMessage()
    assert failure.exc_info is not None
