"""Scheduling package public API.

Primary entrypoint:
- TaskScheduler: keyed recurring / one-time async actions, one timer per id.

Timer backends:
- AsyncioTimerBackend, APSchedulerTimerBackend, VirtualTimerBackend.

Observers:
- LoggingObserver, ExecutionTracker, CompositeObserver.
"""

from .errors import ArmFailureError, InvalidCadenceError, SchedulerError
from .observers import (
    CompositeObserver,
    ExecutionStats,
    ExecutionTracker,
    LoggingObserver,
    SchedulerObserver,
)
from .scheduler import TaskScheduler
from .timers import (
    APSchedulerTimerBackend,
    AsyncioTimerBackend,
    TimerBackend,
    VirtualTimerBackend,
    create_timer_backend,
)
from .types import (
    ActiveTimer,
    AsyncAction,
    InvocationOutcome,
    OverlapPolicy,
    TaskId,
    TaskKind,
)

__all__ = [
    "TaskScheduler",
    "TimerBackend",
    "AsyncioTimerBackend",
    "APSchedulerTimerBackend",
    "VirtualTimerBackend",
    "create_timer_backend",
    "SchedulerObserver",
    "LoggingObserver",
    "ExecutionStats",
    "ExecutionTracker",
    "CompositeObserver",
    "SchedulerError",
    "InvalidCadenceError",
    "ArmFailureError",
    "ActiveTimer",
    "AsyncAction",
    "InvocationOutcome",
    "OverlapPolicy",
    "TaskId",
    "TaskKind",
]
