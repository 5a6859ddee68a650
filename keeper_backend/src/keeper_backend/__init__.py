"""Keeper 后端：按 ID 管理周期/一次性异步任务的调度器及其服务外壳"""

__version__ = "1.0.0"
