"""
Asynchronous execution pipeline: job queue, request state machine, worker pool.

Exports: ExecutionPipeline, JobQueue, RetryPolicy, RequestStore, WorkerPool.
"""

from .queue import JobQueue, RetryPolicy, SweepReport
from .requests import RequestStore
from .service import ExecutionPipeline
from .worker import WorkerPool

__all__ = [
    "ExecutionPipeline",
    "JobQueue",
    "RequestStore",
    "RetryPolicy",
    "SweepReport",
    "WorkerPool",
]
