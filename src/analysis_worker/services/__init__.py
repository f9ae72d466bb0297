"""
Service Layer

The task protocol turns request messages into engine calls and engine
outcomes into RESULT/ERROR messages; the worker loop feeds it from an inbox
queue and publishes everything it emits to an outbox queue.
"""

from .task_protocol import (
    AnalysisWorker,
    Task,
    TaskKind,
    TaskRequest,
    TaskState,
    error_message,
    result_message,
)
from .worker import WorkerLoop

__all__ = [
    "AnalysisWorker",
    "Task",
    "TaskKind",
    "TaskRequest",
    "TaskState",
    "WorkerLoop",
    "error_message",
    "result_message",
]
