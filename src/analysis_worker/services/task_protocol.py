"""
Task Protocol - request/response contract between the host and the engines.

Each request message is handled by exactly one Task, which moves through
Idle → Running → {Completed, Failed}. Whatever happens inside an engine,
``AnalysisWorker.handle`` returns a single RESULT or ERROR message tagged
with the request's correlation id, and progress events for that id are
always delivered before it.

A task is registered when it is admitted, so a queued task can be cancelled
before it starts. Each run is bounded by a per-kind time limit (overridable
with the ``timeout`` option); an expired task fails with the Cancelled kind.

Usage:
    worker = AnalysisWorker(progress_sink=print)
    response = await worker.handle({
        "type": "KMEANS_CLUSTERING",
        "correlationId": "job-1",
        "payload": [[0.0, 0.0], [0.1, 0.2], [5.0, 5.1]],
        "options": {"k": 2},
    })
"""

from __future__ import annotations

import asyncio
import traceback
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Union

import numpy as np

from ..algorithms.clustering import ClusteringEngine
from ..algorithms.correlation import CorrelationEngine
from ..algorithms.optimization import GradientDescentOptimizer
from ..config import WorkerConfig, config as default_config
from ..exceptions import (
    AnalysisWorkerError,
    ComputationFailureError,
    InvalidInputError,
    TaskCancelledError,
    TaskTimeoutError,
    UnsupportedOperationError,
)
from ..progress import CancellationToken, ProgressReporter, ProgressSink
from ..utils.logging_config import get_logger

logger = get_logger(__name__)


class TaskKind(str, Enum):
    CORRELATION_MATRIX = "CORRELATION_MATRIX"
    KMEANS_CLUSTERING = "KMEANS_CLUSTERING"
    OPTIMIZATION = "OPTIMIZATION"
    CACHE_STATS = "CACHE_STATS"
    CLEAR_CACHE = "CLEAR_CACHE"
    CANCEL = "CANCEL"


# Kinds that finish immediately and never compete for compute slots
CONTROL_KINDS = frozenset({TaskKind.CACHE_STATS, TaskKind.CLEAR_CACHE, TaskKind.CANCEL})


class TaskState(str, Enum):
    IDLE = "Idle"
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"


ALLOWED_TRANSITIONS = {
    TaskState.IDLE: {TaskState.RUNNING, TaskState.FAILED},
    TaskState.RUNNING: {TaskState.COMPLETED, TaskState.FAILED},
    TaskState.COMPLETED: set(),
    TaskState.FAILED: set(),
}


@dataclass
class TaskRequest:
    """A parsed request envelope."""

    type: str
    correlation_id: Any
    payload: Any = None
    options: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_message(cls, message: Any) -> "TaskRequest":
        """
        Parse a request message ``{type, correlationId, payload, options}``.

        Raises:
            InvalidInputError: If the envelope itself is malformed
        """
        if not isinstance(message, Mapping):
            raise InvalidInputError("Request message must be a mapping")
        if "type" not in message:
            raise InvalidInputError("Request message is missing 'type'")
        if message.get("correlationId") is None:
            raise InvalidInputError("Request message is missing 'correlationId'")
        if isinstance(message["correlationId"], bool) or not isinstance(message["correlationId"], (str, int)):
            raise InvalidInputError("Request 'correlationId' must be a string or integer")
        options = message.get("options")
        if options is None:
            options = {}
        elif not isinstance(options, Mapping):
            raise InvalidInputError("Request 'options' must be a mapping")
        return cls(
            type=message["type"],
            correlation_id=message["correlationId"],
            payload=message.get("payload"),
            options=dict(options),
        )


@dataclass
class Task:
    """One request's lifecycle."""

    request: TaskRequest
    state: TaskState = TaskState.IDLE
    token: CancellationToken = field(default_factory=CancellationToken)

    def transition(self, new_state: TaskState) -> None:
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise RuntimeError(
                f"Illegal task transition {self.state.value} -> {new_state.value} "
                f"for {self.request.correlation_id!r}"
            )
        logger.debug(
            "Task %r (%s): %s -> %s",
            self.request.correlation_id, self.request.type,
            self.state.value, new_state.value,
        )
        self.state = new_state


def result_message(correlation_id: Any, result: Any) -> Dict[str, Any]:
    return {
        "type": "RESULT",
        "correlationId": correlation_id,
        "result": result,
        "success": True,
    }


def error_message(
    correlation_id: Any, error: AnalysisWorkerError, include_trace: bool = False
) -> Dict[str, Any]:
    report = {"kind": error.kind, "message": str(error)}
    if include_trace:
        report["trace"] = "".join(
            traceback.format_exception(type(error), error, error.__traceback__)
        )
    return {
        "type": "ERROR",
        "correlationId": correlation_id,
        "error": report,
        "success": False,
    }


def _number_option(options: Mapping, key: str, default: float) -> float:
    value = options.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float, np.number)):
        raise InvalidInputError(f"Option '{key}' must be a number, got {value!r}")
    return float(value)


def _int_option(options: Mapping, key: str, default: Optional[int]) -> Optional[int]:
    value = options.get(key, default)
    if value is None:
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if isinstance(value, bool) or not isinstance(value, (int, np.integer)):
        raise InvalidInputError(f"Option '{key}' must be an integer, got {value!r}")
    return int(value)


class AnalysisWorker:
    """
    Dispatches request messages to the engines.

    The worker owns one engine of each kind. The correlation cache inside
    its CorrelationEngine is the only state that outlives a request.
    """

    def __init__(
        self,
        config: Optional[WorkerConfig] = None,
        progress_sink: Optional[ProgressSink] = None,
        rng: Optional[np.random.Generator] = None,
    ):
        """
        Initialize the worker.

        Args:
            config: Worker configuration (default: the environment-loaded config)
            progress_sink: Callable receiving every ProgressEvent (default: drop)
            rng: Random source for clustering (default: seeded from config)
        """
        self.config = config or default_config
        self.progress_sink = progress_sink
        self.correlation_engine = CorrelationEngine(
            max_cache_size=self.config.cache_size,
            min_periods=self.config.min_periods,
            yield_interval=self.config.correlation_yield_interval,
        )
        self.clustering_engine = ClusteringEngine(
            rng=rng,
            seed=self.config.seed,
            yield_interval=self.config.cluster_yield_interval,
        )
        self.active_tasks: Dict[Any, Task] = {}
        self._handlers: Dict[TaskKind, Callable[[Task, ProgressReporter], Awaitable[Any]]] = {
            TaskKind.CORRELATION_MATRIX: self._run_correlation,
            TaskKind.KMEANS_CLUSTERING: self._run_clustering,
            TaskKind.OPTIMIZATION: self._run_optimization,
            TaskKind.CACHE_STATS: self._cache_stats,
            TaskKind.CLEAR_CACHE: self._clear_cache,
            TaskKind.CANCEL: self._cancel,
        }

    def cancel(self, correlation_id: Any) -> bool:
        """
        Request cancellation of an admitted task, queued or running.

        Returns False if no such task is pending.
        """
        task = self.active_tasks.get(correlation_id)
        if task is None or task.state not in (TaskState.IDLE, TaskState.RUNNING):
            return False
        task.token.cancel()
        logger.info("Cancellation requested for task %r (%s)", correlation_id, task.state.value)
        return True

    def admit(self, message: Any) -> Union[Task, Dict[str, Any]]:
        """
        Parse a request and register it under its correlation id.

        Returns:
            The registered Task, still Idle, or an ERROR message if the
            request is rejected outright. An admitted task can be cancelled
            before ``execute`` picks it up.
        """
        try:
            request = TaskRequest.from_message(message)
        except InvalidInputError as exc:
            correlation_id = message.get("correlationId") if isinstance(message, Mapping) else None
            logger.warning("Rejected malformed request: %s", exc)
            return error_message(correlation_id, exc, self.config.include_traces)

        task = Task(request)
        try:
            TaskKind(request.type)
        except ValueError:
            task.transition(TaskState.FAILED)
            exc = UnsupportedOperationError(f"Unknown message type: {request.type}")
            logger.warning("Task %r rejected: %s", request.correlation_id, exc)
            return error_message(request.correlation_id, exc, self.config.include_traces)

        if request.correlation_id in self.active_tasks:
            task.transition(TaskState.FAILED)
            exc = InvalidInputError(
                f"A task with correlationId {request.correlation_id!r} is already pending"
            )
            return error_message(request.correlation_id, exc, self.config.include_traces)

        self.active_tasks[request.correlation_id] = task
        return task

    def _timeout_for(self, kind: TaskKind, options: Mapping) -> Optional[float]:
        defaults = {
            TaskKind.CORRELATION_MATRIX: self.config.correlation_timeout,
            TaskKind.KMEANS_CLUSTERING: self.config.clustering_timeout,
            TaskKind.OPTIMIZATION: self.config.optimization_timeout,
        }
        timeout = _number_option(options, "timeout", defaults.get(kind, self.config.control_timeout))
        if timeout < 0:
            raise InvalidInputError(f"Option 'timeout' must be >= 0, got {timeout:g}")
        return timeout or None

    async def execute(self, task: Task, progress_sink: Optional[ProgressSink] = None) -> Dict[str, Any]:
        """
        Run an admitted task to completion.

        Args:
            task: A Task returned by ``admit``
            progress_sink: Overrides the worker's sink for this request

        Returns:
            A RESULT or ERROR message; never raises for task-level failures
        """
        request = task.request
        kind = TaskKind(request.type)
        reporter = ProgressReporter(progress_sink or self.progress_sink, request.correlation_id)
        try:
            if task.token.cancelled:
                raise TaskCancelledError("Task cancelled before it started")
            timeout = self._timeout_for(kind, request.options)
            task.transition(TaskState.RUNNING)
            try:
                result = await asyncio.wait_for(self._handlers[kind](task, reporter), timeout)
            except asyncio.TimeoutError:
                raise TaskTimeoutError(
                    f"Task timed out after {timeout:g}s", details={"timeout": timeout}
                ) from None
        except AnalysisWorkerError as exc:
            task.transition(TaskState.FAILED)
            if isinstance(exc, TaskCancelledError):
                reporter.fail("cancelled", exc)
            logger.warning("Task %r (%s) failed: %s", request.correlation_id, kind.value, exc)
            return error_message(request.correlation_id, exc, self.config.include_traces)
        except Exception as exc:
            task.transition(TaskState.FAILED)
            logger.exception("Task %r (%s) raised an unexpected error", request.correlation_id, kind.value)
            failure = ComputationFailureError(
                str(exc) or type(exc).__name__,
                details={"exception": type(exc).__name__},
            ).with_traceback(exc.__traceback__)
            return error_message(request.correlation_id, failure, self.config.include_traces)
        finally:
            self.active_tasks.pop(request.correlation_id, None)

        task.transition(TaskState.COMPLETED)
        return result_message(request.correlation_id, result)

    async def handle(self, message: Any, progress_sink: Optional[ProgressSink] = None) -> Dict[str, Any]:
        """
        Process one request message: ``admit`` followed by ``execute``.

        Args:
            message: Request mapping ``{type, correlationId, payload, options}``
            progress_sink: Overrides the worker's sink for this request

        Returns:
            A RESULT or ERROR message; never raises for task-level failures
        """
        admitted = self.admit(message)
        if not isinstance(admitted, Task):
            return admitted
        return await self.execute(admitted, progress_sink)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _run_correlation(self, task: Task, reporter: ProgressReporter) -> Dict[str, Any]:
        options = task.request.options
        result = await self.correlation_engine.compute(
            task.request.payload,
            method=options.get("method", "pearson"),
            pairwise=options.get("pairwise", True),
            min_periods=_int_option(options, "minPeriods", self.config.min_periods),
            reporter=reporter,
            token=task.token,
        )
        return result.to_dict()

    async def _run_clustering(self, task: Task, reporter: ProgressReporter) -> Dict[str, Any]:
        options = task.request.options
        seed = _int_option(options, "seed", None)
        result = await self.clustering_engine.run(
            task.request.payload,
            k=_int_option(options, "k", 3),
            max_iterations=_int_option(options, "maxIterations", 100),
            reporter=reporter,
            token=task.token,
            rng=np.random.default_rng(seed) if seed is not None else None,
        )
        return result.to_dict()

    async def _run_optimization(self, task: Task, reporter: ProgressReporter) -> Dict[str, Any]:
        payload = task.request.payload
        options = task.request.options
        if not isinstance(payload, Mapping):
            raise InvalidInputError("Optimization payload must be a mapping")
        for key in ("objective", "initialGuess"):
            if payload.get(key) is None:
                raise InvalidInputError(f"Optimization payload is missing '{key}'")
        optimizer = GradientDescentOptimizer(
            learning_rate=_number_option(options, "learningRate", 0.01),
            max_iterations=_int_option(options, "maxIterations", 1000),
            tolerance=_number_option(options, "tolerance", 1e-6),
            progress_interval=self.config.optimizer_progress_interval,
        )
        result = await optimizer.minimize(
            payload["objective"],
            payload["initialGuess"],
            constraints=payload.get("constraints"),
            reporter=reporter,
            token=task.token,
        )
        return result.to_dict()

    async def _cache_stats(self, task: Task, reporter: ProgressReporter) -> Dict[str, int]:
        return self.correlation_engine.cache_stats()

    async def _clear_cache(self, task: Task, reporter: ProgressReporter) -> Dict[str, str]:
        await self.correlation_engine.clear_cache()
        return {"message": "Cache cleared"}

    async def _cancel(self, task: Task, reporter: ProgressReporter) -> Dict[str, Any]:
        payload = task.request.payload
        if not isinstance(payload, Mapping) or payload.get("targetId") is None:
            raise InvalidInputError("Cancel payload must name a 'targetId'")
        target_id = payload["targetId"]
        return {"cancelled": self.cancel(target_id), "targetId": target_id}
