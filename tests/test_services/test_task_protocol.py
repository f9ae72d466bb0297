"""
Tests for the task protocol: envelopes, state machine and dispatch.
"""

import asyncio

import numpy as np
import pytest

from analysis_worker.config import WorkerConfig
from analysis_worker.exceptions import InvalidInputError
from analysis_worker.services.task_protocol import (
    AnalysisWorker,
    Task,
    TaskKind,
    TaskRequest,
    TaskState,
)


def _request(kind, correlation_id="req-1", payload=None, options=None):
    message = {"type": kind, "correlationId": correlation_id, "payload": payload}
    if options is not None:
        message["options"] = options
    return message


# ------------------------------------------------------------------
# Envelope and state machine
# ------------------------------------------------------------------


def test_request_from_message():
    request = TaskRequest.from_message(_request("CACHE_STATS", "c1"))
    assert request.type == "CACHE_STATS"
    assert request.correlation_id == "c1"
    assert request.options == {}


@pytest.mark.parametrize("message", [
    "CACHE_STATS",
    {"correlationId": "x"},
    {"type": "CACHE_STATS"},
    {"type": "CACHE_STATS", "correlationId": ["x"]},
    {"type": "CACHE_STATS", "correlationId": "x", "options": [1, 2]},
])
def test_request_rejects_malformed_envelope(message):
    with pytest.raises(InvalidInputError):
        TaskRequest.from_message(message)


def test_task_transitions():
    task = Task(TaskRequest("CACHE_STATS", "t"))
    assert task.state is TaskState.IDLE
    task.transition(TaskState.RUNNING)
    task.transition(TaskState.COMPLETED)
    assert task.state is TaskState.COMPLETED


@pytest.mark.parametrize("path", [
    [TaskState.COMPLETED],
    [TaskState.RUNNING, TaskState.IDLE],
    [TaskState.FAILED, TaskState.RUNNING],
    [TaskState.RUNNING, TaskState.COMPLETED, TaskState.FAILED],
])
def test_task_rejects_illegal_transitions(path):
    task = Task(TaskRequest("CACHE_STATS", "t"))
    with pytest.raises(RuntimeError, match="Illegal task transition"):
        for state in path:
            task.transition(state)


# ------------------------------------------------------------------
# Correlation scenarios
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_identical_series_scenario(worker, series_set_factory, rng):
    x = rng.standard_normal(40)
    response = await worker.handle(
        _request("CORRELATION_MATRIX", "A", series_set_factory({"X": x, "Y": x}))
    )

    assert response["type"] == "RESULT"
    assert response["success"] is True
    assert response["correlationId"] == "A"
    matrix = response["result"]["correlationMatrix"]
    assert matrix["X"]["Y"] == pytest.approx(1.0, abs=1e-12)
    assert matrix["X"]["X"] == matrix["Y"]["Y"] == 1.0


@pytest.mark.asyncio
async def test_negated_series_scenario(worker, series_set_factory, rng):
    x = rng.standard_normal(40)
    response = await worker.handle(
        _request("CORRELATION_MATRIX", "B", series_set_factory({"X": x, "Y": -x}))
    )
    assert response["result"]["correlationMatrix"]["X"]["Y"] == pytest.approx(-1.0, abs=1e-12)


@pytest.mark.asyncio
async def test_insufficient_samples_scenario(worker, series_set_factory, rng):
    rows = series_set_factory({
        "X": rng.standard_normal(40),
        "Y": list(rng.standard_normal(25)) + [None] * 15,
    })
    before = await worker.handle(_request("CACHE_STATS", "s1"))
    response = await worker.handle(_request("CORRELATION_MATRIX", "C", rows))
    after = await worker.handle(_request("CACHE_STATS", "s2"))

    assert response["result"]["correlationMatrix"]["X"]["Y"] == 0.0
    assert after["result"]["correlationCacheSize"] == before["result"]["correlationCacheSize"]


@pytest.mark.asyncio
async def test_min_periods_option(worker, series_set_factory, rng):
    x = rng.standard_normal(10)
    rows = series_set_factory({"X": x, "Y": x})
    response = await worker.handle(
        _request("CORRELATION_MATRIX", "mp", rows, {"minPeriods": 5, "method": "pearson"})
    )
    assert response["result"]["correlationMatrix"]["X"]["Y"] == pytest.approx(1.0)
    assert response["result"]["metadata"]["minPeriods"] == 5


@pytest.mark.asyncio
async def test_cache_transparency(worker, series_set_factory, rng):
    base = rng.standard_normal(50)
    rows = series_set_factory({
        "A": base,
        "B": base + rng.standard_normal(50),
        "C": rng.standard_normal(50),
    })
    first = await worker.handle(_request("CORRELATION_MATRIX", "1", rows))
    second = await worker.handle(_request("CORRELATION_MATRIX", "2", rows))
    assert first["result"]["correlationMatrix"] == second["result"]["correlationMatrix"]

    stats = await worker.handle(_request("CACHE_STATS", "3"))
    assert stats["result"] == {"correlationCacheSize": 3, "maxCacheSize": 100}

    cleared = await worker.handle(_request("CLEAR_CACHE", "4"))
    assert cleared["result"] == {"message": "Cache cleared"}
    stats = await worker.handle(_request("CACHE_STATS", "5"))
    assert stats["result"]["correlationCacheSize"] == 0


@pytest.mark.asyncio
async def test_progress_tagged_and_ordered(worker, collector, series_set_factory, rng):
    rows = series_set_factory({s: rng.standard_normal(40) for s in "ABCD"})
    await worker.handle(_request("CORRELATION_MATRIX", "p1", rows))

    assert collector.events
    assert all(e.correlation_id == "p1" for e in collector.events)
    assert collector.percents == sorted(collector.percents)
    assert collector.events[-1].to_message() == {
        "type": "PROGRESS",
        "correlationId": "p1",
        "percent": 100.0,
        "phase": "correlation_complete",
        "data": {"message": "Correlation calculation complete", "matrixSize": "4x4"},
    }


# ------------------------------------------------------------------
# Clustering and optimization dispatch
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_clustering_scenario(worker, two_blobs):
    response = await worker.handle(_request(
        "KMEANS_CLUSTERING", "D", two_blobs.tolist(), {"k": 2, "maxIterations": 100, "seed": 0}
    ))
    result = response["result"]
    assert result["converged"] is True
    assert sorted(result["clusterCounts"]) == [50, 50]
    assert result["iterations"] <= 100


@pytest.mark.asyncio
async def test_clustering_defaults_to_three_clusters(worker, rng):
    response = await worker.handle(_request("KMEANS_CLUSTERING", "k3", rng.normal(size=(30, 2)).tolist()))
    assert len(response["result"]["centroids"]) == 3
    assert sum(response["result"]["clusterCounts"]) == 30


@pytest.mark.asyncio
async def test_optimization_with_callable(worker):
    response = await worker.handle(_request("OPTIMIZATION", "opt", {
        "objective": lambda x: float(np.sum(x ** 2)),
        "constraints": None,
        "initialGuess": [10.0, 10.0],
    }))
    result = response["result"]
    np.testing.assert_allclose(result["solution"], [0.0, 0.0], atol=1e-4)
    assert result["value"] == pytest.approx(0.0, abs=1e-8)
    assert result["converged"] is True


@pytest.mark.asyncio
async def test_optimization_with_named_objective_and_options(worker):
    response = await worker.handle(_request(
        "OPTIMIZATION", "opt2",
        {"objective": {"name": "sum_of_squares"}, "initialGuess": [1.0]},
        {"learningRate": 0.1, "maxIterations": 3},
    ))
    result = response["result"]
    assert result["iterations"] == 3
    assert result["converged"] is False
    assert result["solution"][0] == pytest.approx(0.8 ** 3, rel=1e-6)


# ------------------------------------------------------------------
# Failures
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_unknown_type_is_unsupported(worker, collector):
    response = await worker.handle(_request("FOURIER_TRANSFORM", "u1", [1, 2, 3]))
    assert response == {
        "type": "ERROR",
        "correlationId": "u1",
        "error": {"kind": "UnsupportedOperation", "message": "Unknown message type: FOURIER_TRANSFORM"},
        "success": False,
    }
    assert collector.events == []


@pytest.mark.asyncio
async def test_malformed_envelope(worker):
    response = await worker.handle({"payload": []})
    assert response["type"] == "ERROR"
    assert response["correlationId"] is None
    assert response["error"]["kind"] == "InvalidInput"


@pytest.mark.asyncio
async def test_invalid_payload_reports_failure_sentinel(worker, collector):
    response = await worker.handle(_request("KMEANS_CLUSTERING", "bad", [], {"k": 2}))
    assert response["success"] is False
    assert response["error"]["kind"] == "InvalidInput"
    assert "result" not in response
    assert collector.percents[-1] == -1


@pytest.mark.asyncio
@pytest.mark.parametrize("options", [{"k": 0}, {"k": "three"}, {"maxIterations": -5}])
async def test_invalid_clustering_options(worker, two_blobs, options):
    response = await worker.handle(_request("KMEANS_CLUSTERING", "o", two_blobs.tolist(), options))
    assert response["error"]["kind"] == "InvalidInput"


@pytest.mark.asyncio
@pytest.mark.parametrize("payload", [None, [1.0, 2.0], {"objective": {"name": "sum_of_squares"}}])
async def test_invalid_optimization_payload(worker, payload):
    response = await worker.handle(_request("OPTIMIZATION", "o", payload))
    assert response["error"]["kind"] == "InvalidInput"


@pytest.mark.asyncio
async def test_unexpected_error_is_computation_failure(worker):
    def objective(x):
        raise RuntimeError("objective exploded")

    response = await worker.handle(_request("OPTIMIZATION", "boom", {
        "objective": objective, "initialGuess": [1.0],
    }))
    assert response["error"]["kind"] == "ComputationFailure"
    assert "objective exploded" in response["error"]["message"]
    assert "trace" not in response["error"]
    assert worker.active_tasks == {}


@pytest.mark.asyncio
async def test_traces_included_when_configured(collector):
    worker = AnalysisWorker(WorkerConfig(include_traces=True), progress_sink=collector)
    response = await worker.handle(_request("CORRELATION_MATRIX", "tr", []))
    assert "Traceback" in response["error"]["trace"]


# ------------------------------------------------------------------
# Cancellation
# ------------------------------------------------------------------


def _slow_optimization(correlation_id):
    return _request(
        "OPTIMIZATION", correlation_id,
        {"objective": {"name": "sum_of_squares"}, "initialGuess": [10.0, 10.0]},
        {"learningRate": 1e-6, "maxIterations": 100000},
    )


@pytest.mark.asyncio
async def test_cancel_running_task(worker, collector):
    running = asyncio.create_task(worker.handle(_slow_optimization("slow")))
    await asyncio.sleep(0)

    cancel = await worker.handle(_request(TaskKind.CANCEL.value, "c", {"targetId": "slow"}))
    response = await running

    assert cancel["result"] == {"cancelled": True, "targetId": "slow"}
    assert response["success"] is False
    assert response["error"]["kind"] == "Cancelled"
    slow_events = [e for e in collector.events if e.correlation_id == "slow"]
    assert slow_events[-1].percent == -1


@pytest.mark.asyncio
async def test_cancel_unknown_task(worker):
    response = await worker.handle(_request("CANCEL", "c", {"targetId": "nothing"}))
    assert response["result"] == {"cancelled": False, "targetId": "nothing"}
    assert worker.cancel("nothing") is False


@pytest.mark.asyncio
async def test_cancel_requires_target(worker):
    response = await worker.handle(_request("CANCEL", "c", {}))
    assert response["error"]["kind"] == "InvalidInput"


@pytest.mark.asyncio
async def test_duplicate_correlation_id_rejected(worker):
    running = asyncio.create_task(worker.handle(_slow_optimization("dup")))
    await asyncio.sleep(0)

    duplicate = await worker.handle(_slow_optimization("dup"))
    assert duplicate["error"]["kind"] == "InvalidInput"

    worker.cancel("dup")
    response = await running
    assert response["error"]["kind"] == "Cancelled"


@pytest.mark.asyncio
async def test_cancel_admitted_task_before_it_runs(worker, collector):
    task = worker.admit(_slow_optimization("queued"))
    assert task.state is TaskState.IDLE
    assert worker.cancel("queued") is True

    response = await worker.execute(task)

    assert response["error"]["kind"] == "Cancelled"
    assert "before it started" in response["error"]["message"]
    assert task.state is TaskState.FAILED
    assert collector.phases == ["cancelled"]
    assert collector.percents == [-1]
    assert worker.active_tasks == {}


def test_admit_rejects_unknown_type_without_registering(worker):
    response = worker.admit(_request("FOURIER_TRANSFORM", "u2"))
    assert response["error"]["kind"] == "UnsupportedOperation"
    assert worker.active_tasks == {}


# ------------------------------------------------------------------
# Timeouts
# ------------------------------------------------------------------


def _endless_optimization(correlation_id, **options):
    return _request(
        "OPTIMIZATION", correlation_id,
        {"objective": {"name": "sum_of_squares"}, "initialGuess": [10.0, 10.0]},
        {"learningRate": 1e-6, "maxIterations": 10_000_000, **options},
    )


@pytest.mark.asyncio
async def test_timeout_option_stops_task(worker, collector):
    response = await worker.handle(_endless_optimization("late", timeout=0.05))

    assert response["success"] is False
    assert response["error"]["kind"] == "Cancelled"
    assert "timed out after 0.05s" in response["error"]["message"]
    assert collector.percents[-1] == -1
    assert collector.phases[-1] == "cancelled"
    assert worker.active_tasks == {}


@pytest.mark.asyncio
async def test_default_timeout_comes_from_config(collector):
    worker = AnalysisWorker(WorkerConfig(optimization_timeout=0.05), progress_sink=collector)
    response = await worker.handle(_endless_optimization("late"))
    assert response["error"]["kind"] == "Cancelled"
    assert "timed out" in response["error"]["message"]


@pytest.mark.asyncio
async def test_zero_timeout_means_no_limit(collector):
    worker = AnalysisWorker(WorkerConfig(optimization_timeout=0.0), progress_sink=collector)
    response = await worker.handle(_request(
        "OPTIMIZATION", "quick",
        {"objective": {"name": "sum_of_squares"}, "initialGuess": [1.0]},
        {"maxIterations": 10},
    ))
    assert response["success"] is True


@pytest.mark.asyncio
@pytest.mark.parametrize("timeout", [-1, "soon", None])
async def test_invalid_timeout_option(worker, timeout):
    response = await worker.handle(_request("CACHE_STATS", "t", options={"timeout": timeout}))
    assert response["error"]["kind"] == "InvalidInput"
    assert worker.active_tasks == {}


@pytest.mark.asyncio
async def test_malformed_objective_parameter_is_invalid_input(worker):
    response = await worker.handle(_request("OPTIMIZATION", "rb", {
        "objective": {"name": "rosenbrock", "a": "abc"},
        "initialGuess": [0.0, 0.0],
    }))
    assert response["error"]["kind"] == "InvalidInput"
