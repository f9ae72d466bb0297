"""
Pytest configuration and shared fixtures.

This file is automatically discovered by pytest and provides fixtures
available to all test modules.
"""

import numpy as np
import pytest

from analysis_worker.config import WorkerConfig
from analysis_worker.services.task_protocol import AnalysisWorker


class EventCollector:
    """Progress sink that records every event it receives."""

    def __init__(self):
        self.events = []

    def __call__(self, event):
        self.events.append(event)

    @property
    def percents(self):
        return [e.percent for e in self.events]

    @property
    def phases(self):
        return [e.phase for e in self.events]


@pytest.fixture
def rng():
    """Deterministic random generator."""
    return np.random.default_rng(42)


@pytest.fixture
def collector():
    """Fixture for a progress-event collector."""
    return EventCollector()


@pytest.fixture
def worker_config():
    """Default configuration, independent of the environment."""
    return WorkerConfig()


@pytest.fixture
def worker(worker_config, collector):
    """AnalysisWorker with a seeded random source and an event collector."""
    return AnalysisWorker(
        config=worker_config,
        progress_sink=collector,
        rng=np.random.default_rng(7),
    )


def make_series_set(columns, n_rows=None):
    """
    Build a SeriesSet (list of row mappings) from a dict of column sequences.

    Shorter columns are padded with None.
    """
    if n_rows is None:
        n_rows = max(len(v) for v in columns.values())
    rows = []
    for i in range(n_rows):
        rows.append({
            name: (float(values[i]) if i < len(values) and values[i] is not None else None)
            for name, values in columns.items()
        })
    return rows


@pytest.fixture
def series_set_factory():
    return make_series_set


@pytest.fixture
def two_blobs(rng):
    """100 2-D points in two well-separated groups of 50."""
    a = rng.normal(loc=(0.0, 0.0), scale=0.5, size=(50, 2))
    b = rng.normal(loc=(20.0, 20.0), scale=0.5, size=(50, 2))
    return np.vstack([a, b])
