"""
Analysis Worker - Core Package

An offline, message-driven compute engine for time-series financial data.

This package provides:
- Correlation matrices over named series with a bounded memo cache
- K-means clustering with K-means++ seeding and quality metrics
- Finite-difference gradient descent over scalar objectives
- A request/response/progress task protocol and an asyncio worker loop
"""

__version__ = "0.1.0"

from .exceptions import (
    AnalysisWorkerError,
    ComputationFailureError,
    InvalidInputError,
    TaskCancelledError,
    TaskTimeoutError,
    UnsupportedOperationError,
)
from .services import AnalysisWorker, TaskKind, WorkerLoop

# Explicitly import subpackages to ensure they're discoverable
from . import algorithms
from . import services
from . import utils

__all__ = [
    "AnalysisWorker",
    "AnalysisWorkerError",
    "ComputationFailureError",
    "InvalidInputError",
    "TaskCancelledError",
    "TaskKind",
    "TaskTimeoutError",
    "UnsupportedOperationError",
    "WorkerLoop",
    "algorithms",
    "services",
    "utils",
]
