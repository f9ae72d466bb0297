"""
Configuration management for the analysis worker.

Loads configuration from environment variables (typically from a .env file).
Uses python-dotenv to load .env automatically.

Usage:
    from analysis_worker.config import config

    engine = CorrelationEngine(max_cache_size=config.cache_size)
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Look for .env in project root (parent of src/)
env_path = Path(__file__).parent.parent.parent / ".env"
if env_path.exists():
    load_dotenv(env_path)

ENV_PREFIX = "ANALYSIS_WORKER_"

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}


def _env_int(name: str, default: Optional[int]) -> Optional[int]:
    raw = os.getenv(ENV_PREFIX + name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{ENV_PREFIX}{name} must be an integer, got {raw!r}")


def _env_float(name: str, default: Optional[float]) -> Optional[float]:
    raw = os.getenv(ENV_PREFIX + name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{ENV_PREFIX}{name} must be a number, got {raw!r}")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(ENV_PREFIX + name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ValueError(f"{ENV_PREFIX}{name} must be a boolean, got {raw!r}")


@dataclass
class WorkerConfig:
    """
    Tunables for the analysis worker.

    Attributes:
        cache_size: Capacity of the correlation memo cache
        min_periods: Default minimum overlapping samples for a correlation
        seed: Seed for the clustering random source (None = nondeterministic)
        cluster_yield_interval: Clustering iterations between cooperative yields
        optimizer_progress_interval: Optimizer iterations between progress
            events (each one is also a cooperative yield)
        correlation_yield_interval: Correlation pairs between cooperative yields
        max_concurrent_tasks: Compute tasks the worker loop runs at once
        include_traces: Attach formatted tracebacks to error responses
        correlation_timeout: Seconds a correlation task may run (0 = no limit)
        clustering_timeout: Seconds a clustering task may run (0 = no limit)
        optimization_timeout: Seconds an optimization task may run (0 = no limit)
        control_timeout: Seconds a cache or cancel request may run (0 = no limit)
        log_level: Log level name for the package logger
    """
    cache_size: int = 100
    min_periods: int = 30
    seed: Optional[int] = None
    cluster_yield_interval: int = 10
    optimizer_progress_interval: int = 50
    correlation_yield_interval: int = 500
    max_concurrent_tasks: int = 1
    include_traces: bool = False
    correlation_timeout: float = 60.0
    clustering_timeout: float = 120.0
    optimization_timeout: float = 180.0
    control_timeout: float = 5.0
    log_level: str = "INFO"

    def __post_init__(self):
        """Validate configuration values."""
        if self.cache_size < 1:
            raise ValueError(f"cache_size must be >= 1, got {self.cache_size}")
        if self.min_periods < 0:
            raise ValueError(f"min_periods must be >= 0, got {self.min_periods}")
        for name in (
            "cluster_yield_interval",
            "optimizer_progress_interval",
            "correlation_yield_interval",
            "max_concurrent_tasks",
        ):
            value = getattr(self, name)
            if value < 1:
                raise ValueError(f"{name} must be >= 1, got {value}")
        for name in (
            "correlation_timeout",
            "clustering_timeout",
            "optimization_timeout",
            "control_timeout",
        ):
            value = getattr(self, name)
            if value < 0:
                raise ValueError(f"{name} must be >= 0, got {value}")
        self.log_level = self.log_level.upper()

    @classmethod
    def from_env(cls) -> "WorkerConfig":
        """Build a config from ``ANALYSIS_WORKER_*`` environment variables."""
        defaults = cls()
        return cls(
            cache_size=_env_int("CACHE_SIZE", defaults.cache_size),
            min_periods=_env_int("MIN_PERIODS", defaults.min_periods),
            seed=_env_int("SEED", defaults.seed),
            cluster_yield_interval=_env_int(
                "CLUSTER_YIELD_INTERVAL", defaults.cluster_yield_interval
            ),
            optimizer_progress_interval=_env_int(
                "OPTIMIZER_PROGRESS_INTERVAL", defaults.optimizer_progress_interval
            ),
            correlation_yield_interval=_env_int(
                "CORRELATION_YIELD_INTERVAL", defaults.correlation_yield_interval
            ),
            max_concurrent_tasks=_env_int(
                "MAX_CONCURRENT_TASKS", defaults.max_concurrent_tasks
            ),
            include_traces=_env_bool("INCLUDE_TRACES", defaults.include_traces),
            correlation_timeout=_env_float("CORRELATION_TIMEOUT", defaults.correlation_timeout),
            clustering_timeout=_env_float("CLUSTERING_TIMEOUT", defaults.clustering_timeout),
            optimization_timeout=_env_float(
                "OPTIMIZATION_TIMEOUT", defaults.optimization_timeout
            ),
            control_timeout=_env_float("CONTROL_TIMEOUT", defaults.control_timeout),
            log_level=os.getenv(ENV_PREFIX + "LOG_LEVEL", defaults.log_level),
        )


# Global config instance
config = WorkerConfig.from_env()
