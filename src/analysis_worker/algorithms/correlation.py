"""
Correlation matrix engine with a bounded memo cache.

The engine computes a symmetric Pearson correlation matrix across the named
series of a SeriesSet (a list of row mappings, or a pandas DataFrame).
Results for distinct series pairs are memoized in a FIFO-bounded cache that
lives as long as the engine instance.

Policies:
- Self-correlation is always 1.0 and never touches the cache.
- A pair with fewer than ``min_periods`` overlapping samples, or with zero
  variance, correlates at 0.0. Insufficient-sample results are not cached.
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from ..exceptions import InvalidInputError
from ..progress import CancellationToken, ProgressReporter, checkpoint
from ..utils.logging_config import get_logger
from .primitives import pearson

logger = get_logger(__name__)

SUPPORTED_METHODS = ("pearson",)

PairKey = Tuple[str, str]


def pair_key(a: str, b: str) -> PairKey:
    """Unordered cache key: ``pair_key(a, b) == pair_key(b, a)``."""
    return (a, b) if a <= b else (b, a)


class CorrelationCache:
    """
    Bounded pair → correlation store with FIFO eviction.

    Re-inserting an existing key updates its value but keeps its original
    position in the eviction order.
    """

    def __init__(self, max_size: int = 100):
        if max_size < 1:
            raise ValueError(f"max_size must be >= 1, got {max_size}")
        self.max_size = max_size
        self._entries: "OrderedDict[PairKey, float]" = OrderedDict()
        self.evictions = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: PairKey) -> bool:
        return key in self._entries

    def get(self, key: PairKey) -> Optional[float]:
        return self._entries.get(key)

    def put(self, key: PairKey, value: float) -> None:
        self._entries[key] = value
        while len(self._entries) > self.max_size:
            self._entries.popitem(last=False)
            self.evictions += 1

    def keys(self) -> List[PairKey]:
        return list(self._entries.keys())

    def clear(self) -> None:
        self._entries.clear()


@dataclass
class CorrelationResult:
    """Correlation matrix plus the metadata reported to the host."""

    symbols: List[str]
    values: np.ndarray
    method: str
    data_points: int
    min_periods: int
    cache_size: int

    def get(self, a: str, b: str) -> float:
        i = self.symbols.index(a)
        j = self.symbols.index(b)
        return float(self.values[i, j])

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.values, index=self.symbols, columns=self.symbols)

    def to_dict(self) -> Dict[str, Any]:
        matrix = {
            a: {b: float(self.values[i, j]) for j, b in enumerate(self.symbols)}
            for i, a in enumerate(self.symbols)
        }
        return {
            "correlationMatrix": matrix,
            "metadata": {
                "symbols": list(self.symbols),
                "method": self.method,
                "dataPoints": self.data_points,
                "minPeriods": self.min_periods,
                "cacheSize": self.cache_size,
            },
        }


def _is_sample(value: Any) -> bool:
    """True for a real number or an absent sample (None)."""
    if value is None:
        return True
    if isinstance(value, (bool, np.bool_, complex, np.complexfloating)):
        return False
    return isinstance(value, (int, float, np.integer, np.floating))


def series_set_to_frame(data: Any) -> pd.DataFrame:
    """
    Normalize a SeriesSet into a float DataFrame (NaN marks absent samples).

    Accepts a DataFrame or a non-empty sequence of mappings. The symbols are
    the keys of the first row, in order; keys missing from later rows are
    absent samples.

    Raises:
        InvalidInputError: If the input is empty or malformed
    """
    if isinstance(data, pd.DataFrame):
        if data.empty or len(data.columns) == 0:
            raise InvalidInputError("A non-empty series set is required")
        frame = data.copy()
    else:
        if (
            not isinstance(data, Sequence)
            or isinstance(data, (str, bytes))
            or len(data) == 0
        ):
            raise InvalidInputError("A non-empty series set is required")
        for index, row in enumerate(data):
            if not isinstance(row, Mapping):
                raise InvalidInputError(
                    "Every row of a series set must be a mapping",
                    details={"row": index, "type": type(row).__name__},
                )
        symbols = list(data[0].keys())
        if not symbols:
            raise InvalidInputError("The first row of the series set has no series")
        frame = pd.DataFrame.from_records(
            [{s: row.get(s) for s in symbols} for row in data], columns=symbols
        )

    if not all(isinstance(s, str) for s in frame.columns):
        raise InvalidInputError("Series names must be strings")
    if frame.columns.has_duplicates:
        raise InvalidInputError("Series names must be unique")

    for symbol in frame.columns:
        column = frame[symbol]
        if pd.api.types.is_bool_dtype(column) or pd.api.types.is_complex_dtype(column):
            bad = column.iloc[0]
        elif pd.api.types.is_numeric_dtype(column):
            continue
        else:
            bad = next((v for v in column if not _is_sample(v)), None)
            if bad is None:
                continue
        raise InvalidInputError(
            "Series values must be numeric or absent",
            details={"series": symbol, "value": repr(bad)},
        )
    frame = frame.astype(np.float64)

    if np.isinf(frame.to_numpy()).any():
        raise InvalidInputError("Series values must be finite")
    return frame


class CorrelationEngine:
    """
    Computes correlation matrices and owns the persistent correlation cache.

    All cache access happens under an asyncio lock, so concurrent tasks on a
    single engine are serialized for the duration of one matrix.
    """

    def __init__(
        self,
        max_cache_size: int = 100,
        min_periods: int = 30,
        yield_interval: int = 500,
    ):
        self.cache = CorrelationCache(max_cache_size)
        self.default_min_periods = min_periods
        self.yield_interval = max(1, yield_interval)
        self._lock = asyncio.Lock()

    @property
    def max_cache_size(self) -> int:
        return self.cache.max_size

    def cache_stats(self) -> Dict[str, int]:
        return {
            "correlationCacheSize": len(self.cache),
            "maxCacheSize": self.cache.max_size,
        }

    async def clear_cache(self) -> None:
        """Empty the cache once no matrix computation holds it."""
        async with self._lock:
            self.cache.clear()
        logger.info("Correlation cache cleared")

    async def compute(
        self,
        data: Any,
        method: str = "pearson",
        pairwise: bool = True,
        min_periods: Optional[int] = None,
        reporter: Optional[ProgressReporter] = None,
        token: Optional[CancellationToken] = None,
    ) -> CorrelationResult:
        """
        Compute the correlation matrix of a SeriesSet.

        Args:
            data: List of row mappings or a DataFrame
            method: Correlation method; only "pearson" is supported
            pairwise: Drop absent samples per pair (True) or drop every row
                with any absent sample (False). Listwise results depend on
                all series and are never cached.
            min_periods: Minimum overlapping samples per pair
            reporter: Progress reporter for this task
            token: Cancellation token checked at each yield

        Returns:
            CorrelationResult

        Raises:
            InvalidInputError: If the input or options are malformed
            TaskCancelledError: If the token is cancelled mid-run
        """
        reporter = reporter or ProgressReporter()
        if min_periods is None:
            min_periods = self.default_min_periods

        reporter.report(0, "correlation_init", {"message": "Correlation calculation started"})
        try:
            self._validate_options(method, pairwise, min_periods)
            frame = series_set_to_frame(data)
            symbols = [str(s) for s in frame.columns]
            logger.debug(
                "Computing %s correlation for %d series over %d rows (pairwise=%s, min_periods=%d)",
                method, len(symbols), len(frame), pairwise, min_periods,
            )
            async with self._lock:
                values = await self._fill_matrix(
                    frame.to_numpy(), symbols, pairwise, min_periods, reporter, token
                )
        except Exception as exc:
            reporter.fail("correlation_error", exc)
            raise

        n = len(symbols)
        reporter.report(100, "correlation_complete", {
            "message": "Correlation calculation complete",
            "matrixSize": f"{n}x{n}",
        })
        logger.info("Correlation matrix %dx%d computed, cache size %d", n, n, len(self.cache))
        return CorrelationResult(
            symbols=symbols,
            values=values,
            method=method,
            data_points=len(frame),
            min_periods=min_periods,
            cache_size=len(self.cache),
        )

    @staticmethod
    def _validate_options(method: Any, pairwise: Any, min_periods: Any) -> None:
        if method not in SUPPORTED_METHODS:
            raise InvalidInputError(
                f"Unsupported correlation method: {method!r}",
                details={"supported": ", ".join(SUPPORTED_METHODS)},
            )
        if not isinstance(pairwise, bool):
            raise InvalidInputError(f"pairwise must be a boolean, got {pairwise!r}")
        if isinstance(min_periods, bool) or not isinstance(min_periods, (int, np.integer)):
            raise InvalidInputError(f"minPeriods must be an integer, got {min_periods!r}")
        if min_periods < 0:
            raise InvalidInputError(f"minPeriods must be >= 0, got {min_periods}")

    async def _fill_matrix(
        self,
        values: np.ndarray,
        symbols: List[str],
        pairwise: bool,
        min_periods: int,
        reporter: ProgressReporter,
        token: Optional[CancellationToken],
    ) -> np.ndarray:
        n = len(symbols)
        present = ~np.isnan(values)
        if not pairwise:
            complete_rows = present.all(axis=1)
            values = values[complete_rows]
            present = present[complete_rows]

        matrix = np.eye(n, dtype=np.float64)
        total_pairs = n * (n - 1) // 2
        completed = 0

        for i in range(n):
            for j in range(i + 1, n):
                if token is not None:
                    token.raise_if_cancelled()
                key = pair_key(symbols[i], symbols[j])
                cached = self.cache.get(key) if pairwise else None
                if cached is not None:
                    r = cached
                else:
                    mask = present[:, i] & present[:, j]
                    overlap = int(mask.sum())
                    if overlap == 0 or overlap < min_periods:
                        r = 0.0
                    else:
                        r = pearson(values[mask, i], values[mask, j])
                        if pairwise:
                            self.cache.put(key, r)
                matrix[i, j] = matrix[j, i] = r

                completed += 1
                reporter.report(completed / total_pairs * 100, "correlation_calc", {
                    "completed": completed,
                    "total": total_pairs,
                    "currentPair": f"{symbols[i]}-{symbols[j]}",
                })
                if completed % self.yield_interval == 0:
                    await checkpoint(token)
        return matrix
