"""
K-means clustering with K-means++ seeding.

Provides the step functions of Lloyd's algorithm (seeding, assignment,
centroid update, convergence test), the quality metrics reported with every
run (inertia, silhouette score, cluster counts), and the cooperative
ClusteringEngine that drives them for the worker.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import numpy as np

from ..exceptions import InvalidInputError
from ..progress import CancellationToken, ProgressReporter, checkpoint
from ..utils.logging_config import get_logger

logger = get_logger(__name__)

Array2D = np.ndarray

CENTROID_TOLERANCE = 1e-6


@dataclass
class ClusteringResult:
    """Result of a single clustering run."""

    centroids: Array2D
    assignments: np.ndarray
    iterations: int
    converged: bool
    inertia: float
    silhouette_score: float
    cluster_counts: List[int]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "centroids": self.centroids.tolist(),
            "assignments": [int(a) for a in self.assignments],
            "iterations": self.iterations,
            "converged": self.converged,
            "inertia": self.inertia,
            "silhouetteScore": self.silhouette_score,
            "clusterCounts": list(self.cluster_counts),
        }


def validate_points(data: Any) -> Array2D:
    """
    Convert input points to an (n, d) float array.

    Raises:
        InvalidInputError: If there are no points, dimensionality differs
            between points, or a coordinate is not a finite number
    """
    if data is None or not hasattr(data, "__len__") or len(data) == 0:
        raise InvalidInputError("No data points to cluster")
    try:
        X = np.asarray(data, dtype=np.float64)
    except (TypeError, ValueError) as exc:
        raise InvalidInputError(f"Points must be equal-length numeric vectors: {exc}")
    if X.ndim != 2 or X.shape[1] == 0:
        raise InvalidInputError(
            "Points must be equal-length numeric vectors",
            details={"shape": X.shape},
        )
    if not np.all(np.isfinite(X)):
        raise InvalidInputError("Point coordinates must be finite")
    return X


def _squared_distances(X: Array2D, centroids: Array2D) -> Array2D:
    """(n, k) squared Euclidean distances from each point to each centroid."""
    diffs = X[:, None, :] - centroids[None, :, :]
    return np.sum(diffs ** 2, axis=2)


def _weighted_index(weights: np.ndarray, rng: np.random.Generator) -> int:
    """Draw an index with probability proportional to *weights*, uniformly if they are all zero."""
    total = weights.sum()
    if total > 0.0:
        return int(rng.choice(len(weights), p=weights / total))
    return int(rng.integers(0, len(weights)))


def kmeans_plus_plus_init(X: Array2D, k: int, rng: np.random.Generator) -> Array2D:
    """
    Return (k, d) initial centroids chosen by the k-means++ rule.

    ``nearest`` holds each point's squared distance to its closest seed so
    far and is tightened after every draw. Once it is all zero (duplicate
    points, or k larger than the number of distinct points) the next seed
    is drawn uniformly.
    """
    n = X.shape[0]
    seeds = [int(rng.integers(0, n))]
    nearest = _squared_distances(X, X[seeds])[:, 0]
    while len(seeds) < k:
        seeds.append(_weighted_index(nearest, rng))
        nearest = np.minimum(nearest, _squared_distances(X, X[seeds[-1:]])[:, 0])
    return X[seeds]


def assign_points(X: Array2D, centroids: Array2D) -> np.ndarray:
    """Index of the nearest centroid for every point; ties go to the lowest index."""
    return np.argmin(_squared_distances(X, centroids), axis=1)


def update_centroids(X: Array2D, assignments: np.ndarray, centroids: Array2D) -> Array2D:
    """Mean of each cluster's points; an empty cluster keeps its previous centroid."""
    updated = centroids.copy()
    for j in range(centroids.shape[0]):
        members = X[assignments == j]
        if len(members) > 0:
            updated[j] = members.mean(axis=0)
    return updated


def centroids_converged(
    old: Array2D, new: Array2D, tolerance: float = CENTROID_TOLERANCE
) -> bool:
    """True when every centroid moved less than *tolerance*."""
    shifts = np.sqrt(np.sum((new - old) ** 2, axis=1))
    return bool(np.all(shifts < tolerance))


def compute_inertia(X: Array2D, centroids: Array2D, assignments: np.ndarray) -> float:
    """Within-cluster sum of squared distances."""
    diffs = X - centroids[assignments]
    return float(np.sum(diffs ** 2))


def _silhouette_rows(X: Array2D, labels: np.ndarray, start: int, stop: int) -> np.ndarray:
    """Silhouette coefficients of points ``start..stop-1``."""
    masks = {c: labels == c for c in np.unique(labels)}
    sizes = {c: int(mask.sum()) for c, mask in masks.items()}
    out = np.zeros(stop - start, dtype=np.float64)
    for i in range(start, stop):
        own = labels[i]
        if sizes[own] <= 1:
            continue
        dist = np.sqrt(np.sum((X - X[i]) ** 2, axis=1))
        a = dist[masks[own]].sum() / (sizes[own] - 1)
        b = min(dist[mask].mean() for c, mask in masks.items() if c != own)
        denom = max(a, b)
        out[i - start] = (b - a) / denom if denom > 0 else 0.0
    return out


def silhouette_score(X: Array2D, assignments: np.ndarray) -> float:
    """
    Mean silhouette coefficient over all points.

    For point i with mean intra-cluster distance a and lowest mean distance
    to another non-empty cluster b, s(i) = (b - a) / max(a, b). Points in
    singleton clusters score 0, and a clustering with fewer than two
    non-empty clusters scores 0.

    Runs in O(n² · d) time and O(n) extra memory.
    """
    labels = np.asarray(assignments)
    if len(np.unique(labels)) < 2:
        return 0.0
    return float(np.mean(_silhouette_rows(X, labels, 0, len(labels))))


async def cooperative_silhouette_score(
    X: Array2D,
    assignments: np.ndarray,
    token: Optional[CancellationToken] = None,
    chunk_size: int = 256,
) -> float:
    """
    Same value as ``silhouette_score``, computed ``chunk_size`` points at a
    time with a checkpoint after each chunk.
    """
    labels = np.asarray(assignments)
    if len(np.unique(labels)) < 2:
        return 0.0
    n = len(labels)
    sil = np.empty(n, dtype=np.float64)
    for start in range(0, n, chunk_size):
        stop = min(n, start + chunk_size)
        sil[start:stop] = _silhouette_rows(X, labels, start, stop)
        await checkpoint(token)
    return float(np.mean(sil))


def cluster_counts(assignments: np.ndarray, k: int) -> List[int]:
    """Number of points assigned to each cluster index 0..k-1."""
    return [int(c) for c in np.bincount(np.asarray(assignments, dtype=np.int64), minlength=k)]


def _require_positive_int(name: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, np.integer)):
        raise InvalidInputError(f"{name} must be an integer, got {value!r}")
    if value <= 0:
        raise InvalidInputError(f"{name} must be > 0, got {value}")
    return int(value)


class ClusteringEngine:
    """
    Runs K-means++ seeded K-means cooperatively.

    A progress event is emitted after every iteration and the engine yields
    to the event loop every ``yield_interval`` iterations, checking the
    cancellation token each time. The silhouette pass that follows yields
    after every ``silhouette_chunk_size`` points.
    """

    def __init__(
        self,
        rng: Optional[np.random.Generator] = None,
        seed: Optional[int] = None,
        yield_interval: int = 10,
        silhouette_chunk_size: int = 256,
    ):
        self.rng = rng if rng is not None else np.random.default_rng(seed)
        self.yield_interval = max(1, yield_interval)
        self.silhouette_chunk_size = max(1, silhouette_chunk_size)

    async def run(
        self,
        data: Any,
        k: int = 3,
        max_iterations: int = 100,
        reporter: Optional[ProgressReporter] = None,
        token: Optional[CancellationToken] = None,
        rng: Optional[np.random.Generator] = None,
    ) -> ClusteringResult:
        """
        Cluster *data* into *k* groups.

        Args:
            data: Sequence of equal-length numeric vectors, or an (n, d) array
            k: Number of clusters
            max_iterations: Upper bound on Lloyd iterations
            reporter: Progress reporter for this task
            token: Cancellation token checked at each yield
            rng: Random source for this run (defaults to the engine's)

        Returns:
            ClusteringResult

        Raises:
            InvalidInputError: If the points, k, or max_iterations are invalid
            TaskCancelledError: If the token is cancelled mid-run
        """
        reporter = reporter or ProgressReporter()
        rng = rng if rng is not None else self.rng

        reporter.report(0, "clustering_init", {"message": f"K-means clustering started (k={k})"})
        try:
            k = _require_positive_int("k", k)
            max_iterations = _require_positive_int("maxIterations", max_iterations)
            X = validate_points(data)
            n, features = X.shape
            logger.debug("Clustering %d points in %d dimensions (k=%d)", n, features, k)

            centroids = kmeans_plus_plus_init(X, k, rng)
            reporter.report(10, "clustering_init_centroids", {
                "centroids": k,
                "points": n,
                "features": features,
            })

            assignments = np.full(n, -1, dtype=np.int64)
            converged = False
            iteration = 0
            while not converged and iteration < max_iterations:
                new_assignments = assign_points(X, centroids)
                changed = not np.array_equal(new_assignments, assignments)
                assignments = new_assignments

                new_centroids = update_centroids(X, assignments, centroids)
                converged = not changed or centroids_converged(centroids, new_centroids)
                centroids = new_centroids
                iteration += 1

                reporter.report(10 + iteration / max_iterations * 80, "clustering_iteration", {
                    "iteration": iteration,
                    "maxIterations": max_iterations,
                    "converged": converged,
                })
                if iteration % self.yield_interval == 0:
                    await checkpoint(token)

            inertia = compute_inertia(X, centroids, assignments)
            reporter.report(90, "clustering_metrics", {"inertia": round(inertia, 4)})
            silhouette = await cooperative_silhouette_score(
                X, assignments, token, self.silhouette_chunk_size
            )
        except Exception as exc:
            reporter.fail("clustering_error", exc)
            raise

        reporter.report(100, "clustering_complete", {
            "message": "Clustering complete",
            "iterations": iteration,
            "converged": converged,
            "inertia": round(inertia, 4),
            "silhouetteScore": round(silhouette, 4),
        })
        logger.info(
            "K-means finished after %d iterations (converged=%s, inertia=%.4f)",
            iteration, converged, inertia,
        )
        return ClusteringResult(
            centroids=centroids,
            assignments=assignments,
            iterations=iteration,
            converged=converged,
            inertia=inertia,
            silhouette_score=silhouette,
            cluster_counts=cluster_counts(assignments, k),
        )
