"""
Algorithm Core Library - correlation, clustering and optimization engines.

The numeric primitives are pure functions; the engines add validation,
progress reporting and cooperative yielding on top of them.
"""

from .primitives import pearson, euclidean, squared_euclidean, numerical_gradient
from .correlation import (
    CorrelationCache,
    CorrelationEngine,
    CorrelationResult,
    pair_key,
    series_set_to_frame,
)
from .clustering import (
    ClusteringEngine,
    ClusteringResult,
    kmeans_plus_plus_init,
    assign_points,
    update_centroids,
    centroids_converged,
    compute_inertia,
    silhouette_score,
    cooperative_silhouette_score,
    cluster_counts,
)
from .optimization import (
    GradientDescentOptimizer,
    OptimizationResult,
    build_objective,
)

__all__ = [
    # Primitives
    "pearson",
    "euclidean",
    "squared_euclidean",
    "numerical_gradient",
    # Correlation
    "CorrelationCache",
    "CorrelationEngine",
    "CorrelationResult",
    "pair_key",
    "series_set_to_frame",
    # Clustering
    "ClusteringEngine",
    "ClusteringResult",
    "kmeans_plus_plus_init",
    "assign_points",
    "update_centroids",
    "centroids_converged",
    "compute_inertia",
    "silhouette_score",
    "cooperative_silhouette_score",
    "cluster_counts",
    # Optimization
    "GradientDescentOptimizer",
    "OptimizationResult",
    "build_objective",
]
