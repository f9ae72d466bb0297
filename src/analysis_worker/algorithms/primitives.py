"""
Numeric primitives shared by the engines.

Pure, stateless functions: Pearson correlation, Euclidean distance and a
central-difference numerical gradient.
"""

from __future__ import annotations

from typing import Callable, Sequence, Union

import numpy as np

from ..exceptions import InvalidInputError

ArrayLike = Union[Sequence[float], np.ndarray]
Objective = Callable[[np.ndarray], float]


def pearson(x: ArrayLike, y: ArrayLike) -> float:
    """
    Pearson correlation coefficient of two equal-length samples.

    Formula: r = (nΣxy − ΣxΣy) / sqrt((nΣx² − (Σx)²)(nΣy² − (Σy)²))

    Returns 0.0 when the lengths differ, the input is empty, or either
    sample has zero variance. The result is clipped into [-1, 1].
    """
    x = np.asarray(x, dtype=np.float64)
    y = np.asarray(y, dtype=np.float64)
    if x.shape != y.shape or x.size == 0:
        return 0.0

    n = x.size
    sum_x = np.sum(x)
    sum_y = np.sum(y)
    sum_xy = np.sum(x * y)
    sum_x2 = np.sum(x * x)
    sum_y2 = np.sum(y * y)

    numerator = n * sum_xy - sum_x * sum_y
    variance_product = (n * sum_x2 - sum_x * sum_x) * (n * sum_y2 - sum_y * sum_y)
    if variance_product <= 0:
        return 0.0
    denominator = np.sqrt(variance_product)
    if denominator == 0 or not np.isfinite(denominator):
        return 0.0
    return float(np.clip(numerator / denominator, -1.0, 1.0))


def squared_euclidean(a: ArrayLike, b: ArrayLike) -> float:
    """Sum of squared elementwise differences."""
    a = np.asarray(a, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64)
    if a.shape != b.shape:
        raise InvalidInputError(
            "Dimension mismatch in distance computation",
            details={"left": a.shape, "right": b.shape},
        )
    diff = a - b
    return float(np.sum(diff * diff))


def euclidean(a: ArrayLike, b: ArrayLike) -> float:
    """Euclidean distance between two equal-length vectors."""
    return float(np.sqrt(squared_euclidean(a, b)))


def numerical_gradient(f: Objective, x: ArrayLike, h: float = 1e-8) -> np.ndarray:
    """
    Central-difference gradient of *f* at *x*.

    For each dimension i: (f(x + h·e_i) − f(x − h·e_i)) / (2h).

    Cost: 2 * len(x) evaluations of *f* per call. In gradient descent this
    dominates runtime, so expensive objectives scale linearly with dimension.

    Args:
        f: Scalar objective taking a 1-D float array
        x: Point at which to differentiate
        h: Perturbation step

    Returns:
        1-D gradient array with the same length as *x*
    """
    x = np.asarray(x, dtype=np.float64)
    gradient = np.empty_like(x)
    for i in range(x.size):
        xh = x.copy()
        xh[i] += h
        xl = x.copy()
        xl[i] -= h
        gradient[i] = (float(f(xh)) - float(f(xl))) / (2.0 * h)
    return gradient
