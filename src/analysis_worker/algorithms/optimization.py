"""
Fixed-step gradient descent over a scalar objective.

Gradients come from central finite differences (see
``primitives.numerical_gradient``), so every iteration costs 2 * dim
objective evaluations.

The worker runs in the caller's process, so an objective may be any Python
callable taking a 1-D float array. Transports that cannot carry code (the
JSON-lines CLI) describe the objective as data instead, naming one of the
closed forms in OBJECTIVE_BUILDERS:

    {"name": "sum_of_squares"}
    {"name": "quadratic", "center": [1.0, 2.0], "weights": [1.0, 4.0]}
    {"name": "rosenbrock", "a": 1.0, "b": 100.0}
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import numpy as np

from ..exceptions import ComputationFailureError, InvalidInputError
from ..progress import CancellationToken, ProgressReporter, checkpoint
from ..utils.logging_config import get_logger
from .primitives import Objective, numerical_gradient

logger = get_logger(__name__)


@dataclass
class OptimizationResult:
    """Outcome of one minimization run."""

    solution: np.ndarray
    value: float
    iterations: int
    converged: bool
    gradient_norm: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "solution": self.solution.tolist(),
            "value": self.value,
            "iterations": self.iterations,
            "converged": self.converged,
            "gradientNorm": self.gradient_norm,
        }


# ------------------------------------------------------------------
# Closed-form objectives
# ------------------------------------------------------------------

def sum_of_squares(x: np.ndarray) -> float:
    return float(np.sum(x * x))


def _vector_param(params: Mapping, name: str, dimension: int, default: Optional[float] = None) -> np.ndarray:
    if name not in params:
        if default is None:
            raise InvalidInputError(f"Objective parameter '{name}' is required")
        return np.full(dimension, default, dtype=np.float64)
    try:
        raw = np.asarray(params[name])
    except (TypeError, ValueError):
        raise InvalidInputError(f"Objective parameter '{name}' must be numeric")
    if raw.dtype.kind not in "iuf":
        raise InvalidInputError(f"Objective parameter '{name}' must be numeric")
    vec = raw.astype(np.float64)
    if vec.shape != (dimension,):
        raise InvalidInputError(
            f"Objective parameter '{name}' must have length {dimension}",
            details={"shape": vec.shape},
        )
    if not np.all(np.isfinite(vec)):
        raise InvalidInputError(f"Objective parameter '{name}' must be finite")
    return vec


def _scalar_param(params: Mapping, name: str, default: float) -> float:
    value = params.get(name, default)
    if isinstance(value, bool) or not isinstance(value, (int, float, np.number)):
        raise InvalidInputError(f"Objective parameter '{name}' must be a number, got {value!r}")
    if not np.isfinite(value):
        raise InvalidInputError(f"Objective parameter '{name}' must be finite")
    return float(value)


def _build_sum_of_squares(params: Mapping, dimension: int) -> Objective:
    return sum_of_squares


def _build_quadratic(params: Mapping, dimension: int) -> Objective:
    center = _vector_param(params, "center", dimension)
    weights = _vector_param(params, "weights", dimension, default=1.0)

    def quadratic(x: np.ndarray) -> float:
        diff = x - center
        return float(np.sum(weights * diff * diff))

    return quadratic


def _build_rosenbrock(params: Mapping, dimension: int) -> Objective:
    if dimension < 2:
        raise InvalidInputError("The rosenbrock objective needs at least 2 dimensions")
    a = _scalar_param(params, "a", 1.0)
    b = _scalar_param(params, "b", 100.0)

    def rosenbrock(x: np.ndarray) -> float:
        return float(np.sum(b * (x[1:] - x[:-1] ** 2) ** 2 + (a - x[:-1]) ** 2))

    return rosenbrock


OBJECTIVE_BUILDERS: Dict[str, Callable[[Mapping, int], Objective]] = {
    "sum_of_squares": _build_sum_of_squares,
    "quadratic": _build_quadratic,
    "rosenbrock": _build_rosenbrock,
}


def build_objective(objective: Any, dimension: int) -> Objective:
    """
    Resolve an objective given either as a callable or as a named closed form.

    Raises:
        InvalidInputError: If *objective* is neither, or names an unknown form
    """
    if callable(objective):
        return objective
    if isinstance(objective, Mapping):
        name = objective.get("name")
        builder = OBJECTIVE_BUILDERS.get(name) if isinstance(name, str) else None
        if builder is None:
            raise InvalidInputError(
                f"Unknown objective: {name!r}",
                details={"supported": ", ".join(sorted(OBJECTIVE_BUILDERS))},
            )
        return builder(objective, dimension)
    raise InvalidInputError("objective must be a callable or a named objective mapping")


def validate_initial_guess(initial_guess: Any) -> np.ndarray:
    try:
        x = np.asarray(initial_guess, dtype=np.float64)
    except (TypeError, ValueError):
        raise InvalidInputError("initialGuess must be a numeric vector")
    if x.ndim != 1 or x.size == 0:
        raise InvalidInputError("initialGuess must be a non-empty numeric vector")
    if not np.all(np.isfinite(x)):
        raise InvalidInputError("initialGuess must contain finite values")
    return x.copy()


# ------------------------------------------------------------------
# Gradient descent
# ------------------------------------------------------------------

class GradientDescentOptimizer:
    """
    Minimizes an objective with fixed-step gradient descent.

    No line search or adaptive step: x ← x − learning_rate · ∇f(x) until the
    gradient norm drops below ``tolerance`` or ``max_iterations`` is reached.
    Progress is reported every ``progress_interval`` iterations, and each
    report is also a cooperative yield point.
    """

    def __init__(
        self,
        learning_rate: float = 0.01,
        max_iterations: int = 1000,
        tolerance: float = 1e-6,
        progress_interval: int = 50,
        step: float = 1e-8,
    ):
        if learning_rate <= 0:
            raise InvalidInputError(f"learningRate must be > 0, got {learning_rate}")
        if isinstance(max_iterations, bool) or not isinstance(max_iterations, (int, np.integer)) \
                or max_iterations <= 0:
            raise InvalidInputError(f"maxIterations must be a positive integer, got {max_iterations!r}")
        if tolerance < 0:
            raise InvalidInputError(f"tolerance must be >= 0, got {tolerance}")
        self.learning_rate = float(learning_rate)
        self.max_iterations = int(max_iterations)
        self.tolerance = float(tolerance)
        self.progress_interval = max(1, progress_interval)
        self.step = step

    @staticmethod
    def _evaluate(objective: Objective, x: np.ndarray) -> float:
        value = float(objective(x))
        if not np.isfinite(value):
            raise ComputationFailureError(
                "Objective returned a non-finite value",
                details={"value": value},
            )
        return value

    async def minimize(
        self,
        objective: Any,
        initial_guess: Any,
        constraints: Any = None,
        reporter: Optional[ProgressReporter] = None,
        token: Optional[CancellationToken] = None,
    ) -> OptimizationResult:
        """
        Minimize *objective* starting from *initial_guess*.

        Args:
            objective: Callable ``f(x) -> float`` or a named objective mapping
            initial_guess: Starting point
            constraints: Accepted for interface compatibility; ignored
            reporter: Progress reporter for this task
            token: Cancellation token checked at each yield

        Returns:
            OptimizationResult with the final solution and its objective value

        Raises:
            InvalidInputError: If the objective or initial guess is malformed
            ComputationFailureError: If the objective or gradient goes non-finite
            TaskCancelledError: If the token is cancelled mid-run
        """
        reporter = reporter or ProgressReporter()
        reporter.report(0, "optimization_start", {"message": "Optimization started"})
        try:
            x = validate_initial_guess(initial_guess)
            f = build_objective(objective, x.size)
            if constraints is not None:
                logger.debug("Ignoring constraints; only unconstrained problems are supported")

            converged = False
            iterations = self.max_iterations
            gradient_norm = float("nan")
            for i in range(self.max_iterations):
                gradient = numerical_gradient(f, x, self.step)
                gradient_norm = float(np.linalg.norm(gradient))
                if not np.isfinite(gradient_norm):
                    raise ComputationFailureError(
                        "Gradient became non-finite",
                        details={"iteration": i},
                    )

                if gradient_norm < self.tolerance:
                    converged = True
                    iterations = i
                    reporter.report(100, "optimization_converged", {
                        "iterations": i,
                        "gradientNorm": gradient_norm,
                    })
                    break

                x -= self.learning_rate * gradient

                if i % self.progress_interval == 0:
                    reporter.report(i / self.max_iterations * 100, "optimization_progress", {
                        "iteration": i,
                        "gradientNorm": gradient_norm,
                        "currentValue": self._evaluate(f, x),
                    })
                    await checkpoint(token)

            value = self._evaluate(f, x)
        except Exception as exc:
            reporter.fail("optimization_error", exc)
            raise

        if not converged:
            reporter.report(100, "optimization_complete", {
                "iterations": iterations,
                "gradientNorm": gradient_norm,
                "currentValue": value,
            })
        logger.info(
            "Gradient descent stopped after %d iterations (converged=%s, value=%.6g)",
            iterations, converged, value,
        )
        return OptimizationResult(
            solution=x,
            value=value,
            iterations=iterations,
            converged=converged,
            gradient_norm=gradient_norm,
        )
