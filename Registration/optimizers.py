from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np
from scipy.optimize import minimize

from Registration.bspline import FreeFormTransform
from Registration.errors import InvalidConfiguration
from Registration.metric import MattesMutualInformation
from Registration.transforms import RigidTransform, TransformModel


SCALE_ESTIMATORS = ("fixed", "physical_shift")
SHIFT_DELTA = 0.01
SHIFT_SAMPLES = 1000


class StopCondition(str, Enum):
    CONVERGED = "converged"
    ITERATION_CAP = "iteration-cap"
    EVALUATION_CAP = "evaluation-cap"


@dataclass
class OptimizerResult:
    """Outcome of one optimizer run; the transform is left at `parameters`."""

    stop_condition: StopCondition
    iterations: int
    evaluations: int
    best_value: float
    parameters: np.ndarray
    message: str = ""
    history: List[float] = field(default_factory=list)

    @property
    def converged(self) -> bool:
        return self.stop_condition is StopCondition.CONVERGED

    def summary(self) -> str:
        text = (
            f"{self.stop_condition.value} after {self.iterations} iterations / "
            f"{self.evaluations} evaluations, metric={self.best_value:.6f}"
        )
        if self.message:
            text = f"{text} ({self.message})"
        return text


class _BestTracker:
    def __init__(self, initial: np.ndarray) -> None:
        self.value = float("inf")
        self.parameters = initial.copy()
        self.history: List[float] = []

    def update(self, value: float, parameters: np.ndarray) -> None:
        self.history.append(float(value))
        if value < self.value:
            self.value = float(value)
            self.parameters = np.array(parameters, dtype=np.float64, copy=True)


class RegularStepGradientDescent:
    """Scaled regular-step gradient descent for low-dimensional transforms.

    Each iteration moves the parameters by `step_length` along the normalised,
    scale-divided gradient. The step is multiplied by `relaxation_factor` whenever
    the scaled gradient turns by more than 90 degrees between iterations.
    """

    def __init__(
        self,
        learning_rate: float = 4.0,
        minimum_step_length: float = 0.01,
        number_of_iterations: int = 200,
        relaxation_factor: float = 0.5,
        gradient_magnitude_tolerance: float = 1e-4,
        maximum_evaluations: Optional[int] = None,
        scales: Optional[Sequence[float]] = None,
        scales_estimator: str = "fixed",
        translation_scale: float = 1000.0,
    ) -> None:
        if learning_rate <= 0 or minimum_step_length <= 0:
            raise InvalidConfiguration("learning_rate and minimum_step_length must be positive")
        if not 0.0 < relaxation_factor < 1.0:
            raise InvalidConfiguration(f"relaxation_factor must be in (0, 1), got {relaxation_factor}")
        if number_of_iterations < 1:
            raise InvalidConfiguration("number_of_iterations must be >= 1")
        if maximum_evaluations is not None and maximum_evaluations < 1:
            raise InvalidConfiguration("maximum_evaluations must be >= 1 when given")
        if scales_estimator not in SCALE_ESTIMATORS:
            raise InvalidConfiguration(f"Unknown scales estimator {scales_estimator!r}; use one of {SCALE_ESTIMATORS}")
        if translation_scale <= 0:
            raise InvalidConfiguration("translation_scale must be positive")
        self.learning_rate = float(learning_rate)
        self.minimum_step_length = float(minimum_step_length)
        self.number_of_iterations = int(number_of_iterations)
        self.relaxation_factor = float(relaxation_factor)
        self.gradient_magnitude_tolerance = float(gradient_magnitude_tolerance)
        self.maximum_evaluations = maximum_evaluations
        self.scales = None if scales is None else np.asarray(scales, dtype=np.float64)
        self.scales_estimator = scales_estimator
        self.translation_scale = float(translation_scale)

    def parameter_scales(self, metric: MattesMutualInformation, transform: TransformModel) -> np.ndarray:
        n = transform.parameter_count()
        if self.scales is not None:
            if self.scales.size != n:
                raise InvalidConfiguration(f"Got {self.scales.size} scales for {n} parameters")
            return self.scales.copy()
        if self.scales_estimator == "physical_shift":
            return estimate_physical_shift_scales(transform, metric.sample_points)
        scales = np.ones(n, dtype=np.float64)
        if isinstance(transform, RigidTransform):
            scales[3:] = 1.0 / self.translation_scale
        return scales

    def optimize(self, metric: MattesMutualInformation, transform: TransformModel) -> OptimizerResult:
        scales = self.parameter_scales(metric, transform)
        parameters = transform.get_parameters()
        tracker = _BestTracker(parameters)
        step_length = self.learning_rate
        previous: Optional[np.ndarray] = None
        iterations = 0
        evaluations = 0
        message = ""

        while True:
            if iterations >= self.number_of_iterations:
                reason = StopCondition.ITERATION_CAP
                break
            if self.maximum_evaluations is not None and evaluations >= self.maximum_evaluations:
                reason = StopCondition.EVALUATION_CAP
                break

            evaluation = metric.evaluate(with_gradient=True, context={"iteration": iterations})
            evaluations += 1
            tracker.update(evaluation.value, parameters)

            scaled = evaluation.gradient / scales
            magnitude = float(np.linalg.norm(scaled))
            if magnitude < self.gradient_magnitude_tolerance:
                reason = StopCondition.CONVERGED
                message = f"gradient magnitude {magnitude:.3g} below tolerance"
                break
            if previous is not None and float(np.dot(scaled, previous)) < 0:
                step_length *= self.relaxation_factor
            if step_length < self.minimum_step_length:
                reason = StopCondition.CONVERGED
                message = f"step length {step_length:.3g} below minimum"
                break

            parameters = parameters - step_length * scaled / magnitude
            transform.set_parameters(parameters)
            previous = scaled
            iterations += 1

        transform.set_parameters(tracker.parameters)
        return OptimizerResult(
            stop_condition=reason,
            iterations=iterations,
            evaluations=evaluations,
            best_value=tracker.value,
            parameters=tracker.parameters.copy(),
            message=message,
            history=tracker.history,
        )


def estimate_physical_shift_scales(
    transform: TransformModel,
    points: np.ndarray,
    delta: float = SHIFT_DELTA,
    max_points: int = SHIFT_SAMPLES,
) -> np.ndarray:
    """Mean squared physical shift per unit change of each parameter.

    Parameters that move no sample point keep a scale of 1.
    """
    points = np.asarray(points, dtype=np.float64)
    if points.shape[0] > max_points:
        stride = int(np.ceil(points.shape[0] / max_points))
        points = points[::stride]
    probe = transform.copy()
    base_parameters = transform.get_parameters()
    base = probe.evaluate(points)
    scales = np.ones(base_parameters.size, dtype=np.float64)
    for p in range(base_parameters.size):
        shifted = base_parameters.copy()
        shifted[p] += delta
        probe.set_parameters(shifted)
        shift = np.sum((probe.evaluate(points) - base) ** 2, axis=1)
        value = float(np.mean(shift)) / (delta * delta)
        if value > 0:
            scales[p] = value
    return scales


BoundSpec = Union[float, Sequence[float]]


def _bound_values(value: BoundSpec, name: str) -> np.ndarray:
    values = np.atleast_1d(np.asarray(value, dtype=np.float64)).ravel()
    if values.size == 0 or not np.all(np.isfinite(values)):
        raise InvalidConfiguration(f"{name} needs finite values, got {value}")
    return values


def expand_bound(values: np.ndarray, parameter_count: int, per_axis: bool, name: str = "bound") -> np.ndarray:
    """One bound per parameter from a scalar, a per-axis triple or a full vector.

    The per-axis `(x, y, z)` form relies on free-form parameters being stored as
    all x coefficients, then y, then z.
    """
    if values.size == 1:
        return np.full(parameter_count, values[0])
    if values.size == parameter_count:
        return values.copy()
    if per_axis and values.size == 3 and parameter_count % 3 == 0:
        return np.repeat(values, parameter_count // 3)
    expected = "1, 3 (per axis)" if per_axis else "1"
    raise InvalidConfiguration(f"{name} has {values.size} values; expected {expected} or {parameter_count}")


class LBFGSBOptimizer:
    """Limited-memory BFGS with optional per-parameter bounds (scipy L-BFGS-B).

    `bound_selection` follows the usual L-BFGS-B convention: 0 unbounded, 1 lower
    bound only, 2 both bounds, 3 upper bound only. Each bound is a scalar shared by
    every parameter, an `(x, y, z)` triple applied to the matching displacement
    component of a free-form transform, or one value per parameter. Bounds are
    rebuilt from the transform's parameter count on each call, so the scalar and
    per-axis forms follow mesh refinement.
    """

    def __init__(
        self,
        gradient_convergence_tolerance: float = 1e-5,
        number_of_iterations: int = 30,
        maximum_evaluations: int = 100,
        memory: int = 5,
        bound_selection: int = 0,
        lower_bound: BoundSpec = 0.0,
        upper_bound: BoundSpec = 0.0,
    ) -> None:
        if number_of_iterations < 1 or maximum_evaluations < 1:
            raise InvalidConfiguration("number_of_iterations and maximum_evaluations must be >= 1")
        if memory < 1:
            raise InvalidConfiguration("memory must be >= 1")
        if bound_selection not in (0, 1, 2, 3):
            raise InvalidConfiguration(f"bound_selection must be 0, 1, 2 or 3, got {bound_selection}")
        self.gradient_convergence_tolerance = float(gradient_convergence_tolerance)
        self.number_of_iterations = int(number_of_iterations)
        self.maximum_evaluations = int(maximum_evaluations)
        self.memory = int(memory)
        self.bound_selection = int(bound_selection)
        self.lower_bound = _bound_values(lower_bound, "lower_bound")
        self.upper_bound = _bound_values(upper_bound, "upper_bound")
        if bound_selection == 2:
            lower, upper = self.lower_bound, self.upper_bound
            if lower.size == upper.size or 1 in (lower.size, upper.size):
                if np.any(lower > upper):
                    raise InvalidConfiguration(f"lower_bound {lower_bound} exceeds upper_bound {upper_bound}")

    def bounds(
        self, parameter_count: int, per_axis: bool = True
    ) -> Optional[List[Tuple[Optional[float], Optional[float]]]]:
        if self.bound_selection == 0:
            return None
        lower: List[Optional[float]] = [None] * parameter_count
        upper: List[Optional[float]] = [None] * parameter_count
        if self.bound_selection in (1, 2):
            lower = [float(v) for v in expand_bound(self.lower_bound, parameter_count, per_axis, "lower_bound")]
        if self.bound_selection in (2, 3):
            upper = [float(v) for v in expand_bound(self.upper_bound, parameter_count, per_axis, "upper_bound")]
        if self.bound_selection == 2 and any(lo > hi for lo, hi in zip(lower, upper)):  # type: ignore[operator]
            raise InvalidConfiguration("lower_bound exceeds upper_bound for some parameters")
        return list(zip(lower, upper))

    def optimize(self, metric: MattesMutualInformation, transform: TransformModel) -> OptimizerResult:
        initial = transform.get_parameters()
        tracker = _BestTracker(initial)
        counter = {"evaluations": 0}
        bounds = self.bounds(initial.size, per_axis=isinstance(transform, FreeFormTransform))

        def cost(x: np.ndarray) -> Tuple[float, np.ndarray]:
            transform.set_parameters(x)
            counter["evaluations"] += 1
            evaluation = metric.evaluate(with_gradient=True, context={"evaluation": counter["evaluations"]})
            tracker.update(evaluation.value, x)
            return evaluation.value, evaluation.gradient

        result = minimize(
            cost,
            initial,
            jac=True,
            method="L-BFGS-B",
            bounds=bounds,
            options={
                "maxiter": self.number_of_iterations,
                "maxfun": self.maximum_evaluations,
                "gtol": self.gradient_convergence_tolerance,
                "maxcor": self.memory,
            },
        )
        message = str(result.message)
        if result.success:
            reason = StopCondition.CONVERGED
        elif result.nit >= self.number_of_iterations:
            reason = StopCondition.ITERATION_CAP
        elif result.nfev >= self.maximum_evaluations:
            reason = StopCondition.EVALUATION_CAP
        else:
            # no step along the search direction decreases the metric any further
            reason = StopCondition.CONVERGED
            message = f"line search stopped without further decrease: {message}"

        transform.set_parameters(tracker.parameters)
        return OptimizerResult(
            stop_condition=reason,
            iterations=int(result.nit),
            evaluations=counter["evaluations"],
            best_value=tracker.value,
            parameters=tracker.parameters.copy(),
            message=message,
            history=tracker.history,
        )
