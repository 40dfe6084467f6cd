from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np
import pytest

from Registration.bspline import FreeFormTransform
from Registration.errors import InvalidConfiguration
from Registration.metric import MattesMutualInformation
from Registration.optimizers import (
    LBFGSBOptimizer,
    RegularStepGradientDescent,
    StopCondition,
    estimate_physical_shift_scales,
)
from Registration.transforms import RigidTransform
from Registration.volume import VolumeGrid


@dataclass
class _Evaluation:
    value: float
    gradient: Optional[np.ndarray]


class _QuadraticMetric:
    """Weighted squared distance of the transform parameters to a target."""

    def __init__(self, transform, target, weights=None) -> None:
        self.transform = transform
        self.target = np.asarray(target, dtype=np.float64)
        self.weights = np.ones_like(self.target) if weights is None else np.asarray(weights, dtype=np.float64)
        self.sample_points = np.random.default_rng(0).uniform(-10, 10, size=(50, 3))
        self.calls = 0

    def evaluate(self, with_gradient: bool = True, context=None) -> _Evaluation:
        self.calls += 1
        diff = self.transform.get_parameters() - self.target
        value = float(np.sum(self.weights * diff**2))
        return _Evaluation(value, 2.0 * self.weights * diff if with_gradient else None)


def _shifted_pair():
    coords = np.arange(10) * 2.0
    z, y, x = np.meshgrid(coords, coords, coords, indexing="ij")
    fixed = VolumeGrid.from_array(np.exp(-((x - 9) ** 2 + (y - 9) ** 2 + (z - 9) ** 2) / 50.0), spacing=(2.0,) * 3)
    moving = VolumeGrid.from_array(np.exp(-((x - 12) ** 2 + (y - 9) ** 2 + (z - 9) ** 2) / 50.0), spacing=(2.0,) * 3)
    return fixed, moving


def test_single_iteration_reports_iteration_cap_and_keeps_first_parameters() -> None:
    fixed, moving = _shifted_pair()
    transform = RigidTransform.centered_on(fixed)
    metric = MattesMutualInformation(number_of_bins=16)
    metric.initialize(fixed, moving, transform)

    result = RegularStepGradientDescent(number_of_iterations=1).optimize(metric, transform)

    assert result.stop_condition is StopCondition.ITERATION_CAP
    assert result.stop_condition.value == "iteration-cap"
    assert not result.converged
    assert result.evaluations == 1
    assert np.array_equal(result.parameters, np.zeros(6))
    assert np.array_equal(transform.get_parameters(), np.zeros(6))


def test_evaluation_cap_is_reported() -> None:
    transform = RigidTransform()
    metric = _QuadraticMetric(transform, [0.1, 0.2, 0.3, 5.0, -4.0, 3.0])
    optimizer = RegularStepGradientDescent(number_of_iterations=100, maximum_evaluations=3)
    result = optimizer.optimize(metric, transform)
    assert result.stop_condition is StopCondition.EVALUATION_CAP
    assert result.evaluations == 3
    assert metric.calls == 3
    assert len(result.history) == 3
    assert result.best_value == min(result.history)


def test_regular_step_converges_on_a_bowl() -> None:
    target = [0.1, -0.2, 0.05, 3.0, -2.0, 1.0]
    transform = RigidTransform()
    metric = _QuadraticMetric(transform, target)
    optimizer = RegularStepGradientDescent(
        learning_rate=1.0,
        minimum_step_length=1e-4,
        number_of_iterations=1000,
        scales=[1.0] * 6,
    )
    result = optimizer.optimize(metric, transform)
    assert result.stop_condition is StopCondition.CONVERGED
    assert result.message
    np.testing.assert_allclose(transform.get_parameters(), target, atol=1e-2)
    assert transform.get_parameters() == pytest.approx(result.parameters)


def test_fixed_scales_weight_translations_down() -> None:
    transform = RigidTransform()
    metric = _QuadraticMetric(transform, np.zeros(6))
    scales = RegularStepGradientDescent(translation_scale=1000.0).parameter_scales(metric, transform)
    np.testing.assert_allclose(scales, [1, 1, 1, 1e-3, 1e-3, 1e-3])


def test_physical_shift_scales() -> None:
    transform = RigidTransform()
    points = np.random.default_rng(1).uniform(-20, 20, size=(200, 3))
    scales = estimate_physical_shift_scales(transform, points)
    np.testing.assert_allclose(scales[3:], 1.0, rtol=1e-9)
    # rotation shifts grow with the lever arm
    assert np.all(scales[:3] > 10.0)


def test_lbfgsb_converges_on_a_bowl() -> None:
    target = [0.3, -0.1, 0.2, 4.0, 1.0, -2.0]
    transform = RigidTransform()
    metric = _QuadraticMetric(transform, target)
    result = LBFGSBOptimizer(number_of_iterations=100, maximum_evaluations=200).optimize(metric, transform)
    assert result.stop_condition is StopCondition.CONVERGED
    np.testing.assert_allclose(transform.get_parameters(), target, atol=1e-4)
    assert result.evaluations == metric.calls


def test_lbfgsb_respects_bounds() -> None:
    transform = RigidTransform()
    metric = _QuadraticMetric(transform, [2.0, -2.0, 0.1, 3.0, -0.2, 0.0])
    optimizer = LBFGSBOptimizer(number_of_iterations=100, maximum_evaluations=200, bound_selection=2, lower_bound=-0.5, upper_bound=0.5)
    optimizer.optimize(metric, transform)
    params = transform.get_parameters()
    assert np.all(params <= 0.5 + 1e-12)
    assert np.all(params >= -0.5 - 1e-12)
    np.testing.assert_allclose(params, [0.5, -0.5, 0.1, 0.5, -0.2, 0.0], atol=1e-4)


def test_lbfgsb_bounds_follow_parameter_count() -> None:
    optimizer = LBFGSBOptimizer(bound_selection=1, lower_bound=-1.0)
    assert optimizer.bounds(4) == [(-1.0, None)] * 4
    assert LBFGSBOptimizer().bounds(4) is None
    assert LBFGSBOptimizer(bound_selection=3, upper_bound=2.0).bounds(2) == [(None, 2.0)] * 2


def test_lbfgsb_iteration_cap() -> None:
    transform = RigidTransform()
    metric = _QuadraticMetric(transform, [1.0, 1.0, 1.0, 1.0, 1.0, 1.0], weights=[1, 10, 100, 1000, 3, 30])
    result = LBFGSBOptimizer(number_of_iterations=1, maximum_evaluations=100).optimize(metric, transform)
    assert result.stop_condition is StopCondition.ITERATION_CAP
    assert result.best_value == min(result.history)
    assert transform.get_parameters() == pytest.approx(result.parameters)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"bound_selection": 5},
        {"bound_selection": 2, "lower_bound": 1.0, "upper_bound": -1.0},
        {"memory": 0},
        {"number_of_iterations": 0},
    ],
)
def test_invalid_lbfgsb_settings(kwargs) -> None:
    with pytest.raises(InvalidConfiguration):
        LBFGSBOptimizer(**kwargs)


def test_invalid_regular_step_settings() -> None:
    with pytest.raises(InvalidConfiguration):
        RegularStepGradientDescent(relaxation_factor=1.5)
    with pytest.raises(InvalidConfiguration):
        RegularStepGradientDescent(scales_estimator="jacobian")


class _WrongSignMetric(_QuadraticMetric):
    """Reports the ascent direction, so no step along the search direction helps."""

    def evaluate(self, with_gradient: bool = True, context=None) -> _Evaluation:
        evaluation = super().evaluate(with_gradient, context)
        if evaluation.gradient is not None:
            evaluation.gradient = -evaluation.gradient
        return evaluation


def test_lbfgsb_line_search_stop_is_named_in_the_message() -> None:
    transform = RigidTransform()
    metric = _WrongSignMetric(transform, [1.0, -1.0, 0.5, 4.0, 2.0, -3.0])
    result = LBFGSBOptimizer(number_of_iterations=50, maximum_evaluations=500).optimize(metric, transform)
    assert result.stop_condition is StopCondition.CONVERGED
    assert "line search" in result.message
    assert "line search" in result.summary()
    assert np.array_equal(transform.get_parameters(), np.zeros(6))


def test_lbfgsb_per_parameter_bounds() -> None:
    transform = RigidTransform()
    metric = _QuadraticMetric(transform, [2.0] * 6)
    optimizer = LBFGSBOptimizer(
        number_of_iterations=100,
        maximum_evaluations=200,
        bound_selection=2,
        lower_bound=[-1.0] * 6,
        upper_bound=[0.1, 0.2, 0.3, 1.0, 5.0, 10.0],
    )
    optimizer.optimize(metric, transform)
    np.testing.assert_allclose(transform.get_parameters(), [0.1, 0.2, 0.3, 1.0, 2.0, 2.0], atol=1e-4)


def test_lbfgsb_per_axis_bounds_on_a_free_form_transform() -> None:
    reference = VolumeGrid.from_array(np.zeros((6, 6, 6), dtype=np.float32), spacing=(2.0,) * 3)
    transform = FreeFormTransform.from_reference(reference, 1)
    metric = _QuadraticMetric(transform, np.full(transform.parameter_count(), 3.0))
    optimizer = LBFGSBOptimizer(
        number_of_iterations=100, maximum_evaluations=200, bound_selection=3, upper_bound=[0.5, 1.0, 1.5]
    )
    optimizer.optimize(metric, transform)
    coefficients = transform.coefficients
    np.testing.assert_allclose(coefficients[0], 0.5, atol=1e-4)
    np.testing.assert_allclose(coefficients[1], 1.0, atol=1e-4)
    np.testing.assert_allclose(coefficients[2], 1.5, atol=1e-4)

    # the per-axis form is expanded again for the refined lattice
    transform.refine(2)
    bounds = optimizer.bounds(transform.parameter_count())
    assert len(bounds) == 3 * 5 * 5 * 5
    assert bounds[0] == (None, 0.5)
    assert bounds[len(bounds) // 2] == (None, 1.0)
    assert bounds[-1] == (None, 1.5)


def test_lbfgsb_bound_size_must_match() -> None:
    with pytest.raises(InvalidConfiguration):
        LBFGSBOptimizer(bound_selection=1, lower_bound=[0.0, 1.0]).bounds(6)
    # a triple only means per-axis for free-form parameters
    with pytest.raises(InvalidConfiguration):
        LBFGSBOptimizer(bound_selection=1, lower_bound=[0.0, 1.0, 2.0]).bounds(6, per_axis=False)
    with pytest.raises(InvalidConfiguration):
        LBFGSBOptimizer(bound_selection=2, lower_bound=[0.0, 2.0], upper_bound=[1.0, 1.0])
