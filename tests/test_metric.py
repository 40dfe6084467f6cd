from __future__ import annotations

import numpy as np
import pytest

from Registration.errors import InvalidConfiguration, RegistrationFailed
from Registration.metric import JointHistogram, MattesMutualInformation, mutual_information
from Registration.transforms import RigidTransform
from Registration.volume import VolumeGrid


def _blob(size: int = 12, spacing: float = 2.0, shift=(0.0, 0.0, 0.0), scale: float = 1.0, offset: float = 0.0) -> VolumeGrid:
    """Two Gaussian blobs; `shift` moves the pattern in mm."""
    coords = np.arange(size) * spacing
    z, y, x = np.meshgrid(coords, coords, coords, indexing="ij")
    c = (size - 1) * spacing / 2.0
    x, y, z = x - shift[0], y - shift[1], z - shift[2]
    data = np.exp(-((x - c) ** 2 + (y - c) ** 2 + (z - c) ** 2) / (2 * 5.0**2))
    data += 0.6 * np.exp(-((x - c - 5.0) ** 2 + (y - c + 3.0) ** 2 + (z - c) ** 2) / (2 * 2.5**2))
    return VolumeGrid.from_array(scale * data + offset, spacing=(spacing,) * 3)


def _metric_value(fixed: VolumeGrid, moving: VolumeGrid, transform=None, **kwargs) -> float:
    metric = MattesMutualInformation(number_of_bins=kwargs.pop("number_of_bins", 24), **kwargs)
    metric.initialize(fixed, moving, transform or RigidTransform.centered_on(fixed))
    return metric.evaluate(with_gradient=False).value


def test_each_sample_adds_unit_weight_to_the_histogram() -> None:
    hist = JointHistogram(16, fixed_range=(0.0, 1.0), moving_range=(-2.0, 2.0))
    values = np.linspace(-2.0, 2.0, 37)
    start, weights, _ = hist.moving_window(values)
    counts = hist.accumulate(hist.fixed_bins(np.linspace(0.0, 1.0, 37)), start, weights)
    assert counts.sum() == pytest.approx(37.0)
    assert start.min() >= 1 and start.max() + 3 <= 15


def test_mutual_information_ignores_empty_bins() -> None:
    counts = np.zeros((8, 8))
    counts[2, 3] = 5.0
    counts[4, 5] = 5.0
    mi, log_ratio = mutual_information(counts)
    assert mi == pytest.approx(np.log(2.0))
    assert np.all(np.isfinite(log_ratio))
    assert log_ratio[0, 0] == 0.0


def test_constant_images_give_zero_information_and_gradient() -> None:
    flat = VolumeGrid.from_array(np.full((6, 6, 6), 3.0))
    metric = MattesMutualInformation(number_of_bins=16)
    metric.initialize(flat, flat, RigidTransform.centered_on(flat))
    result = metric.evaluate()
    assert result.value == pytest.approx(0.0, abs=1e-12)
    assert np.all(np.isfinite(result.gradient))
    np.testing.assert_allclose(result.gradient, 0.0, atol=1e-12)


def test_metric_is_robust_to_moving_intensity_scale() -> None:
    fixed = _blob()
    plain = _metric_value(fixed, _blob())
    rescaled = _metric_value(fixed, _blob(scale=5.0, offset=20.0))
    assert plain < 0.0
    assert rescaled == pytest.approx(plain, abs=1e-3)


def test_true_alignment_scores_better_than_a_shift() -> None:
    fixed = _blob()
    moving = _blob()
    aligned = _metric_value(fixed, moving)
    shifted = _metric_value(fixed, moving, RigidTransform.centered_on(fixed, [0, 0, 0, 4.0, 0, 0]))
    assert aligned < shifted


def test_gradient_points_towards_the_true_translation() -> None:
    fixed = _blob()
    moving = _blob(shift=(3.0, 0.0, 0.0))  # pattern sits 3 mm further along x
    metric = MattesMutualInformation(number_of_bins=24)
    metric.initialize(fixed, moving, RigidTransform.centered_on(fixed))
    result = metric.evaluate()
    assert result.gradient.shape == (6,)
    # increasing tx lowers the cost
    assert result.gradient[3] < 0.0
    assert abs(result.gradient[3]) > abs(result.gradient[4])


def test_threads_do_not_change_the_result() -> None:
    fixed = _blob()
    moving = _blob(shift=(1.0, -1.0, 0.5))
    values = []
    for threads in (1, 3):
        metric = MattesMutualInformation(number_of_bins=24, number_of_threads=threads)
        metric.initialize(fixed, moving, RigidTransform.centered_on(fixed))
        values.append(metric.evaluate())
    assert values[0].value == pytest.approx(values[1].value, abs=1e-12)
    np.testing.assert_allclose(values[0].gradient, values[1].gradient, atol=1e-10)


def test_sampling_strategies() -> None:
    fixed = _blob(size=10)
    regular = MattesMutualInformation(sampling_strategy="regular", sampling_percentage=0.25)
    regular.initialize(fixed, fixed, RigidTransform())
    assert regular.number_of_samples == 250

    first = MattesMutualInformation(sampling_strategy="random", sampling_percentage=0.1, seed=7)
    second = MattesMutualInformation(sampling_strategy="random", sampling_percentage=0.1, seed=7)
    first.initialize(fixed, fixed, RigidTransform())
    second.initialize(fixed, fixed, RigidTransform())
    assert first.number_of_samples == 100
    assert np.array_equal(first.sample_points, second.sample_points)


def test_all_samples_outside_raise_registration_failed() -> None:
    fixed = _blob()
    metric = MattesMutualInformation()
    metric.initialize(fixed, fixed, RigidTransform(parameters=[0, 0, 0, 1e4, 0, 0]))
    with pytest.raises(RegistrationFailed) as info:
        metric.evaluate()
    assert info.value.context["valid_samples"] == 0
    assert info.value.stage == "metric"


@pytest.mark.parametrize(
    "kwargs",
    [
        {"number_of_bins": 3},
        {"sampling_strategy": "stratified"},
        {"sampling_percentage": 0.0},
        {"number_of_threads": 0},
    ],
)
def test_invalid_metric_settings(kwargs) -> None:
    with pytest.raises(InvalidConfiguration):
        MattesMutualInformation(**kwargs)
