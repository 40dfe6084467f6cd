from __future__ import annotations

import numpy as np
import pytest

from Registration.bspline import FreeFormTransform
from Registration.errors import FoldingDetected, InvalidConfiguration, RegistrationFailed
from Registration.jacobian import JacobianValidator, determinant
from Registration.transforms import RigidTransform
from Registration.volume import VolumeGrid


def _reference() -> VolumeGrid:
    return VolumeGrid.from_array(np.zeros((8, 9, 10), dtype=np.float32), spacing=(2.0, 1.5, 3.0), origin=(1.0, -2.0, 4.0))


def _mirrored_x(reference: VolumeGrid) -> FreeFormTransform:
    """Coefficients of -2x on the x displacement give T(x) = -x: det = -1 everywhere."""
    transform = FreeFormTransform.from_reference(reference, 2)
    nodes = transform.control_point_positions()
    coefficients = np.zeros_like(nodes)
    coefficients[:, 0] = -2.0 * nodes[:, 0]
    transform.set_parameters(coefficients.T.ravel())
    return transform


def test_identity_determinant_is_exactly_one() -> None:
    ref = _reference()
    report = JacobianValidator(verbose=False).validate(FreeFormTransform.from_reference(ref, 3), ref)
    assert report.minimum == 1.0
    assert report.maximum == 1.0
    assert not report.has_folding
    assert report.determinant.same_grid(ref)


@pytest.mark.parametrize("method", ["displacement_field", "analytic"])
def test_rigid_motion_preserves_volume(method) -> None:
    ref = _reference()
    transform = RigidTransform.centered_on(ref, [0.2, -0.1, 0.3, 4.0, 1.0, -2.0])
    report = JacobianValidator(method=method, verbose=False).validate(transform, ref)
    assert report.minimum == pytest.approx(1.0, abs=1e-9)
    assert report.maximum == pytest.approx(1.0, abs=1e-9)


def test_methods_agree_on_smooth_deformation() -> None:
    ref = _reference()
    transform = FreeFormTransform.from_reference(ref, 2)
    transform.set_parameters(np.random.default_rng(0).normal(scale=0.3, size=transform.parameter_count()))
    field = JacobianValidator(method="displacement_field", verbose=False).validate(transform, ref)
    analytic = JacobianValidator(method="analytic", verbose=False).validate(transform, ref)
    interior = (slice(1, -1),) * 3
    np.testing.assert_allclose(field.determinant.data[interior], analytic.determinant.data[interior], atol=5e-3)


def test_folding_is_warned() -> None:
    ref = _reference()
    transform = _mirrored_x(ref)
    with pytest.warns(FoldingDetected):
        report = JacobianValidator(verbose=False).validate(transform, ref)
    assert report.has_folding
    assert report.folded_voxels == report.total_voxels
    assert report.folded_fraction == 1.0
    assert report.maximum == pytest.approx(-1.0, abs=1e-6)


@pytest.mark.filterwarnings("ignore::Registration.errors.FoldingDetected")
def test_folding_can_fail_the_run() -> None:
    ref = _reference()
    with pytest.raises(RegistrationFailed) as info:
        JacobianValidator(fail_on_folding=True, verbose=False).validate(_mirrored_x(ref), ref)
    assert info.value.stage == "jacobian"
    assert info.value.context["folded_voxels"] > 0


def test_displacement_field_shape() -> None:
    ref = _reference()
    transform = RigidTransform(parameters=[0, 0, 0, 1.0, 2.0, 3.0])
    field = JacobianValidator.displacement_field(transform, ref)
    assert field.shape == (8, 9, 10, 3)
    np.testing.assert_allclose(field[..., 0], 1.0)
    np.testing.assert_allclose(field[..., 2], 3.0)


def test_determinant_matches_numpy() -> None:
    mats = np.random.default_rng(1).normal(size=(20, 3, 3))
    np.testing.assert_allclose(determinant(mats), np.linalg.det(mats), atol=1e-12)


def test_unknown_method() -> None:
    with pytest.raises(InvalidConfiguration):
        JacobianValidator(method="symbolic")
