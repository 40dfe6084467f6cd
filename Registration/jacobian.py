from __future__ import annotations

import warnings
from dataclasses import dataclass

import numpy as np

from Registration.errors import FoldingDetected, InvalidConfiguration, RegistrationFailed
from Registration.transforms import TransformModel
from Registration.volume import VolumeGrid


METHODS = ("displacement_field", "analytic")


@dataclass
class JacobianReport:
    minimum: float
    maximum: float
    folded_voxels: int
    total_voxels: int
    determinant: VolumeGrid

    @property
    def has_folding(self) -> bool:
        return self.folded_voxels > 0

    @property
    def folded_fraction(self) -> float:
        return self.folded_voxels / self.total_voxels if self.total_voxels else 0.0

    def summary(self) -> str:
        return (
            f"det(J) min={self.minimum:.4f} max={self.maximum:.4f} "
            f"folded={self.folded_voxels}/{self.total_voxels}"
        )


def determinant(matrices: np.ndarray) -> np.ndarray:
    """Determinant of `(..., 3, 3)` matrices by cofactor expansion (exact 1.0 for the identity)."""
    m = matrices
    return (
        m[..., 0, 0] * (m[..., 1, 1] * m[..., 2, 2] - m[..., 1, 2] * m[..., 2, 1])
        - m[..., 0, 1] * (m[..., 1, 0] * m[..., 2, 2] - m[..., 1, 2] * m[..., 2, 0])
        + m[..., 0, 2] * (m[..., 1, 0] * m[..., 2, 1] - m[..., 1, 1] * m[..., 2, 0])
    )


class JacobianValidator:
    """Post-hoc folding check of a finished transform on a reference grid.

    `displacement_field` differentiates `u(x) = T(x) - x` with central differences
    on the grid; `analytic` asks the transform for its own spatial Jacobian.
    Folding (det <= 0) is reported with a `FoldingDetected` warning.
    """

    def __init__(self, method: str = "displacement_field", fail_on_folding: bool = False, verbose: bool = True) -> None:
        if method not in METHODS:
            raise InvalidConfiguration(f"Unknown Jacobian method {method!r}; use one of {METHODS}")
        self.method = method
        self.fail_on_folding = fail_on_folding
        self.verbose = verbose

    @staticmethod
    def displacement_field(transform: TransformModel, reference: VolumeGrid) -> np.ndarray:
        """Physical displacement at every voxel, shape `(z, y, x, 3)`."""
        points = reference.voxel_points()
        return transform.displacement(points).reshape(reference.data.shape + (3,))

    def jacobian_matrices(self, transform: TransformModel, reference: VolumeGrid) -> np.ndarray:
        """`dT/dx` at every voxel, shape `(z, y, x, 3, 3)`."""
        if self.method == "analytic":
            return transform.local_jacobian(reference.voxel_points()).reshape(reference.data.shape + (3, 3))

        field = self.displacement_field(transform, reference)
        index_derivatives = np.zeros(field.shape + (3,), dtype=np.float64)
        # index axis i -> array axis 2, j -> 1, k -> 0
        for column, axis in enumerate((2, 1, 0)):
            if field.shape[axis] > 1:
                index_derivatives[..., column] = np.gradient(field, axis=axis)
        # du/dx = du/di . di/dx
        jac = index_derivatives @ reference.physical_to_index_matrix
        jac += np.eye(3)
        return jac

    def validate(self, transform: TransformModel, reference: VolumeGrid) -> JacobianReport:
        det = determinant(self.jacobian_matrices(transform, reference))
        folded = int(np.count_nonzero(det <= 0))
        report = JacobianReport(
            minimum=float(det.min()),
            maximum=float(det.max()),
            folded_voxels=folded,
            total_voxels=int(det.size),
            determinant=reference.with_data(det),
        )
        if self.verbose:
            print(f"[jacobian] {report.summary()}")
        if folded:
            message = (
                f"Jacobian determinant <= 0 at {folded} of {report.total_voxels} voxels "
                f"(min={report.minimum:.4f}); the deformation folds."
            )
            warnings.warn(message, FoldingDetected, stacklevel=2)
            if self.fail_on_folding:
                raise RegistrationFailed(message, stage="jacobian", context={"folded_voxels": folded})
        return report
