from __future__ import annotations

import math
from abc import ABC, abstractmethod
from typing import Optional, Sequence, Tuple

import numpy as np
import SimpleITK as sitk

from Registration.errors import InvalidParameterCount
from Registration.volume import VolumeGrid


class TransformModel(ABC):
    """Maps physical points of the fixed space into the moving space.

    All point arguments are `(N, 3)` arrays (a single `(3,)` point is accepted and
    promoted). Evaluation is batched so metrics and resamplers never dispatch
    per sample.
    """

    @abstractmethod
    def parameter_count(self) -> int:
        ...

    @abstractmethod
    def get_parameters(self) -> np.ndarray:
        ...

    @abstractmethod
    def _assign_parameters(self, parameters: np.ndarray) -> None:
        ...

    def set_parameters(self, parameters: Sequence[float]) -> None:
        params = np.asarray(parameters, dtype=np.float64).ravel()
        if params.size != self.parameter_count():
            raise InvalidParameterCount(self.parameter_count(), params.size, what=type(self).__name__)
        self._assign_parameters(params.copy())

    @abstractmethod
    def evaluate(self, points: np.ndarray) -> np.ndarray:
        ...

    @abstractmethod
    def local_jacobian(self, points: np.ndarray) -> np.ndarray:
        """Spatial Jacobian `dT/dx` at each point, shape `(N, 3, 3)`."""

    @abstractmethod
    def parameter_gradient(self, points: np.ndarray, point_gradients: np.ndarray) -> np.ndarray:
        """Chain rule through the transform: `sum_n g_n . dT(x_n)/dp`.

        `point_gradients` holds the derivative of a scalar cost with respect to the
        mapped position of each point, shape `(N, 3)`. Returns a vector of length
        `parameter_count()`.
        """

    @abstractmethod
    def copy(self) -> "TransformModel":
        ...

    @abstractmethod
    def to_sitk(self) -> sitk.Transform:
        ...

    def displacement(self, points: np.ndarray) -> np.ndarray:
        points = _as_points(points)
        return self.evaluate(points) - points

    def is_identity(self) -> bool:
        return not np.any(self.get_parameters())


def _as_points(points: np.ndarray) -> np.ndarray:
    points = np.asarray(points, dtype=np.float64)
    if points.ndim == 1:
        points = points[None, :]
    return points


def _rotation_x(angle: float) -> np.ndarray:
    c, s = math.cos(angle), math.sin(angle)
    return np.array([[1.0, 0.0, 0.0], [0.0, c, -s], [0.0, s, c]])


def _rotation_y(angle: float) -> np.ndarray:
    c, s = math.cos(angle), math.sin(angle)
    return np.array([[c, 0.0, s], [0.0, 1.0, 0.0], [-s, 0.0, c]])


def _rotation_z(angle: float) -> np.ndarray:
    c, s = math.cos(angle), math.sin(angle)
    return np.array([[c, -s, 0.0], [s, c, 0.0], [0.0, 0.0, 1.0]])


def _d_rotation_x(angle: float) -> np.ndarray:
    c, s = math.cos(angle), math.sin(angle)
    return np.array([[0.0, 0.0, 0.0], [0.0, -s, -c], [0.0, c, -s]])


def _d_rotation_y(angle: float) -> np.ndarray:
    c, s = math.cos(angle), math.sin(angle)
    return np.array([[-s, 0.0, c], [0.0, 0.0, 0.0], [-c, 0.0, -s]])


def _d_rotation_z(angle: float) -> np.ndarray:
    c, s = math.cos(angle), math.sin(angle)
    return np.array([[-s, -c, 0.0], [c, -s, 0.0], [0.0, 0.0, 0.0]])


class RigidTransform(TransformModel):
    """Euler 3D rigid transform about a fixed centre.

    Parameters are `(angle_x, angle_y, angle_z, tx, ty, tz)` (radians, mm) and the
    rotation is composed as `R = Rz @ Rx @ Ry`, so `T(x) = R (x - c) + c + t`.
    """

    NUMBER_OF_PARAMETERS = 6

    def __init__(
        self,
        center: Sequence[float] = (0.0, 0.0, 0.0),
        parameters: Optional[Sequence[float]] = None,
    ) -> None:
        self._center = np.asarray(center, dtype=np.float64).reshape(3)
        self._parameters = np.zeros(self.NUMBER_OF_PARAMETERS, dtype=np.float64)
        self._update_matrix()
        if parameters is not None:
            self.set_parameters(parameters)

    @classmethod
    def centered_on(cls, volume: VolumeGrid, parameters: Optional[Sequence[float]] = None) -> "RigidTransform":
        """Rotation centre at the geometric centre of `volume`."""
        return cls(center=volume.center, parameters=parameters)

    @classmethod
    def geometry_initialized(cls, fixed: VolumeGrid, moving: VolumeGrid) -> "RigidTransform":
        """Centre on the fixed volume and translate its centre onto the moving volume's centre."""
        transform = cls.centered_on(fixed)
        offset = moving.center - fixed.center
        transform.set_parameters([0.0, 0.0, 0.0, *offset])
        return transform

    def parameter_count(self) -> int:
        return self.NUMBER_OF_PARAMETERS

    def get_parameters(self) -> np.ndarray:
        return self._parameters.copy()

    def _assign_parameters(self, parameters: np.ndarray) -> None:
        self._parameters = parameters
        self._update_matrix()

    def _update_matrix(self) -> None:
        ax, ay, az = self._parameters[:3]
        self._matrix = _rotation_z(az) @ _rotation_x(ax) @ _rotation_y(ay)
        # offset = t + c - R c; exactly zero for the identity
        self._offset = self._parameters[3:] + self._center - self._matrix @ self._center

    @property
    def center(self) -> np.ndarray:
        return self._center.copy()

    @property
    def angles(self) -> np.ndarray:
        return self._parameters[:3].copy()

    @property
    def translation(self) -> np.ndarray:
        return self._parameters[3:].copy()

    @property
    def matrix(self) -> np.ndarray:
        return self._matrix.copy()

    def evaluate(self, points: np.ndarray) -> np.ndarray:
        points = _as_points(points)
        return points @ self._matrix.T + self._offset

    def local_jacobian(self, points: np.ndarray) -> np.ndarray:
        points = _as_points(points)
        return np.broadcast_to(self._matrix, (points.shape[0], 3, 3)).copy()

    def _rotation_derivatives(self) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        ax, ay, az = self._parameters[:3]
        rx, ry, rz = _rotation_x(ax), _rotation_y(ay), _rotation_z(az)
        return (
            rz @ _d_rotation_x(ax) @ ry,
            rz @ rx @ _d_rotation_y(ay),
            _d_rotation_z(az) @ rx @ ry,
        )

    def parameter_jacobian(self, points: np.ndarray) -> np.ndarray:
        """`dT/dp` at each point, shape `(N, 3, 6)`."""
        points = _as_points(points)
        centered = points - self._center
        jac = np.zeros((points.shape[0], 3, self.NUMBER_OF_PARAMETERS), dtype=np.float64)
        for p, d_rot in enumerate(self._rotation_derivatives()):
            jac[:, :, p] = centered @ d_rot.T
        jac[:, :, 3:] = np.eye(3)
        return jac

    def parameter_gradient(self, points: np.ndarray, point_gradients: np.ndarray) -> np.ndarray:
        points = _as_points(points)
        g = np.asarray(point_gradients, dtype=np.float64).reshape(-1, 3)
        centered = points - self._center
        grad = np.empty(self.NUMBER_OF_PARAMETERS, dtype=np.float64)
        for p, d_rot in enumerate(self._rotation_derivatives()):
            grad[p] = np.einsum("ni,ij,nj->", g, d_rot, centered)
        grad[3:] = g.sum(axis=0)
        return grad

    def copy(self) -> "RigidTransform":
        return RigidTransform(center=self._center, parameters=self._parameters)

    def to_sitk(self) -> sitk.Euler3DTransform:
        ax, ay, az, tx, ty, tz = (float(v) for v in self._parameters)
        return sitk.Euler3DTransform(tuple(float(c) for c in self._center), ax, ay, az, (tx, ty, tz))

    def motion_magnitude(self) -> Tuple[float, float]:
        """Return (translation_mm, max_rotation_deg)."""
        return float(np.linalg.norm(self._parameters[3:])), float(np.max(np.abs(self._parameters[:3])) * 180.0 / math.pi)

    def __repr__(self) -> str:
        angles = ", ".join(f"{v:.5f}" for v in self._parameters[:3])
        shift = ", ".join(f"{v:.4f}" for v in self._parameters[3:])
        return f"RigidTransform(angles=[{angles}], translation=[{shift}])"

