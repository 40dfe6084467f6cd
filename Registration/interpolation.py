from __future__ import annotations

from typing import Tuple

import numpy as np
from scipy import ndimage

from Registration.errors import InvalidConfiguration
from Registration.volume import VolumeGrid


INTERPOLATION_ORDERS = {"nearest": 0, "linear": 1}


def inside_buffer(volume: VolumeGrid, continuous_index: np.ndarray) -> np.ndarray:
    """True where a continuous `(i, j, k)` index falls inside the voxel buffer.

    A voxel covers +/- half a voxel around its centre, so the buffer spans
    `[-0.5, size - 0.5]` along each axis.
    """
    upper = np.asarray(volume.size, dtype=np.float64) - 0.5
    return np.all((continuous_index >= -0.5) & (continuous_index <= upper), axis=1)


def _array_coordinates(continuous_index: np.ndarray) -> np.ndarray:
    # (N, 3) (i, j, k) -> (3, N) rows in (z, y, x) array order
    return np.ascontiguousarray(continuous_index[:, ::-1].T)


def sample(
    volume: VolumeGrid,
    points: np.ndarray,
    *,
    interpolator: str = "linear",
    default_value: float = 0.0,
) -> Tuple[np.ndarray, np.ndarray]:
    """Interpolate `volume` at `(N, 3)` physical points.

    Returns `(values, inside)`; points outside the buffer get `default_value` and
    `inside[n] == False`.
    """
    if interpolator not in INTERPOLATION_ORDERS:
        raise InvalidConfiguration(f"Unknown interpolator {interpolator!r}; use one of {sorted(INTERPOLATION_ORDERS)}")
    points = np.atleast_2d(np.asarray(points, dtype=np.float64))
    cidx = volume.physical_to_index(points)
    inside = inside_buffer(volume, cidx)
    values = np.full(points.shape[0], float(default_value), dtype=np.float64)
    if np.any(inside):
        values[inside] = ndimage.map_coordinates(
            volume.data,
            _array_coordinates(cidx[inside]),
            order=INTERPOLATION_ORDERS[interpolator],
            mode="nearest",
            output=np.float64,
        )
    return values, inside


def physical_gradient(volume: VolumeGrid) -> np.ndarray:
    """Central-difference image gradient in physical coordinates.

    Returns an array of shape `(3, z, y, x)` holding `dI/dx`, `dI/dy`, `dI/dz`.
    Axes with a single voxel have a zero derivative.
    """
    data = np.asarray(volume.data, dtype=np.float64)
    index_gradient = np.zeros((3,) + data.shape, dtype=np.float64)
    # array axis 2 -> i, 1 -> j, 0 -> k
    for component, axis in enumerate((2, 1, 0)):
        if data.shape[axis] > 1:
            index_gradient[component] = np.gradient(data, axis=axis)
    # dI/dx = D diag(1/s) dI/di
    to_physical = volume.physical_to_index_matrix.T
    return np.einsum("ab,b...->a...", to_physical, index_gradient)


def sample_gradient(gradient: np.ndarray, volume: VolumeGrid, points: np.ndarray) -> np.ndarray:
    """Linearly interpolate a precomputed `physical_gradient` at `(N, 3)` points inside the buffer."""
    points = np.atleast_2d(np.asarray(points, dtype=np.float64))
    coords = _array_coordinates(volume.physical_to_index(points))
    out = np.empty((points.shape[0], 3), dtype=np.float64)
    for component in range(3):
        out[:, component] = ndimage.map_coordinates(
            gradient[component], coords, order=1, mode="nearest", output=np.float64
        )
    return out
