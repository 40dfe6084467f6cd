from __future__ import annotations

from typing import Tuple

import numpy as np

from Registration.errors import InvalidConfiguration
from Registration.resample import resample_to_reference
from Registration.volume import VolumeGrid


def resample_isotropic(volume: VolumeGrid, spacing: float = 1.0) -> VolumeGrid:
    """Resample onto an isotropic grid with the same origin and direction.

    The new size is `int(size * old_spacing / spacing)` per axis (at least 1).
    """
    if spacing <= 0:
        raise InvalidConfiguration(f"Isotropic spacing must be positive, got {spacing}")
    new_size = [max(1, int(n * s / spacing)) for n, s in zip(volume.size, volume.spacing)]
    nx, ny, nz = new_size
    reference = VolumeGrid(
        data=np.zeros((nz, ny, nx), dtype=np.float32),
        origin=volume.origin,
        spacing=(spacing, spacing, spacing),
        direction=volume.direction,
    )
    return resample_to_reference(volume, reference)


def zscore_normalize(volume: VolumeGrid) -> Tuple[VolumeGrid, float, float]:
    """Subtract the mean and divide by the population standard deviation over all voxels."""
    data = np.asarray(volume.data, dtype=np.float64)
    mean = float(data.mean())
    std = float(data.std())
    if not std > 0:
        raise ValueError("Cannot z-score normalise a constant volume (standard deviation is 0).")
    return volume.with_data((data - mean) / std), mean, std


def foreground_centroid(volume: VolumeGrid, lower: float = 1.0, upper: float = 1e9) -> np.ndarray:
    """Physical centre of gravity of the voxels with `lower <= value <= upper`."""
    data = np.asarray(volume.data)
    mask = (data >= lower) & (data <= upper)
    if not np.any(mask):
        raise ValueError(f"No foreground voxels in [{lower}, {upper}].")
    k, j, i = np.nonzero(mask)
    index = np.stack([i, j, k], axis=1).astype(np.float64)
    return volume.index_to_physical(index.mean(axis=0)[None, :])[0]


def centroid_distance(
    fixed: VolumeGrid,
    registered: VolumeGrid,
    lower: float = 1.0,
    upper: float = 1e9,
) -> Tuple[np.ndarray, np.ndarray, float]:
    """Foreground centroids of both volumes and their distance in mm."""
    first = foreground_centroid(fixed, lower, upper)
    second = foreground_centroid(registered, lower, upper)
    return first, second, float(np.linalg.norm(first - second))
