from __future__ import annotations

import numpy as np
from scipy import ndimage

from Registration.errors import InvalidConfiguration
from Registration.volume import VolumeGrid


def smooth_and_shrink(volume: VolumeGrid, shrink_factor: int = 1, sigma: float = 0.0) -> VolumeGrid:
    """Gaussian-smooth (sigma in mm) then keep every `shrink_factor`-th voxel.

    Axes shorter than the factor are shrunk by their own length. The output keeps
    the direction; spacing grows by the factor and the origin moves to the first
    kept voxel centre, so physical positions are unchanged.
    """
    if int(shrink_factor) < 1:
        raise InvalidConfiguration(f"shrink_factor must be >= 1, got {shrink_factor}")
    if sigma < 0:
        raise InvalidConfiguration(f"smoothing sigma must be >= 0, got {sigma}")
    if int(shrink_factor) == 1 and sigma == 0:
        return volume

    data = np.asarray(volume.data, dtype=np.float32)
    if sigma > 0:
        # per-axis voxel sigma in (z, y, x) array order
        voxel_sigma = [sigma / s for s in volume.spacing[::-1]]
        data = ndimage.gaussian_filter(data, sigma=voxel_sigma, mode="nearest")

    factors = [min(int(shrink_factor), n) for n in volume.size]
    starts = [(f - 1) // 2 for f in factors]
    fx, fy, fz = factors
    sx, sy, sz = starts
    shrunk = data[sz::fz, sy::fy, sx::fx]
    origin = volume.index_to_physical(np.asarray(starts, dtype=np.float64)[None, :])[0]
    spacing = tuple(s * f for s, f in zip(volume.spacing, factors))
    return VolumeGrid(data=shrunk, origin=tuple(origin), spacing=spacing, direction=volume.direction)
