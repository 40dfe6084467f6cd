from __future__ import annotations

from typing import Optional

import numpy as np

from Registration.interpolation import INTERPOLATION_ORDERS, sample
from Registration.errors import InvalidConfiguration
from Registration.transforms import RigidTransform, TransformModel
from Registration.volume import VolumeGrid


SLICE_CHUNK_VOXELS = 1 << 20


class Resampler:
    """Materialise `source` on the grid of `reference` through a fixed-to-moving transform."""

    def __init__(self, interpolator: str = "linear", default_value: float = 0.0) -> None:
        if interpolator not in INTERPOLATION_ORDERS:
            raise InvalidConfiguration(f"Unknown interpolator {interpolator!r}; use one of {sorted(INTERPOLATION_ORDERS)}")
        self.interpolator = interpolator
        self.default_value = float(default_value)

    def execute(self, transform: TransformModel, source: VolumeGrid, reference: VolumeGrid) -> VolumeGrid:
        if transform.is_identity() and source.same_grid(reference, tolerance=0.0):
            return reference.with_data(source.data)

        nz, ny, nx = reference.data.shape
        out = np.empty((nz, ny, nx), dtype=np.float32)
        slices_per_chunk = max(1, SLICE_CHUNK_VOXELS // max(1, nx * ny))
        for z0 in range(0, nz, slices_per_chunk):
            z1 = min(nz, z0 + slices_per_chunk)
            points = reference.voxel_points(slice(z0, z1))
            values, _ = sample(
                source,
                transform.evaluate(points),
                interpolator=self.interpolator,
                default_value=self.default_value,
            )
            out[z0:z1] = values.reshape(z1 - z0, ny, nx)
        return reference.with_data(out)


def resample_to_reference(
    source: VolumeGrid,
    reference: VolumeGrid,
    transform: Optional[TransformModel] = None,
    *,
    interpolator: str = "linear",
    default_value: float = 0.0,
) -> VolumeGrid:
    transform = transform if transform is not None else RigidTransform()
    return Resampler(interpolator=interpolator, default_value=default_value).execute(transform, source, reference)
