from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence, Tuple, Union

import numpy as np
import SimpleITK as sitk

from Registration.errors import InvalidConfiguration, IoError


Vector3 = Tuple[float, float, float]


@dataclass(frozen=True, eq=False)
class VolumeGrid:
    """A 3D scalar volume with physical-space geometry.

    `data` is stored in SimpleITK array order `(z, y, x)`; `origin`, `spacing` and
    `size` are in image axis order `(x, y, z)`. `direction` holds the axis direction
    cosines as columns, so `physical = origin + direction @ (spacing * index)`.
    The voxel array is read-only; every transform/resample step builds a new grid.
    """

    data: np.ndarray
    origin: Vector3 = (0.0, 0.0, 0.0)
    spacing: Vector3 = (1.0, 1.0, 1.0)
    direction: np.ndarray = None  # type: ignore[assignment]

    def __post_init__(self) -> None:
        data = np.array(self.data, dtype=np.float32, copy=True)
        if data.ndim != 3:
            raise InvalidConfiguration(f"VolumeGrid expects a 3D array, got shape {data.shape}")
        if min(data.shape) < 1:
            raise InvalidConfiguration(f"VolumeGrid size must be positive, got {data.shape[::-1]}")
        data.setflags(write=False)

        spacing = tuple(float(s) for s in self.spacing)
        if len(spacing) != 3 or not all(np.isfinite(s) and s > 0 for s in spacing):
            raise InvalidConfiguration(f"Spacing must be three strictly positive values, got {self.spacing}")
        origin = tuple(float(o) for o in self.origin)
        if len(origin) != 3:
            raise InvalidConfiguration(f"Origin must have three values, got {self.origin}")

        direction = np.eye(3) if self.direction is None else np.array(self.direction, dtype=np.float64).reshape(3, 3)
        if not np.allclose(direction.T @ direction, np.eye(3), atol=1e-5):
            raise InvalidConfiguration("Direction matrix must be orthonormal.")
        direction.setflags(write=False)

        object.__setattr__(self, "data", data)
        object.__setattr__(self, "spacing", spacing)
        object.__setattr__(self, "origin", origin)
        object.__setattr__(self, "direction", direction)

    @classmethod
    def from_array(
        cls,
        array: np.ndarray,
        *,
        spacing: Sequence[float] = (1.0, 1.0, 1.0),
        origin: Sequence[float] = (0.0, 0.0, 0.0),
        direction: Optional[np.ndarray] = None,
    ) -> "VolumeGrid":
        return cls(data=array, origin=tuple(origin), spacing=tuple(spacing), direction=direction)

    @classmethod
    def from_sitk(cls, image: sitk.Image) -> "VolumeGrid":
        if image.GetDimension() != 3:
            raise InvalidConfiguration(f"Expected a 3D image, got {image.GetDimension()}D")
        if image.GetNumberOfComponentsPerPixel() != 1:
            raise InvalidConfiguration("Expected a scalar image.")
        array = sitk.GetArrayFromImage(sitk.Cast(image, sitk.sitkFloat32))
        return cls(
            data=array,
            origin=image.GetOrigin(),
            spacing=image.GetSpacing(),
            direction=np.array(image.GetDirection(), dtype=np.float64).reshape(3, 3),
        )

    def to_sitk(self) -> sitk.Image:
        image = sitk.GetImageFromArray(np.asarray(self.data, dtype=np.float32))
        image.SetOrigin(self.origin)
        image.SetSpacing(self.spacing)
        image.SetDirection(tuple(float(v) for v in self.direction.ravel()))
        return image

    @property
    def size(self) -> Tuple[int, int, int]:
        nz, ny, nx = self.data.shape
        return (int(nx), int(ny), int(nz))

    @property
    def number_of_voxels(self) -> int:
        return int(self.data.size)

    @property
    def index_to_physical_matrix(self) -> np.ndarray:
        return self.direction @ np.diag(self.spacing)

    @property
    def physical_to_index_matrix(self) -> np.ndarray:
        return np.diag(1.0 / np.asarray(self.spacing)) @ self.direction.T

    def index_to_physical(self, index: np.ndarray) -> np.ndarray:
        """Map `(N, 3)` continuous `(i, j, k)` indices to physical points."""
        index = np.asarray(index, dtype=np.float64)
        return index @ self.index_to_physical_matrix.T + np.asarray(self.origin)

    def physical_to_index(self, points: np.ndarray) -> np.ndarray:
        """Map `(N, 3)` physical points to continuous `(i, j, k)` indices."""
        points = np.asarray(points, dtype=np.float64)
        return (points - np.asarray(self.origin)) @ self.physical_to_index_matrix.T

    def voxel_indices(self, z_slice: Optional[slice] = None) -> np.ndarray:
        """Integer `(i, j, k)` indices of every voxel, in the flattened order of `data`."""
        nz, ny, nx = self.data.shape
        ks = np.arange(nz)[z_slice] if z_slice is not None else np.arange(nz)
        kk, jj, ii = np.meshgrid(ks, np.arange(ny), np.arange(nx), indexing="ij")
        return np.stack([ii.ravel(), jj.ravel(), kk.ravel()], axis=1)

    def voxel_points(self, z_slice: Optional[slice] = None) -> np.ndarray:
        return self.index_to_physical(self.voxel_indices(z_slice))

    @property
    def center(self) -> np.ndarray:
        """Physical position of the geometric centre (midpoint of the corner voxel centres)."""
        half = (np.asarray(self.size, dtype=np.float64) - 1.0) / 2.0
        return self.index_to_physical(half[None, :])[0]

    def physical_extent(self) -> np.ndarray:
        """Distance between first and last voxel centre along each axis, in mm."""
        return (np.asarray(self.size, dtype=np.float64) - 1.0) * np.asarray(self.spacing)

    def with_data(self, array: np.ndarray) -> "VolumeGrid":
        array = np.asarray(array)
        if array.shape != self.data.shape:
            raise InvalidConfiguration(f"Array shape {array.shape} does not match grid {self.data.shape}")
        return VolumeGrid(data=array, origin=self.origin, spacing=self.spacing, direction=self.direction)

    def same_grid(self, other: "VolumeGrid", tolerance: float = 1e-6) -> bool:
        return (
            self.size == other.size
            and np.allclose(self.spacing, other.spacing, rtol=0.0, atol=tolerance)
            and np.allclose(self.origin, other.origin, rtol=0.0, atol=tolerance)
            and np.allclose(self.direction, other.direction, rtol=0.0, atol=tolerance)
        )


def read_volume(path: Union[str, Path]) -> VolumeGrid:
    path = Path(path)
    if not path.exists():
        raise IoError("Volume file not found", path)
    try:
        image = sitk.ReadImage(str(path), sitk.sitkFloat32)
    except RuntimeError as exc:
        raise IoError(f"Could not read volume: {exc}", path) from exc
    try:
        return VolumeGrid.from_sitk(image)
    except InvalidConfiguration as exc:
        raise IoError(f"Unsupported volume: {exc}", path) from exc


def write_volume(volume: VolumeGrid, path: Union[str, Path]) -> Path:
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        sitk.WriteImage(volume.to_sitk(), str(path), True)
    except (RuntimeError, OSError) as exc:
        raise IoError(f"Could not write volume: {exc}", path) from exc
    return path
