from __future__ import annotations

from typing import Iterator, Optional, Sequence, Tuple, Union

import numpy as np
import SimpleITK as sitk
from scipy import ndimage

from Registration.errors import InvalidConfiguration
from Registration.transforms import TransformModel, _as_points
from Registration.volume import VolumeGrid


SPLINE_ORDER = 3
SUPPORT = SPLINE_ORDER + 1
CHUNK_SIZE = 32768
EDGE_TOLERANCE = 1e-6

MeshSize = Union[int, Sequence[int]]


def _as_mesh(mesh_size: MeshSize) -> Tuple[int, int, int]:
    if np.isscalar(mesh_size):
        mesh = (int(mesh_size),) * 3  # type: ignore[arg-type]
    else:
        mesh = tuple(int(m) for m in mesh_size)  # type: ignore[union-attr]
    if len(mesh) != 3 or min(mesh) < 1:
        raise InvalidConfiguration(f"Mesh size must be three positive integers, got {mesh_size}")
    return mesh  # type: ignore[return-value]


def cubic_bspline_weights(fraction: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Weights and derivatives of the four cubic B-spline taps for `fraction` in [0, 1].

    Tap `k` sits at `floor(u) - 1 + k`; both outputs have shape `fraction.shape + (4,)`.
    """
    f = np.asarray(fraction, dtype=np.float64)
    f2 = f * f
    f3 = f2 * f
    one_minus = 1.0 - f
    weights = np.stack(
        [
            one_minus**3 / 6.0,
            (3.0 * f3 - 6.0 * f2 + 4.0) / 6.0,
            (-3.0 * f3 + 3.0 * f2 + 3.0 * f + 1.0) / 6.0,
            f3 / 6.0,
        ],
        axis=-1,
    )
    derivatives = np.stack(
        [
            -0.5 * one_minus**2,
            1.5 * f2 - 2.0 * f,
            -1.5 * f2 + f + 0.5,
            0.5 * f2,
        ],
        axis=-1,
    )
    return weights, derivatives


def _subdivision_mask(factor: int) -> np.ndarray:
    """Two-scale coefficients of the cubic B-spline dilated by an integer `factor`."""
    box = np.ones(factor)
    mask = box
    for _ in range(SPLINE_ORDER):
        mask = np.convolve(mask, box)
    return mask / float(factor) ** SPLINE_ORDER


def _subdivide(coefficients: np.ndarray, axis: int, factor: int, count: int) -> np.ndarray:
    """Coefficients of the same spline on a lattice `factor` times finer along `axis`.

    Old node `i` sits on new node `factor * (i - 1) + 1`; the first `count` new
    nodes starting at new node 0 are returned.
    """
    if factor == 1:
        return coefficients
    moved = np.moveaxis(coefficients, axis, -1)
    upsampled = np.zeros(moved.shape[:-1] + (factor * (moved.shape[-1] - 1) + 1,), dtype=np.float64)
    upsampled[..., ::factor] = moved
    full = np.apply_along_axis(np.convolve, -1, upsampled, _subdivision_mask(factor))
    # mask half-width 2 * (factor - 1) plus old node 0 sitting at new node 1 - factor
    offset = 3 * (factor - 1)
    return np.moveaxis(full[..., offset : offset + count], -1, axis)


class FreeFormTransform(TransformModel):
    """Cubic B-spline free-form deformation over a regular control-point lattice.

    The transform domain is a box (`domain_origin`, `domain_physical_dimensions`,
    `domain_direction`) split into `mesh_size` cells per axis. The lattice has
    `mesh_size + 3` control points per axis and starts one grid spacing before the
    domain origin, so every point of the domain has a full 4x4x4 support.
    Parameters are all x displacements, then y, then z, each in x-fastest order.
    """

    def __init__(
        self,
        domain_origin: Sequence[float],
        domain_physical_dimensions: Sequence[float],
        mesh_size: MeshSize,
        domain_direction: Optional[np.ndarray] = None,
        parameters: Optional[Sequence[float]] = None,
    ) -> None:
        self._domain_origin = np.asarray(domain_origin, dtype=np.float64).reshape(3)
        self._domain_dimensions = np.asarray(domain_physical_dimensions, dtype=np.float64).reshape(3)
        if np.any(self._domain_dimensions <= 0):
            raise InvalidConfiguration(f"Transform domain dimensions must be positive, got {self._domain_dimensions}")
        self._domain_direction = (
            np.eye(3) if domain_direction is None else np.asarray(domain_direction, dtype=np.float64).reshape(3, 3)
        )
        self._set_mesh(_as_mesh(mesh_size))
        if parameters is not None:
            self.set_parameters(parameters)

    @classmethod
    def from_reference(cls, volume: VolumeGrid, mesh_size: MeshSize) -> "FreeFormTransform":
        """Identity deformation whose domain covers the voxel centres of `volume`."""
        extent = volume.physical_extent()
        # single-voxel axes still need a non-degenerate domain
        extent = np.where(extent > 0, extent, np.asarray(volume.spacing))
        return cls(
            domain_origin=volume.index_to_physical(np.zeros((1, 3)))[0],
            domain_physical_dimensions=extent,
            mesh_size=mesh_size,
            domain_direction=volume.direction,
        )

    def _set_mesh(self, mesh: Tuple[int, int, int]) -> None:
        self._mesh = mesh
        self._grid_size = tuple(m + SPLINE_ORDER for m in mesh)
        self._grid_spacing = self._domain_dimensions / np.asarray(mesh, dtype=np.float64)
        self._grid_origin = self._domain_origin - self._domain_direction @ self._grid_spacing
        # u = M (x - grid_origin), M = diag(1/spacing) D^T
        self._physical_to_grid = np.diag(1.0 / self._grid_spacing) @ self._domain_direction.T
        gx, gy, gz = self._grid_size
        self._coefficients = np.zeros((3, gz, gy, gx), dtype=np.float64)

    @property
    def mesh_size(self) -> Tuple[int, int, int]:
        return self._mesh

    @property
    def grid_size(self) -> Tuple[int, int, int]:
        return self._grid_size  # type: ignore[return-value]

    @property
    def grid_spacing(self) -> np.ndarray:
        return self._grid_spacing.copy()

    @property
    def grid_origin(self) -> np.ndarray:
        return self._grid_origin.copy()

    @property
    def domain_origin(self) -> np.ndarray:
        return self._domain_origin.copy()

    @property
    def domain_physical_dimensions(self) -> np.ndarray:
        return self._domain_dimensions.copy()

    @property
    def domain_direction(self) -> np.ndarray:
        return self._domain_direction.copy()

    @property
    def coefficients(self) -> np.ndarray:
        """Control-point displacements, shape `(3, gz, gy, gx)`."""
        return self._coefficients.copy()

    def parameter_count(self) -> int:
        return int(self._coefficients.size)

    def get_parameters(self) -> np.ndarray:
        return self._coefficients.ravel().copy()

    def _assign_parameters(self, parameters: np.ndarray) -> None:
        self._coefficients = parameters.reshape(self._coefficients.shape)

    def control_point_positions(self) -> np.ndarray:
        """Physical positions of all control points, `(gz*gy*gx, 3)` in parameter order."""
        gx, gy, gz = self._grid_size
        kk, jj, ii = np.meshgrid(np.arange(gz), np.arange(gy), np.arange(gx), indexing="ij")
        index = np.stack([ii.ravel(), jj.ravel(), kk.ravel()], axis=1).astype(np.float64)
        return (index * self._grid_spacing) @ self._domain_direction.T + self._grid_origin

    def _grid_index(self, points: np.ndarray) -> np.ndarray:
        return (points - self._grid_origin) @ self._physical_to_grid.T

    def _support(
        self, points: np.ndarray, with_derivatives: bool = False
    ) -> Tuple[np.ndarray, np.ndarray, np.ndarray, Optional[np.ndarray]]:
        """Flat coefficient indices and tensor weights of each point's 4x4x4 support.

        Returns `(valid, index, weight, d_weight)` where `index`/`weight` are
        `(M, 64)` for the `M` valid points and `d_weight` is `(M, 64, 3)` with
        derivatives with respect to the grid index (or None).
        """
        u = self._grid_index(points)
        # snap round-off at the domain faces back inside the valid region
        lower = 1.0
        upper = np.asarray(self._grid_size, dtype=np.float64) - 2.0
        u = np.where((u < lower) & (u > lower - EDGE_TOLERANCE), lower, u)
        u = np.where((u > upper) & (u < upper + EDGE_TOLERANCE), upper, u)
        base = np.floor(u)
        fraction = u - base
        start = base.astype(np.int64) - 1
        grid = np.asarray(self._grid_size, dtype=np.int64)
        # upper domain face: shift one tap down and use fraction 1
        edge = (start + SPLINE_ORDER == grid) & (fraction == 0.0)
        start = np.where(edge, start - 1, start)
        fraction = np.where(edge, 1.0, fraction)
        valid = np.all((start >= 0) & (start + SUPPORT <= grid), axis=1)

        start = start[valid]
        w, dw = cubic_bspline_weights(fraction[valid])
        gx, gy, _ = self._grid_size
        taps = np.arange(SUPPORT)
        ix = start[:, 0:1] + taps
        iy = start[:, 1:2] + taps
        iz = start[:, 2:3] + taps
        index = (iz[:, :, None, None] * gy + iy[:, None, :, None]) * gx + ix[:, None, None, :]
        wx, wy, wz = w[:, 0], w[:, 1], w[:, 2]
        weight = wz[:, :, None, None] * wy[:, None, :, None] * wx[:, None, None, :]
        m = start.shape[0]
        d_weight = None
        if with_derivatives:
            dx, dy, dz = dw[:, 0], dw[:, 1], dw[:, 2]
            d_weight = np.stack(
                [
                    (wz[:, :, None, None] * wy[:, None, :, None] * dx[:, None, None, :]).reshape(m, SUPPORT**3),
                    (wz[:, :, None, None] * dy[:, None, :, None] * wx[:, None, None, :]).reshape(m, SUPPORT**3),
                    (dz[:, :, None, None] * wy[:, None, :, None] * wx[:, None, None, :]).reshape(m, SUPPORT**3),
                ],
                axis=-1,
            )
        return valid, index.reshape(m, SUPPORT**3), weight.reshape(m, SUPPORT**3), d_weight

    def _chunks(self, n: int) -> Iterator[slice]:
        for begin in range(0, n, CHUNK_SIZE):
            yield slice(begin, min(n, begin + CHUNK_SIZE))

    def evaluate(self, points: np.ndarray) -> np.ndarray:
        points = _as_points(points)
        out = points.copy()
        flat = self._coefficients.reshape(3, -1)
        for chunk in self._chunks(points.shape[0]):
            valid, index, weight, _ = self._support(points[chunk])
            if not np.any(valid):
                continue
            displacement = np.stack([np.sum(weight * flat[d][index], axis=1) for d in range(3)], axis=1)
            target = out[chunk]
            target[valid] += displacement
            out[chunk] = target
        return out

    def local_jacobian(self, points: np.ndarray) -> np.ndarray:
        points = _as_points(points)
        jac = np.broadcast_to(np.eye(3), (points.shape[0], 3, 3)).copy()
        flat = self._coefficients.reshape(3, -1)
        for chunk in self._chunks(points.shape[0]):
            valid, index, _, d_weight = self._support(points[chunk], with_derivatives=True)
            if not np.any(valid):
                continue
            # d weight / dx = (d weight / du) M
            d_weight_x = d_weight @ self._physical_to_grid  # type: ignore[operator]
            block = jac[chunk]
            for d in range(3):
                block[valid, d, :] += np.einsum("mk,mkj->mj", flat[d][index], d_weight_x)
            jac[chunk] = block
        return jac

    def parameter_gradient(self, points: np.ndarray, point_gradients: np.ndarray) -> np.ndarray:
        points = _as_points(points)
        g = np.asarray(point_gradients, dtype=np.float64).reshape(-1, 3)
        n_coef = self._coefficients[0].size
        grad = np.zeros((3, n_coef), dtype=np.float64)
        for chunk in self._chunks(points.shape[0]):
            valid, index, weight, _ = self._support(points[chunk])
            if not np.any(valid):
                continue
            g_valid = g[chunk][valid]
            flat_index = index.ravel()
            for d in range(3):
                grad[d] += np.bincount(flat_index, weights=(weight * g_valid[:, d : d + 1]).ravel(), minlength=n_coef)
        return grad.ravel()

    def refine(self, mesh_size: MeshSize) -> None:
        """Change the lattice resolution while keeping the current deformation.

        When every new mesh size is an integer multiple of the old one the cubic
        B-spline space of the new lattice contains the old one, and the
        coefficients are obtained by exact subdivision: the field is unchanged
        everywhere in the domain.

        Other meshes are not nested. There the deformation is sampled at the new
        control points (cubic B-spline evaluation of the old coefficients,
        mirrored outside the lattice) and the new coefficients are recovered with
        a cubic B-spline prefilter, so the new lattice reproduces those samples at
        every interior control point and approximates the field in between.
        """
        mesh = _as_mesh(mesh_size)
        if mesh == self._mesh:
            return
        old_mesh = self._mesh
        old_coefficients = self._coefficients
        old_origin = self._grid_origin
        old_to_grid = self._physical_to_grid
        self._set_mesh(mesh)
        if not np.any(old_coefficients):
            return
        if all(new % old == 0 for new, old in zip(mesh, old_mesh)):
            refined = old_coefficients
            # coefficient axes are (component, z, y, x)
            for axis, (new, old) in enumerate(zip(mesh, old_mesh)):
                refined = _subdivide(refined, 3 - axis, new // old, new + SPLINE_ORDER)
            self._coefficients = np.ascontiguousarray(refined)
            return
        nodes = self.control_point_positions()
        old_index = (nodes - old_origin) @ old_to_grid.T
        coords = np.ascontiguousarray(old_index[:, ::-1].T)
        gx, gy, gz = self._grid_size
        refined = np.empty_like(self._coefficients)
        for d in range(3):
            samples = ndimage.map_coordinates(
                old_coefficients[d], coords, order=SPLINE_ORDER, mode="mirror", prefilter=False, output=np.float64
            ).reshape(gz, gy, gx)
            refined[d] = ndimage.spline_filter(samples, order=SPLINE_ORDER, mode="mirror", output=np.float64)
        self._coefficients = refined

    def copy(self) -> "FreeFormTransform":
        clone = FreeFormTransform(
            domain_origin=self._domain_origin,
            domain_physical_dimensions=self._domain_dimensions,
            mesh_size=self._mesh,
            domain_direction=self._domain_direction,
        )
        clone.set_parameters(self.get_parameters())
        return clone

    def to_sitk(self) -> sitk.BSplineTransform:
        transform = sitk.BSplineTransform(3, SPLINE_ORDER)
        transform.SetTransformDomainOrigin(tuple(float(v) for v in self._domain_origin))
        transform.SetTransformDomainPhysicalDimensions(tuple(float(v) for v in self._domain_dimensions))
        transform.SetTransformDomainDirection(tuple(float(v) for v in self._domain_direction.ravel()))
        transform.SetTransformDomainMeshSize(tuple(int(m) for m in self._mesh))
        transform.SetParameters(tuple(float(v) for v in self.get_parameters()))
        return transform

    def __repr__(self) -> str:
        peak = float(np.max(np.linalg.norm(self._coefficients.reshape(3, -1), axis=0))) if self._coefficients.size else 0.0
        return f"FreeFormTransform(mesh={self._mesh}, parameters={self.parameter_count()}, max_control_displacement={peak:.3f}mm)"
