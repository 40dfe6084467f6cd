from __future__ import annotations

from pathlib import Path
from typing import Union

import numpy as np
import SimpleITK as sitk

from Registration.bspline import SPLINE_ORDER, FreeFormTransform
from Registration.errors import InvalidConfiguration, IoError
from Registration.transforms import RigidTransform, TransformModel


def write_transform(transform: TransformModel, path: Union[str, Path]) -> Path:
    """Write as an ITK transform file (Euler3DTransform or order-3 BSplineTransform)."""
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        sitk.WriteTransform(transform.to_sitk(), str(path))
    except (RuntimeError, OSError) as exc:
        raise IoError(f"Could not write transform: {exc}", path) from exc
    return path


def from_sitk_transform(transform: sitk.Transform) -> TransformModel:
    name = transform.GetName()
    if name == "CompositeTransform":
        composite = sitk.CompositeTransform(transform)
        if composite.GetNumberOfTransforms() != 1:
            raise InvalidConfiguration("Only single-transform files are supported.")
        transform = composite.GetNthTransform(0)
        name = transform.GetName()
    if name == "Euler3DTransform":
        euler = sitk.Euler3DTransform(transform)
        return RigidTransform(center=euler.GetCenter(), parameters=euler.GetParameters())
    if name == "BSplineTransform":
        bspline = sitk.BSplineTransform(transform)
        if bspline.GetOrder() != SPLINE_ORDER:
            raise InvalidConfiguration(f"Only cubic B-spline transforms are supported, got order {bspline.GetOrder()}")
        return FreeFormTransform(
            domain_origin=bspline.GetTransformDomainOrigin(),
            domain_physical_dimensions=bspline.GetTransformDomainPhysicalDimensions(),
            mesh_size=bspline.GetTransformDomainMeshSize(),
            domain_direction=np.asarray(bspline.GetTransformDomainDirection(), dtype=np.float64).reshape(3, 3),
            parameters=bspline.GetParameters(),
        )
    raise InvalidConfiguration(f"Unsupported transform type {name}")


def read_transform(path: Union[str, Path]) -> TransformModel:
    path = Path(path)
    if not path.exists():
        raise IoError("Transform file not found", path)
    try:
        transform = sitk.ReadTransform(str(path))
    except RuntimeError as exc:
        raise IoError(f"Could not read transform: {exc}", path) from exc
    return from_sitk_transform(transform)
