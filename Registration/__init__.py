"""Rigid and B-spline registration of 3D volumes driven by Mattes mutual information.

The names below resolve on first access. Importing the package alone does not
pull in SimpleITK, scipy or the YAML loader.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from Registration.config import RegistrationConfig as RegistrationConfig
    from Registration.pipeline import register_deformable as register_deformable
    from Registration.pipeline import register_rigid as register_rigid
    from Registration.volume import VolumeGrid as VolumeGrid

__all__ = ["RegistrationConfig", "VolumeGrid", "register_rigid", "register_deformable"]


def __getattr__(name: str) -> Any:
    if name == "RegistrationConfig":
        from Registration.config import RegistrationConfig as _RegistrationConfig

        return _RegistrationConfig
    if name == "VolumeGrid":
        from Registration.volume import VolumeGrid as _VolumeGrid

        return _VolumeGrid
    if name == "register_rigid":
        from Registration.pipeline import register_rigid as _register_rigid

        return _register_rigid
    if name == "register_deformable":
        from Registration.pipeline import register_deformable as _register_deformable

        return _register_deformable
    raise AttributeError(name)
