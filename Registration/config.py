from __future__ import annotations

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import yaml

from Registration.errors import InvalidConfiguration, IoError
from Registration.metric import MIN_BINS, SAMPLING_STRATEGIES
from Registration.optimizers import SCALE_ESTIMATORS


INITIALIZATIONS = ("identity", "geometry")
VALIDATION_METHODS = ("displacement_field", "analytic")

MeshSpec = Optional[Union[int, Tuple[int, int, int]]]


def _known_keys(cls, data: Optional[Dict], section: str) -> Dict[str, Any]:
    """Drop (and report) keys the dataclass does not define."""
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise InvalidConfiguration(f"'{section}' must be a mapping, got {type(data).__name__}")
    names = {f.name for f in fields(cls)}
    kept = {}
    for key, value in data.items():
        if key not in names:
            print(f"[config] Ignoring unknown key '{key}' in '{section}'.")
            continue
        kept[key] = value
    return kept


@dataclass
class LevelConfig:
    """One pyramid level: shrink factor, smoothing sigma (mm) and optional B-spline mesh."""

    shrink_factor: int = 1
    smoothing_sigma: float = 0.0
    mesh_size: MeshSpec = None

    def __post_init__(self) -> None:
        if int(self.shrink_factor) < 1:
            raise InvalidConfiguration(f"shrink_factor must be >= 1, got {self.shrink_factor}")
        if float(self.smoothing_sigma) < 0:
            raise InvalidConfiguration(f"smoothing_sigma must be >= 0, got {self.smoothing_sigma}")
        self.shrink_factor = int(self.shrink_factor)
        self.smoothing_sigma = float(self.smoothing_sigma)
        if self.mesh_size is not None:
            if isinstance(self.mesh_size, (list, tuple)):
                mesh = tuple(int(m) for m in self.mesh_size)
                if len(mesh) != 3:
                    raise InvalidConfiguration(f"mesh_size needs one or three values, got {self.mesh_size}")
            else:
                mesh = int(self.mesh_size)
            if min(mesh if isinstance(mesh, tuple) else (mesh,)) < 1:
                raise InvalidConfiguration(f"mesh_size must be positive, got {self.mesh_size}")
            self.mesh_size = mesh

    @classmethod
    def from_dict(cls, data: Any) -> "LevelConfig":
        # `[shrink, sigma]` or `[shrink, sigma, mesh]` shorthand
        if isinstance(data, (list, tuple)):
            return cls(*data)
        return cls(**_known_keys(cls, data, "levels"))


def _levels_from(data: Optional[Sequence[Any]], default: List[LevelConfig]) -> List[LevelConfig]:
    if data is None:
        return default
    levels = [LevelConfig.from_dict(item) for item in data]
    if not levels:
        raise InvalidConfiguration("At least one pyramid level is required.")
    return levels


@dataclass
class MetricConfig:
    number_of_bins: int = 32
    sampling_strategy: str = "none"
    sampling_percentage: float = 1.0
    seed: Optional[int] = None
    number_of_threads: int = 1

    def __post_init__(self) -> None:
        if int(self.number_of_bins) < MIN_BINS:
            raise InvalidConfiguration(f"number_of_bins must be >= {MIN_BINS}, got {self.number_of_bins}")
        if self.sampling_strategy not in SAMPLING_STRATEGIES:
            raise InvalidConfiguration(
                f"Unknown sampling_strategy '{self.sampling_strategy}'; use one of {SAMPLING_STRATEGIES}"
            )
        if not 0.0 < float(self.sampling_percentage) <= 1.0:
            raise InvalidConfiguration(f"sampling_percentage must be in (0, 1], got {self.sampling_percentage}")
        if int(self.number_of_threads) < 1:
            raise InvalidConfiguration("number_of_threads must be >= 1")

    @classmethod
    def from_dict(cls, data: Optional[Dict], default_bins: int = 32) -> "MetricConfig":
        merged = {"number_of_bins": default_bins, **_known_keys(cls, data, "metric")}
        return cls(**merged)


@dataclass
class RigidConfig:
    """Rigid stage settings.

    `learning_rate` is the first step length; with the default fixed scales it is
    close to a translation in mm. It must stay well below the extent of the
    volumes, otherwise the first step can carry every sample outside the moving
    buffer and the run fails with `RegistrationFailed`.
    """

    metric: MetricConfig = field(default_factory=MetricConfig)
    learning_rate: float = 4.0
    minimum_step_length: float = 0.01
    number_of_iterations: int = 200
    relaxation_factor: float = 0.5
    gradient_magnitude_tolerance: float = 1e-4
    maximum_evaluations: Optional[int] = None
    scales: str = "fixed"
    translation_scale: float = 1000.0
    initialization: str = "identity"
    levels: List[LevelConfig] = field(default_factory=lambda: [LevelConfig(1, 0.0)])

    def __post_init__(self) -> None:
        if self.learning_rate <= 0 or self.minimum_step_length <= 0:
            raise InvalidConfiguration("learning_rate and minimum_step_length must be positive")
        if not 0.0 < self.relaxation_factor < 1.0:
            raise InvalidConfiguration(f"relaxation_factor must be in (0, 1), got {self.relaxation_factor}")
        if int(self.number_of_iterations) < 1:
            raise InvalidConfiguration("number_of_iterations must be >= 1")
        if self.scales not in SCALE_ESTIMATORS:
            raise InvalidConfiguration(f"Unknown scales '{self.scales}'; use one of {SCALE_ESTIMATORS}")
        if self.initialization not in INITIALIZATIONS:
            raise InvalidConfiguration(f"Unknown initialization '{self.initialization}'; use one of {INITIALIZATIONS}")
        if any(level.mesh_size is not None for level in self.levels):
            raise InvalidConfiguration("Rigid levels cannot set mesh_size.")

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "RigidConfig":
        merged = _known_keys(cls, data, "rigid")
        merged["metric"] = MetricConfig.from_dict(merged.get("metric"), default_bins=32)
        merged["levels"] = _levels_from(merged.get("levels"), [LevelConfig(1, 0.0)])
        return cls(**merged)


@dataclass
class DeformableConfig:
    metric: MetricConfig = field(default_factory=lambda: MetricConfig(number_of_bins=50))
    initial_mesh_size: Union[int, Tuple[int, int, int]] = 4
    levels: List[LevelConfig] = field(
        default_factory=lambda: [LevelConfig(4, 2.0, 3), LevelConfig(2, 1.0, 4)]
    )
    gradient_convergence_tolerance: float = 1e-5
    number_of_iterations: int = 30
    maximum_evaluations: int = 100
    memory: int = 5
    bound_selection: int = 0
    # one value, an (x, y, z) triple, or one value per control-point coefficient
    lower_bound: Union[float, List[float]] = 0.0
    upper_bound: Union[float, List[float]] = 0.0

    def __post_init__(self) -> None:
        if isinstance(self.initial_mesh_size, (list, tuple)):
            self.initial_mesh_size = tuple(int(m) for m in self.initial_mesh_size)
        if int(self.number_of_iterations) < 1 or int(self.maximum_evaluations) < 1:
            raise InvalidConfiguration("number_of_iterations and maximum_evaluations must be >= 1")
        if int(self.memory) < 1:
            raise InvalidConfiguration("memory must be >= 1")
        if self.bound_selection not in (0, 1, 2, 3):
            raise InvalidConfiguration(f"bound_selection must be 0, 1, 2 or 3, got {self.bound_selection}")
        for name in ("lower_bound", "upper_bound"):
            value = getattr(self, name)
            if isinstance(value, (list, tuple)):
                if not value:
                    raise InvalidConfiguration(f"{name} must not be an empty list")
                setattr(self, name, [float(v) for v in value])
            else:
                setattr(self, name, float(value))
        lower = np.atleast_1d(self.lower_bound)
        upper = np.atleast_1d(self.upper_bound)
        comparable = lower.size == upper.size or 1 in (lower.size, upper.size)
        if self.bound_selection == 2 and comparable and np.any(lower > upper):
            raise InvalidConfiguration(f"lower_bound {self.lower_bound} exceeds upper_bound {self.upper_bound}")

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "DeformableConfig":
        merged = _known_keys(cls, data, "deformable")
        merged["metric"] = MetricConfig.from_dict(merged.get("metric"), default_bins=50)
        merged["levels"] = _levels_from(
            merged.get("levels"), [LevelConfig(4, 2.0, 3), LevelConfig(2, 1.0, 4)]
        )
        return cls(**merged)


@dataclass
class ValidationConfig:
    method: str = "displacement_field"
    fail_on_folding: bool = False

    def __post_init__(self) -> None:
        if self.method not in VALIDATION_METHODS:
            raise InvalidConfiguration(f"Unknown validation method '{self.method}'; use one of {VALIDATION_METHODS}")

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "ValidationConfig":
        return cls(**_known_keys(cls, data, "validation"))


@dataclass
class RegistrationConfig:
    """Top-level configuration for rigid + deformable registration runs."""

    rigid: RigidConfig = field(default_factory=RigidConfig)
    deformable: DeformableConfig = field(default_factory=DeformableConfig)
    validation: ValidationConfig = field(default_factory=ValidationConfig)
    background_value: float = 0.0
    isotropic_spacing: float = 1.0
    write_transforms: bool = True
    verbose: bool = True

    def __post_init__(self) -> None:
        if float(self.isotropic_spacing) <= 0:
            raise InvalidConfiguration(f"isotropic_spacing must be positive, got {self.isotropic_spacing}")

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "RegistrationConfig":
        merged = _known_keys(cls, data, "registration")
        merged["rigid"] = RigidConfig.from_dict(merged.get("rigid"))
        merged["deformable"] = DeformableConfig.from_dict(merged.get("deformable"))
        merged["validation"] = ValidationConfig.from_dict(merged.get("validation"))
        return cls(**merged)


def load_config(config_path: Optional[Union[str, Path]]) -> RegistrationConfig:
    """Load configuration from YAML; `None` returns the defaults."""
    if config_path is None:
        return RegistrationConfig()
    path = Path(config_path)
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except OSError as exc:
        raise IoError(f"Could not read configuration: {exc.strerror or exc}", path) from exc
    except yaml.YAMLError as exc:
        raise InvalidConfiguration(f"Malformed YAML in {path}: {exc}") from exc
    return RegistrationConfig.from_dict(data)
