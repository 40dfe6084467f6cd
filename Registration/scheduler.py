from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Union

import numpy as np
from tqdm import tqdm

from Registration.bspline import FreeFormTransform
from Registration.config import LevelConfig
from Registration.errors import InvalidConfiguration, RegistrationFailed
from Registration.metric import MattesMutualInformation
from Registration.optimizers import LBFGSBOptimizer, OptimizerResult, RegularStepGradientDescent, StopCondition
from Registration.pyramid import smooth_and_shrink
from Registration.transforms import TransformModel
from Registration.volume import VolumeGrid


Optimizer = Union[RegularStepGradientDescent, LBFGSBOptimizer]


@dataclass
class LevelResult:
    level: int
    shrink_factor: int
    smoothing_sigma: float
    mesh_size: Optional[tuple]
    initial_parameters: np.ndarray
    final_parameters: np.ndarray
    optimizer: OptimizerResult

    @property
    def stop_condition(self) -> StopCondition:
        return self.optimizer.stop_condition


@dataclass
class RegistrationResult:
    transform: TransformModel
    levels: List[LevelResult] = field(default_factory=list)

    @property
    def final_value(self) -> float:
        return self.levels[-1].optimizer.best_value if self.levels else float("nan")

    @property
    def stop_condition(self) -> Optional[StopCondition]:
        return self.levels[-1].stop_condition if self.levels else None

    @property
    def converged(self) -> bool:
        return all(level.optimizer.converged for level in self.levels)


class MultiResolutionScheduler:
    """Run one metric/optimizer pair over a coarse-to-fine pyramid.

    Levels are processed in order (first = coarsest). The transform is shared by
    all levels and is updated in place: each level starts from the parameters the
    previous level produced. A level with `mesh_size` refines a free-form
    transform before its optimizer runs.
    """

    def __init__(
        self,
        levels: Sequence[LevelConfig],
        metric: MattesMutualInformation,
        optimizer: Optimizer,
        verbose: bool = True,
        stage: str = "registration",
    ) -> None:
        if not levels:
            raise InvalidConfiguration("At least one pyramid level is required.")
        self.levels = list(levels)
        self.metric = metric
        self.optimizer = optimizer
        self.verbose = verbose
        self.stage = stage

    def _check_levels(self, transform: TransformModel) -> None:
        if isinstance(transform, FreeFormTransform):
            return
        if any(level.mesh_size is not None for level in self.levels):
            raise InvalidConfiguration(f"mesh_size is only valid for free-form transforms, not {type(transform).__name__}")

    def run(self, fixed: VolumeGrid, moving: VolumeGrid, transform: TransformModel) -> RegistrationResult:
        self._check_levels(transform)
        self.metric.stage = self.stage
        result = RegistrationResult(transform=transform)
        for index, level in enumerate(tqdm(self.levels, desc=f"[{self.stage}] levels", disable=not self.verbose)):
            if level.mesh_size is not None:
                transform.refine(level.mesh_size)  # type: ignore[union-attr]
            fixed_level = smooth_and_shrink(fixed, level.shrink_factor, level.smoothing_sigma)
            moving_level = smooth_and_shrink(moving, level.shrink_factor, level.smoothing_sigma)
            initial = transform.get_parameters()
            try:
                self.metric.initialize(fixed_level, moving_level, transform)
                outcome = self.optimizer.optimize(self.metric, transform)
            except RegistrationFailed as exc:
                raise exc.with_context(stage=self.stage, level=index) from exc

            mesh = getattr(transform, "mesh_size", None)
            result.levels.append(
                LevelResult(
                    level=index,
                    shrink_factor=level.shrink_factor,
                    smoothing_sigma=level.smoothing_sigma,
                    mesh_size=mesh,
                    initial_parameters=initial,
                    final_parameters=transform.get_parameters(),
                    optimizer=outcome,
                )
            )
            if self.verbose:
                grid = f" mesh={mesh}" if mesh is not None else ""
                print(
                    f"[{self.stage}] level {index}: shrink={level.shrink_factor} sigma={level.smoothing_sigma}mm"
                    f"{grid} samples={self.metric.number_of_samples} -> {outcome.summary()}"
                )
                if not outcome.converged:
                    print(f"[{self.stage}] level {index} did not converge; keeping best parameters found.")
        return result
