from __future__ import annotations

from dataclasses import dataclass
from multiprocessing import Pool
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union

from tqdm import tqdm

from Registration.bspline import FreeFormTransform
from Registration.config import DeformableConfig, MetricConfig, RegistrationConfig, RigidConfig
from Registration.errors import RegistrationFailed
from Registration.jacobian import JacobianReport, JacobianValidator
from Registration.metric import MattesMutualInformation
from Registration.optimizers import LBFGSBOptimizer, RegularStepGradientDescent
from Registration.preprocessing import resample_isotropic, zscore_normalize
from Registration.resample import Resampler
from Registration.scheduler import MultiResolutionScheduler, RegistrationResult
from Registration.transform_io import write_transform
from Registration.transforms import RigidTransform, TransformModel
from Registration.volume import VolumeGrid, read_volume, write_volume


PathLike = Union[str, Path]


def build_metric(cfg: MetricConfig) -> MattesMutualInformation:
    return MattesMutualInformation(
        number_of_bins=cfg.number_of_bins,
        sampling_strategy=cfg.sampling_strategy,
        sampling_percentage=cfg.sampling_percentage,
        seed=cfg.seed,
        number_of_threads=cfg.number_of_threads,
    )


def build_rigid_optimizer(cfg: RigidConfig) -> RegularStepGradientDescent:
    return RegularStepGradientDescent(
        learning_rate=cfg.learning_rate,
        minimum_step_length=cfg.minimum_step_length,
        number_of_iterations=cfg.number_of_iterations,
        relaxation_factor=cfg.relaxation_factor,
        gradient_magnitude_tolerance=cfg.gradient_magnitude_tolerance,
        maximum_evaluations=cfg.maximum_evaluations,
        scales_estimator=cfg.scales,
        translation_scale=cfg.translation_scale,
    )


def build_deformable_optimizer(cfg: DeformableConfig) -> LBFGSBOptimizer:
    return LBFGSBOptimizer(
        gradient_convergence_tolerance=cfg.gradient_convergence_tolerance,
        number_of_iterations=cfg.number_of_iterations,
        maximum_evaluations=cfg.maximum_evaluations,
        memory=cfg.memory,
        bound_selection=cfg.bound_selection,
        lower_bound=cfg.lower_bound,
        upper_bound=cfg.upper_bound,
    )


def register_rigid(
    fixed: VolumeGrid,
    moving: VolumeGrid,
    cfg: Optional[RigidConfig] = None,
    *,
    initial: Optional[RigidTransform] = None,
    verbose: bool = True,
) -> RegistrationResult:
    """Rigid (Euler 3D) registration of `moving` onto `fixed`; the result maps fixed to moving space."""
    cfg = cfg or RigidConfig()
    if initial is not None:
        transform = initial.copy()
    elif cfg.initialization == "geometry":
        transform = RigidTransform.geometry_initialized(fixed, moving)
    else:
        transform = RigidTransform.centered_on(fixed)
    scheduler = MultiResolutionScheduler(
        cfg.levels, build_metric(cfg.metric), build_rigid_optimizer(cfg), verbose=verbose, stage="rigid"
    )
    result = scheduler.run(fixed, moving, transform)
    if verbose:
        translation_mm, rotation_deg = transform.motion_magnitude()
        print(f"[rigid] {transform!r} (|t|={translation_mm:.2f}mm, max rotation={rotation_deg:.2f}deg)")
    return result


def register_deformable(
    fixed: VolumeGrid,
    moving: VolumeGrid,
    cfg: Optional[DeformableConfig] = None,
    *,
    verbose: bool = True,
) -> RegistrationResult:
    """B-spline free-form registration of `moving` onto `fixed`, starting from the identity."""
    cfg = cfg or DeformableConfig()
    transform = FreeFormTransform.from_reference(fixed, cfg.initial_mesh_size)
    scheduler = MultiResolutionScheduler(
        cfg.levels, build_metric(cfg.metric), build_deformable_optimizer(cfg), verbose=verbose, stage="deformable"
    )
    result = scheduler.run(fixed, moving, transform)
    if verbose:
        print(f"[deformable] {transform!r}")
    return result


@dataclass
class RunOutcome:
    """What a file-based run wrote, plus the numbers worth printing."""

    output_path: Path
    registration: RegistrationResult
    transform_path: Optional[Path] = None
    jacobian: Optional[JacobianReport] = None

    @property
    def transform(self) -> TransformModel:
        return self.registration.transform


def _read(path: PathLike, stage: str, verbose: bool) -> VolumeGrid:
    if verbose:
        print(f"[{stage}] Reading {path}")
    return read_volume(path)


def _with_file_context(exc: RegistrationFailed, fixed: PathLike, moving: PathLike) -> RegistrationFailed:
    return exc.with_context(fixed=str(fixed), moving=str(moving))


def run_rigid(
    fixed_path: PathLike,
    moving_path: PathLike,
    output_path: PathLike,
    config: Optional[RegistrationConfig] = None,
    transform_path: Optional[PathLike] = None,
) -> RunOutcome:
    config = config or RegistrationConfig()
    fixed = _read(fixed_path, "rigid", config.verbose)
    moving = _read(moving_path, "rigid", config.verbose)
    try:
        result = register_rigid(fixed, moving, config.rigid, verbose=config.verbose)
    except RegistrationFailed as exc:
        raise _with_file_context(exc, fixed_path, moving_path) from exc
    registered = Resampler(default_value=config.background_value).execute(result.transform, moving, fixed)
    output = write_volume(registered, output_path)
    written = None
    if config.write_transforms:
        written = write_transform(result.transform, transform_path or _sibling(output, "rigid.tfm"))
    return RunOutcome(output_path=output, registration=result, transform_path=written)


def run_deformable(
    fixed_path: PathLike,
    moving_path: PathLike,
    output_path: PathLike,
    config: Optional[RegistrationConfig] = None,
    transform_path: Optional[PathLike] = None,
    jacobian_path: Optional[PathLike] = None,
) -> RunOutcome:
    config = config or RegistrationConfig()
    fixed = _read(fixed_path, "deformable", config.verbose)
    moving = _read(moving_path, "deformable", config.verbose)
    try:
        result = register_deformable(fixed, moving, config.deformable, verbose=config.verbose)
    except RegistrationFailed as exc:
        raise _with_file_context(exc, fixed_path, moving_path) from exc
    registered = Resampler(default_value=config.background_value).execute(result.transform, moving, fixed)
    output = write_volume(registered, output_path)
    validator = JacobianValidator(
        method=config.validation.method,
        fail_on_folding=config.validation.fail_on_folding,
        verbose=config.verbose,
    )
    report = validator.validate(result.transform, fixed)
    if jacobian_path is not None:
        write_volume(report.determinant, jacobian_path)
    written = None
    if config.write_transforms:
        written = write_transform(result.transform, transform_path or _sibling(output, "deformable.tfm"))
    return RunOutcome(output_path=output, registration=result, transform_path=written, jacobian=report)


def _sibling(path: Path, suffix: str) -> Path:
    return path.with_name(f"{volume_stem(path)}_{suffix}")


def volume_stem(path: PathLike) -> str:
    name = Path(path).name
    for ext in (".nii.gz", ".nii", ".mha", ".mhd", ".nrrd"):
        if name.endswith(ext):
            return name[: -len(ext)]
    return Path(name).stem


@dataclass
class TimepointSummary:
    """Per follow-up outcome of a longitudinal run (kept small so it pickles cheaply)."""

    moving: Path
    rigid_output: Path
    deformable_output: Path
    rigid_parameters: Tuple[float, ...]
    rigid_stop: str
    deformable_stop: str
    jacobian_min: float
    jacobian_max: float
    folded_voxels: int


def _prepare(volume: VolumeGrid, config: RegistrationConfig, preprocess: bool) -> VolumeGrid:
    if not preprocess:
        return volume
    volume = resample_isotropic(volume, config.isotropic_spacing)
    normalized, mean, std = zscore_normalize(volume)
    if config.verbose:
        print(f"[normalize] mean={mean:.4f} std={std:.4f}")
    return normalized


def _run_timepoint(args: Tuple[Path, Path, Path, RegistrationConfig, bool]) -> TimepointSummary:
    baseline_path, moving_path, output_dir, config, preprocess = args
    stem = volume_stem(moving_path)
    target = output_dir / stem
    fixed = _prepare(read_volume(baseline_path), config, preprocess)
    moving = _prepare(read_volume(moving_path), config, preprocess)
    resampler = Resampler(default_value=config.background_value)

    try:
        rigid = register_rigid(fixed, moving, config.rigid, verbose=config.verbose)
        rigid_volume = resampler.execute(rigid.transform, moving, fixed)
        deformable = register_deformable(fixed, rigid_volume, config.deformable, verbose=config.verbose)
    except RegistrationFailed as exc:
        raise _with_file_context(exc, baseline_path, moving_path) from exc
    deformed = resampler.execute(deformable.transform, rigid_volume, fixed)

    rigid_output = write_volume(rigid_volume, target / f"{stem}_rigid.nii.gz")
    deformable_output = write_volume(deformed, target / f"{stem}_deformable.nii.gz")
    report = JacobianValidator(
        method=config.validation.method,
        fail_on_folding=config.validation.fail_on_folding,
        verbose=config.verbose,
    ).validate(deformable.transform, fixed)
    write_volume(report.determinant, target / f"{stem}_jacobian.nii.gz")
    if config.write_transforms:
        write_transform(rigid.transform, target / f"{stem}_rigid.tfm")
        write_transform(deformable.transform, target / f"{stem}_deformable.tfm")

    return TimepointSummary(
        moving=Path(moving_path),
        rigid_output=rigid_output,
        deformable_output=deformable_output,
        rigid_parameters=tuple(float(v) for v in rigid.transform.get_parameters()),
        rigid_stop=rigid.stop_condition.value if rigid.stop_condition else "",
        deformable_stop=deformable.stop_condition.value if deformable.stop_condition else "",
        jacobian_min=report.minimum,
        jacobian_max=report.maximum,
        folded_voxels=report.folded_voxels,
    )


def run_longitudinal(
    baseline_path: PathLike,
    followup_paths: Sequence[PathLike],
    output_dir: PathLike,
    config: Optional[RegistrationConfig] = None,
    processes: int = 1,
    preprocess: bool = False,
) -> List[TimepointSummary]:
    """Register every follow-up onto the baseline (rigid, then deformable).

    Follow-ups are independent, so with `processes > 1` they run in a process pool.
    Outputs go to `output_dir/<follow-up stem>/`.
    """
    config = config or RegistrationConfig()
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    jobs = [(Path(baseline_path), Path(p), output_dir, config, preprocess) for p in followup_paths]
    if not jobs:
        return []
    if processes <= 1 or len(jobs) == 1:
        return [_run_timepoint(job) for job in tqdm(jobs, desc="timepoints", disable=not config.verbose)]
    with Pool(processes=min(processes, len(jobs))) as pool:
        return list(
            tqdm(pool.imap(_run_timepoint, jobs), total=len(jobs), desc="timepoints", disable=not config.verbose)
        )
