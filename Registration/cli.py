from __future__ import annotations

import argparse
from pathlib import Path
from typing import Optional, Sequence

from Registration.config import load_config
from Registration.errors import RegistrationError
from Registration.jacobian import JacobianValidator
from Registration.pipeline import run_deformable, run_longitudinal, run_rigid
from Registration.preprocessing import centroid_distance, resample_isotropic, zscore_normalize
from Registration.transform_io import read_transform
from Registration.volume import read_volume, write_volume


def _format_vector(values: Sequence[float], precision: int = 4) -> str:
    return "[" + ", ".join(f"{float(v):.{precision}f}" for v in values) + "]"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Longitudinal rigid + deformable 3D volume registration")
    sub = parser.add_subparsers(dest="command", required=True)

    iso_p = sub.add_parser("resample-iso", help="Resample a volume to isotropic spacing")
    iso_p.add_argument("input", type=Path, help="Input volume")
    iso_p.add_argument("output", type=Path, help="Output volume")
    iso_p.add_argument("--spacing", type=float, default=1.0, help="Target spacing in mm (default: 1.0)")

    norm_p = sub.add_parser("normalize", help="Z-score intensity normalisation")
    norm_p.add_argument("input", type=Path, help="Input volume")
    norm_p.add_argument("output", type=Path, help="Output volume")

    rigid_p = sub.add_parser("rigid", help="Rigid (Euler 3D) Mattes MI registration")
    rigid_p.add_argument("fixed", type=Path, help="Fixed/reference volume")
    rigid_p.add_argument("moving", type=Path, help="Moving volume")
    rigid_p.add_argument("output", type=Path, help="Registered output volume (on the fixed grid)")
    rigid_p.add_argument("--config", type=Path, default=None, help="Registration config YAML")
    rigid_p.add_argument("--transform", type=Path, default=None, help="Where to write the transform (.tfm)")

    def_p = sub.add_parser("deformable", help="Multi-resolution B-spline registration")
    def_p.add_argument("fixed", type=Path, help="Fixed/reference volume")
    def_p.add_argument("moving", type=Path, help="Moving volume (usually rigidly pre-aligned)")
    def_p.add_argument("output", type=Path, help="Registered output volume (on the fixed grid)")
    def_p.add_argument("--config", type=Path, default=None, help="Registration config YAML")
    def_p.add_argument("--transform", type=Path, default=None, help="Where to write the transform (.tfm)")
    def_p.add_argument("--jacobian", type=Path, default=None, help="Optional Jacobian determinant volume output")

    jac_p = sub.add_parser("jacobian", help="Jacobian determinant check of a saved transform")
    jac_p.add_argument("reference", type=Path, help="Reference volume supplying the grid")
    jac_p.add_argument("transform", type=Path, help="Transform file written by rigid/deformable")
    jac_p.add_argument("--output", type=Path, default=None, help="Optional determinant volume output")
    jac_p.add_argument(
        "--method",
        choices=("displacement_field", "analytic"),
        default="displacement_field",
        help="Finite differences of the displacement field or the transform's own Jacobian",
    )

    cen_p = sub.add_parser("centroid", help="Foreground centroid distance between two volumes")
    cen_p.add_argument("fixed", type=Path, help="Fixed volume")
    cen_p.add_argument("registered", type=Path, help="Registered volume")
    cen_p.add_argument("--lower", type=float, default=1.0, help="Lower foreground threshold (default: 1.0)")
    cen_p.add_argument("--upper", type=float, default=1e9, help="Upper foreground threshold (default: 1e9)")

    long_p = sub.add_parser("longitudinal", help="Register follow-ups onto a baseline (rigid then deformable)")
    long_p.add_argument("baseline", type=Path, help="Baseline volume")
    long_p.add_argument("followups", type=Path, nargs="+", help="Follow-up volumes")
    long_p.add_argument("--output-dir", type=Path, required=True, help="Output root directory")
    long_p.add_argument("--config", type=Path, default=None, help="Registration config YAML")
    long_p.add_argument("--processes", type=int, default=1, help="Worker processes (default: 1)")
    long_p.add_argument(
        "--preprocess",
        action="store_true",
        help="Resample to isotropic spacing and z-score normalise before registering",
    )
    return parser


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    return build_parser().parse_args(argv)


def cmd_resample_iso(args: argparse.Namespace) -> None:
    volume = resample_isotropic(read_volume(args.input), args.spacing)
    write_volume(volume, args.output)
    print(f"[resample-iso] Wrote {args.output}")
    print(f"[resample-iso] New spacing: {_format_vector(volume.spacing, 3)} New size: {list(volume.size)}")


def cmd_normalize(args: argparse.Namespace) -> None:
    volume, mean, std = zscore_normalize(read_volume(args.input))
    write_volume(volume, args.output)
    print(f"[normalize] Wrote {args.output}")
    print(f"[normalize] Mean: {mean:.6g} StdDev: {std:.6g}")


def cmd_rigid(args: argparse.Namespace) -> None:
    cfg = load_config(args.config)
    outcome = run_rigid(args.fixed, args.moving, args.output, config=cfg, transform_path=args.transform)
    result = outcome.registration
    print(f"[rigid] Wrote {outcome.output_path}")
    print(f"[rigid] Parameters: {_format_vector(outcome.transform.get_parameters(), 5)}")
    print(f"[rigid] Stop: {result.stop_condition.value if result.stop_condition else 'n/a'} metric={result.final_value:.6f}")


def cmd_deformable(args: argparse.Namespace) -> None:
    cfg = load_config(args.config)
    outcome = run_deformable(
        args.fixed,
        args.moving,
        args.output,
        config=cfg,
        transform_path=args.transform,
        jacobian_path=args.jacobian,
    )
    result = outcome.registration
    print(f"[deformable] Wrote {outcome.output_path}")
    print(f"[deformable] Stop: {result.stop_condition.value if result.stop_condition else 'n/a'} metric={result.final_value:.6f}")
    if outcome.jacobian is not None:
        print(f"[deformable] Jacobian {outcome.jacobian.summary()}")


def cmd_jacobian(args: argparse.Namespace) -> None:
    reference = read_volume(args.reference)
    transform = read_transform(args.transform)
    report = JacobianValidator(method=args.method, verbose=False).validate(transform, reference)
    if args.output is not None:
        write_volume(report.determinant, args.output)
    print(f"[jacobian] Determinant range: [{report.minimum:.6f}, {report.maximum:.6f}]")
    print(f"[jacobian] Folded voxels: {report.folded_voxels}/{report.total_voxels}")


def cmd_centroid(args: argparse.Namespace) -> None:
    first, second, distance = centroid_distance(
        read_volume(args.fixed), read_volume(args.registered), lower=args.lower, upper=args.upper
    )
    print(f"Fixed centroid:      {_format_vector(first, 3)}")
    print(f"Registered centroid: {_format_vector(second, 3)}")
    print(f"Distance (mm): {distance:.4f}")


def cmd_longitudinal(args: argparse.Namespace) -> None:
    cfg = load_config(args.config)
    summaries = run_longitudinal(
        args.baseline,
        args.followups,
        args.output_dir,
        config=cfg,
        processes=args.processes,
        preprocess=args.preprocess,
    )
    for item in summaries:
        print(
            f"[longitudinal] {item.moving.name}: rigid={item.rigid_stop} deformable={item.deformable_stop} "
            f"det(J)=[{item.jacobian_min:.4f}, {item.jacobian_max:.4f}] folded={item.folded_voxels}"
        )


COMMANDS = {
    "resample-iso": cmd_resample_iso,
    "normalize": cmd_normalize,
    "rigid": cmd_rigid,
    "deformable": cmd_deformable,
    "jacobian": cmd_jacobian,
    "centroid": cmd_centroid,
    "longitudinal": cmd_longitudinal,
}


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = parse_args(argv)
    try:
        COMMANDS[args.command](args)
    except (RegistrationError, ValueError) as exc:
        raise SystemExit(f"[{args.command}] error: {exc}") from exc


if __name__ == "__main__":
    main()
