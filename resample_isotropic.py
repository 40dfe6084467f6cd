#!/usr/bin/env python3
"""
Resample a volume onto an isotropic grid (same origin and direction, linear interpolation).
Usage:
    python resample_isotropic.py input.nii.gz output_iso.nii.gz [--spacing 1.0]
"""

import argparse
from pathlib import Path

from Registration.errors import RegistrationError
from Registration.preprocessing import resample_isotropic
from Registration.volume import read_volume, write_volume


def main() -> None:
    parser = argparse.ArgumentParser(description="Resample a volume to isotropic spacing")
    parser.add_argument("input", type=Path, help="Input volume")
    parser.add_argument("output", type=Path, help="Output volume")
    parser.add_argument("--spacing", type=float, default=1.0, help="Target spacing in mm (default: 1.0)")
    args = parser.parse_args()
    try:
        volume = resample_isotropic(read_volume(args.input), args.spacing)
        write_volume(volume, args.output)
    except RegistrationError as exc:
        raise SystemExit(f"[ResampleIso] {exc}") from exc
    print("[ResampleIso] Resampling complete!")
    print(f"[ResampleIso] New spacing: {' '.join(f'{s:g}' for s in volume.spacing)}")
    print(f"[ResampleIso] New size: {' '.join(str(n) for n in volume.size)}")


if __name__ == "__main__":
    main()
