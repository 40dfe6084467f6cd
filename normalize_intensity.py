#!/usr/bin/env python3
"""
Z-score normalise a (resampled) volume: (I - mean) / std over all voxels.
Usage:
    python normalize_intensity.py input_resampled.nii.gz output_normalized.nii.gz
"""

import argparse
from pathlib import Path

from Registration.errors import RegistrationError
from Registration.preprocessing import zscore_normalize
from Registration.volume import read_volume, write_volume


def main() -> None:
    parser = argparse.ArgumentParser(description="Z-score intensity normalisation")
    parser.add_argument("input", type=Path, help="Input volume")
    parser.add_argument("output", type=Path, help="Output volume")
    args = parser.parse_args()
    try:
        volume, mean, std = zscore_normalize(read_volume(args.input))
        write_volume(volume, args.output)
    except (RegistrationError, ValueError) as exc:
        raise SystemExit(f"[Normalize] {exc}") from exc
    print("[Normalize] Intensity normalization complete.")
    print(f"[Normalize] Mean: {mean:.6g} StdDev: {std:.6g}")


if __name__ == "__main__":
    main()
