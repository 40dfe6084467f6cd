#!/usr/bin/env python3
"""
Registration sanity check: distance between the foreground centroids of two volumes.
Usage:
    python check_centroid_alignment.py fixed.nii.gz registered.nii.gz
"""

import argparse
from pathlib import Path

from Registration.errors import RegistrationError
from Registration.preprocessing import centroid_distance
from Registration.volume import read_volume


def main() -> None:
    parser = argparse.ArgumentParser(description="Compare foreground centroids of two volumes")
    parser.add_argument("fixed", type=Path, help="Fixed volume")
    parser.add_argument("registered", type=Path, help="Registered volume")
    args = parser.parse_args()
    try:
        first, second, distance = centroid_distance(read_volume(args.fixed), read_volume(args.registered))
    except (RegistrationError, ValueError) as exc:
        raise SystemExit(f"[Centroid] {exc}") from exc
    print(f"Fixed centroid:      {' '.join(f'{v:.3f}' for v in first)}")
    print(f"Registered centroid: {' '.join(f'{v:.3f}' for v in second)}")
    print(f"Distance (mm): {distance:.4f}")


if __name__ == "__main__":
    main()
