#!/usr/bin/env python3
"""
Rigidly register a follow-up volume onto a baseline (Euler 3D, Mattes MI, regular-step descent).
Usage:
    python rigid_register.py fixed_T0.nii.gz moving_T1.nii.gz output_rigid.nii.gz [--config cfg.yaml]
"""

import argparse
from pathlib import Path

from Registration.config import load_config
from Registration.errors import RegistrationError
from Registration.pipeline import run_rigid


def main() -> None:
    parser = argparse.ArgumentParser(description="Rigid registration of moving onto fixed")
    parser.add_argument("fixed", type=Path, help="Fixed/reference volume")
    parser.add_argument("moving", type=Path, help="Moving volume")
    parser.add_argument("output", type=Path, help="Registered output volume")
    parser.add_argument("--config", type=Path, default=None, help="Registration config YAML")
    args = parser.parse_args()
    try:
        outcome = run_rigid(args.fixed, args.moving, args.output, config=load_config(args.config))
    except RegistrationError as exc:
        raise SystemExit(f"[RigidRegister] {exc}") from exc
    params = " ".join(f"{v:.5f}" for v in outcome.transform.get_parameters())
    stop = outcome.registration.stop_condition
    print(f"[RigidRegister] Parameters: {params}")
    print(f"[RigidRegister] Stop: {stop.value if stop else 'n/a'}")
    print("[RigidRegister] Rigid registration complete.")


if __name__ == "__main__":
    main()
