#!/usr/bin/env python3
"""
Generate a synthetic LiDAR frame with a known sphere or cylinder.

Writes the raw sensor-layout frame (flat float32, x/y/z/intensity per point)
plus a JSON file with the ground truth next to it. Use this to check the
detector independently of a real sensor.

Usage:
    python scripts/generate_synthetic_cloud.py --mode sphere --out frames/sphere.npy

Then fit it:
    python -m detection.process fit-file frames/sphere.npy --mode sphere
"""

import argparse
import json
import sys
from pathlib import Path

import numpy as np

# Add parent directory to path to import utils
sys.path.append(str(Path(__file__).parent.parent))

from detection.config import POINT_CLOUD_SIZE
from utils.synthetic import cylinder_scene, sphere_scene


def main():
    parser = argparse.ArgumentParser(description="Generate a synthetic LiDAR frame")
    parser.add_argument("--mode", choices=["sphere", "cylinder"], default="sphere")
    parser.add_argument("--out", default="synthetic_frame.npy", help="Output .npy or .bin path")
    parser.add_argument("--points", type=int, default=POINT_CLOUD_SIZE, help="Points per frame")
    parser.add_argument("--seed", type=int, default=0)
    args = parser.parse_args()

    rng = np.random.default_rng(args.seed)
    if args.mode == "sphere":
        scene = sphere_scene(rng, args.points)
    else:
        scene = cylinder_scene(rng, args.points)
    raw = scene.to_raw(rng)

    out = Path(args.out)
    out.parent.mkdir(parents=True, exist_ok=True)
    if out.suffix == ".npy":
        np.save(out, raw)
    else:
        raw.tofile(out)

    truth_path = out.with_suffix(".truth.json")
    with open(truth_path, "w") as f:
        json.dump(scene.truth, f, indent=2)

    print(f"Synthetic {args.mode} frame: {out}  ({scene.point_count} points)")
    print(f"Ground truth: {truth_path}")
    for key, value in scene.truth.items():
        print(f"  {key}: {value}")
    print(f"\nFit it:  python -m detection.process fit-file {out} --mode {args.mode}")


if __name__ == "__main__":
    main()
