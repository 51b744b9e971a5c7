"""
Generate a synthetic model/scan pair with a known rigid misalignment.

- The model is an L-shaped room corner with a box on the floor, sampled
  densely in its own local frame.
- The scan is the same geometry moved by a known yaw + translation, with
  Gaussian noise, a cropped occluded region, a few far-away outliers and a
  per-point confidence channel.
- Writes model/scan (.npy or .las) and the ground-truth 4x4 pose to the output
  directory.
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

import numpy as np

sys.path.append(str(Path(__file__).parent.parent / "src"))

from scan_registration.utils.export import export_points_to_las, export_points_to_npy
from scan_registration.utils.transforms import Pose


def sample_rectangle(origin, u, v, spacing, rng, jitter=0.25):
    """Grid samples on the parallelogram origin + a*u + b*v, a, b in [0, 1]."""
    origin, u, v = (np.asarray(x, dtype=float) for x in (origin, u, v))
    nu = max(2, int(np.linalg.norm(u) / spacing))
    nv = max(2, int(np.linalg.norm(v) / spacing))
    a, b = np.meshgrid(np.linspace(0, 1, nu), np.linspace(0, 1, nv))
    a = a.ravel() + jitter * rng.uniform(-0.5, 0.5, a.size) / nu
    b = b.ravel() + jitter * rng.uniform(-0.5, 0.5, b.size) / nv
    return origin + np.outer(np.clip(a, 0, 1), u) + np.outer(np.clip(b, 0, 1), v)


def make_room_corner(spacing=0.01, seed=42):
    rng = np.random.default_rng(seed)
    parts = [
        # floor 2.0 x 1.5
        sample_rectangle([0, 0, 0], [2.0, 0, 0], [0, 1.5, 0], spacing, rng),
        # two walls, 1.2 high
        sample_rectangle([0, 0, 0], [2.0, 0, 0], [0, 0, 1.2], spacing, rng),
        sample_rectangle([0, 0, 0], [0, 1.5, 0], [0, 0, 1.2], spacing, rng),
        # box 0.4 x 0.3 x 0.25 on the floor
        sample_rectangle([1.2, 0.6, 0.25], [0.4, 0, 0], [0, 0.3, 0], spacing, rng),
        sample_rectangle([1.2, 0.6, 0.0], [0.4, 0, 0], [0, 0, 0.25], spacing, rng),
        sample_rectangle([1.2, 0.9, 0.0], [0.4, 0, 0], [0, 0, 0.25], spacing, rng),
        sample_rectangle([1.2, 0.6, 0.0], [0, 0.3, 0], [0, 0, 0.25], spacing, rng),
        sample_rectangle([1.6, 0.6, 0.0], [0, 0.3, 0], [0, 0, 0.25], spacing, rng),
    ]
    return np.vstack(parts)


def make_scan(model, pose, noise=0.002, crop_fraction=0.15, n_outliers=200, seed=7):
    rng = np.random.default_rng(seed)
    scan = pose.apply(model)
    scan = scan + noise * rng.standard_normal(scan.shape)

    # Occlude a slab along the first axis
    if crop_fraction > 0:
        lo = np.quantile(scan[:, 0], 1.0 - crop_fraction)
        scan = scan[scan[:, 0] < lo]

    confidences = rng.integers(160, 256, size=len(scan))
    if n_outliers:
        center = scan.mean(axis=0)
        outliers = center + rng.uniform(-1.5, 1.5, size=(n_outliers, 3))
        scan = np.vstack([scan, outliers])
        # Outliers are low-confidence samples
        confidences = np.concatenate([confidences, rng.integers(0, 100, size=n_outliers)])
    return scan, confidences


def main(argv=None):
    parser = argparse.ArgumentParser(description="Generate a synthetic model/scan registration pair")
    parser.add_argument("--out-dir", type=str, default="data/synthetic", help="Output directory")
    parser.add_argument("--format", choices=["npy", "las"], default="npy", help="Output point cloud format")
    parser.add_argument("--yaw", type=float, default=20.0, help="Ground-truth yaw about +Z (degrees)")
    parser.add_argument(
        "--translation",
        type=str,
        default="0.6,0.4,-0.9",
        help="Ground-truth translation (m), comma separated; keep the scan within sensor range",
    )
    parser.add_argument("--noise", type=float, default=0.002, help="Scan noise sigma (m)")
    parser.add_argument("--crop", type=float, default=0.15, help="Fraction of the scan removed as an occluded slab")
    parser.add_argument("--spacing", type=float, default=0.01, help="Model sample spacing (m)")
    parser.add_argument("--seed", type=int, default=42, help="RNG seed")
    args = parser.parse_args(argv)

    out_dir = Path(args.out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    translation = [float(v) for v in args.translation.split(",")]
    pose = Pose.from_axis_angle([0.0, 0.0, 1.0], args.yaw, translation)

    model = make_room_corner(spacing=args.spacing, seed=args.seed)
    scan, confidences = make_scan(model, pose, noise=args.noise, crop_fraction=args.crop, seed=args.seed + 1)

    if args.format == "las":
        export_points_to_las(model, str(out_dir / "model.las"))
        export_points_to_las(scan, str(out_dir / "scan.las"), confidences=confidences)
    else:
        export_points_to_npy(model, str(out_dir / "model.npy"))
        export_points_to_npy(scan, str(out_dir / "scan.npy"), confidences=confidences)
    pose.save(out_dir / "ground_truth_pose.txt")

    print(f"Model: {len(model)} points, scan: {len(scan)} points")
    print(f"Ground truth written to {out_dir / 'ground_truth_pose.txt'}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
